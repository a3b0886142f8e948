"""Guest checkout: quote → hold → gateway payment → confirm, or abort."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.domain.bookings import service as bookings
from booking_engine.domain.bookings.db_models import Booking
from booking_engine.domain.bookings.schemas import HoldRequest
from booking_engine.domain.dates import utcnow
from booking_engine.domain.errors import InvalidTransition, UpstreamFailure, ValidationError
from booking_engine.domain.pricing import engine as pricing
from booking_engine.domain.pricing.models import PricingQuote, QuoteRequest
from booking_engine.infra.idempotency import make_gateway_idempotency_key
from booking_engine.infra.payment_gateway import PaymentGateway, PaymentResult, call_gateway

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    booking: Booking
    payment: PaymentResult | None = None


class CheckoutOrchestrator:
    def __init__(
        self,
        gateway: PaymentGateway,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        hold_window: timedelta = timedelta(minutes=15),
    ) -> None:
        self.gateway = gateway
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.hold_window = hold_window

    @classmethod
    def from_settings(cls, gateway: PaymentGateway, app_settings) -> "CheckoutOrchestrator":
        return cls(
            gateway,
            max_attempts=app_settings.gateway_max_attempts,
            backoff_seconds=app_settings.gateway_backoff_seconds,
            hold_window=timedelta(minutes=app_settings.hold_window_minutes),
        )

    async def _call(self, operation: str, fn, *args, **kwargs):
        return await call_gateway(
            operation,
            fn,
            *args,
            max_attempts=self.max_attempts,
            backoff_seconds=self.backoff_seconds,
            **kwargs,
        )

    async def quote(self, session: AsyncSession, request: QuoteRequest) -> PricingQuote:
        return await pricing.quote(session, request)

    async def hold(self, session: AsyncSession, request: HoldRequest, *, now: datetime | None = None) -> Booking:
        return await bookings.hold(session, request, now=now, hold_window=self.hold_window)

    async def pay(self, session: AsyncSession, booking_id: str, *, now: datetime | None = None) -> CheckoutResult:
        """Ask the gateway to charge the frozen total.

        A gateway that settles synchronously confirms the booking in the same
        call. Otherwise the booking stays ``pending`` until :meth:`confirm`.
        Exhausted retries release the hold and surface ``UpstreamFailure``.
        """
        now = now or utcnow()
        booking = await bookings.get_booking(session, booking_id, now=now)
        if booking.status == "confirmed":
            return CheckoutResult(booking=booking)
        if booking.status != "pending":
            raise InvalidTransition(detail=f"Cannot take payment for a {booking.status} booking")

        key = make_gateway_idempotency_key(
            "booking_charge",
            booking_id=booking.booking_id,
            amount_cents=booking.total_cents,
            currency=booking.currency,
        )
        try:
            payment = await self._call(
                "charge",
                self.gateway.charge,
                booking.total_cents,
                booking.currency,
                booking.booking_id,
                idempotency_key=key,
            )
        except UpstreamFailure:
            await bookings.abort(session, booking_id, reason="payment_unavailable", now=now)
            logger.warning("checkout_payment_unavailable", extra={"extra": {"booking_id": booking_id}})
            raise

        if payment.failed:
            await bookings.abort(session, booking_id, reason="payment_failed", now=now)
            raise UpstreamFailure(detail="Payment was declined by the gateway")
        if payment.verified:
            booking = await bookings.confirm(session, booking_id, payment, now=now)
        else:
            booking = await bookings.attach_provider_ref(session, booking_id, payment.provider_ref)
        return CheckoutResult(booking=booking, payment=payment)

    async def confirm(
        self,
        session: AsyncSession,
        booking_id: str,
        *,
        provider_ref: str | None = None,
        now: datetime | None = None,
    ) -> CheckoutResult:
        """Gateway callback. Safe to deliver more than once."""
        now = now or utcnow()
        booking = await bookings.get_booking_row(session, booking_id)
        replayed_ref = provider_ref in (None, booking.provider_ref)
        if booking.status == "confirmed" or (booking.status in bookings.POST_CONFIRM_STATUSES and replayed_ref):
            logger.info("booking_confirm_replayed", extra={"extra": {"booking_id": booking_id}})
            return CheckoutResult(booking=booking)
        reference = provider_ref or booking.provider_ref
        if not reference:
            raise ValidationError(detail="No payment reference recorded for this booking")

        payment = await self._call("verify_payment", self.gateway.verify_payment, reference)
        if payment.failed:
            booking = await bookings.abort(session, booking_id, reason="payment_failed", now=now)
            return CheckoutResult(booking=booking, payment=payment)
        if not payment.verified:
            return CheckoutResult(booking=booking, payment=payment)
        booking = await bookings.confirm(session, booking_id, payment, now=now)
        return CheckoutResult(booking=booking, payment=payment)

    async def abort(
        self, session: AsyncSession, booking_id: str, *, reason: str = "payment_failed", now: datetime | None = None
    ) -> Booking:
        return await bookings.abort(session, booking_id, reason=reason, now=now)
