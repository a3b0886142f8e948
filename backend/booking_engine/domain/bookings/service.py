"""Booking lifecycle: the only code that adds or removes booking blocks.

Every mutation holds the unit's guard, so a late payment confirmation and the
hold-expiry sweep can never interleave on the same unit.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.domain import money
from booking_engine.domain.availability import service as availability
from booking_engine.domain.availability.locks import unit_guard
from booking_engine.domain.bookings.db_models import Booking, BookingAddon
from booking_engine.domain.bookings.schemas import HoldRequest
from booking_engine.domain.dates import normalize_datetime, utcnow
from booking_engine.domain.errors import InvalidTransition, NotFoundError, ValidationError
from booking_engine.domain.outbox.service import enqueue_outbox_event
from booking_engine.domain.pricing import engine as pricing
from booking_engine.domain.pricing.models import FrozenQuote
from booking_engine.domain.units.db_models import Promotion
from booking_engine.infra.metrics import metrics
from booking_engine.infra.payment_gateway import PaymentResult
from booking_engine.settings import settings

logger = logging.getLogger(__name__)

BOOKING_TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"checked_in", "cancelled", "no_show"},
    "checked_in": {"checked_out"},
    "checked_out": set(),
    "cancelled": set(),
    "no_show": set(),
}
RELEASING_STATUSES = {"cancelled", "no_show"}
POST_CONFIRM_STATUSES = {"checked_in", "checked_out"}
METRIC_ACTIONS = {
    "confirmed": "confirmed",
    "cancelled": "cancelled",
    "checked_in": "checked_in",
    "checked_out": "checked_out",
    "no_show": "no_show",
}


def assert_valid_booking_transition(current: str, target: str) -> None:
    if current == target:
        return
    allowed = BOOKING_TRANSITIONS.get(current, set())
    if target not in allowed:
        detail = (
            f"Booking is already in terminal status: {current}"
            if not allowed
            else f"Cannot transition booking from {current} to {target}"
        )
        logger.error("invalid_booking_transition", extra={"extra": {"from": current, "to": target}})
        raise InvalidTransition(detail=detail)


def hold_expired(booking: Booking, now: datetime) -> bool:
    if booking.status != "pending" or booking.hold_expires_at is None:
        return False
    return normalize_datetime(booking.hold_expires_at) <= normalize_datetime(now)


def _event_payload(booking: Booking) -> dict:
    return {
        "booking_id": booking.booking_id,
        "unit_id": booking.unit_id,
        "guest_id": booking.guest_id,
        "check_in": booking.check_in.isoformat(),
        "check_out": booking.check_out.isoformat(),
        "status": booking.status,
        "payment_status": booking.payment_status,
        "total_cents": booking.total_cents,
        "currency": booking.currency,
    }


async def get_booking_row(session: AsyncSession, booking_id: str) -> Booking:
    booking = await session.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError(detail="Booking not found")
    return booking


@asynccontextmanager
async def locked_booking(session: AsyncSession, booking_id: str) -> AsyncIterator[Booking]:
    """Yield the booking re-read under its unit's guard."""
    booking = await get_booking_row(session, booking_id)
    async with unit_guard(session, booking.unit_id):
        stmt = (
            select(Booking)
            .where(Booking.booking_id == booking_id)
            .execution_options(populate_existing=True)
        )
        yield (await session.execute(stmt)).scalar_one()


async def _find_by_idempotency_key(session: AsyncSession, key: str) -> Booking | None:
    stmt = select(Booking).where(Booking.idempotency_key == key)
    return (await session.execute(stmt)).scalar_one_or_none()


def _ensure_same_hold(existing: Booking, request: HoldRequest) -> Booking:
    same = (
        existing.unit_id == request.unit_id
        and existing.guest_id == request.guest_id
        and existing.check_in == request.check_in
        and existing.check_out == request.check_out
    )
    if not same:
        raise ValidationError(detail="Idempotency key was already used for a different hold")
    return existing


async def hold(
    session: AsyncSession,
    request: HoldRequest,
    *,
    now: datetime | None = None,
    hold_window: timedelta | None = None,
) -> Booking:
    """Reserve the dates and create a ``pending`` booking carrying a frozen quote."""
    now = now or utcnow()
    hold_window = hold_window or timedelta(minutes=settings.hold_window_minutes)
    if request.idempotency_key:
        existing = await _find_by_idempotency_key(session, request.idempotency_key)
        if existing is not None:
            return _ensure_same_hold(existing, request)

    booking_id = str(uuid.uuid4())
    try:
        async with unit_guard(session, request.unit_id) as unit:
            priced = await pricing.quote(session, request, unit=unit)
            await availability.reserve(
                session, unit.unit_id, request.stay, reason="booking", booking_id=booking_id
            )
            deposit = money.percent_of(priced.total_cents, unit.deposit_percent) if unit.deposit_percent else None
            frozen = FrozenQuote.freeze(priced, deposit_cents=deposit, frozen_at=now)
            booking = Booking(
                booking_id=booking_id,
                unit_id=unit.unit_id,
                property_id=unit.property_id,
                guest_id=request.guest_id,
                check_in=request.check_in,
                check_out=request.check_out,
                adults=request.adults,
                children=request.children,
                rooms=request.rooms,
                status="pending",
                payment_status="unpaid",
                currency=frozen.currency,
                total_cents=frozen.total_cents,
                deposit_cents=frozen.deposit_cents,
                amount_paid_cents=0,
                refunded_total_cents=0,
                quote_snapshot=frozen.snapshot,
                quote_hash=frozen.quote_hash,
                promotion_id=priced.promotion.promotion_id if priced.promotion else None,
                idempotency_key=request.idempotency_key,
                hold_expires_at=now + hold_window,
                status_changed_at=now,
            )
            booking.addons = [
                BookingAddon(
                    addon_id=line.addon_id,
                    name=line.name,
                    pricing_type=line.pricing_type,
                    quantity=line.quantity,
                    unit_price_cents=line.unit_price_cents,
                    total_cents=line.total_cents,
                )
                for line in priced.addon_lines
            ]
            session.add(booking)
            await session.flush()
    except IntegrityError:
        if request.idempotency_key:
            existing = await _find_by_idempotency_key(session, request.idempotency_key)
            if existing is not None:
                return _ensure_same_hold(existing, request)
        raise

    await session.refresh(booking)
    metrics.record_booking("held")
    logger.info(
        "booking_held",
        extra={
            "extra": {
                "booking_id": booking.booking_id,
                "unit_id": booking.unit_id,
                "total_cents": booking.total_cents,
                "hold_expires_at": booking.hold_expires_at.isoformat() if booking.hold_expires_at else None,
            }
        },
    )
    return booking


def _payment_status_for(booking: Booking, payment: PaymentResult) -> str:
    if not payment.verified:
        raise ValidationError(detail="Payment has not been verified by the gateway")
    if payment.currency and payment.currency.upper() != booking.currency.upper():
        raise ValidationError(detail="Payment currency does not match the booking currency")
    if payment.amount_cents == booking.total_cents:
        return "paid"
    if booking.deposit_cents is not None and booking.deposit_cents <= payment.amount_cents < booking.total_cents:
        return "partial"
    raise ValidationError(
        detail="Payment amount does not match the booking total or deposit",
        errors=[
            {
                "field": "amount_cents",
                "message": f"expected {booking.total_cents}"
                + (f" or at least {booking.deposit_cents}" if booking.deposit_cents is not None else ""),
            }
        ],
    )


async def _expire(session: AsyncSession, booking: Booking, now: datetime) -> None:
    booking.status = "cancelled"
    booking.status_changed_at = now
    booking.cancellation_reason = "hold_expired"
    booking.hold_expires_at = None
    await availability.release(session, booking_id=booking.booking_id)
    metrics.record_booking("expired")
    logger.info("hold_expired", extra={"extra": {"booking_id": booking.booking_id, "unit_id": booking.unit_id}})


async def confirm(
    session: AsyncSession, booking_id: str, payment: PaymentResult, *, now: datetime | None = None
) -> Booking:
    """``pending`` → ``confirmed`` on a verified payment. Replays on a confirmed booking are no-ops."""
    now = now or utcnow()
    expired = False
    async with locked_booking(session, booking_id) as booking:
        if booking.status == "confirmed" or (
            booking.status in POST_CONFIRM_STATUSES and payment.provider_ref == booking.provider_ref
        ):
            logger.info(
                "booking_confirm_replayed", extra={"extra": {"booking_id": booking_id, "status": booking.status}}
            )
            return booking
        if hold_expired(booking, now):
            await _expire(session, booking, now)
            expired = True
        else:
            assert_valid_booking_transition(booking.status, "confirmed")
            booking.payment_status = _payment_status_for(booking, payment)
            booking.amount_paid_cents = payment.amount_cents
            booking.provider_ref = payment.provider_ref
            booking.status = "confirmed"
            booking.status_changed_at = now
            booking.hold_expires_at = None
            if booking.promotion_id is not None:
                await session.execute(
                    update(Promotion)
                    .where(Promotion.promotion_id == booking.promotion_id)
                    .values(current_uses=Promotion.current_uses + 1)
                )
            await enqueue_outbox_event(
                session,
                kind="booking.confirmed",
                payload=_event_payload(booking),
                dedupe_key=f"booking.confirmed:{booking_id}",
            )

    if expired:
        logger.error(
            "late_payment_after_hold_expiry",
            extra={"extra": {"booking_id": booking_id, "provider_ref": payment.provider_ref}},
        )
        raise InvalidTransition(detail="Hold expired before the payment was confirmed")

    metrics.record_booking("confirmed")
    logger.info(
        "booking_confirmed",
        extra={
            "extra": {
                "booking_id": booking_id,
                "payment_status": booking.payment_status,
                "amount_paid_cents": booking.amount_paid_cents,
            }
        },
    )
    return booking


async def attach_provider_ref(session: AsyncSession, booking_id: str, provider_ref: str) -> Booking:
    async with locked_booking(session, booking_id) as booking:
        if booking.status != "pending":
            logger.error(
                "invalid_booking_transition", extra={"extra": {"from": booking.status, "to": "payment"}}
            )
            raise InvalidTransition(detail=f"Cannot take payment for a {booking.status} booking")
        booking.provider_ref = provider_ref
    return booking


async def transition(
    session: AsyncSession,
    booking_id: str,
    target: str,
    *,
    reason: str | None = None,
    allowed_from: set[str] | None = None,
    now: datetime | None = None,
) -> Booking:
    now = now or utcnow()
    async with locked_booking(session, booking_id) as booking:
        previous = booking.status
        if previous == target:
            return booking
        if allowed_from is not None and previous not in allowed_from:
            logger.error(
                "invalid_booking_transition", extra={"extra": {"from": previous, "to": target}}
            )
            raise InvalidTransition(detail=f"Cannot transition booking from {previous} to {target}")
        assert_valid_booking_transition(previous, target)
        booking.status = target
        booking.status_changed_at = now
        booking.hold_expires_at = None
        if target == "cancelled":
            booking.cancellation_reason = reason
        if target in RELEASING_STATUSES:
            await availability.release(session, booking_id=booking_id)
        if target == "cancelled" and previous == "confirmed":
            await enqueue_outbox_event(
                session,
                kind="booking.cancelled",
                payload={**_event_payload(booking), "reason": reason},
                dedupe_key=f"booking.cancelled:{booking_id}",
            )

    metrics.record_booking(METRIC_ACTIONS[target])
    logger.info(
        f"booking_{target}",
        extra={"extra": {"booking_id": booking_id, "from": previous, "reason": reason}},
    )
    return booking


async def abort(
    session: AsyncSession, booking_id: str, *, reason: str = "payment_failed", now: datetime | None = None
) -> Booking:
    return await transition(session, booking_id, "cancelled", reason=reason, allowed_from={"pending"}, now=now)


async def cancel(
    session: AsyncSession, booking_id: str, *, reason: str | None = None, now: datetime | None = None
) -> Booking:
    return await transition(session, booking_id, "cancelled", reason=reason or "guest_request", now=now)


async def check_in(session: AsyncSession, booking_id: str, *, now: datetime | None = None) -> Booking:
    return await transition(session, booking_id, "checked_in", now=now)


async def check_out(session: AsyncSession, booking_id: str, *, now: datetime | None = None) -> Booking:
    return await transition(session, booking_id, "checked_out", now=now)


async def mark_no_show(session: AsyncSession, booking_id: str, *, now: datetime | None = None) -> Booking:
    return await transition(session, booking_id, "no_show", now=now)


async def record_payment(
    session: AsyncSession, booking_id: str, amount_cents: int, *, provider_ref: str | None = None
) -> Booking:
    """Add a later instalment to a confirmed booking that was paid partially."""
    money.require_cents(amount_cents)
    async with locked_booking(session, booking_id) as booking:
        if booking.status not in {"confirmed", "checked_in", "checked_out"}:
            raise InvalidTransition(detail=f"Cannot record a payment on a {booking.status} booking")
        new_total = booking.amount_paid_cents + amount_cents
        if amount_cents <= 0 or new_total > booking.total_cents:
            raise ValidationError(
                detail="Payment would exceed the booking total",
                errors=[{"field": "amount_cents", "message": f"at most {booking.total_cents - booking.amount_paid_cents}"}],
            )
        booking.amount_paid_cents = new_total
        if booking.refunded_total_cents == 0:
            booking.payment_status = "paid" if new_total == booking.total_cents else "partial"
        if provider_ref:
            booking.provider_ref = provider_ref
    logger.info(
        "booking_payment_recorded",
        extra={"extra": {"booking_id": booking_id, "amount_cents": amount_cents, "paid_cents": booking.amount_paid_cents}},
    )
    return booking


async def expire_holds(
    session: AsyncSession, *, now: datetime | None = None, limit: int | None = None
) -> dict[str, int]:
    now = now or utcnow()
    stmt = (
        select(Booking.booking_id)
        .where(Booking.status == "pending", Booking.hold_expires_at <= now)
        .order_by(Booking.hold_expires_at)
        .limit(limit or settings.job_hold_expiry_batch_size)
    )
    candidates = list((await session.execute(stmt)).scalars().all())
    expired = 0
    for booking_id in candidates:
        async with locked_booking(session, booking_id) as booking:
            if hold_expired(booking, now):
                await _expire(session, booking, now)
                expired += 1
    return {"expired": expired, "skipped": len(candidates) - expired}


async def get_booking(session: AsyncSession, booking_id: str, *, now: datetime | None = None) -> Booking:
    """Read a booking, expiring its hold first when the window has passed."""
    now = now or utcnow()
    booking = await get_booking_row(session, booking_id)
    if hold_expired(booking, now):
        async with locked_booking(session, booking_id) as locked:
            if hold_expired(locked, now):
                await _expire(session, locked, now)
        booking = locked
    return booking
