from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.domain.bookings import service as bookings
from booking_engine.domain.bookings.db_models import Booking
from booking_engine.domain.cancellation.policy import tiers_from_policy
from booking_engine.domain.dates import utcnow
from booking_engine.domain.errors import InvalidTransition, NotFoundError, UpstreamFailure, ValidationError
from booking_engine.domain.outbox.service import enqueue_outbox_event
from booking_engine.domain.refunds import calculator, schemas
from booking_engine.domain.refunds.db_models import ACTIVE_REFUND_STATUSES, RefundRequest
from booking_engine.domain.units import service as units
from booking_engine.infra.metrics import metrics
from booking_engine.infra.payment_gateway import PaymentGateway, call_gateway

logger = logging.getLogger(__name__)

REFUND_TRANSITIONS = {
    "requested": {"under_review", "rejected", "withdrawn"},
    "under_review": {"approved", "rejected", "withdrawn"},
    "approved": {"processing", "withdrawn"},
    "processing": {"completed", "failed"},
    "failed": {"processing"},
    "completed": set(),
    "rejected": set(),
    "withdrawn": set(),
}
REFUNDABLE_PAYMENT_STATUSES = {"paid", "partial", "partially_refunded"}


def assert_valid_refund_transition(current: str, target: str) -> None:
    if target not in REFUND_TRANSITIONS.get(current, set()):
        logger.error("invalid_refund_transition", extra={"extra": {"from": current, "to": target}})
        raise InvalidTransition(detail=f"Cannot move refund request from {current} to {target}")


def _available_cents(booking: Booking) -> int:
    return booking.amount_paid_cents - booking.refunded_total_cents


async def quote_refund(
    session: AsyncSession, booking: Booking, *, now: datetime | None = None
) -> schemas.RefundQuoteResponse:
    """Policy refund for the money still held on the booking, if cancelled ``now``."""
    now = now or utcnow()
    unit = await units.get_unit(session, booking.unit_id)
    policy = await units.resolve_cancellation_policy(session, unit)
    available = _available_cents(booking)
    outcome = calculator.calculate(
        booking,
        available,
        now,
        tiers=tiers_from_policy(policy),
        check_in_time=unit.check_in_time,
        tz_name=unit.timezone,
    )
    return schemas.RefundQuoteResponse(
        booking_id=booking.booking_id,
        checkin_at=outcome.checkin_at,
        hours_until_checkin=round(outcome.hours_until_checkin, 2),
        refund_percent=outcome.refund_percent,
        amount_paid_cents=booking.amount_paid_cents,
        available_cents=available,
        calculated_cents=outcome.calculated_cents,
        outstanding_balance_cents=outcome.outstanding_balance_cents,
    )


async def get_refund_request(session: AsyncSession, request_id: str, *, for_update: bool = False) -> RefundRequest:
    stmt = select(RefundRequest).where(RefundRequest.request_id == request_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    refund = (await session.execute(stmt)).scalar_one_or_none()
    if refund is None:
        raise NotFoundError(detail="Refund request not found")
    return refund


async def create_refund_request(
    session: AsyncSession,
    booking_id: str,
    payload: schemas.RefundRequestCreate,
    *,
    now: datetime | None = None,
) -> RefundRequest:
    now = now or utcnow()
    try:
        async with bookings.locked_booking(session, booking_id) as booking:
            if booking.payment_status not in REFUNDABLE_PAYMENT_STATUSES:
                raise ValidationError(detail=f"Booking payment status {booking.payment_status} is not refundable")
            available = _available_cents(booking)
            if available <= 0:
                raise ValidationError(detail="Nothing left to refund on this booking")
            if payload.requested_cents > available:
                raise ValidationError(
                    detail="Requested amount exceeds the refundable balance",
                    errors=[{"field": "requested_cents", "message": f"at most {available}"}],
                )
            active = await session.scalar(
                select(RefundRequest.request_id).where(
                    RefundRequest.booking_id == booking_id,
                    RefundRequest.status.in_(ACTIVE_REFUND_STATUSES),
                )
            )
            if active is not None:
                raise ValidationError(detail="An active refund request already exists for this booking")

            quoted = await quote_refund(session, booking, now=now)
            refund = RefundRequest(
                booking_id=booking_id,
                status="requested",
                requested_cents=payload.requested_cents,
                calculated_cents=quoted.calculated_cents,
                refund_percent=quoted.refund_percent,
                hours_until_checkin=quoted.hours_until_checkin,
                reason=payload.reason,
                requested_by=payload.requested_by,
            )
            session.add(refund)
            await session.flush()
    except IntegrityError as exc:
        raise ValidationError(detail="An active refund request already exists for this booking") from exc

    await session.refresh(refund)
    metrics.record_refund("requested")
    logger.info(
        "refund_requested",
        extra={
            "extra": {
                "request_id": refund.request_id,
                "booking_id": booking_id,
                "requested_cents": refund.requested_cents,
                "calculated_cents": refund.calculated_cents,
                "refund_percent": refund.refund_percent,
            }
        },
    )
    return refund


async def _move(
    session: AsyncSession,
    request_id: str,
    target: str,
    *,
    reviewer_id: str | None = None,
    note: str | None = None,
    now: datetime | None = None,
) -> RefundRequest:
    refund = await get_refund_request(session, request_id, for_update=True)
    assert_valid_refund_transition(refund.status, target)
    refund.status = target
    if reviewer_id is not None:
        refund.reviewer_id = reviewer_id
        refund.reviewed_at = now or utcnow()
    if note is not None:
        refund.review_note = note
    await session.commit()
    logger.info(f"refund_{target}", extra={"extra": {"request_id": request_id, "reviewer_id": reviewer_id}})
    return refund


async def start_review(session: AsyncSession, request_id: str, review: schemas.RefundReview) -> RefundRequest:
    return await _move(session, request_id, "under_review", reviewer_id=review.reviewer_id, note=review.note)


async def reject(session: AsyncSession, request_id: str, review: schemas.RefundReview) -> RefundRequest:
    refund = await _move(session, request_id, "rejected", reviewer_id=review.reviewer_id, note=review.note)
    metrics.record_refund("rejected")
    return refund


async def withdraw(session: AsyncSession, request_id: str) -> RefundRequest:
    return await _move(session, request_id, "withdrawn")


async def approve(
    session: AsyncSession,
    request_id: str,
    approval: schemas.RefundApproval,
    *,
    now: datetime | None = None,
) -> RefundRequest:
    """Approve the policy amount, or more than it with an explicit operator override."""
    refund = await get_refund_request(session, request_id, for_update=True)
    assert_valid_refund_transition(refund.status, "approved")
    booking = await bookings.get_booking_row(session, refund.booking_id)
    amount = approval.approved_cents if approval.approved_cents is not None else refund.calculated_cents
    available = _available_cents(booking)
    if amount <= 0:
        raise ValidationError(detail="Policy allows no refund; an explicit approved_cents override is required")
    if amount > available:
        raise ValidationError(
            detail="Approved amount exceeds the refundable balance",
            errors=[{"field": "approved_cents", "message": f"at most {available}"}],
        )
    if amount > refund.calculated_cents:
        if not approval.override:
            raise ValidationError(
                detail="Approving more than the policy amount requires operator override",
                errors=[{"field": "override", "message": f"policy amount is {refund.calculated_cents}"}],
            )
        refund.override_approved = True
        logger.warning(
            "refund_override_approved",
            extra={
                "extra": {
                    "request_id": request_id,
                    "reviewer_id": approval.reviewer_id,
                    "approved_cents": amount,
                    "calculated_cents": refund.calculated_cents,
                }
            },
        )
    refund.approved_cents = amount
    refund.status = "approved"
    refund.reviewer_id = approval.reviewer_id
    refund.reviewed_at = now or utcnow()
    if approval.note is not None:
        refund.review_note = approval.note
    await session.commit()
    metrics.record_refund("approved")
    logger.info("refund_approved", extra={"extra": {"request_id": request_id, "approved_cents": amount}})
    return refund


async def process_payout(
    session: AsyncSession,
    request_id: str,
    gateway: PaymentGateway,
    *,
    max_attempts: int = 3,
    backoff_seconds: float = 0.5,
    now: datetime | None = None,
) -> RefundRequest:
    """Pay out an approved request. The request id is the gateway idempotency key."""
    now = now or utcnow()
    refund = await get_refund_request(session, request_id, for_update=True)
    if refund.status == "completed":
        logger.info("refund_payout_replayed", extra={"extra": {"request_id": request_id}})
        return refund
    if refund.status == "processing":
        # An interrupted payout resumes under the same idempotency key.
        logger.warning(
            "refund_payout_resumed",
            extra={"extra": {"request_id": request_id, "attempts": refund.payout_attempts}},
        )
    else:
        assert_valid_refund_transition(refund.status, "processing")
    booking = await bookings.get_booking_row(session, refund.booking_id)
    if not booking.provider_ref:
        raise ValidationError(detail="Booking has no payment reference to refund against")
    refund.status = "processing"
    refund.payout_attempts = (refund.payout_attempts or 0) + 1
    refund.failure_reason = None
    await session.commit()

    amount = refund.approved_cents or 0
    try:
        result = await call_gateway(
            "refund",
            gateway.refund,
            amount,
            booking.provider_ref,
            idempotency_key=refund.request_id,
            max_attempts=max_attempts,
            backoff_seconds=backoff_seconds,
        )
    except UpstreamFailure as exc:
        refund.status = "failed"
        refund.failure_reason = exc.detail[:255]
        await session.commit()
        metrics.record_refund("failed")
        logger.error(
            "refund_payout_failed",
            extra={"extra": {"request_id": request_id, "attempts": refund.payout_attempts, "error": exc.detail}},
        )
        raise

    async with bookings.locked_booking(session, refund.booking_id) as locked:
        await session.refresh(refund)
        if refund.status == "completed":
            logger.info("refund_payout_replayed", extra={"extra": {"request_id": request_id}})
            return refund
        if amount > _available_cents(locked):
            logger.error(
                "refund_exceeds_balance",
                extra={"extra": {"request_id": request_id, "amount_cents": amount}},
            )
        locked.refunded_total_cents = min(locked.amount_paid_cents, locked.refunded_total_cents + amount)
        locked.payment_status = (
            "refunded" if locked.refunded_total_cents >= locked.amount_paid_cents else "partially_refunded"
        )
        refund.status = "completed"
        refund.provider_ref = result.provider_ref
        refund.completed_at = now
        await enqueue_outbox_event(
            session,
            kind="refund.completed",
            payload={
                "request_id": request_id,
                "booking_id": locked.booking_id,
                "guest_id": locked.guest_id,
                "amount_cents": amount,
                "currency": locked.currency,
            },
            dedupe_key=f"refund.completed:{request_id}",
        )

    metrics.record_refund("completed")
    logger.info(
        "refund_completed",
        extra={
            "extra": {
                "request_id": request_id,
                "amount_cents": amount,
                "provider_ref": result.provider_ref,
                "settled": result.completed,
            }
        },
    )
    return refund
