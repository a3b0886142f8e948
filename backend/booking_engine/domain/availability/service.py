"""Availability index: the union of a unit's blocks decides whether dates are free.

Every write here runs inside :func:`unit_guard` so the overlap check and the
insert happen while the unit is serialized. ``reserve`` only flushes; the
caller's guard commits it together with whatever else belongs to the same unit
of work (a pending booking, for example).
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.domain.availability import schemas
from booking_engine.domain.availability.db_models import AvailabilityBlock
from booking_engine.domain.availability.locks import unit_guard
from booking_engine.domain.bookings.db_models import BLOCKING_STATUSES, Booking
from booking_engine.domain.dates import StayRange
from booking_engine.domain.errors import ConflictError, InvariantViolation, NotFoundError, ValidationError
from booking_engine.infra.metrics import metrics

logger = logging.getLogger(__name__)

EXCLUSION_CONSTRAINT = "ex_availability_blocks_no_overlap"


def _overlap_filter(unit_id: str, stay: StayRange):
    return (
        AvailabilityBlock.unit_id == unit_id,
        AvailabilityBlock.start_date < stay.end,
        AvailabilityBlock.end_date > stay.start,
    )


async def find_conflicts(session: AsyncSession, unit_id: str, stay: StayRange) -> list[AvailabilityBlock]:
    stmt = select(AvailabilityBlock).where(*_overlap_filter(unit_id, stay)).order_by(AvailabilityBlock.start_date)
    return list((await session.execute(stmt)).scalars().all())


async def is_free(session: AsyncSession, unit_id: str, stay: StayRange) -> bool:
    stmt = select(AvailabilityBlock.block_id).where(*_overlap_filter(unit_id, stay)).limit(1)
    return (await session.execute(stmt)).scalar_one_or_none() is None


async def list_blocks(
    session: AsyncSession, unit_id: str, *, window: StayRange | None = None
) -> list[AvailabilityBlock]:
    if window is not None:
        return await find_conflicts(session, unit_id, window)
    stmt = select(AvailabilityBlock).where(AvailabilityBlock.unit_id == unit_id)
    return list((await session.execute(stmt.order_by(AvailabilityBlock.start_date))).scalars().all())


async def reserve(
    session: AsyncSession,
    unit_id: str,
    stay: StayRange,
    *,
    reason: str,
    booking_id: str | None = None,
    note: str | None = None,
) -> AvailabilityBlock:
    """Check and insert in one step. Must run inside ``unit_guard(session, unit_id)``."""
    if reason == "booking" and booking_id is None:
        raise ValidationError(detail="booking blocks require a booking_id")
    conflicts = await find_conflicts(session, unit_id, stay)
    if conflicts:
        metrics.record_availability_conflict()
        logger.info(
            "availability_conflict",
            extra={
                "extra": {
                    "unit_id": unit_id,
                    "requested": stay.as_dict(),
                    "blocking_ids": [block.block_id for block in conflicts],
                }
            },
        )
        raise ConflictError(
            detail="Requested dates are not available for this unit",
            errors=[
                {"field": "dates", "message": f"overlaps {block.start_date}..{block.end_date}"}
                for block in conflicts
            ],
        )

    block = AvailabilityBlock(
        unit_id=unit_id,
        start_date=stay.start,
        end_date=stay.end,
        reason=reason,
        booking_id=booking_id,
        note=note,
    )
    session.add(block)
    try:
        await session.flush()
    except IntegrityError as exc:
        if EXCLUSION_CONSTRAINT in str(exc.orig):
            metrics.record_availability_conflict()
            raise ConflictError(detail="Requested dates are not available for this unit") from exc
        raise
    return block


async def release(session: AsyncSession, *, booking_id: str) -> bool:
    """Remove the block held by a booking. Must run inside the unit's guard."""
    stmt = select(AvailabilityBlock).where(AvailabilityBlock.booking_id == booking_id)
    block = (await session.execute(stmt)).scalar_one_or_none()
    if block is None:
        return False
    await session.delete(block)
    await session.flush()
    return True


async def block_dates(
    session: AsyncSession, unit_id: str, payload: schemas.ManualBlockCreate
) -> AvailabilityBlock:
    stay = StayRange(payload.start_date, payload.end_date)
    async with unit_guard(session, unit_id):
        block = await reserve(session, unit_id, stay, reason="manual", note=payload.note)
    await session.refresh(block)
    logger.info(
        "manual_block_created",
        extra={"extra": {"unit_id": unit_id, "block_id": block.block_id, **stay.as_dict()}},
    )
    return block


async def unblock(session: AsyncSession, block_id: int) -> None:
    block = await session.get(AvailabilityBlock, block_id)
    if block is None:
        raise NotFoundError(detail="Availability block not found")
    if block.reason != "manual":
        raise ValidationError(detail="Booking blocks are released through the booking lifecycle")
    unit_id = block.unit_id
    async with unit_guard(session, unit_id):
        await session.delete(block)
    logger.info("manual_block_removed", extra={"extra": {"unit_id": unit_id, "block_id": block_id}})


async def find_anomalies(session: AsyncSession, unit_id: str) -> list[schemas.AvailabilityAnomaly]:
    blocks_stmt = select(AvailabilityBlock).where(
        AvailabilityBlock.unit_id == unit_id, AvailabilityBlock.reason == "booking"
    )
    blocks = list((await session.execute(blocks_stmt)).scalars().all())
    bookings_stmt = select(Booking).where(Booking.unit_id == unit_id)
    bookings = {booking.booking_id: booking for booking in (await session.execute(bookings_stmt)).scalars()}

    anomalies: list[schemas.AvailabilityAnomaly] = []
    blocked_booking_ids: set[str] = set()
    for block in blocks:
        booking = bookings.get(block.booking_id or "")
        if booking is None:
            kind = "orphan_block"
        elif booking.status not in BLOCKING_STATUSES:
            kind = "stale_block"
        elif (booking.check_in, booking.check_out) != (block.start_date, block.end_date):
            kind = "range_mismatch"
        else:
            blocked_booking_ids.add(booking.booking_id)
            continue
        anomalies.append(
            schemas.AvailabilityAnomaly(
                unit_id=unit_id, kind=kind, block_id=block.block_id, booking_id=block.booking_id
            )
        )

    for booking in bookings.values():
        if booking.status in BLOCKING_STATUSES and booking.booking_id not in blocked_booking_ids:
            if any(anomaly.booking_id == booking.booking_id for anomaly in anomalies):
                continue
            anomalies.append(
                schemas.AvailabilityAnomaly(unit_id=unit_id, kind="missing_block", booking_id=booking.booking_id)
            )
    return anomalies


async def audit_availability(session: AsyncSession, unit_id: str) -> None:
    anomalies = await find_anomalies(session, unit_id)
    if not anomalies:
        return
    logger.error(
        "availability_invariant_violation",
        extra={"extra": {"unit_id": unit_id, "anomalies": [anomaly.model_dump() for anomaly in anomalies]}},
    )
    raise InvariantViolation(
        detail="Availability blocks and bookings disagree for this unit",
        errors=[
            {"field": anomaly.kind, "message": anomaly.booking_id or str(anomaly.block_id)}
            for anomaly in anomalies
        ],
    )
