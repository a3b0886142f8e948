import asyncio
from datetime import date

import anyio
import pytest
from sqlalchemy import func, select

from booking_engine.domain.availability import service as availability
from booking_engine.domain.availability.db_models import AvailabilityBlock
from booking_engine.domain.availability.locks import unit_guard, unit_locks
from booking_engine.domain.availability.schemas import ManualBlockCreate
from booking_engine.domain.bookings import service as bookings
from booking_engine.domain.bookings.db_models import Booking
from booking_engine.domain.dates import StayRange
from booking_engine.domain.errors import ConflictError, InvariantViolation, ValidationError
from tests.factories import NOW, hold_request, make_unit


def test_stay_range_is_half_open():
    first = StayRange(date(2030, 7, 1), date(2030, 7, 4))
    back_to_back = StayRange(date(2030, 7, 4), date(2030, 7, 6))
    inside = StayRange(date(2030, 7, 3), date(2030, 7, 5))

    assert first.nights == 3
    assert not first.overlaps(back_to_back)
    assert first.overlaps(inside)
    assert list(first.iter_nights())[-1] == date(2030, 7, 3)
    with pytest.raises(ValueError):
        StayRange(date(2030, 7, 4), date(2030, 7, 4))


def test_back_to_back_blocks_are_allowed_and_overlaps_rejected(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            unit = await make_unit(session)
            await availability.block_dates(
                session, unit.unit_id, ManualBlockCreate(start_date=date(2030, 7, 1), end_date=date(2030, 7, 4))
            )
            await availability.block_dates(
                session, unit.unit_id, ManualBlockCreate(start_date=date(2030, 7, 4), end_date=date(2030, 7, 6))
            )
            with pytest.raises(ConflictError):
                await availability.block_dates(
                    session,
                    unit.unit_id,
                    ManualBlockCreate(start_date=date(2030, 7, 3), end_date=date(2030, 7, 5)),
                )

            assert await availability.is_free(session, unit.unit_id, StayRange(date(2030, 7, 6), date(2030, 7, 8)))
            assert not await availability.is_free(
                session, unit.unit_id, StayRange(date(2030, 6, 30), date(2030, 7, 2))
            )
            blocks = await availability.list_blocks(session, unit.unit_id)
            assert [(block.start_date, block.end_date) for block in blocks] == [
                (date(2030, 7, 1), date(2030, 7, 4)),
                (date(2030, 7, 4), date(2030, 7, 6)),
            ]

    anyio.run(_run)


def test_blocks_on_other_units_do_not_conflict(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            first = await make_unit(session)
            second = await make_unit(session, name="Loft")
            payload = ManualBlockCreate(start_date=date(2030, 7, 1), end_date=date(2030, 7, 4))
            await availability.block_dates(session, first.unit_id, payload)
            await availability.block_dates(session, second.unit_id, payload)
            count = await session.scalar(select(func.count()).select_from(AvailabilityBlock))
            assert count == 2

    anyio.run(_run)


def test_booking_blocks_require_a_booking_id(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            unit = await make_unit(session)
            with pytest.raises(ValidationError):
                async with unit_guard(session, unit.unit_id):
                    await availability.reserve(
                        session, unit.unit_id, StayRange(date(2030, 7, 1), date(2030, 7, 2)), reason="booking"
                    )

    anyio.run(_run)


def test_unblock_only_removes_manual_blocks(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            unit = await make_unit(session)
            manual = await availability.block_dates(
                session, unit.unit_id, ManualBlockCreate(start_date=date(2030, 8, 1), end_date=date(2030, 8, 3))
            )
            booking = await bookings.hold(session, hold_request(unit.unit_id), now=NOW)
            booking_block = (
                await session.execute(select(AvailabilityBlock).where(AvailabilityBlock.booking_id == booking.booking_id))
            ).scalar_one()

            with pytest.raises(ValidationError):
                await availability.unblock(session, booking_block.block_id)
            await availability.unblock(session, manual.block_id)

            remaining = await availability.list_blocks(session, unit.unit_id)
            assert [block.block_id for block in remaining] == [booking_block.block_id]

    anyio.run(_run)


def test_concurrent_holds_for_overlapping_dates_admit_exactly_one(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            unit = await make_unit(session)
            unit_id = unit.unit_id

        async def attempt(guest_id: str, check_in: date, check_out: date):
            async with async_session_maker() as session:
                try:
                    booking = await bookings.hold(
                        session,
                        hold_request(unit_id, guest_id=guest_id, check_in=check_in, check_out=check_out),
                        now=NOW,
                    )
                except ConflictError as exc:
                    return exc
                return booking.booking_id

        results = await asyncio.gather(
            attempt("guest-a", date(2030, 7, 1), date(2030, 7, 4)),
            attempt("guest-b", date(2030, 7, 3), date(2030, 7, 6)),
        )
        winners = [result for result in results if isinstance(result, str)]
        losers = [result for result in results if isinstance(result, ConflictError)]
        assert len(winners) == 1
        assert len(losers) == 1

        async with async_session_maker() as session:
            held = (await session.execute(select(Booking))).scalars().all()
            assert [booking.booking_id for booking in held] == winners
            assert held[0].status == "pending"
            blocks = await availability.list_blocks(session, unit_id)
            assert len(blocks) == 1
            await availability.audit_availability(session, unit_id)

    anyio.run(_run)


def test_audit_reports_blocks_without_bookings(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            unit = await make_unit(session)
            session.add(
                AvailabilityBlock(
                    unit_id=unit.unit_id,
                    start_date=date(2030, 9, 1),
                    end_date=date(2030, 9, 3),
                    reason="booking",
                    booking_id="missing-booking",
                )
            )
            await session.commit()

            anomalies = await availability.find_anomalies(session, unit.unit_id)
            assert [anomaly.kind for anomaly in anomalies] == ["orphan_block"]
            with pytest.raises(InvariantViolation):
                await availability.audit_availability(session, unit.unit_id)

    anyio.run(_run)


def test_unit_guard_locks_only_its_unit(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            unit = await make_unit(session)
            other = await make_unit(session, name="Loft")
            unit_id, other_id = unit.unit_id, other.unit_id

            async with unit_guard(session, unit_id):
                assert unit_locks.is_locked(unit_id)
                assert not unit_locks.is_locked(other_id)
            assert not unit_locks.is_locked(unit_id)

            with pytest.raises(ConflictError):
                async with unit_guard(session, unit_id):
                    raise ConflictError(detail="dates taken")
            assert not unit_locks.is_locked(unit_id)

    anyio.run(_run)
