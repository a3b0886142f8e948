from datetime import timedelta
from decimal import Decimal

import anyio
import pytest
from sqlalchemy import select

from booking_engine.domain.availability import service as availability
from booking_engine.domain.bookings import service as bookings
from booking_engine.domain.errors import ConflictError, InvalidTransition, ValidationError
from booking_engine.domain.outbox.db_models import OutboxEvent
from booking_engine.domain.pricing.models import FrozenQuote
from booking_engine.domain.units import service as units
from booking_engine.domain.units.db_models import Promotion
from booking_engine.domain.units.schemas import PromotionCreate, UnitUpdate
from tests.factories import CHECK_IN, NOW, PROPERTY_ID, hold_request, make_unit, verified_payment


def test_assert_valid_booking_transition():
    bookings.assert_valid_booking_transition("pending", "confirmed")
    bookings.assert_valid_booking_transition("confirmed", "confirmed")
    with pytest.raises(InvalidTransition):
        bookings.assert_valid_booking_transition("pending", "checked_in")
    with pytest.raises(InvalidTransition) as exc_info:
        bookings.assert_valid_booking_transition("cancelled", "confirmed")
    assert "terminal" in exc_info.value.detail


def test_full_stay_lifecycle(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            unit = await make_unit(session)
            booking = await bookings.hold(session, hold_request(unit.unit_id), now=NOW)
            assert booking.status == "pending"
            assert booking.payment_status == "unpaid"
            assert booking.total_cents == 34500
            assert booking.hold_expires_at is not None

            booking = await bookings.confirm(session, booking.booking_id, verified_payment(booking), now=NOW)
            assert booking.status == "confirmed"
            assert booking.payment_status == "paid"
            assert booking.amount_paid_cents == 34500
            assert booking.hold_expires_at is None

            booking = await bookings.check_in(session, booking.booking_id, now=NOW)
            assert booking.status == "checked_in"
            booking = await bookings.check_out(session, booking.booking_id, now=NOW)
            assert booking.status == "checked_out"

            with pytest.raises(InvalidTransition):
                await bookings.cancel(session, booking.booking_id, now=NOW)
            # A completed stay keeps its dates blocked.
            assert len(await availability.list_blocks(session, unit.unit_id)) == 1

    anyio.run(_run)


def test_confirm_is_idempotent_and_emits_one_event(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            unit = await make_unit(session)
            booking = await bookings.hold(session, hold_request(unit.unit_id), now=NOW)
            payment = verified_payment(booking)

            await bookings.confirm(session, booking.booking_id, payment, now=NOW)
            replay = await bookings.confirm(session, booking.booking_id, payment, now=NOW)

            assert replay.status == "confirmed"
            events = (await session.execute(select(OutboxEvent))).scalars().all()
            assert [event.kind for event in events] == ["booking.confirmed"]
            assert events[0].payload_json["booking_id"] == booking.booking_id

    anyio.run(_run)


def test_cancel_releases_dates_and_emits_event(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            unit = await make_unit(session)
            booking = await bookings.hold(session, hold_request(unit.unit_id), now=NOW)
            await bookings.confirm(session, booking.booking_id, verified_payment(booking), now=NOW)

            cancelled = await bookings.cancel(session, booking.booking_id, reason="change_of_plans", now=NOW)
            assert cancelled.status == "cancelled"
            assert cancelled.cancellation_reason == "change_of_plans"
            assert await availability.list_blocks(session, unit.unit_id) == []

            kinds = (await session.execute(select(OutboxEvent.kind))).scalars().all()
            assert sorted(kinds) == ["booking.cancelled", "booking.confirmed"]

            rebooked = await bookings.hold(session, hold_request(unit.unit_id, guest_id="guest-2"), now=NOW)
            assert rebooked.status == "pending"

    anyio.run(_run)


def test_no_show_releases_dates(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            unit = await make_unit(session)
            booking = await bookings.hold(session, hold_request(unit.unit_id), now=NOW)
            await bookings.confirm(session, booking.booking_id, verified_payment(booking), now=NOW)

            booking = await bookings.mark_no_show(session, booking.booking_id, now=NOW)
            assert booking.status == "no_show"
            assert await availability.list_blocks(session, unit.unit_id) == []
            with pytest.raises(InvalidTransition):
                await bookings.check_in(session, booking.booking_id, now=NOW)

    anyio.run(_run)


def test_overlapping_hold_conflicts(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            unit = await make_unit(session)
            await bookings.hold(session, hold_request(unit.unit_id), now=NOW)
            with pytest.raises(ConflictError):
                await bookings.hold(
                    session,
                    hold_request(unit.unit_id, guest_id="guest-2", check_in=CHECK_IN + timedelta(days=2)),
                    now=NOW,
                )

    anyio.run(_run)


def test_hold_replays_idempotency_key(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            unit = await make_unit(session)
            first = await bookings.hold(session, hold_request(unit.unit_id, idempotency_key="hold-1"), now=NOW)
            again = await bookings.hold(session, hold_request(unit.unit_id, idempotency_key="hold-1"), now=NOW)
            assert again.booking_id == first.booking_id

            with pytest.raises(ValidationError):
                await bookings.hold(
                    session, hold_request(unit.unit_id, guest_id="other", idempotency_key="hold-1"), now=NOW
                )

    anyio.run(_run)


def test_frozen_quote_survives_rate_changes(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            unit = await make_unit(session)
            booking = await bookings.hold(session, hold_request(unit.unit_id), now=NOW)
            frozen_hash = booking.quote_hash

            await units.update_unit(session, unit.unit_id, UnitUpdate(base_rate_cents=50000))
            booking = await bookings.confirm(session, booking.booking_id, verified_payment(booking), now=NOW)

            assert booking.total_cents == 34500
            assert booking.quote_hash == frozen_hash
            frozen = FrozenQuote.from_booking(booking)
            assert frozen.snapshot["total_cents"] == 34500
            assert frozen.snapshot["night_lines"][0]["rate_cents"] == 10000

            later = await bookings.hold(
                session,
                hold_request(
                    unit.unit_id,
                    check_in=CHECK_IN + timedelta(days=10),
                    check_out=CHECK_IN + timedelta(days=11),
                ),
                now=NOW,
            )
            assert later.total_cents == 57500
            stale_payment = verified_payment(later, amount_cents=34500)
            with pytest.raises(ValidationError):
                await bookings.confirm(session, later.booking_id, stale_payment, now=NOW)

    anyio.run(_run)


def test_payment_must_match_total_or_deposit(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            unit = await make_unit(session, deposit_percent=Decimal("30"))
            booking = await bookings.hold(session, hold_request(unit.unit_id), now=NOW)
            assert booking.deposit_cents == 10350
            booking_id = booking.booking_id
            too_little = verified_payment(booking, amount_cents=5000)
            deposit = verified_payment(booking, amount_cents=10350)

            with pytest.raises(ValidationError):
                await bookings.confirm(session, booking_id, too_little, now=NOW)

            booking = await bookings.confirm(session, booking_id, deposit, now=NOW)
            assert booking.payment_status == "partial"

            booking = await bookings.record_payment(session, booking.booking_id, 24150)
            assert booking.payment_status == "paid"
            assert booking.amount_paid_cents == 34500
            with pytest.raises(ValidationError):
                await bookings.record_payment(session, booking.booking_id, 1)

    anyio.run(_run)


def test_confirm_counts_promotion_use(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            unit = await make_unit(session)
            promotion = await units.create_promotion(
                session,
                PromotionCreate(
                    property_id=PROPERTY_ID,
                    unit_ids=[unit.unit_id],
                    name="Launch",
                    discount_type="fixed_amount",
                    discount_value=1000,
                    valid_from=CHECK_IN - timedelta(days=60),
                    max_uses=1,
                ),
            )
            booking = await bookings.hold(
                session, hold_request(unit.unit_id, promotion_id=promotion.promotion_id), now=NOW
            )
            assert booking.total_cents == 33350
            await bookings.confirm(session, booking.booking_id, verified_payment(booking), now=NOW)

            uses = await session.scalar(
                select(Promotion.current_uses).where(Promotion.promotion_id == promotion.promotion_id)
            )
            assert uses == 1

    anyio.run(_run)


def test_hold_expiry_sweep_releases_dates(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            unit = await make_unit(session)
            booking = await bookings.hold(session, hold_request(unit.unit_id), now=NOW, hold_window=timedelta(minutes=15))

            early = await bookings.expire_holds(session, now=NOW + timedelta(minutes=10))
            assert early == {"expired": 0, "skipped": 0}

            result = await bookings.expire_holds(session, now=NOW + timedelta(minutes=16))
            assert result == {"expired": 1, "skipped": 0}

            expired = await bookings.get_booking_row(session, booking.booking_id)
            assert expired.status == "cancelled"
            assert expired.cancellation_reason == "hold_expired"
            assert await availability.list_blocks(session, unit.unit_id) == []

    anyio.run(_run)


def test_reading_an_expired_hold_expires_it(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            unit = await make_unit(session)
            booking = await bookings.hold(session, hold_request(unit.unit_id), now=NOW)

            read = await bookings.get_booking(session, booking.booking_id, now=NOW + timedelta(hours=1))
            assert read.status == "cancelled"
            assert await availability.list_blocks(session, unit.unit_id) == []

    anyio.run(_run)


def test_late_payment_after_expiry_is_rejected(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            unit = await make_unit(session)
            booking = await bookings.hold(session, hold_request(unit.unit_id), now=NOW)
            payment = verified_payment(booking)

            with pytest.raises(InvalidTransition):
                await bookings.confirm(session, booking.booking_id, payment, now=NOW + timedelta(hours=1))

            late = await bookings.get_booking_row(session, booking.booking_id)
            assert late.status == "cancelled"
            assert late.amount_paid_cents == 0
            assert await availability.list_blocks(session, unit.unit_id) == []

    anyio.run(_run)


def test_payment_replay_after_check_in_is_a_no_op(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            unit = await make_unit(session)
            booking = await bookings.hold(session, hold_request(unit.unit_id), now=NOW)
            booking_id = booking.booking_id
            payment = verified_payment(booking)
            other_payment = verified_payment(booking, provider_ref="pi_other")
            await bookings.confirm(session, booking_id, payment, now=NOW)
            await bookings.check_in(session, booking_id, now=NOW)

            replay = await bookings.confirm(session, booking_id, payment, now=NOW)
            assert replay.status == "checked_in"
            assert replay.amount_paid_cents == 34500

            await bookings.check_out(session, booking_id, now=NOW)
            replay = await bookings.confirm(session, booking_id, payment, now=NOW)
            assert replay.status == "checked_out"

            with pytest.raises(InvalidTransition):
                await bookings.confirm(session, booking_id, other_payment, now=NOW)

            kinds = (await session.execute(select(OutboxEvent.kind))).scalars().all()
            assert kinds == ["booking.confirmed"]

    anyio.run(_run)
