from datetime import datetime, timedelta, timezone

import anyio
import pytest
from sqlalchemy import select

from booking_engine.domain.bookings import service as bookings
from booking_engine.domain.errors import InvalidTransition, UpstreamFailure, ValidationError
from booking_engine.domain.outbox.db_models import OutboxEvent
from booking_engine.domain.refunds import service as refunds
from booking_engine.domain.refunds.schemas import RefundApproval, RefundRequestCreate, RefundReview
from booking_engine.domain.units import service as units
from booking_engine.domain.units.schemas import CancellationPolicyUpdate, CancellationTierIn
from booking_engine.infra.payment_gateway import GatewayError
from tests.factories import NOW, FakeGateway, hold_request, make_unit, verified_payment

CHECKIN_AT = datetime(2030, 7, 1, 15, 0, tzinfo=timezone.utc)
REQUESTED_AT = CHECKIN_AT - timedelta(hours=100)
REVIEW = RefundReview(reviewer_id="ops-1")
STANDARD_TIERS = [(168, 100), (72, 50), (0, 0)]


async def _confirmed_booking(session, tiers=STANDARD_TIERS):
    unit = await make_unit(session)
    await units.set_cancellation_policy(
        session,
        CancellationPolicyUpdate(
            name="standard",
            tiers=[CancellationTierIn(min_hours_before_checkin=hours, refund_percent=pct) for hours, pct in tiers],
        ),
        unit_id=unit.unit_id,
    )
    booking = await bookings.hold(session, hold_request(unit.unit_id), now=NOW)
    return await bookings.confirm(
        session, booking.booking_id, verified_payment(booking, provider_ref="pi_paid"), now=NOW
    )


async def _approved_request(session, booking_id, **approval):
    refund = await refunds.create_refund_request(
        session, booking_id, RefundRequestCreate(requested_cents=17250), now=REQUESTED_AT
    )
    await refunds.start_review(session, refund.request_id, REVIEW)
    return await refunds.approve(session, refund.request_id, RefundApproval(reviewer_id="ops-1", **approval))


def test_refund_transition_table():
    refunds.assert_valid_refund_transition("requested", "under_review")
    refunds.assert_valid_refund_transition("failed", "processing")
    with pytest.raises(InvalidTransition):
        refunds.assert_valid_refund_transition("requested", "approved")
    with pytest.raises(InvalidTransition):
        refunds.assert_valid_refund_transition("completed", "processing")


def test_quote_uses_policy_tier(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            booking = await _confirmed_booking(session)
            quoted = await refunds.quote_refund(session, booking, now=REQUESTED_AT)

        assert quoted.refund_percent == 50
        assert quoted.available_cents == 34500
        assert quoted.calculated_cents == 17250
        assert quoted.hours_until_checkin == 100

    anyio.run(_run)


def test_request_review_approve_and_pay_out(async_session_maker):
    async def _run():
        gateway = FakeGateway()
        async with async_session_maker() as session:
            booking = await _confirmed_booking(session)
            booking_id = booking.booking_id

            refund = await refunds.create_refund_request(
                session,
                booking_id,
                RefundRequestCreate(requested_cents=20000, reason="family emergency"),
                now=REQUESTED_AT,
            )
            assert refund.status == "requested"
            assert refund.calculated_cents == 17250
            assert refund.refund_percent == 50

            await refunds.start_review(session, refund.request_id, REVIEW)
            approved = await refunds.approve(session, refund.request_id, RefundApproval(reviewer_id="ops-1"))
            assert approved.status == "approved"
            assert approved.approved_cents == 17250
            assert approved.override_approved is False

            completed = await refunds.process_payout(session, refund.request_id, gateway, backoff_seconds=0)
            assert completed.status == "completed"
            assert completed.provider_ref == "re_1"

            booking = await bookings.get_booking_row(session, booking_id)
            assert booking.refunded_total_cents == 17250
            assert booking.payment_status == "partially_refunded"

            replay = await refunds.process_payout(session, refund.request_id, gateway, backoff_seconds=0)
            assert replay.status == "completed"
            assert gateway.count("refund") == 1
            assert gateway.refunded == {"pi_paid": 17250}

            events = (await session.execute(select(OutboxEvent.kind))).scalars().all()
            assert sorted(events) == ["booking.confirmed", "refund.completed"]

    anyio.run(_run)


def test_only_one_active_request_per_booking(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            booking = await _confirmed_booking(session)
            booking_id = booking.booking_id
            first = await refunds.create_refund_request(
                session, booking_id, RefundRequestCreate(requested_cents=1000), now=REQUESTED_AT
            )
            first_id = first.request_id

            with pytest.raises(ValidationError):
                await refunds.create_refund_request(
                    session, booking_id, RefundRequestCreate(requested_cents=1000), now=REQUESTED_AT
                )

            await refunds.withdraw(session, first_id)
            second = await refunds.create_refund_request(
                session, booking_id, RefundRequestCreate(requested_cents=1000), now=REQUESTED_AT
            )
            assert second.request_id != first_id

    anyio.run(_run)


def test_request_amount_is_bounded_by_money_held(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            booking = await _confirmed_booking(session)
            with pytest.raises(ValidationError):
                await refunds.create_refund_request(
                    session, booking.booking_id, RefundRequestCreate(requested_cents=34501), now=REQUESTED_AT
                )

    anyio.run(_run)


def test_unpaid_booking_is_not_refundable(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            unit = await make_unit(session)
            booking = await bookings.hold(session, hold_request(unit.unit_id), now=NOW)
            with pytest.raises(ValidationError):
                await refunds.create_refund_request(
                    session, booking.booking_id, RefundRequestCreate(requested_cents=100), now=REQUESTED_AT
                )

    anyio.run(_run)


def test_approving_above_policy_requires_override(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            booking = await _confirmed_booking(session)
            refund = await refunds.create_refund_request(
                session, booking.booking_id, RefundRequestCreate(requested_cents=30000), now=REQUESTED_AT
            )
            request_id = refund.request_id
            await refunds.start_review(session, request_id, REVIEW)

            with pytest.raises(ValidationError):
                await refunds.approve(session, request_id, RefundApproval(reviewer_id="ops-1", approved_cents=30000))
            with pytest.raises(ValidationError):
                await refunds.approve(
                    session,
                    request_id,
                    RefundApproval(reviewer_id="ops-1", approved_cents=40000, override=True),
                )

            approved = await refunds.approve(
                session,
                request_id,
                RefundApproval(reviewer_id="ops-2", approved_cents=30000, override=True, note="goodwill"),
            )
            assert approved.approved_cents == 30000
            assert approved.override_approved is True
            assert approved.reviewer_id == "ops-2"

    anyio.run(_run)


def test_zero_policy_refund_needs_explicit_amount(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            booking = await _confirmed_booking(session, tiers=[(720, 100), (0, 0)])
            refund = await refunds.create_refund_request(
                session, booking.booking_id, RefundRequestCreate(requested_cents=5000), now=REQUESTED_AT
            )
            request_id = refund.request_id
            assert refund.calculated_cents == 0
            await refunds.start_review(session, request_id, REVIEW)

            with pytest.raises(ValidationError):
                await refunds.approve(session, request_id, RefundApproval(reviewer_id="ops-1"))

            rejected = await refunds.reject(session, request_id, RefundReview(reviewer_id="ops-1", note="policy"))
            assert rejected.status == "rejected"
            with pytest.raises(InvalidTransition):
                await refunds.withdraw(session, request_id)

    anyio.run(_run)


def test_failed_payout_can_be_retried_with_same_key(async_session_maker):
    async def _run():
        gateway = FakeGateway()
        gateway.refund_outcomes.extend(GatewayError("provider down") for _ in range(2))
        async with async_session_maker() as session:
            booking = await _confirmed_booking(session)
            booking_id = booking.booking_id
            approved = await _approved_request(session, booking_id)
            request_id = approved.request_id

            with pytest.raises(UpstreamFailure):
                await refunds.process_payout(session, request_id, gateway, max_attempts=2, backoff_seconds=0)
            failed = await refunds.get_refund_request(session, request_id)
            assert failed.status == "failed"
            assert failed.failure_reason
            assert failed.payout_attempts == 1
            untouched = await bookings.get_booking_row(session, booking_id)
            assert untouched.refunded_total_cents == 0

            completed = await refunds.process_payout(session, request_id, gateway, backoff_seconds=0)
            assert completed.status == "completed"
            assert completed.payout_attempts == 2

        keys = {key for name, key in gateway.calls if name == "refund"}
        assert keys == {request_id}

    anyio.run(_run)


def test_payout_requires_approval(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            booking = await _confirmed_booking(session)
            refund = await refunds.create_refund_request(
                session, booking.booking_id, RefundRequestCreate(requested_cents=1000), now=REQUESTED_AT
            )
            with pytest.raises(InvalidTransition):
                await refunds.process_payout(session, refund.request_id, FakeGateway(), backoff_seconds=0)

    anyio.run(_run)


def test_interrupted_payout_resumes_and_pays_once(async_session_maker):
    async def _run():
        gateway = FakeGateway()
        gateway.refund_outcomes.append(RuntimeError("connection reset"))
        async with async_session_maker() as session:
            booking = await _confirmed_booking(session)
            booking_id = booking.booking_id
            approved = await _approved_request(session, booking_id)
            request_id = approved.request_id

            with pytest.raises(RuntimeError):
                await refunds.process_payout(session, request_id, gateway, backoff_seconds=0)

        async with async_session_maker() as session:
            stuck = await refunds.get_refund_request(session, request_id)
            assert stuck.status == "processing"

            completed = await refunds.process_payout(session, request_id, gateway, backoff_seconds=0)
            assert completed.status == "completed"
            assert completed.payout_attempts == 2

            replay = await refunds.process_payout(session, request_id, gateway, backoff_seconds=0)
            assert replay.status == "completed"

            booking = await bookings.get_booking_row(session, booking_id)
            assert booking.refunded_total_cents == 17250
            events = (await session.execute(select(OutboxEvent.kind))).scalars().all()
            assert sorted(events) == ["booking.confirmed", "refund.completed"]

        assert gateway.refunded == {"pi_paid": 17250}
        assert {key for name, key in gateway.calls if name == "refund"} == {request_id}

    anyio.run(_run)
