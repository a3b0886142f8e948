from datetime import date, timedelta

import anyio

from booking_engine.domain.availability.db_models import AvailabilityBlock
from booking_engine.domain.bookings import service as bookings
from booking_engine.domain.dates import utcnow
from booking_engine.domain.outbox.notifier import NoopNotifier
from booking_engine.domain.outbox.service import enqueue_outbox_event
from booking_engine.jobs import availability_audit, hold_expiry, outbox, run
from tests.factories import hold_request, make_unit


def test_hold_expiry_job_expires_stale_holds(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            unit = await make_unit(session)
            stale = await bookings.hold(session, hold_request(unit.unit_id), now=utcnow() - timedelta(hours=1))
            fresh = await bookings.hold(
                session,
                hold_request(unit.unit_id, check_in=date(2030, 8, 1), check_out=date(2030, 8, 2)),
            )
            stale_id, fresh_id = stale.booking_id, fresh.booking_id

            result = await hold_expiry.run_hold_expiry(session)

            assert result == {"expired": 1, "skipped": 0}
            assert (await bookings.get_booking_row(session, stale_id)).status == "cancelled"
            assert (await bookings.get_booking_row(session, fresh_id)).status == "pending"

    anyio.run(_run)


def test_outbox_job_delivers_pending_events(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            await enqueue_outbox_event(session, kind="booking.confirmed", payload={}, dedupe_key="booking.confirmed:x")
            await session.commit()
            result = await outbox.run_outbox_delivery(session, NoopNotifier())
        assert result["sent"] == 1

    anyio.run(_run)


def test_availability_audit_job_counts_broken_units(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            healthy = await make_unit(session)
            broken = await make_unit(session, name="Broken")
            await bookings.hold(session, hold_request(healthy.unit_id))
            session.add(
                AvailabilityBlock(
                    unit_id=broken.unit_id,
                    start_date=date(2030, 9, 1),
                    end_date=date(2030, 9, 2),
                    reason="booking",
                    booking_id="ghost",
                )
            )
            await session.commit()

            result = await availability_audit.run_availability_audit(session)

        assert result == {"units": 2, "violations": 1}

    anyio.run(_run)


def test_run_once_executes_every_job(async_session_maker, monkeypatch):
    completed = []
    original_run_job = run._run_job

    async def tracking_run_job(name, session_factory, runner):
        result = await original_run_job(name, session_factory, runner)
        completed.append(name)
        return result

    monkeypatch.setattr(run, "get_session_factory", lambda: async_session_maker)
    monkeypatch.setattr(run, "_run_job", tracking_run_job)

    anyio.run(run.main, ["--once"])

    assert completed == list(run.DEFAULT_JOBS)
