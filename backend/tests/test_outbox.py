import json
from datetime import timedelta

import anyio
import httpx
from sqlalchemy import func, select

from booking_engine.domain.outbox.db_models import OutboxEvent
from booking_engine.domain.outbox.notifier import LogNotifier, NoopNotifier, WebhookNotifier, resolve_notifier
from booking_engine.domain.outbox.service import enqueue_outbox_event, outbox_counts_by_status, process_outbox
from booking_engine.settings import settings


def test_outbox_enqueue_idempotent(async_session_maker):
    async def _run():
        dedupe_key = "booking.confirmed:b-1"
        async with async_session_maker() as session:
            await enqueue_outbox_event(
                session, kind="booking.confirmed", payload={"booking_id": "b-1"}, dedupe_key=dedupe_key
            )
            await session.commit()

        async with async_session_maker() as session:
            await enqueue_outbox_event(
                session, kind="booking.confirmed", payload={"booking_id": "b-1"}, dedupe_key=dedupe_key
            )
            await session.commit()
            count = await session.scalar(select(func.count()).where(OutboxEvent.dedupe_key == dedupe_key))
            assert count == 1

    anyio.run(_run)


def test_outbox_delivers_to_webhook(async_session_maker):
    async def _run():
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(202)

        notifier = WebhookNotifier("https://hooks.example.com/booking", transport=httpx.MockTransport(handler))
        async with async_session_maker() as session:
            event = await enqueue_outbox_event(
                session, kind="booking.cancelled", payload={"booking_id": "b-2"}, dedupe_key="booking.cancelled:b-2"
            )
            await session.commit()

            result = await process_outbox(session, notifier, limit=10)
            await session.refresh(event)

        assert result == {"sent": 1, "dead": 0, "pending": 1}
        assert event.status == "sent"
        assert event.attempts == 1
        assert event.last_error is None
        assert received == [{"kind": "booking.cancelled", "payload": {"booking_id": "b-2"}}]

    anyio.run(_run)


def test_outbox_retries_then_dead_letters(async_session_maker, monkeypatch):
    async def _run():
        monkeypatch.setattr(settings, "outbox_max_attempts", 2)
        monkeypatch.setattr(settings, "outbox_base_backoff_seconds", 30.0)
        notifier = WebhookNotifier(
            "https://hooks.example.com/booking",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        async with async_session_maker() as session:
            event = await enqueue_outbox_event(
                session, kind="refund.completed", payload={"request_id": "r-1"}, dedupe_key="refund.completed:r-1"
            )
            await session.commit()

            first = await process_outbox(session, notifier, limit=10)
            await session.refresh(event)
            assert first["sent"] == 0
            assert event.status == "retry"
            assert event.last_error == "status_500"

            not_due = await process_outbox(session, notifier, limit=10)
            assert not_due["pending"] == 0

            later = event.next_attempt_at + timedelta(seconds=1)
            second = await process_outbox(session, notifier, limit=10, now=later)
            await session.refresh(event)
            assert second["dead"] == 1
            assert event.status == "dead"
            assert event.next_attempt_at is None

            counts = await outbox_counts_by_status(session, ("pending", "retry", "dead"))
            assert counts == {"pending": 0, "retry": 0, "dead": 1}

    anyio.run(_run)


def test_resolve_notifier_modes(monkeypatch):
    monkeypatch.setattr(settings, "notification_mode", "off")
    assert isinstance(resolve_notifier(settings), NoopNotifier)
    monkeypatch.setattr(settings, "notification_mode", "log")
    assert isinstance(resolve_notifier(settings), LogNotifier)
