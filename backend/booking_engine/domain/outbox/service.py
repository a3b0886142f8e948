from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.domain.outbox.db_models import OutboxEvent
from booking_engine.domain.outbox.notifier import Notifier
from booking_engine.infra.logging import clear_log_context
from booking_engine.infra.metrics import metrics
from booking_engine.settings import settings

PENDING_STATUSES = {"pending", "retry"}

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _backoff_delay(attempt: int) -> timedelta:
    delay = settings.outbox_base_backoff_seconds * max(1, 2 ** max(0, attempt - 1))
    return timedelta(seconds=delay)


def _next_attempt(attempt: int, now: datetime | None = None) -> datetime:
    return (now or _now()) + _backoff_delay(attempt)


async def enqueue_outbox_event(
    session: AsyncSession,
    *,
    kind: str,
    payload: dict,
    dedupe_key: str,
) -> OutboxEvent:
    """Stage an event in the caller's transaction. Idempotent on ``dedupe_key``."""
    existing = await session.scalar(select(OutboxEvent).where(OutboxEvent.dedupe_key == dedupe_key))
    if existing is not None:
        return existing
    values = {
        "kind": kind,
        "payload_json": payload,
        "dedupe_key": dedupe_key,
        "status": "pending",
        "attempts": 0,
        "next_attempt_at": _now(),
        "last_error": None,
    }
    bind = session.get_bind()
    dialect = bind.dialect.name if bind else ""
    if dialect == "postgresql":
        stmt = pg_insert(OutboxEvent).values(**values).on_conflict_do_nothing(index_elements=["dedupe_key"])
        result = await session.execute(stmt.returning(OutboxEvent))
        created = result.scalar_one_or_none()
        if created is not None:
            return created
        return await session.scalar(select(OutboxEvent).where(OutboxEvent.dedupe_key == dedupe_key))
    event = OutboxEvent(**values)
    session.add(event)
    await session.flush()
    return event


async def deliver_outbox_event(
    session: AsyncSession, event: OutboxEvent, notifier: Notifier
) -> tuple[bool, str | None]:
    attempts = (event.attempts or 0) + 1
    event.attempts = attempts
    try:
        delivered, error = await notifier.deliver(event.kind, event.payload_json)
    except Exception as exc:  # noqa: BLE001
        delivered, error = False, type(exc).__name__
    if delivered:
        event.status = "sent"
        event.next_attempt_at = None
        event.last_error = None
    else:
        event.last_error = (error or "failed")[:255]
        if attempts >= settings.outbox_max_attempts:
            event.status = "dead"
            event.next_attempt_at = None
        else:
            event.status = "retry"
            event.next_attempt_at = _next_attempt(attempts)
        logger.warning(
            "notification_delivery_failed",
            extra={
                "extra": {
                    "event_id": event.event_id,
                    "kind": event.kind,
                    "attempts": attempts,
                    "status": event.status,
                    "error": event.last_error,
                }
            },
        )
    metrics.record_outbox_event(event.status)
    await session.flush()
    return delivered, event.last_error


async def process_outbox(
    session: AsyncSession, notifier: Notifier, *, limit: int = 50, now: datetime | None = None
) -> dict[str, int]:
    now = now or _now()
    result = await session.execute(
        select(OutboxEvent)
        .where(OutboxEvent.status.in_(PENDING_STATUSES), OutboxEvent.next_attempt_at <= now)
        .order_by(OutboxEvent.created_at)
        .limit(limit)
    )
    events = result.scalars().all()
    sent = 0
    dead = 0
    for event in events:
        try:
            delivered, _ = await deliver_outbox_event(session, event, notifier)
            if delivered:
                sent += 1
            elif event.status == "dead":
                dead += 1
        finally:
            clear_log_context()
    if events:
        await session.commit()
    await _record_outbox_depth(session)
    return {"sent": sent, "dead": dead, "pending": len(events)}


async def outbox_counts_by_status(session: AsyncSession, statuses: Iterable[str]) -> dict[str, int]:
    counts: dict[str, int] = {status: 0 for status in statuses}
    result = await session.execute(
        select(OutboxEvent.status, func.count()).where(OutboxEvent.status.in_(list(counts))).group_by(OutboxEvent.status)
    )
    for status, count in result.all():
        counts[status] = int(count)
    return counts


async def _record_outbox_depth(session: AsyncSession) -> None:
    counts = await outbox_counts_by_status(session, ("pending", "retry", "dead"))
    for status, count in counts.items():
        metrics.set_outbox_depth(status, count)

