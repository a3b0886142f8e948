import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import async_sessionmaker

from booking_engine.domain.outbox.notifier import Notifier, resolve_notifier
from booking_engine.infra.db import dispose_engine, get_session_factory
from booking_engine.infra.logging import clear_log_context, configure_logging, update_log_context
from booking_engine.infra.metrics import configure_metrics, metrics
from booking_engine.jobs import availability_audit, hold_expiry, outbox
from booking_engine.settings import settings

logger = logging.getLogger(__name__)

DEFAULT_JOBS = ("hold-expiry", "outbox-delivery", "availability-audit")

_NOTIFIER: Notifier | None = None


async def _run_job(
    name: str,
    session_factory: async_sessionmaker,
    runner: Callable[[object], Awaitable[dict[str, int]]],
) -> dict[str, int]:
    update_log_context(job=name)
    try:
        async with session_factory() as session:
            result = await runner(session)
        logger.info("job_complete", extra={"extra": {"job": name, **result}})
        return result
    finally:
        clear_log_context()


def _job_runner(name: str) -> Callable:
    if name == "hold-expiry":
        return hold_expiry.run_hold_expiry
    if name == "outbox-delivery":
        return lambda session: outbox.run_outbox_delivery(session, _NOTIFIER)
    if name == "availability-audit":
        return availability_audit.run_availability_audit
    raise ValueError(f"unknown_job:{name}")


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run booking engine background jobs")
    parser.add_argument("--job", action="append", dest="jobs", help="Job name to run")
    parser.add_argument("--interval", type=int, default=60, help="Seconds between loops when not using --once")
    parser.add_argument("--once", action="store_true", help="Run jobs once and exit")
    args = parser.parse_args(argv)

    global _NOTIFIER
    configure_logging()
    _NOTIFIER = resolve_notifier(settings)
    configure_metrics(settings.metrics_enabled)
    session_factory = get_session_factory()

    job_names = args.jobs or list(DEFAULT_JOBS)
    runners = [_job_runner(name) for name in job_names]

    try:
        while True:
            for name, runner in zip(job_names, runners):
                try:
                    await _run_job(name, session_factory, runner)
                except Exception as exc:  # noqa: BLE001
                    metrics.record_job_error(name, type(exc).__name__)
                    logger.warning("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
            if args.once:
                break
            await asyncio.sleep(max(args.interval, 1))
    finally:
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(main())
