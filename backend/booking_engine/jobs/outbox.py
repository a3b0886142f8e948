from booking_engine.domain.outbox.notifier import Notifier
from booking_engine.domain.outbox.service import process_outbox
from booking_engine.settings import settings


async def run_outbox_delivery(session, notifier: Notifier) -> dict[str, int]:
    return await process_outbox(session, notifier, limit=settings.job_outbox_batch_size)
