from booking_engine.domain.bookings.service import expire_holds
from booking_engine.settings import settings


async def run_hold_expiry(session) -> dict[str, int]:
    return await expire_holds(session, limit=settings.job_hold_expiry_batch_size)
