import logging

from sqlalchemy import select

from booking_engine.domain.availability.service import audit_availability
from booking_engine.domain.errors import InvariantViolation
from booking_engine.domain.units.db_models import RentableUnit

logger = logging.getLogger(__name__)


async def run_availability_audit(session) -> dict[str, int]:
    """Scan every unit for blocks that disagree with their bookings.

    ``audit_availability`` already logs each violation; the job keeps going so a
    single broken unit does not hide the others.
    """
    unit_ids = list((await session.execute(select(RentableUnit.unit_id).order_by(RentableUnit.unit_id))).scalars())
    violations = 0
    for unit_id in unit_ids:
        try:
            await audit_availability(session, unit_id)
        except InvariantViolation as exc:
            violations += 1
            logger.error(
                "availability_audit_alert",
                extra={"extra": {"unit_id": unit_id, "anomalies": len(exc.errors or [])}},
            )
    return {"units": len(unit_ids), "violations": violations}
