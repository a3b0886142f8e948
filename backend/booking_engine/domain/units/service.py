from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.domain.availability.locks import unit_guard
from booking_engine.domain.errors import InvariantViolation, NotFoundError, ValidationError
from booking_engine.domain.units import schemas
from booking_engine.domain.units.db_models import (
    AddOn,
    CancellationPolicy,
    CancellationTier,
    Promotion,
    RentableUnit,
    SeasonalRate,
)

logger = logging.getLogger(__name__)


async def get_unit(session: AsyncSession, unit_id: str) -> RentableUnit:
    unit = await session.get(RentableUnit, unit_id)
    if unit is None:
        raise NotFoundError(detail="Unit not found")
    return unit


async def create_unit(session: AsyncSession, payload: schemas.UnitCreate) -> RentableUnit:
    unit = RentableUnit(**payload.model_dump())
    session.add(unit)
    await session.commit()
    await session.refresh(unit)
    logger.info("unit_created", extra={"extra": {"unit_id": unit.unit_id, "property_id": unit.property_id}})
    return unit


async def update_unit(session: AsyncSession, unit_id: str, payload: schemas.UnitUpdate) -> RentableUnit:
    unit = await get_unit(session, unit_id)
    changes = payload.model_dump(exclude_unset=True)
    bounds = ("min_guests", "max_guests", "min_nights", "max_nights")
    merged = {field: changes.get(field, getattr(unit, field)) for field in bounds}
    if merged["max_guests"] < merged["min_guests"]:
        raise ValidationError(detail="max_guests must be >= min_guests")
    if merged["max_nights"] is not None and merged["max_nights"] < merged["min_nights"]:
        raise ValidationError(detail="max_nights must be >= min_nights")
    for field, value in changes.items():
        setattr(unit, field, value)

    await session.commit()
    await session.refresh(unit)
    logger.info("unit_updated", extra={"extra": {"unit_id": unit.unit_id, "fields": sorted(changes)}})
    return unit


async def list_seasonal_rates(session: AsyncSession, unit_id: str) -> list[SeasonalRate]:
    stmt = select(SeasonalRate).where(SeasonalRate.unit_id == unit_id).order_by(SeasonalRate.start_date)
    return list((await session.execute(stmt)).scalars().all())


async def _ensure_no_seasonal_overlap(
    session: AsyncSession,
    unit_id: str,
    start_date: date,
    end_date: date,
    *,
    exclude_rate_id: int | None = None,
) -> None:
    stmt = select(SeasonalRate).where(
        SeasonalRate.unit_id == unit_id,
        SeasonalRate.start_date < end_date,
        SeasonalRate.end_date > start_date,
    )
    if exclude_rate_id is not None:
        stmt = stmt.where(SeasonalRate.rate_id != exclude_rate_id)
    existing = (await session.execute(stmt.limit(1))).scalar_one_or_none()
    if existing is not None:
        logger.error(
            "seasonal_rate_overlap_rejected",
            extra={
                "extra": {
                    "unit_id": unit_id,
                    "start_date": start_date.isoformat(),
                    "end_date": end_date.isoformat(),
                    "existing_rate_id": existing.rate_id,
                }
            },
        )
        raise InvariantViolation(
            detail="Seasonal rate overlaps an existing seasonal rate for this unit",
            errors=[{"field": "start_date", "message": f"overlaps rate {existing.rate_id}"}],
        )


async def add_seasonal_rate(
    session: AsyncSession, unit_id: str, payload: schemas.SeasonalRateCreate
) -> SeasonalRate:
    async with unit_guard(session, unit_id):
        await _ensure_no_seasonal_overlap(session, unit_id, payload.start_date, payload.end_date)
        rate = SeasonalRate(unit_id=unit_id, **payload.model_dump())
        session.add(rate)
        await session.flush()
    await session.refresh(rate)
    logger.info("seasonal_rate_added", extra={"extra": {"unit_id": unit_id, "rate_id": rate.rate_id}})
    return rate


async def update_seasonal_rate(
    session: AsyncSession, rate_id: int, payload: schemas.SeasonalRateUpdate
) -> SeasonalRate:
    rate = await session.get(SeasonalRate, rate_id)
    if rate is None:
        raise NotFoundError(detail="Seasonal rate not found")
    unit_id = rate.unit_id
    async with unit_guard(session, unit_id):
        start_date = payload.start_date or rate.start_date
        end_date = payload.end_date or rate.end_date
        if end_date <= start_date:
            raise ValidationError(detail="end_date must be after start_date")
        await _ensure_no_seasonal_overlap(session, unit_id, start_date, end_date, exclude_rate_id=rate_id)
        rate.start_date = start_date
        rate.end_date = end_date
        if payload.rate_cents is not None:
            rate.rate_cents = payload.rate_cents
        if payload.name is not None:
            rate.name = payload.name
    await session.refresh(rate)
    return rate


async def delete_seasonal_rate(session: AsyncSession, rate_id: int) -> None:
    rate = await session.get(SeasonalRate, rate_id)
    if rate is None:
        raise NotFoundError(detail="Seasonal rate not found")
    async with unit_guard(session, rate.unit_id):
        await session.delete(rate)


async def _load_units(session: AsyncSession, property_id: str, unit_ids: list[str]) -> list[RentableUnit]:
    unique_ids = sorted(set(unit_ids))
    stmt = select(RentableUnit).where(RentableUnit.unit_id.in_(unique_ids))
    units = list((await session.execute(stmt)).scalars().all())
    if len(units) != len(unique_ids):
        raise ValidationError(detail="Unknown unit in promotion assignment")
    if any(unit.property_id != property_id for unit in units):
        raise ValidationError(detail="Promotion units must belong to the promotion's property")
    return units


async def create_promotion(session: AsyncSession, payload: schemas.PromotionCreate) -> Promotion:
    units = await _load_units(session, payload.property_id, payload.unit_ids)
    promotion = Promotion(**payload.model_dump(exclude={"unit_ids"}))
    promotion.units = units
    session.add(promotion)
    await session.commit()
    await session.refresh(promotion)
    logger.info(
        "promotion_created",
        extra={"extra": {"promotion_id": promotion.promotion_id, "units": promotion.unit_ids}},
    )
    return promotion


async def get_promotion(session: AsyncSession, promotion_id: str) -> Promotion:
    promotion = await session.get(Promotion, promotion_id)
    if promotion is None:
        raise NotFoundError(detail="Promotion not found")
    return promotion


async def update_promotion(
    session: AsyncSession, promotion_id: str, payload: schemas.PromotionUpdate
) -> Promotion:
    promotion = await get_promotion(session, promotion_id)
    changes = payload.model_dump(exclude_unset=True, exclude={"unit_ids"})
    discount_type = changes.get("discount_type", promotion.discount_type)
    discount_value = changes.get("discount_value", promotion.discount_value)
    valid_from = changes.get("valid_from", promotion.valid_from)
    valid_until = changes.get("valid_until", promotion.valid_until)
    if discount_type == "percentage" and discount_value > 100:
        raise ValidationError(detail="percentage discount cannot exceed 100")
    if valid_until is not None and valid_until < valid_from:
        raise ValidationError(detail="valid_until must not be before valid_from")

    units = None
    if payload.unit_ids is not None:
        units = await _load_units(session, promotion.property_id, payload.unit_ids)
    for field, value in changes.items():
        setattr(promotion, field, value)
    if units is not None:
        promotion.units = units

    await session.commit()
    await session.refresh(promotion)
    return promotion


async def create_addon(session: AsyncSession, payload: schemas.AddOnCreate) -> AddOn:
    if payload.unit_id is not None:
        unit = await get_unit(session, payload.unit_id)
        if unit.property_id != payload.property_id:
            raise ValidationError(detail="Add-on unit must belong to the add-on's property")
    addon = AddOn(**payload.model_dump())
    session.add(addon)
    await session.commit()
    await session.refresh(addon)
    logger.info("addon_created", extra={"extra": {"addon_id": addon.addon_id, "pricing_type": addon.pricing_type}})
    return addon


async def list_addons_for_unit(
    session: AsyncSession, unit: RentableUnit, *, include_inactive: bool = False
) -> list[AddOn]:
    stmt = select(AddOn).where(
        AddOn.property_id == unit.property_id,
        (AddOn.unit_id.is_(None)) | (AddOn.unit_id == unit.unit_id),
    )
    if not include_inactive:
        stmt = stmt.where(AddOn.is_active.is_(True))
    return list((await session.execute(stmt.order_by(AddOn.name))).scalars().all())


def validate_policy_tiers(tiers: list[schemas.CancellationTierIn]) -> list[schemas.CancellationTierIn]:
    """Reject duplicate thresholds and tiers that refund more closer to check-in."""
    ordered = sorted(tiers, key=lambda tier: tier.min_hours_before_checkin, reverse=True)
    thresholds = [tier.min_hours_before_checkin for tier in ordered]
    if len(thresholds) != len(set(thresholds)):
        raise ValidationError(detail="Cancellation tiers must have distinct min_hours_before_checkin")
    for earlier, later in zip(ordered, ordered[1:]):
        if later.refund_percent > earlier.refund_percent:
            raise ValidationError(
                detail="Refund percentage cannot increase closer to check-in",
                errors=[
                    {
                        "field": "tiers",
                        "message": (
                            f"{later.min_hours_before_checkin}h tier refunds more than "
                            f"{earlier.min_hours_before_checkin}h tier"
                        ),
                    }
                ],
            )
    return ordered


async def set_cancellation_policy(
    session: AsyncSession,
    payload: schemas.CancellationPolicyUpdate,
    *,
    unit_id: str | None = None,
    property_id: str | None = None,
) -> CancellationPolicy:
    if (unit_id is None) == (property_id is None):
        raise ValidationError(detail="Exactly one of unit_id or property_id is required")
    if unit_id is not None:
        await get_unit(session, unit_id)
    ordered = validate_policy_tiers(payload.tiers)

    scope = CancellationPolicy.unit_id == unit_id if unit_id else CancellationPolicy.property_id == property_id
    policy = (await session.execute(select(CancellationPolicy).where(scope))).scalar_one_or_none()
    if policy is None:
        policy = CancellationPolicy(unit_id=unit_id, property_id=property_id, name=payload.name)
        session.add(policy)
    else:
        policy.name = payload.name
        policy.tiers.clear()
        await session.flush()
    policy.tiers.extend(
        CancellationTier(
            min_hours_before_checkin=tier.min_hours_before_checkin,
            refund_percent=tier.refund_percent,
        )
        for tier in ordered
    )
    await session.commit()
    await session.refresh(policy)
    logger.info(
        "cancellation_policy_set",
        extra={"extra": {"policy_id": policy.policy_id, "unit_id": unit_id, "property_id": property_id}},
    )
    return policy


async def resolve_cancellation_policy(session: AsyncSession, unit: RentableUnit) -> CancellationPolicy | None:
    stmt = select(CancellationPolicy).where(CancellationPolicy.unit_id == unit.unit_id)
    policy = (await session.execute(stmt)).scalar_one_or_none()
    if policy is not None:
        return policy
    stmt = select(CancellationPolicy).where(CancellationPolicy.property_id == unit.property_id)
    return (await session.execute(stmt)).scalar_one_or_none()
