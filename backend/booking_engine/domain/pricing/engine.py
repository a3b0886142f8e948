"""Stay pricing.

``build_quote`` is a pure function over plain terms; ``quote`` loads those terms
from the catalog and re-validates every client-supplied selection first.
Cents are integers throughout; each percentage line is rounded half-up once.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.domain import money
from booking_engine.domain.dates import StayRange
from booking_engine.domain.errors import NotFoundError, ValidationError
from booking_engine.domain.pricing.models import AddonLine, NightLine, PricingQuote, PromotionLine, QuoteRequest
from booking_engine.domain.pricing.rates import RateResolver, ResolvedRate, SeasonalWindow
from booking_engine.domain.units.db_models import AddOn, Promotion, RentableUnit, SeasonalRate

logger = logging.getLogger(__name__)

TAX_PERCENT_STEP = Decimal("0.01")


@dataclass(frozen=True)
class UnitTerms:
    unit_id: str
    property_id: str
    currency: str
    base_rate_cents: int
    pricing_mode: str
    tax_percent: Decimal
    additional_person_rate_cents: int | None = None
    included_guests: int = 1
    child_price_cents: int | None = None
    min_guests: int = 1
    max_guests: int = 2
    min_nights: int = 1
    max_nights: int | None = None
    is_active: bool = True

    @classmethod
    def from_unit(cls, unit: RentableUnit) -> "UnitTerms":
        return cls(
            unit_id=unit.unit_id,
            property_id=unit.property_id,
            currency=unit.currency,
            base_rate_cents=unit.base_rate_cents,
            pricing_mode=unit.pricing_mode,
            tax_percent=money.to_decimal(unit.tax_percent or 0),
            additional_person_rate_cents=unit.additional_person_rate_cents,
            included_guests=unit.included_guests,
            child_price_cents=unit.child_price_cents,
            min_guests=unit.min_guests,
            max_guests=unit.max_guests,
            min_nights=unit.min_nights,
            max_nights=unit.max_nights,
            is_active=unit.is_active,
        )


@dataclass(frozen=True)
class AddonTerms:
    addon_id: str
    name: str
    pricing_type: str
    price_cents: int
    max_quantity: int = 10


@dataclass(frozen=True)
class PromotionTerms:
    promotion_id: str
    name: str
    discount_type: str
    discount_value: int
    valid_from: date
    code: str | None = None
    valid_until: date | None = None
    min_nights: int | None = None
    min_booking_cents: int | None = None
    max_uses: int | None = None
    current_uses: int = 0
    is_active: bool = True
    unit_ids: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_promotion(cls, promotion: Promotion) -> "PromotionTerms":
        return cls(
            promotion_id=promotion.promotion_id,
            name=promotion.name,
            code=promotion.code,
            discount_type=promotion.discount_type,
            discount_value=promotion.discount_value,
            valid_from=promotion.valid_from,
            valid_until=promotion.valid_until,
            min_nights=promotion.min_nights,
            min_booking_cents=promotion.min_booking_cents,
            max_uses=promotion.max_uses,
            current_uses=promotion.current_uses,
            is_active=promotion.is_active,
            unit_ids=frozenset(promotion.unit_ids),
        )


@dataclass(frozen=True)
class StayRequest:
    stay: StayRange
    adults: int = 1
    children: int = 0
    rooms: int = 1

    @property
    def guests(self) -> int:
        return self.adults + self.children


def _canonical_json(data: Dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def quote_hash(quote: PricingQuote) -> str:
    digest = hashlib.sha256(_canonical_json(quote.canonical_body()).encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


def validate_stay(terms: UnitTerms, request: StayRequest) -> None:
    errors: list[dict[str, str]] = []
    if not terms.is_active:
        errors.append({"field": "unit_id", "message": "unit is not bookable"})
    if request.guests < terms.min_guests or request.guests > terms.max_guests:
        errors.append(
            {"field": "guests", "message": f"must be between {terms.min_guests} and {terms.max_guests}"}
        )
    nights = request.stay.nights
    if nights < terms.min_nights:
        errors.append({"field": "check_out", "message": f"minimum stay is {terms.min_nights} nights"})
    if terms.max_nights is not None and nights > terms.max_nights:
        errors.append({"field": "check_out", "message": f"maximum stay is {terms.max_nights} nights"})
    if errors:
        raise ValidationError(detail="Stay does not satisfy the unit's booking rules", errors=errors)


def nightly_charge(terms: UnitTerms, rate: ResolvedRate, request: StayRequest) -> int:
    if rate.mode == "per_unit":
        return rate.cents
    if rate.mode == "per_person":
        child_rate = terms.child_price_cents if terms.child_price_cents is not None else rate.cents
        return rate.cents * request.adults + child_rate * request.children
    if rate.mode == "per_person_sharing":
        # Adults fill the included seats first.
        extra_rate = (
            terms.additional_person_rate_cents
            if terms.additional_person_rate_cents is not None
            else rate.cents
        )
        open_seats = max(0, terms.included_guests - request.adults)
        extra_adults = max(0, request.adults - terms.included_guests)
        extra_children = max(0, request.children - open_seats)
        child_rate = terms.child_price_cents if terms.child_price_cents is not None else extra_rate
        return rate.cents + extra_rate * extra_adults + child_rate * extra_children
    raise ValidationError(detail=f"Unsupported pricing mode: {rate.mode}")


def addon_line(addon: AddonTerms, quantity: int, request: StayRequest) -> AddonLine:
    if quantity > addon.max_quantity:
        raise ValidationError(
            detail="Add-on quantity exceeds the allowed maximum",
            errors=[{"field": "addons", "message": f"{addon.name}: at most {addon.max_quantity}"}],
        )
    nights = request.stay.nights
    multipliers = {
        "per_booking": 1,
        "per_night": nights,
        "per_guest": request.guests,
        "per_room": request.rooms,
        "per_guest_per_night": request.guests * nights,
    }
    if addon.pricing_type not in multipliers:
        raise ValidationError(detail=f"Unsupported add-on pricing type: {addon.pricing_type}")
    total = money.multiply(addon.price_cents, multipliers[addon.pricing_type], quantity)
    return AddonLine(
        addon_id=addon.addon_id,
        name=addon.name,
        pricing_type=addon.pricing_type,
        unit_price_cents=addon.price_cents,
        quantity=quantity,
        total_cents=total,
    )


def check_promotion(promotion: PromotionTerms, unit_id: str, request: StayRequest, subtotal_cents: int) -> None:
    """Raise ``ValidationError`` unless the promotion applies to this stay."""
    reasons: list[str] = []
    check_in = request.stay.start
    if not promotion.is_active:
        reasons.append("promotion is inactive")
    if promotion.unit_ids and unit_id not in promotion.unit_ids:
        reasons.append("promotion is not offered for this unit")
    if check_in < promotion.valid_from or (promotion.valid_until is not None and check_in > promotion.valid_until):
        reasons.append("check-in is outside the promotion window")
    if promotion.min_nights is not None and request.stay.nights < promotion.min_nights:
        reasons.append(f"requires at least {promotion.min_nights} nights")
    if promotion.min_booking_cents is not None and subtotal_cents < promotion.min_booking_cents:
        reasons.append(f"requires a subtotal of at least {promotion.min_booking_cents} cents")
    if promotion.max_uses is not None and promotion.current_uses >= promotion.max_uses:
        reasons.append("promotion has been fully redeemed")
    if reasons:
        raise ValidationError(
            detail="Promotion is not applicable to this stay",
            errors=[{"field": "promotion", "message": reason} for reason in reasons],
        )


def discount_for(promotion: PromotionTerms, subtotal_cents: int) -> int:
    if promotion.discount_type == "percentage":
        amount = money.percent_of(subtotal_cents, promotion.discount_value)
    elif promotion.discount_type == "fixed_amount":
        amount = promotion.discount_value
    else:
        raise ValidationError(detail=f"Unsupported discount type: {promotion.discount_type}")
    return money.clamp(amount, ceiling=subtotal_cents)


def build_quote(
    terms: UnitTerms,
    windows: Iterable[SeasonalWindow],
    request: StayRequest,
    addons: Sequence[tuple[AddonTerms, int]] = (),
    promotion: PromotionTerms | None = None,
) -> PricingQuote:
    validate_stay(terms, request)
    resolver = RateResolver(terms.base_rate_cents, terms.pricing_mode, windows)

    night_lines = []
    for night in request.stay.iter_nights():
        rate = resolver.rate_for(night)
        night_lines.append(
            NightLine(
                night=night,
                rate_cents=rate.cents,
                seasonal_rate_id=rate.seasonal_rate_id,
                line_total_cents=nightly_charge(terms, rate, request),
            )
        )
    room_total = money.sum_cents(line.line_total_cents for line in night_lines)

    addon_lines = [addon_line(addon, quantity, request) for addon, quantity in addons]
    addons_total = money.sum_cents(line.total_cents for line in addon_lines)
    subtotal = room_total + addons_total

    promotion_line = None
    discount = 0
    if promotion is not None:
        check_promotion(promotion, terms.unit_id, request, subtotal)
        discount = discount_for(promotion, subtotal)
        promotion_line = PromotionLine(
            promotion_id=promotion.promotion_id,
            code=promotion.code,
            name=promotion.name,
            discount_type=promotion.discount_type,
            discount_value=promotion.discount_value,
            amount_cents=-discount,
        )

    taxable = money.clamp(subtotal - discount)
    tax_percent = money.to_decimal(terms.tax_percent).quantize(TAX_PERCENT_STEP)
    tax = money.percent_of(taxable, tax_percent)

    quote = PricingQuote(
        unit_id=terms.unit_id,
        currency=terms.currency,
        check_in=request.stay.start,
        check_out=request.stay.end,
        nights=request.stay.nights,
        adults=request.adults,
        children=request.children,
        rooms=request.rooms,
        pricing_mode=terms.pricing_mode,
        night_lines=night_lines,
        room_total_cents=room_total,
        addon_lines=addon_lines,
        addons_total_cents=addons_total,
        promotion=promotion_line,
        subtotal_cents=subtotal,
        discount_cents=discount,
        taxable_cents=taxable,
        tax_percent=tax_percent,
        tax_cents=tax,
        total_cents=taxable + tax,
    )
    return quote.model_copy(update={"quote_hash": quote_hash(quote)})


async def _load_windows(session: AsyncSession, unit_id: str, stay: StayRange) -> list[SeasonalWindow]:
    stmt = select(SeasonalRate).where(
        SeasonalRate.unit_id == unit_id,
        SeasonalRate.start_date < stay.end,
        SeasonalRate.end_date > stay.start,
    )
    rates = (await session.execute(stmt)).scalars().all()
    return [SeasonalWindow(rate.rate_id, rate.start_date, rate.end_date, rate.rate_cents) for rate in rates]


async def _load_addons(
    session: AsyncSession, unit: RentableUnit, request: QuoteRequest
) -> list[tuple[AddonTerms, int]]:
    if not request.addons:
        return []
    ids = [selection.addon_id for selection in request.addons]
    stmt = select(AddOn).where(AddOn.addon_id.in_(ids))
    found = {addon.addon_id: addon for addon in (await session.execute(stmt)).scalars()}
    selected: list[tuple[AddonTerms, int]] = []
    for selection in request.addons:
        addon = found.get(selection.addon_id)
        in_scope = (
            addon is not None
            and addon.is_active
            and addon.property_id == unit.property_id
            and addon.unit_id in (None, unit.unit_id)
        )
        if not in_scope:
            raise ValidationError(
                detail="Add-on is not available for this unit",
                errors=[{"field": "addons", "message": selection.addon_id}],
            )
        terms = AddonTerms(addon.addon_id, addon.name, addon.pricing_type, addon.price_cents, addon.max_quantity)
        selected.append((terms, selection.quantity))
    return sorted(selected, key=lambda item: item[0].addon_id)


async def _load_promotion(
    session: AsyncSession, unit: RentableUnit, request: QuoteRequest
) -> PromotionTerms | None:
    if request.promotion_id is None and request.promotion_code is None:
        return None
    if request.promotion_id is not None:
        promotion = await session.get(Promotion, request.promotion_id)
    else:
        stmt = select(Promotion).where(
            Promotion.property_id == unit.property_id, Promotion.code == request.promotion_code
        )
        promotion = (await session.execute(stmt)).scalar_one_or_none()
    if promotion is None:
        raise ValidationError(
            detail="Promotion is not applicable to this stay",
            errors=[{"field": "promotion", "message": "unknown promotion"}],
        )
    return PromotionTerms.from_promotion(promotion)


async def quote(
    session: AsyncSession, request: QuoteRequest, *, unit: RentableUnit | None = None
) -> PricingQuote:
    if unit is None:
        unit = await session.get(RentableUnit, request.unit_id)
        if unit is None:
            raise NotFoundError(detail="Unit not found")
    stay = request.stay
    result = build_quote(
        UnitTerms.from_unit(unit),
        await _load_windows(session, unit.unit_id, stay),
        StayRequest(stay, adults=request.adults, children=request.children, rooms=request.rooms),
        await _load_addons(session, unit, request),
        await _load_promotion(session, unit, request),
    )
    logger.debug(
        "quote_built",
        extra={"extra": {"unit_id": unit.unit_id, "total_cents": result.total_cents, "quote_hash": result.quote_hash}},
    )
    return result
