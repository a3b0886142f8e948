from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from booking_engine.domain.dates import StayRange

PricingMode = Literal["per_unit", "per_person", "per_person_sharing"]


class AddonSelection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    addon_id: str
    quantity: int = Field(default=1, ge=1)


class QuoteRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    unit_id: str
    check_in: date
    check_out: date
    adults: int = Field(default=1, ge=1)
    children: int = Field(default=0, ge=0)
    rooms: int = Field(default=1, ge=1)
    addons: List[AddonSelection] = Field(default_factory=list)
    promotion_id: Optional[str] = None
    promotion_code: Optional[str] = None

    @field_validator("promotion_code")
    @classmethod
    def _normalize_code(cls, value: str | None) -> str | None:
        return value.strip().upper() if value else None

    @model_validator(mode="after")
    def _window(self) -> "QuoteRequest":
        if self.check_out <= self.check_in:
            raise ValueError("check_out must be after check_in")
        if len({selection.addon_id for selection in self.addons}) != len(self.addons):
            raise ValueError("each add-on may only be selected once")
        return self

    @property
    def stay(self) -> StayRange:
        return StayRange(self.check_in, self.check_out)

    @property
    def guests(self) -> int:
        return self.adults + self.children


class NightLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    night: date
    rate_cents: int
    seasonal_rate_id: Optional[int] = None
    line_total_cents: int


class AddonLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    addon_id: str
    name: str
    pricing_type: str
    unit_price_cents: int
    quantity: int
    total_cents: int


class PromotionLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    promotion_id: str
    code: Optional[str] = None
    name: str
    discount_type: str
    discount_value: int
    amount_cents: int  # signed, never positive


class PricingQuote(BaseModel):
    """Itemized price for a prospective stay. Ephemeral: recomputed on every call."""

    model_config = ConfigDict(frozen=True)

    unit_id: str
    currency: str
    check_in: date
    check_out: date
    nights: int
    adults: int
    children: int
    rooms: int
    pricing_mode: PricingMode
    night_lines: List[NightLine]
    room_total_cents: int
    addon_lines: List[AddonLine] = Field(default_factory=list)
    addons_total_cents: int = 0
    promotion: Optional[PromotionLine] = None
    subtotal_cents: int
    discount_cents: int = 0
    taxable_cents: int
    tax_percent: Decimal
    tax_cents: int
    total_cents: int
    quote_hash: str = ""

    def canonical_body(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"quote_hash"})


class FrozenQuote(BaseModel):
    """The settlement price stored on a booking. Never re-derived from current rates."""

    model_config = ConfigDict(frozen=True)

    total_cents: int
    deposit_cents: Optional[int] = None
    currency: str
    quote_hash: str
    frozen_at: datetime
    snapshot: dict[str, Any]

    @classmethod
    def freeze(cls, quote: PricingQuote, *, deposit_cents: int | None, frozen_at: datetime) -> "FrozenQuote":
        return cls(
            total_cents=quote.total_cents,
            deposit_cents=deposit_cents,
            currency=quote.currency,
            quote_hash=quote.quote_hash,
            frozen_at=frozen_at,
            snapshot=quote.model_dump(mode="json"),
        )

    @classmethod
    def from_booking(cls, booking: Any) -> "FrozenQuote":
        return cls(
            total_cents=booking.total_cents,
            deposit_cents=booking.deposit_cents,
            currency=booking.currency,
            quote_hash=booking.quote_hash,
            frozen_at=booking.created_at,
            snapshot=booking.quote_snapshot,
        )
