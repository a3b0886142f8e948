from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PricingMode = Literal["per_unit", "per_person", "per_person_sharing"]
DiscountType = Literal["percentage", "fixed_amount"]
AddonPricingType = Literal["per_booking", "per_night", "per_guest", "per_room", "per_guest_per_night"]


class UnitBase(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    base_rate_cents: int = Field(ge=0)
    pricing_mode: PricingMode = "per_unit"
    additional_person_rate_cents: int | None = Field(default=None, ge=0)
    included_guests: int = Field(default=1, ge=1)
    child_price_cents: int | None = Field(default=None, ge=0)
    min_guests: int = Field(default=1, ge=1)
    max_guests: int = Field(default=2, ge=1)
    min_nights: int = Field(default=1, ge=1)
    max_nights: int | None = Field(default=None, ge=1)
    tax_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100, decimal_places=2)
    deposit_percent: Decimal | None = Field(default=None, gt=0, le=100, decimal_places=2)
    check_in_time: time = time(hour=15)
    timezone: str = "UTC"


class UnitCreate(UnitBase):
    property_id: str = Field(min_length=1, max_length=36)
    currency: str = Field(min_length=3, max_length=3)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def _bounds(self) -> "UnitCreate":
        if self.max_guests < self.min_guests:
            raise ValueError("max_guests must be >= min_guests")
        if self.max_nights is not None and self.max_nights < self.min_nights:
            raise ValueError("max_nights must be >= min_nights")
        return self


class UnitUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    base_rate_cents: int | None = Field(default=None, ge=0)
    pricing_mode: PricingMode | None = None
    additional_person_rate_cents: int | None = Field(default=None, ge=0)
    included_guests: int | None = Field(default=None, ge=1)
    child_price_cents: int | None = Field(default=None, ge=0)
    min_guests: int | None = Field(default=None, ge=1)
    max_guests: int | None = Field(default=None, ge=1)
    min_nights: int | None = Field(default=None, ge=1)
    max_nights: int | None = Field(default=None, ge=1)
    tax_percent: Decimal | None = Field(default=None, ge=0, le=100, decimal_places=2)
    deposit_percent: Decimal | None = Field(default=None, gt=0, le=100, decimal_places=2)
    check_in_time: time | None = None
    timezone: str | None = None
    is_active: bool | None = None


class UnitResponse(UnitBase):
    unit_id: str
    property_id: str
    currency: str
    is_active: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SeasonalRateCreate(BaseModel):
    name: str | None = Field(default=None, max_length=120)
    start_date: date
    end_date: date
    rate_cents: int = Field(ge=0)

    @model_validator(mode="after")
    def _window(self) -> "SeasonalRateCreate":
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class SeasonalRateUpdate(BaseModel):
    name: str | None = Field(default=None, max_length=120)
    start_date: date | None = None
    end_date: date | None = None
    rate_cents: int | None = Field(default=None, ge=0)


class SeasonalRateResponse(BaseModel):
    rate_id: int
    unit_id: str
    name: str | None = None
    start_date: date
    end_date: date
    rate_cents: int

    model_config = ConfigDict(from_attributes=True)


class PromotionCreate(BaseModel):
    property_id: str = Field(min_length=1, max_length=36)
    unit_ids: list[str] = Field(min_length=1)
    code: str | None = Field(default=None, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    discount_type: DiscountType
    discount_value: int = Field(gt=0)
    valid_from: date
    valid_until: date | None = None
    min_nights: int | None = Field(default=None, ge=1)
    min_booking_cents: int | None = Field(default=None, ge=0)
    max_uses: int | None = Field(default=None, ge=1)
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def _normalize_code(cls, value: str | None) -> str | None:
        return value.strip().upper() if value else None

    @model_validator(mode="after")
    def _discount(self) -> "PromotionCreate":
        if self.discount_type == "percentage" and self.discount_value > 100:
            raise ValueError("percentage discount cannot exceed 100")
        if self.valid_until is not None and self.valid_until < self.valid_from:
            raise ValueError("valid_until must not be before valid_from")
        return self


class PromotionUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    unit_ids: list[str] | None = None
    discount_type: DiscountType | None = None
    discount_value: int | None = Field(default=None, gt=0)
    valid_from: date | None = None
    valid_until: date | None = None
    min_nights: int | None = Field(default=None, ge=1)
    min_booking_cents: int | None = Field(default=None, ge=0)
    max_uses: int | None = Field(default=None, ge=1)
    is_active: bool | None = None


class PromotionResponse(BaseModel):
    promotion_id: str
    property_id: str
    unit_ids: list[str]
    code: str | None = None
    name: str
    discount_type: DiscountType
    discount_value: int
    valid_from: date
    valid_until: date | None = None
    min_nights: int | None = None
    min_booking_cents: int | None = None
    max_uses: int | None = None
    current_uses: int
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class AddOnCreate(BaseModel):
    property_id: str = Field(min_length=1, max_length=36)
    unit_id: str | None = None
    name: str = Field(min_length=1, max_length=255)
    pricing_type: AddonPricingType
    price_cents: int = Field(ge=0)
    max_quantity: int = Field(default=10, ge=1)
    is_active: bool = True


class AddOnResponse(AddOnCreate):
    addon_id: str

    model_config = ConfigDict(from_attributes=True)


class CancellationTierIn(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    min_hours_before_checkin: int = Field(ge=0)
    refund_percent: int = Field(ge=0, le=100)


class CancellationPolicyUpdate(BaseModel):
    name: str = Field(default="custom", max_length=120)
    tiers: list[CancellationTierIn] = Field(min_length=1)


class CancellationPolicyResponse(BaseModel):
    policy_id: int
    property_id: str | None = None
    unit_id: str | None = None
    name: str
    tiers: list[CancellationTierIn]

    model_config = ConfigDict(from_attributes=True)
