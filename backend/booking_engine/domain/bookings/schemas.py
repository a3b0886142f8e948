from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from booking_engine.domain.pricing.models import QuoteRequest

BookingStatus = Literal["pending", "confirmed", "checked_in", "checked_out", "cancelled", "no_show"]
PaymentStatus = Literal["unpaid", "partial", "paid", "partially_refunded", "refunded"]


class HoldRequest(QuoteRequest):
    guest_id: str = Field(min_length=1, max_length=64)
    idempotency_key: str | None = Field(default=None, max_length=255)


class BookingAddonResponse(BaseModel):
    addon_id: str
    name: str
    pricing_type: str
    quantity: int
    unit_price_cents: int
    total_cents: int

    model_config = ConfigDict(from_attributes=True)


class BookingResponse(BaseModel):
    booking_id: str
    unit_id: str
    guest_id: str
    check_in: date
    check_out: date
    adults: int
    children: int
    rooms: int
    status: BookingStatus
    payment_status: PaymentStatus
    total_cents: int
    deposit_cents: int | None = None
    amount_paid_cents: int
    refunded_total_cents: int
    currency: str
    quote_hash: str
    promotion_id: str | None = None
    hold_expires_at: datetime | None = None
    cancellation_reason: str | None = None
    created_at: datetime
    addons: list[BookingAddonResponse] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class BookingDetailResponse(BookingResponse):
    quote_snapshot: dict[str, Any]


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=255)


class PaymentRecordRequest(BaseModel):
    amount_cents: int = Field(gt=0)
