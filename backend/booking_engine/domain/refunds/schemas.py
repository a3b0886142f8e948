from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

RefundStatus = Literal[
    "requested",
    "under_review",
    "approved",
    "processing",
    "completed",
    "failed",
    "rejected",
    "withdrawn",
]


class RefundQuoteResponse(BaseModel):
    booking_id: str
    checkin_at: datetime
    hours_until_checkin: float
    refund_percent: int
    amount_paid_cents: int
    available_cents: int
    calculated_cents: int
    outstanding_balance_cents: int


class RefundRequestCreate(BaseModel):
    requested_cents: int = Field(gt=0)
    reason: str | None = Field(default=None, max_length=500)
    requested_by: str | None = Field(default=None, max_length=64)


class RefundReview(BaseModel):
    reviewer_id: str = Field(min_length=1, max_length=64)
    note: str | None = Field(default=None, max_length=500)


class RefundApproval(RefundReview):
    approved_cents: int | None = Field(default=None, gt=0)
    override: bool = False


class RefundRequestResponse(BaseModel):
    request_id: str
    booking_id: str
    status: RefundStatus
    requested_cents: int
    calculated_cents: int
    approved_cents: int | None = None
    refund_percent: int
    override_approved: bool
    reason: str | None = None
    reviewer_id: str | None = None
    provider_ref: str | None = None
    failure_reason: str | None = None
    created_at: datetime
    completed_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)
