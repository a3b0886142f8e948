from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

BlockReason = Literal["booking", "manual"]


class ManualBlockCreate(BaseModel):
    start_date: date
    end_date: date
    note: str | None = Field(default=None, max_length=255)

    @model_validator(mode="after")
    def _window(self) -> "ManualBlockCreate":
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class AvailabilityBlockResponse(BaseModel):
    block_id: int
    unit_id: str
    start_date: date
    end_date: date
    reason: BlockReason
    booking_id: str | None = None
    note: str | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AvailabilityResponse(BaseModel):
    unit_id: str
    check_in: date
    check_out: date
    available: bool
    conflicts: list[AvailabilityBlockResponse] = Field(default_factory=list)


class AvailabilityAnomaly(BaseModel):
    unit_id: str
    kind: Literal["orphan_block", "stale_block", "range_mismatch", "missing_block"]
    block_id: int | None = None
    booking_id: str | None = None
