from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import CheckConstraint, Date, DateTime, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from booking_engine.domain.dates import StayRange
from booking_engine.infra.db import Base

BLOCK_REASONS = ("booking", "manual")


class AvailabilityBlock(Base):
    __tablename__ = "availability_blocks"

    block_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    unit_id: Mapped[str] = mapped_column(
        ForeignKey("rentable_units.unit_id", ondelete="CASCADE"), nullable=False
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    reason: Mapped[str] = mapped_column(String(16), nullable=False)
    booking_id: Mapped[str | None] = mapped_column(String(36), unique=True)
    note: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        CheckConstraint("end_date > start_date", name="ck_availability_blocks_window"),
        CheckConstraint("reason IN ('booking', 'manual')", name="ck_availability_blocks_reason"),
        CheckConstraint(
            "(reason = 'booking') = (booking_id IS NOT NULL)", name="ck_availability_blocks_booking_ref"
        ),
        Index("ix_availability_blocks_unit_window", "unit_id", "start_date", "end_date"),
    )

    @property
    def stay_range(self) -> StayRange:
        return StayRange(self.start_date, self.end_date)
