from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from booking_engine.domain.dates import StayRange
from booking_engine.infra.db import Base

BOOKING_STATUSES = ("pending", "confirmed", "checked_in", "checked_out", "cancelled", "no_show")
# Statuses whose dates stay occupied on the unit's calendar.
BLOCKING_STATUSES = frozenset({"pending", "confirmed", "checked_in", "checked_out"})
PAYMENT_STATUSES = ("unpaid", "partial", "paid", "partially_refunded", "refunded")


class Booking(Base):
    __tablename__ = "bookings"

    booking_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    unit_id: Mapped[str] = mapped_column(
        ForeignKey("rentable_units.unit_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    property_id: Mapped[str] = mapped_column(String(36), nullable=False)
    guest_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    check_in: Mapped[date] = mapped_column(Date, nullable=False)
    check_out: Mapped[date] = mapped_column(Date, nullable=False)
    adults: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    children: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rooms: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    payment_status: Mapped[str] = mapped_column(String(24), nullable=False, default="unpaid")
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    deposit_cents: Mapped[int | None] = mapped_column(Integer)
    amount_paid_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refunded_total_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quote_snapshot: Mapped[dict] = mapped_column(JSON, nullable=False)
    quote_hash: Mapped[str] = mapped_column(String(80), nullable=False)
    promotion_id: Mapped[str | None] = mapped_column(
        ForeignKey("promotions.promotion_id", ondelete="SET NULL")
    )
    provider_ref: Mapped[str | None] = mapped_column(String(255))
    idempotency_key: Mapped[str | None] = mapped_column(String(255), unique=True)
    hold_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status_changed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancellation_reason: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    addons: Mapped[list["BookingAddon"]] = relationship(
        "BookingAddon", back_populates="booking", cascade="all, delete-orphan", lazy="selectin"
    )

    __table_args__ = (
        CheckConstraint("check_out > check_in", name="ck_bookings_stay_window"),
        CheckConstraint("total_cents >= 0", name="ck_bookings_total_non_negative"),
        CheckConstraint("amount_paid_cents >= 0", name="ck_bookings_paid_non_negative"),
        CheckConstraint(
            "refunded_total_cents >= 0 AND refunded_total_cents <= amount_paid_cents",
            name="ck_bookings_refunded_bounds",
        ),
        Index("ix_bookings_status_hold", "status", "hold_expires_at"),
    )

    @property
    def stay_range(self) -> StayRange:
        return StayRange(self.check_in, self.check_out)

    @property
    def nights(self) -> int:
        return self.stay_range.nights


class BookingAddon(Base):
    """Add-on line frozen onto the booking at hold time."""

    __tablename__ = "booking_addons"

    booking_id: Mapped[str] = mapped_column(
        ForeignKey("bookings.booking_id", ondelete="CASCADE"), primary_key=True
    )
    addon_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    pricing_type: Mapped[str] = mapped_column(String(32), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    booking: Mapped[Booking] = relationship("Booking", back_populates="addons")
