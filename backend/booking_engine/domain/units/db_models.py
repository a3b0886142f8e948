from __future__ import annotations

import uuid
from datetime import date, datetime, time
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Table,
    Time,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from booking_engine.infra.db import Base

PRICING_MODES = ("per_unit", "per_person", "per_person_sharing")
DISCOUNT_TYPES = ("percentage", "fixed_amount")
ADDON_PRICING_TYPES = ("per_booking", "per_night", "per_guest", "per_room", "per_guest_per_night")


class RentableUnit(Base):
    __tablename__ = "rentable_units"

    unit_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    property_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    base_rate_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    pricing_mode: Mapped[str] = mapped_column(String(32), nullable=False, default="per_unit")
    additional_person_rate_cents: Mapped[int | None] = mapped_column(Integer)
    included_guests: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    child_price_cents: Mapped[int | None] = mapped_column(Integer)
    min_guests: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    max_guests: Mapped[int] = mapped_column(Integer, nullable=False, default=2, server_default="2")
    min_nights: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    max_nights: Mapped[int | None] = mapped_column(Integer)
    tax_percent: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), nullable=False, default=Decimal("0"), server_default="0"
    )
    deposit_percent: Mapped[Decimal | None] = mapped_column(Numeric(5, 2))
    check_in_time: Mapped[time] = mapped_column(Time, nullable=False, default=time(hour=15))
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC", server_default="UTC")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=sa.true())
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    seasonal_rates: Mapped[list["SeasonalRate"]] = relationship(
        "SeasonalRate", back_populates="unit", cascade="all, delete-orphan", order_by="SeasonalRate.start_date"
    )

    __table_args__ = (
        CheckConstraint("base_rate_cents >= 0", name="ck_units_base_rate_non_negative"),
        CheckConstraint("min_guests >= 1 AND max_guests >= min_guests", name="ck_units_guest_bounds"),
        CheckConstraint("min_nights >= 1", name="ck_units_min_nights"),
    )


class SeasonalRate(Base):
    __tablename__ = "seasonal_rates"

    rate_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    unit_id: Mapped[str] = mapped_column(
        ForeignKey("rentable_units.unit_id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str | None] = mapped_column(String(120))
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    rate_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    unit: Mapped[RentableUnit] = relationship("RentableUnit", back_populates="seasonal_rates")

    __table_args__ = (
        CheckConstraint("end_date > start_date", name="ck_seasonal_rates_window"),
        CheckConstraint("rate_cents >= 0", name="ck_seasonal_rates_non_negative"),
        Index("ix_seasonal_rates_unit_window", "unit_id", "start_date", "end_date"),
    )


promotion_units = Table(
    "promotion_units",
    Base.metadata,
    Column(
        "promotion_id",
        String(36),
        ForeignKey("promotions.promotion_id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "unit_id",
        String(36),
        ForeignKey("rentable_units.unit_id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class Promotion(Base):
    __tablename__ = "promotions"

    promotion_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    property_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    code: Mapped[str | None] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    discount_type: Mapped[str] = mapped_column(String(32), nullable=False)
    discount_value: Mapped[int] = mapped_column(Integer, nullable=False)
    valid_from: Mapped[date] = mapped_column(Date, nullable=False)
    valid_until: Mapped[date | None] = mapped_column(Date)
    min_nights: Mapped[int | None] = mapped_column(Integer)
    min_booking_cents: Mapped[int | None] = mapped_column(Integer)
    max_uses: Mapped[int | None] = mapped_column(Integer)
    current_uses: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=sa.true())
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    units: Mapped[list[RentableUnit]] = relationship("RentableUnit", secondary=promotion_units, lazy="selectin")

    __table_args__ = (
        UniqueConstraint("property_id", "code", name="uq_promotions_property_code"),
        CheckConstraint("discount_value > 0", name="ck_promotions_discount_positive"),
    )

    @property
    def unit_ids(self) -> list[str]:
        return sorted(unit.unit_id for unit in self.units)


class AddOn(Base):
    __tablename__ = "addons"

    addon_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    property_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    unit_id: Mapped[str | None] = mapped_column(
        ForeignKey("rentable_units.unit_id", ondelete="CASCADE"), nullable=True, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    pricing_type: Mapped[str] = mapped_column(String(32), nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    max_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=10, server_default="10")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=sa.true())
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (CheckConstraint("price_cents >= 0", name="ck_addons_price_non_negative"),)


class CancellationPolicy(Base):
    __tablename__ = "cancellation_policies"

    policy_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    property_id: Mapped[str | None] = mapped_column(String(36), unique=True)
    unit_id: Mapped[str | None] = mapped_column(
        ForeignKey("rentable_units.unit_id", ondelete="CASCADE"), unique=True
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False, default="custom")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    tiers: Mapped[list["CancellationTier"]] = relationship(
        "CancellationTier",
        back_populates="policy",
        cascade="all, delete-orphan",
        order_by="CancellationTier.min_hours_before_checkin.desc()",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "(property_id IS NULL) <> (unit_id IS NULL)", name="ck_cancellation_policies_single_scope"
        ),
    )


class CancellationTier(Base):
    __tablename__ = "cancellation_tiers"

    tier_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    policy_id: Mapped[int] = mapped_column(
        ForeignKey("cancellation_policies.policy_id", ondelete="CASCADE"), nullable=False
    )
    min_hours_before_checkin: Mapped[int] = mapped_column(Integer, nullable=False)
    refund_percent: Mapped[int] = mapped_column(Integer, nullable=False)

    policy: Mapped[CancellationPolicy] = relationship("CancellationPolicy", back_populates="tiers")

    __table_args__ = (
        UniqueConstraint("policy_id", "min_hours_before_checkin", name="uq_cancellation_tiers_threshold"),
        CheckConstraint("refund_percent BETWEEN 0 AND 100", name="ck_cancellation_tiers_percent"),
        CheckConstraint("min_hours_before_checkin >= 0", name="ck_cancellation_tiers_hours"),
    )
