from __future__ import annotations

import uuid
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, String, func, text
from sqlalchemy.orm import Mapped, mapped_column

from booking_engine.infra.db import Base

REFUND_STATUSES = (
    "requested",
    "under_review",
    "approved",
    "processing",
    "completed",
    "failed",
    "rejected",
    "withdrawn",
)
ACTIVE_REFUND_STATUSES = ("requested", "under_review", "approved", "processing")
_ACTIVE_SQL = "status IN ('requested', 'under_review', 'approved', 'processing')"


class RefundRequest(Base):
    __tablename__ = "refund_requests"

    request_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id: Mapped[str] = mapped_column(
        ForeignKey("bookings.booking_id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="requested")
    requested_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    calculated_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    approved_cents: Mapped[int | None] = mapped_column(Integer)
    refund_percent: Mapped[int] = mapped_column(Integer, nullable=False)
    hours_until_checkin: Mapped[float] = mapped_column(sa.Float, nullable=False)
    override_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=sa.false())
    reason: Mapped[str | None] = mapped_column(String(500))
    requested_by: Mapped[str | None] = mapped_column(String(64))
    reviewer_id: Mapped[str | None] = mapped_column(String(64))
    review_note: Mapped[str | None] = mapped_column(String(500))
    provider_ref: Mapped[str | None] = mapped_column(String(255))
    failure_reason: Mapped[str | None] = mapped_column(String(255))
    payout_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        CheckConstraint("requested_cents > 0", name="ck_refund_requests_requested_positive"),
        CheckConstraint("calculated_cents >= 0", name="ck_refund_requests_calculated_non_negative"),
        Index(
            "uq_refund_requests_one_active",
            "booking_id",
            unique=True,
            postgresql_where=text(_ACTIVE_SQL),
            sqlite_where=text(_ACTIVE_SQL),
        ),
    )
