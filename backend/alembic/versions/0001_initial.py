"""initial booking engine schema

Revision ID: 0001_initial
Revises: 
Create Date: 2026-10-19 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

EXCLUSION_CONSTRAINT_NAME = "ex_availability_blocks_no_overlap"
ACTIVE_REFUND_SQL = "status IN ('requested', 'under_review', 'approved', 'processing')"


def _timestamps(*, updated: bool = False) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)]
    if updated:
        columns.append(
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                server_default=sa.func.now(),
                # ORM-managed updated_at (no database trigger).
                nullable=False,
            )
        )
    return columns


def upgrade() -> None:
    op.create_table(
        "rentable_units",
        sa.Column("unit_id", sa.String(length=36), primary_key=True),
        sa.Column("property_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("base_rate_cents", sa.Integer(), nullable=False),
        sa.Column("pricing_mode", sa.String(length=32), nullable=False),
        sa.Column("additional_person_rate_cents", sa.Integer()),
        sa.Column("included_guests", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("child_price_cents", sa.Integer()),
        sa.Column("min_guests", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("max_guests", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("min_nights", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("max_nights", sa.Integer()),
        sa.Column("tax_percent", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("deposit_percent", sa.Numeric(5, 2)),
        sa.Column("check_in_time", sa.Time(), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default="UTC"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(updated=True),
        sa.CheckConstraint("base_rate_cents >= 0", name="ck_units_base_rate_non_negative"),
        sa.CheckConstraint("min_guests >= 1 AND max_guests >= min_guests", name="ck_units_guest_bounds"),
        sa.CheckConstraint("min_nights >= 1", name="ck_units_min_nights"),
    )
    op.create_index("ix_rentable_units_property_id", "rentable_units", ["property_id"])

    op.create_table(
        "seasonal_rates",
        sa.Column("rate_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "unit_id",
            sa.String(length=36),
            sa.ForeignKey("rentable_units.unit_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=120)),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("rate_cents", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("end_date > start_date", name="ck_seasonal_rates_window"),
        sa.CheckConstraint("rate_cents >= 0", name="ck_seasonal_rates_non_negative"),
    )
    op.create_index("ix_seasonal_rates_unit_window", "seasonal_rates", ["unit_id", "start_date", "end_date"])

    op.create_table(
        "promotions",
        sa.Column("promotion_id", sa.String(length=36), primary_key=True),
        sa.Column("property_id", sa.String(length=36), nullable=False),
        sa.Column("code", sa.String(length=64)),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("discount_type", sa.String(length=32), nullable=False),
        sa.Column("discount_value", sa.Integer(), nullable=False),
        sa.Column("valid_from", sa.Date(), nullable=False),
        sa.Column("valid_until", sa.Date()),
        sa.Column("min_nights", sa.Integer()),
        sa.Column("min_booking_cents", sa.Integer()),
        sa.Column("max_uses", sa.Integer()),
        sa.Column("current_uses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(updated=True),
        sa.UniqueConstraint("property_id", "code", name="uq_promotions_property_code"),
        sa.CheckConstraint("discount_value > 0", name="ck_promotions_discount_positive"),
    )
    op.create_index("ix_promotions_property_id", "promotions", ["property_id"])

    op.create_table(
        "promotion_units",
        sa.Column(
            "promotion_id",
            sa.String(length=36),
            sa.ForeignKey("promotions.promotion_id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "unit_id",
            sa.String(length=36),
            sa.ForeignKey("rentable_units.unit_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )

    op.create_table(
        "addons",
        sa.Column("addon_id", sa.String(length=36), primary_key=True),
        sa.Column("property_id", sa.String(length=36), nullable=False),
        sa.Column(
            "unit_id",
            sa.String(length=36),
            sa.ForeignKey("rentable_units.unit_id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("pricing_type", sa.String(length=32), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("max_quantity", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("price_cents >= 0", name="ck_addons_price_non_negative"),
    )
    op.create_index("ix_addons_property_id", "addons", ["property_id"])
    op.create_index("ix_addons_unit_id", "addons", ["unit_id"])

    op.create_table(
        "cancellation_policies",
        sa.Column("policy_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("property_id", sa.String(length=36), unique=True),
        sa.Column(
            "unit_id",
            sa.String(length=36),
            sa.ForeignKey("rentable_units.unit_id", ondelete="CASCADE"),
            unique=True,
        ),
        sa.Column("name", sa.String(length=120), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "(property_id IS NULL) <> (unit_id IS NULL)", name="ck_cancellation_policies_single_scope"
        ),
    )

    op.create_table(
        "cancellation_tiers",
        sa.Column("tier_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "policy_id",
            sa.Integer(),
            sa.ForeignKey("cancellation_policies.policy_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("min_hours_before_checkin", sa.Integer(), nullable=False),
        sa.Column("refund_percent", sa.Integer(), nullable=False),
        sa.UniqueConstraint("policy_id", "min_hours_before_checkin", name="uq_cancellation_tiers_threshold"),
        sa.CheckConstraint("refund_percent BETWEEN 0 AND 100", name="ck_cancellation_tiers_percent"),
        sa.CheckConstraint("min_hours_before_checkin >= 0", name="ck_cancellation_tiers_hours"),
    )

    op.create_table(
        "availability_blocks",
        sa.Column("block_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "unit_id",
            sa.String(length=36),
            sa.ForeignKey("rentable_units.unit_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("reason", sa.String(length=16), nullable=False),
        sa.Column("booking_id", sa.String(length=36), unique=True),
        sa.Column("note", sa.String(length=255)),
        *_timestamps(),
        sa.CheckConstraint("end_date > start_date", name="ck_availability_blocks_window"),
        sa.CheckConstraint("reason IN ('booking', 'manual')", name="ck_availability_blocks_reason"),
        sa.CheckConstraint(
            "(reason = 'booking') = (booking_id IS NOT NULL)", name="ck_availability_blocks_booking_ref"
        ),
    )
    op.create_index(
        "ix_availability_blocks_unit_window", "availability_blocks", ["unit_id", "start_date", "end_date"]
    )

    op.create_table(
        "bookings",
        sa.Column("booking_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "unit_id",
            sa.String(length=36),
            sa.ForeignKey("rentable_units.unit_id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("property_id", sa.String(length=36), nullable=False),
        sa.Column("guest_id", sa.String(length=64), nullable=False),
        sa.Column("check_in", sa.Date(), nullable=False),
        sa.Column("check_out", sa.Date(), nullable=False),
        sa.Column("adults", sa.Integer(), nullable=False),
        sa.Column("children", sa.Integer(), nullable=False),
        sa.Column("rooms", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("payment_status", sa.String(length=24), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("total_cents", sa.Integer(), nullable=False),
        sa.Column("deposit_cents", sa.Integer()),
        sa.Column("amount_paid_cents", sa.Integer(), nullable=False),
        sa.Column("refunded_total_cents", sa.Integer(), nullable=False),
        sa.Column("quote_snapshot", sa.JSON(), nullable=False),
        sa.Column("quote_hash", sa.String(length=80), nullable=False),
        sa.Column(
            "promotion_id",
            sa.String(length=36),
            sa.ForeignKey("promotions.promotion_id", ondelete="SET NULL"),
        ),
        sa.Column("provider_ref", sa.String(length=255)),
        sa.Column("idempotency_key", sa.String(length=255), unique=True),
        sa.Column("hold_expires_at", sa.DateTime(timezone=True)),
        sa.Column("status_changed_at", sa.DateTime(timezone=True)),
        sa.Column("cancellation_reason", sa.String(length=255)),
        *_timestamps(updated=True),
        sa.CheckConstraint("check_out > check_in", name="ck_bookings_stay_window"),
        sa.CheckConstraint("total_cents >= 0", name="ck_bookings_total_non_negative"),
        sa.CheckConstraint("amount_paid_cents >= 0", name="ck_bookings_paid_non_negative"),
        sa.CheckConstraint(
            "refunded_total_cents >= 0 AND refunded_total_cents <= amount_paid_cents",
            name="ck_bookings_refunded_bounds",
        ),
    )
    op.create_index("ix_bookings_unit_id", "bookings", ["unit_id"])
    op.create_index("ix_bookings_guest_id", "bookings", ["guest_id"])
    op.create_index("ix_bookings_status_hold", "bookings", ["status", "hold_expires_at"])

    op.create_table(
        "booking_addons",
        sa.Column(
            "booking_id",
            sa.String(length=36),
            sa.ForeignKey("bookings.booking_id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("addon_id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("pricing_type", sa.String(length=32), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False),
        sa.Column("total_cents", sa.Integer(), nullable=False),
    )

    op.create_table(
        "refund_requests",
        sa.Column("request_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "booking_id",
            sa.String(length=36),
            sa.ForeignKey("bookings.booking_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("requested_cents", sa.Integer(), nullable=False),
        sa.Column("calculated_cents", sa.Integer(), nullable=False),
        sa.Column("approved_cents", sa.Integer()),
        sa.Column("refund_percent", sa.Integer(), nullable=False),
        sa.Column("hours_until_checkin", sa.Float(), nullable=False),
        sa.Column("override_approved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reason", sa.String(length=500)),
        sa.Column("requested_by", sa.String(length=64)),
        sa.Column("reviewer_id", sa.String(length=64)),
        sa.Column("review_note", sa.String(length=500)),
        sa.Column("provider_ref", sa.String(length=255)),
        sa.Column("failure_reason", sa.String(length=255)),
        sa.Column("payout_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reviewed_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        *_timestamps(updated=True),
        sa.CheckConstraint("requested_cents > 0", name="ck_refund_requests_requested_positive"),
        sa.CheckConstraint("calculated_cents >= 0", name="ck_refund_requests_calculated_non_negative"),
    )
    op.create_index("ix_refund_requests_booking_id", "refund_requests", ["booking_id"])
    op.create_index(
        "uq_refund_requests_one_active",
        "refund_requests",
        ["booking_id"],
        unique=True,
        postgresql_where=sa.text(ACTIVE_REFUND_SQL),
        sqlite_where=sa.text(ACTIVE_REFUND_SQL),
    )

    op.create_table(
        "outbox_events",
        sa.Column("event_id", sa.String(length=36), primary_key=True),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=False),
        sa.Column("dedupe_key", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True)),
        sa.Column("last_error", sa.String(length=255)),
        *_timestamps(),
    )
    op.create_index("ix_outbox_status", "outbox_events", ["status", "next_attempt_at"])
    op.create_index("ix_outbox_dedupe", "outbox_events", ["dedupe_key"], unique=True)

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        op.execute("CREATE EXTENSION IF NOT EXISTS btree_gist")
        op.execute(
            f"""
            ALTER TABLE availability_blocks
            ADD CONSTRAINT {EXCLUSION_CONSTRAINT_NAME}
            EXCLUDE USING gist (
                unit_id WITH =,
                daterange(start_date, end_date, '[)') WITH &&
            )
            """
        )


def downgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        op.execute(
            f"ALTER TABLE availability_blocks DROP CONSTRAINT IF EXISTS {EXCLUSION_CONSTRAINT_NAME}"
        )
    op.drop_index("ix_outbox_dedupe", table_name="outbox_events")
    op.drop_index("ix_outbox_status", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index("uq_refund_requests_one_active", table_name="refund_requests")
    op.drop_index("ix_refund_requests_booking_id", table_name="refund_requests")
    op.drop_table("refund_requests")
    op.drop_table("booking_addons")
    op.drop_index("ix_bookings_status_hold", table_name="bookings")
    op.drop_index("ix_bookings_guest_id", table_name="bookings")
    op.drop_index("ix_bookings_unit_id", table_name="bookings")
    op.drop_table("bookings")
    op.drop_index("ix_availability_blocks_unit_window", table_name="availability_blocks")
    op.drop_table("availability_blocks")
    op.drop_table("cancellation_tiers")
    op.drop_table("cancellation_policies")
    op.drop_index("ix_addons_unit_id", table_name="addons")
    op.drop_index("ix_addons_property_id", table_name="addons")
    op.drop_table("addons")
    op.drop_table("promotion_units")
    op.drop_index("ix_promotions_property_id", table_name="promotions")
    op.drop_table("promotions")
    op.drop_index("ix_seasonal_rates_unit_window", table_name="seasonal_rates")
    op.drop_table("seasonal_rates")
    op.drop_index("ix_rentable_units_property_id", table_name="rentable_units")
    op.drop_table("rentable_units")
