"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-09-01 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

BOOKING_STATUSES = (
    "requested", "accepted", "declined", "paid", "completed_by_provider", "completed",
    "reviewed", "canceled_customer", "canceled_provider", "disputed", "refunded",
    "partially_refunded",
)
NOTIFICATION_TYPES = (
    "booking_requested", "booking_accepted", "booking_declined", "booking_cancelled",
    "booking_paid", "booking_completed", "booking_disputed", "booking_refunded",
    "payment_failed", "payout", "reschedule_requested", "reschedule_responded",
    "quote_received", "quote_accepted", "job_updated",
)


def _in(column: str, values) -> str:
    return f"{column} IN ({', '.join(repr(v) for v in values)})"


def _timestamps(updated: bool = True) -> list:
    cols = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())]
    if updated:
        cols.append(sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()))
    return cols


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("external_id", sa.String(255), unique=True, nullable=True),
        sa.Column("email", sa.String(255), unique=True, nullable=False, index=True),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("role IN ('customer', 'provider', 'admin')", name="ck_user_role"),
    )

    op.create_table(
        "provider_profiles",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="RESTRICT"), unique=True, nullable=False),
        sa.Column("business_name", sa.String(200), nullable=False),
        sa.Column("plan", sa.String(20), nullable=False, server_default="starter"),
        sa.Column("stripe_connect_id", sa.String(255), nullable=True, index=True),
        sa.Column("payouts_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("charges_gst", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_suspended", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.CheckConstraint("plan IN ('starter', 'pro', 'elite')", name="ck_provider_plan"),
    )

    op.create_table(
        "services",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("provider_id", UUID(as_uuid=True), sa.ForeignKey("provider_profiles.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("pricing_type", sa.String(10), nullable=False, server_default="fixed"),
        sa.Column("price_in_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("charges_gst", sa.Boolean(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(updated=False),
        sa.CheckConstraint("price_in_cents >= 0", name="ck_service_price_positive"),
        sa.CheckConstraint("pricing_type IN ('fixed', 'from', 'quote')", name="ck_service_pricing_type"),
    )

    # Availability
    op.create_table(
        "provider_weekly_schedules",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("provider_id", UUID(as_uuid=True), sa.ForeignKey("provider_profiles.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("day_of_week", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.UniqueConstraint("provider_id", "day_of_week", name="uq_schedule_provider_day"),
        sa.CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="ck_schedule_day_range"),
        sa.CheckConstraint("end_time > start_time", name="ck_schedule_window"),
    )
    op.create_table(
        "provider_time_off",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("provider_id", UUID(as_uuid=True), sa.ForeignKey("provider_profiles.id", ondelete="CASCADE"), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        *_timestamps(updated=False),
        sa.CheckConstraint("end_at > start_at", name="ck_time_off_window"),
    )
    op.create_index("ix_time_off_provider_window", "provider_time_off", ["provider_id", "start_at", "end_at"])

    # Bookings
    op.create_table(
        "bookings",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("customer_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True),
        sa.Column("provider_id", UUID(as_uuid=True), sa.ForeignKey("provider_profiles.id", ondelete="RESTRICT"), nullable=False, index=True),
        sa.Column("service_id", UUID(as_uuid=True), sa.ForeignKey("services.id", ondelete="RESTRICT"), nullable=False, index=True),
        sa.Column("status", sa.String(30), nullable=False, server_default="requested", index=True),
        sa.Column("scheduled_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("price_at_booking", sa.Integer(), nullable=False),
        sa.Column("provider_quoted_price", sa.Integer(), nullable=True),
        sa.Column("payment_intent_id", sa.String(255), nullable=True, index=True),
        sa.Column("customer_note", sa.Text(), nullable=True),
        sa.Column("decline_reason", sa.Text(), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_by_provider_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("price_at_booking >= 0", name="ck_booking_price_positive"),
        sa.CheckConstraint(
            "provider_quoted_price IS NULL OR provider_quoted_price > 0",
            name="ck_booking_quoted_price_positive",
        ),
        sa.CheckConstraint(_in("status", BOOKING_STATUSES), name="ck_booking_status_valid"),
    )
    op.create_index("ix_booking_customer_created", "bookings", ["customer_id", "created_at"])
    op.create_index("ix_booking_provider_scheduled", "bookings", ["provider_id", "scheduled_date"])

    op.create_table(
        "booking_cancellations",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("booking_id", UUID(as_uuid=True), sa.ForeignKey("bookings.id", ondelete="CASCADE"), unique=True, nullable=False),
        sa.Column("actor", sa.String(10), nullable=False),
        sa.Column("actor_user_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        *_timestamps(updated=False),
        sa.CheckConstraint("actor IN ('customer', 'provider')", name="ck_cancellation_actor"),
    )

    op.create_table(
        "booking_reschedules",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("booking_id", UUID(as_uuid=True), sa.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("requester_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("responder_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("proposed_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("customer_note", sa.Text(), nullable=True),
        sa.Column("provider_note", sa.Text(), nullable=True),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=False),
        sa.CheckConstraint("status IN ('pending', 'approved', 'declined')", name="ck_reschedule_status"),
    )
    op.create_index("ix_reschedule_booking_status", "booking_reschedules", ["booking_id", "status"])

    op.create_table(
        "reviews",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("booking_id", UUID(as_uuid=True), sa.ForeignKey("bookings.id", ondelete="CASCADE"), unique=True, nullable=False),
        sa.Column("customer_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider_id", UUID(as_uuid=True), sa.ForeignKey("provider_profiles.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("rating", sa.Integer(), nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
        *_timestamps(updated=False),
        sa.CheckConstraint("rating >= 1 AND rating <= 5", name="ck_review_rating_range"),
    )

    op.create_table(
        "dispute_cases",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("booking_id", UUID(as_uuid=True), sa.ForeignKey("bookings.id", ondelete="CASCADE"), unique=True, nullable=False),
        sa.Column("opened_by", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("stripe_dispute_id", sa.String(255), unique=True, nullable=True),
        sa.Column("reason", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="open"),
        sa.Column("resolution", sa.String(20), nullable=True),
        sa.Column("refund_amount", sa.Integer(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by_admin", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        *_timestamps(updated=False),
        sa.CheckConstraint("status IN ('open', 'resolved', 'closed')", name="ck_dispute_cases_status_valid"),
        sa.CheckConstraint(
            "resolution IS NULL OR resolution IN ('customer', 'provider')",
            name="ck_dispute_cases_resolution_valid",
        ),
    )

    # Job marketplace
    op.create_table(
        "job_requests",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("customer_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("budget_cents", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="open"),
        sa.Column("assigned_provider_id", UUID(as_uuid=True), sa.ForeignKey("provider_profiles.id", ondelete="SET NULL"), nullable=True, index=True),
        sa.Column("accepted_quote_id", UUID(as_uuid=True), nullable=True),
        sa.Column("total_price", sa.Integer(), nullable=True),
        sa.Column("deposit_amount", sa.Integer(), nullable=True),
        sa.Column("remaining_amount", sa.Integer(), nullable=True),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="unpaid"),
        sa.Column("lifecycle_updated_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('open', 'assigned', 'in_progress', 'completed', 'closed', 'cancelled', 'expired')",
            name="ck_job_status",
        ),
        sa.CheckConstraint("total_price IS NULL OR total_price > 0", name="ck_job_total_positive"),
        sa.CheckConstraint("remaining_amount IS NULL OR remaining_amount >= 0", name="ck_job_remaining_positive"),
    )
    op.create_index("ix_job_status_created", "job_requests", ["status", "created_at"])

    op.create_table(
        "job_quotes",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("job_request_id", UUID(as_uuid=True), sa.ForeignKey("job_requests.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("provider_id", UUID(as_uuid=True), sa.ForeignKey("provider_profiles.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("amount_total", sa.Integer(), nullable=False),
        sa.Column("availability", sa.Text(), nullable=True),
        sa.Column("available_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("included", sa.Text(), nullable=True),
        sa.Column("excluded", sa.Text(), nullable=True),
        sa.Column("response_speed_hours", sa.Integer(), nullable=False, server_default="24"),
        sa.Column("status", sa.String(20), nullable=False, server_default="submitted"),
        *_timestamps(),
        sa.UniqueConstraint("job_request_id", "provider_id", name="uq_quote_job_provider"),
        sa.CheckConstraint("amount_total > 0", name="ck_quote_amount_positive"),
        sa.CheckConstraint("response_speed_hours >= 1", name="ck_quote_response_speed"),
        sa.CheckConstraint(
            "status IN ('submitted', 'accepted', 'rejected', 'withdrawn')", name="ck_quote_status"
        ),
    )

    op.create_table(
        "job_payments",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("job_request_id", UUID(as_uuid=True), sa.ForeignKey("job_requests.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("quote_id", UUID(as_uuid=True), sa.ForeignKey("job_quotes.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("stripe_payment_intent_id", sa.String(255), unique=True, nullable=False),
        sa.Column("payment_type", sa.String(20), nullable=False),
        sa.Column("amount_total", sa.Integer(), nullable=False),
        sa.Column("platform_fee_amount", sa.Integer(), nullable=False),
        sa.Column("provider_amount", sa.Integer(), nullable=False),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=False),
        sa.CheckConstraint("payment_type IN ('deposit', 'remainder', 'full')", name="ck_job_payment_type"),
        sa.CheckConstraint(
            "payment_status IN ('pending', 'deposit_paid', 'fully_paid', 'refunded', 'partially_refunded', 'failed')",
            name="ck_job_payment_status",
        ),
        sa.CheckConstraint("amount_total > 0", name="ck_job_payment_amount_positive"),
        sa.CheckConstraint(
            "platform_fee_amount >= 0 AND provider_amount >= 0 "
            "AND platform_fee_amount + provider_amount = amount_total",
            name="ck_job_payment_split_sums",
        ),
    )

    # Money ledger
    op.create_table(
        "provider_earnings",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("booking_id", UUID(as_uuid=True), sa.ForeignKey("bookings.id", ondelete="RESTRICT"), unique=True, nullable=True),
        sa.Column("job_payment_id", UUID(as_uuid=True), sa.ForeignKey("job_payments.id", ondelete="RESTRICT"), unique=True, nullable=True),
        sa.Column("provider_id", UUID(as_uuid=True), sa.ForeignKey("provider_profiles.id", ondelete="RESTRICT"), nullable=False, index=True),
        sa.Column("gross_amount", sa.Integer(), nullable=False),
        sa.Column("platform_fee_amount", sa.Integer(), nullable=False),
        sa.Column("gst_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("net_amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="nzd"),
        sa.Column("status", sa.String(20), nullable=False, server_default="held"),
        sa.Column("stripe_payment_intent_id", sa.String(255), nullable=True),
        sa.Column("stripe_transfer_id", sa.String(255), nullable=True),
        sa.Column("payout_failure_reason", sa.String(255), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("transferred_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('held', 'awaiting_payout', 'transferred', 'paid_out', 'refunded')",
            name="ck_earning_status",
        ),
        sa.CheckConstraint(
            "platform_fee_amount >= 0 AND net_amount >= 0 AND gross_amount = platform_fee_amount + net_amount",
            name="ck_earning_amounts",
        ),
        sa.CheckConstraint("booking_id IS NOT NULL OR job_payment_id IS NOT NULL", name="ck_earning_source"),
    )
    op.create_index("ix_earning_status_updated", "provider_earnings", ["status", "updated_at"])

    op.create_table(
        "provider_payout_requests",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("provider_id", UUID(as_uuid=True), sa.ForeignKey("provider_profiles.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="nzd"),
        sa.Column("status", sa.String(20), nullable=False, server_default="queued"),
        sa.Column("idempotency_key", sa.String(100), nullable=False),
        sa.Column("payouts_disabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("note", sa.String(255), nullable=True),
        *_timestamps(updated=False),
        sa.UniqueConstraint("provider_id", "idempotency_key", name="uq_payout_request_idempotency"),
    )

    op.create_table(
        "refunds",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("booking_id", UUID(as_uuid=True), sa.ForeignKey("bookings.id", ondelete="RESTRICT"), nullable=True, index=True),
        sa.Column("job_request_id", UUID(as_uuid=True), sa.ForeignKey("job_requests.id", ondelete="RESTRICT"), nullable=True, index=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(50), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="processing"),
        sa.Column("stripe_refund_id", sa.String(255), nullable=True, index=True),
        sa.Column("platform_fee_refunded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("provider_amount_refunded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed_by", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_refund_amount_positive"),
        sa.CheckConstraint("status IN ('processing', 'completed', 'failed')", name="ck_refund_status"),
        sa.CheckConstraint("booking_id IS NOT NULL OR job_request_id IS NOT NULL", name="ck_refund_target"),
    )

    # Platform plumbing
    op.create_table(
        "notifications",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(updated=False),
        sa.CheckConstraint(_in("type", NOTIFICATION_TYPES), name="ck_notification_type"),
    )
    op.create_index("ix_notification_user_created", "notifications", ["user_id", "created_at"])
    op.create_index("ix_notification_user_is_read", "notifications", ["user_id", "is_read"])

    op.create_table(
        "processed_webhook_events",
        sa.Column("event_id", sa.String(255), primary_key=True),
        sa.Column("event_type", sa.String(100), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), index=True),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("action", sa.String(50), nullable=False, index=True),
        sa.Column("admin_user_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("target_type", sa.String(30), nullable=True),
        sa.Column("target_id", sa.String(64), nullable=True),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        *_timestamps(updated=False),
    )


def downgrade() -> None:
    for table in (
        "audit_logs",
        "processed_webhook_events",
        "notifications",
        "refunds",
        "provider_payout_requests",
        "provider_earnings",
        "job_payments",
        "job_quotes",
        "job_requests",
        "dispute_cases",
        "reviews",
        "booking_reschedules",
        "booking_cancellations",
        "bookings",
        "provider_time_off",
        "provider_weekly_schedules",
        "services",
        "provider_profiles",
        "users",
    ):
        op.drop_table(table)
