"""Initial schema: parking lots, reservations, waitlist, recurrence rules, notifications.

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Parking lots
    op.create_table(
        "parking_lots",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("address", sa.String(500), nullable=True),
        sa.Column("capacity", sa.Integer(), nullable=False),
        sa.Column("hourly_rate", sa.Numeric(10, 2), nullable=False),
        sa.Column("daily_rate", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'ZMW'")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.CheckConstraint("capacity > 0", name="check_lot_capacity_positive"),
        sa.CheckConstraint("hourly_rate >= 0", name="check_lot_hourly_rate_non_negative"),
        sa.CheckConstraint("daily_rate >= 0", name="check_lot_daily_rate_non_negative"),
    )
    op.create_index("ix_parking_lots_id", "parking_lots", ["id"])

    # Recurrence rules
    op.create_table(
        "recurrence_rules",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("resource_id", sa.Integer(), sa.ForeignKey("parking_lots.id"), nullable=False),
        sa.Column("pattern", sa.String(20), nullable=False, server_default=sa.text("'weekly'")),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'active'")),
        sa.Column("repeat_interval", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("days_of_week", sa.JSON(), nullable=True),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("max_occurrences", sa.Integer(), nullable=True),
        sa.Column("occurrence_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("next_occurrence", sa.Date(), nullable=False),
        sa.Column("vehicle_info", sa.JSON(), nullable=True),
        sa.Column("special_requests", sa.Text(), nullable=True),
        sa.Column("occurrence_history", sa.JSON(), nullable=False),
        sa.Column("failure_history", sa.JSON(), nullable=False),
        sa.Column("last_occurrence_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pause_reason", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("repeat_interval > 0", name="check_recurrence_interval_positive"),
        sa.CheckConstraint("duration_minutes > 0", name="check_recurrence_duration_positive"),
        sa.CheckConstraint(
            "max_occurrences IS NULL OR occurrence_count <= max_occurrences",
            name="check_recurrence_occurrences_within_max",
        ),
    )
    op.create_index("ix_recurrence_rules_id", "recurrence_rules", ["id"])
    op.create_index("ix_recurrence_rules_user_id", "recurrence_rules", ["user_id"])
    # The recurrence tick asks "which active rules are due by today"
    op.create_index("ix_recurrence_status_next", "recurrence_rules", ["status", "next_occurrence"])

    # Reservations
    op.create_table(
        "reservations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("reference", sa.String(20), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("resource_id", sa.Integer(), sa.ForeignKey("parking_lots.id"), nullable=False),
        sa.Column("unit_number", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'ZMW'")),
        sa.Column("vehicle_info", sa.JSON(), nullable=True),
        sa.Column("special_requests", sa.Text(), nullable=True),
        sa.Column("recurrence_rule_id", sa.Integer(), sa.ForeignKey("recurrence_rules.id"), nullable=True),
        sa.Column("check_in_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("check_out_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reminder_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation", sa.JSON(), nullable=True),
        sa.Column("extension_history", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("reference", name="uq_reservation_reference"),
        sa.CheckConstraint("start_time < end_time", name="check_reservation_interval"),
        sa.CheckConstraint("unit_number > 0", name="check_reservation_unit_positive"),
        sa.CheckConstraint(
            "status IN ('pending', 'confirmed', 'active', 'completed', 'cancelled', 'no_show')",
            name="check_reservation_status",
        ),
    )
    op.create_index("ix_reservations_id", "reservations", ["id"])
    op.create_index("ix_reservations_user_id", "reservations", ["user_id"])
    # INDEX FOR OVERLAP QUERIES: every allocation asks for a lot's reservations
    # with start_time < :end, so (resource_id, start_time) keeps it a range scan.
    op.create_index("ix_reservations_resource_start", "reservations", ["resource_id", "start_time"])
    # Reminder and no-show sweeps filter by status and time
    op.create_index("ix_reservations_status_start", "reservations", ["status", "start_time"])

    # Waitlist entries
    op.create_table(
        "waitlist_entries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("resource_id", sa.Integer(), sa.ForeignKey("parking_lots.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'active'")),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("desired_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("desired_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("required_units", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("vehicle_info", sa.JSON(), nullable=True),
        sa.Column("special_requests", sa.Text(), nullable=True),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("converted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("converted_reservation_id", sa.Integer(), sa.ForeignKey("reservations.id"), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("desired_start < desired_end", name="check_waitlist_interval"),
        sa.CheckConstraint("required_units > 0", name="check_waitlist_units_positive"),
    )
    op.create_index("ix_waitlist_entries_id", "waitlist_entries", ["id"])
    op.create_index("ix_waitlist_entries_user_id", "waitlist_entries", ["user_id"])
    op.create_index(
        "ix_waitlist_resource_status_position", "waitlist_entries", ["resource_id", "status", "position"]
    )
    op.create_index("ix_waitlist_status_expires", "waitlist_entries", ["status", "expires_at"])

    # Notification jobs
    op.create_table(
        "notification_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(40), nullable=False),
        sa.Column("channel", sa.String(20), nullable=False, server_default=sa.text("'push'")),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("retry_count <= max_retries", name="check_notification_retries_within_max"),
        sa.CheckConstraint(
            "status IN ('pending', 'sent', 'delivered', 'read', 'failed')",
            name="check_notification_status",
        ),
    )
    op.create_index("ix_notification_jobs_id", "notification_jobs", ["id"])
    op.create_index("ix_notification_jobs_user_id", "notification_jobs", ["user_id"])
    op.create_index("ix_notification_status_scheduled", "notification_jobs", ["status", "scheduled_for"])
    op.create_index("ix_notification_status_retry", "notification_jobs", ["status", "next_retry_at"])


def downgrade() -> None:
    op.drop_table("notification_jobs")
    op.drop_table("waitlist_entries")
    op.drop_table("reservations")
    op.drop_table("recurrence_rules")
    op.drop_table("parking_lots")
