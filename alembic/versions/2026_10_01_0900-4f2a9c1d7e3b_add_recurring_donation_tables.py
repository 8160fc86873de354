"""add_recurring_donation_tables

Revision ID: 4f2a9c1d7e3b
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "4f2a9c1d7e3b"
down_revision = None
branch_labels = None
depends_on = None

OPEN_ATTEMPT_WHERE = sa.text("status IN ('scheduled', 'processing')")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    """Create campaign, plan, payment attempt and change request tables."""

    op.create_table(
        "recurring_donation_campaigns",
        sa.Column("id", sa.String(50), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("campaign_type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("target_amount", sa.Numeric(15, 2), nullable=True),
        sa.Column("raised_amount", sa.Numeric(15, 2), nullable=False),
        sa.Column("subscriber_count", sa.Integer(), nullable=False),
        sa.Column("active_subscriber_count", sa.Integer(), nullable=False),
        sa.Column("suggested_amounts", sa.JSON(), nullable=False),
        sa.Column("default_amount", sa.Numeric(15, 2), nullable=True),
        sa.Column("default_frequency", sa.String(20), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("created_by", sa.String(255), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "recurring_donations",
        sa.Column("id", sa.String(50), primary_key=True),
        sa.Column("donor_id", sa.String(50), nullable=False),
        sa.Column("subscription_name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("amount", sa.Numeric(15, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("frequency", sa.String(20), nullable=False),
        sa.Column("interval_count", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("next_process_date", sa.Date(), nullable=False),
        sa.Column("payment_method", sa.String(20), nullable=False),
        sa.Column("payment_reference", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("pause_reason", sa.Text(), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("max_retries", sa.Integer(), nullable=False),
        sa.Column("total_collected", sa.Numeric(15, 2), nullable=False),
        sa.Column("successful_payments", sa.Integer(), nullable=False),
        sa.Column("failed_payments", sa.Integer(), nullable=False),
        sa.Column("last_payment_date", sa.Date(), nullable=True),
        sa.Column("last_payment_amount", sa.Numeric(15, 2), nullable=True),
        sa.Column("last_failure_date", sa.Date(), nullable=True),
        sa.Column("last_failure_reason", sa.Text(), nullable=True),
        sa.Column("send_receipts", sa.Boolean(), nullable=False),
        sa.Column("send_reminders", sa.Boolean(), nullable=False),
        sa.Column("reminder_days_before", sa.Integer(), nullable=False),
        sa.Column(
            "campaign_id",
            sa.String(50),
            sa.ForeignKey("recurring_donation_campaigns.id"),
            nullable=True,
        ),
        sa.Column("created_by", sa.String(255), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_recurring_donations_donor_id", "recurring_donations", ["donor_id"])
    op.create_index("ix_recurring_donations_campaign_id", "recurring_donations", ["campaign_id"])
    op.create_index(
        "ix_recurring_donations_status_next",
        "recurring_donations",
        ["status", "next_process_date"],
    )
    op.create_index("ix_recurring_donations_created", "recurring_donations", ["created_at"])

    op.create_table(
        "recurring_donation_payments",
        sa.Column("id", sa.String(50), primary_key=True),
        sa.Column(
            "subscription_id",
            sa.String(50),
            sa.ForeignKey("recurring_donations.id"),
            nullable=False,
        ),
        sa.Column("amount", sa.Numeric(15, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("base_amount", sa.Numeric(15, 2), nullable=False),
        sa.Column("scheduled_date", sa.Date(), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provider_transaction_id", sa.String(255), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("receipt_generated", sa.Boolean(), nullable=False),
        sa.Column("receipt_sent", sa.Boolean(), nullable=False),
        sa.Column("reminder_sent", sa.Boolean(), nullable=False),
        *_timestamps(),
    )
    op.create_index(
        "ix_recurring_donation_payments_subscription_id",
        "recurring_donation_payments",
        ["subscription_id"],
    )
    op.create_index(
        "ix_recurring_payments_status_date",
        "recurring_donation_payments",
        ["status", "scheduled_date"],
    )
    op.create_index(
        "uq_recurring_payments_open_attempt",
        "recurring_donation_payments",
        ["subscription_id"],
        unique=True,
        postgresql_where=OPEN_ATTEMPT_WHERE,
        sqlite_where=OPEN_ATTEMPT_WHERE,
    )

    op.create_table(
        "subscription_change_requests",
        sa.Column("id", sa.String(50), primary_key=True),
        sa.Column(
            "subscription_id",
            sa.String(50),
            sa.ForeignKey("recurring_donations.id"),
            nullable=False,
        ),
        sa.Column("change_type", sa.String(20), nullable=False),
        sa.Column("old_value", sa.JSON(), nullable=True),
        sa.Column("new_value", sa.JSON(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("requested_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("effective_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("requires_approval", sa.Boolean(), nullable=False),
        sa.Column("approved_by", sa.String(255), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("donor_notified", sa.Boolean(), nullable=False),
        sa.Column("notification_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(255), nullable=True),
    )
    op.create_index(
        "ix_subscription_change_requests_subscription_id",
        "subscription_change_requests",
        ["subscription_id"],
    )


def downgrade() -> None:
    """Drop recurring donation tables."""
    op.drop_index(
        "ix_subscription_change_requests_subscription_id",
        table_name="subscription_change_requests",
    )
    op.drop_table("subscription_change_requests")

    op.drop_index("uq_recurring_payments_open_attempt", table_name="recurring_donation_payments")
    op.drop_index("ix_recurring_payments_status_date", table_name="recurring_donation_payments")
    op.drop_index(
        "ix_recurring_donation_payments_subscription_id",
        table_name="recurring_donation_payments",
    )
    op.drop_table("recurring_donation_payments")

    op.drop_index("ix_recurring_donations_created", table_name="recurring_donations")
    op.drop_index("ix_recurring_donations_status_next", table_name="recurring_donations")
    op.drop_index("ix_recurring_donations_campaign_id", table_name="recurring_donations")
    op.drop_index("ix_recurring_donations_donor_id", table_name="recurring_donations")
    op.drop_table("recurring_donations")

    op.drop_table("recurring_donation_campaigns")
