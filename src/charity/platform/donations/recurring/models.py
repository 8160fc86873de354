"""
Recurring donation database tables and status enums.

Statuses are str-valued enums stored as plain strings so the same
schema works on PostgreSQL and SQLite.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from charity.platform.db import Base, TimestampMixin


class Frequency(str, Enum):
    """Billing frequency of a recurring donation."""

    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"


class SubscriptionStatus(str, Enum):
    """Lifecycle status of a recurring donation plan."""

    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentStatus(str, Enum):
    """Status of a single scheduled payment attempt."""

    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    BANK_TRANSFER = "bank_transfer"
    DIRECT_DEBIT = "direct_debit"
    MOBILE_PAYMENT = "mobile_payment"


class CampaignType(str, Enum):
    GENERAL = "general"
    EMERGENCY = "emergency"
    PROJECT_SPECIFIC = "project_specific"
    MEMORIAL = "memorial"
    SEASONAL = "seasonal"


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class ChangeType(str, Enum):
    """Kind of change a donor can request on a plan."""

    AMOUNT = "amount"
    FREQUENCY = "frequency"
    PAYMENT_METHOD = "payment_method"
    PAUSE = "pause"
    CANCEL = "cancel"


class ChangeRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPLIED = "applied"


# Allowed plan status transitions. Terminal statuses have no outgoing edges.
SUBSCRIPTION_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.ACTIVE: frozenset(
        {
            SubscriptionStatus.PAUSED,
            SubscriptionStatus.CANCELLED,
            SubscriptionStatus.COMPLETED,
            SubscriptionStatus.FAILED,
        }
    ),
    SubscriptionStatus.PAUSED: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED}
    ),
    SubscriptionStatus.CANCELLED: frozenset(),
    SubscriptionStatus.COMPLETED: frozenset(),
    SubscriptionStatus.FAILED: frozenset(),
}

PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.SCHEDULED: frozenset({PaymentStatus.PROCESSING, PaymentStatus.CANCELLED}),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
}

OPEN_PAYMENT_STATUSES = (PaymentStatus.SCHEDULED, PaymentStatus.PROCESSING)


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    """Return True when the plan may move from ``current`` to ``target``."""
    return target in SUBSCRIPTION_TRANSITIONS[current]


def _enum_column(enum_cls: type[Enum]) -> SAEnum:
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [member.value for member in members],
    )


def generate_subscription_id() -> str:
    return f"rd_{uuid4().hex}"


def generate_payment_id() -> str:
    return f"rdp_{uuid4().hex}"


def generate_campaign_id() -> str:
    return f"cmp_{uuid4().hex}"


def generate_change_request_id() -> str:
    return f"chg_{uuid4().hex}"


class RecurringDonation(TimestampMixin, Base):
    """SQLAlchemy table for recurring donation plans."""

    __tablename__ = "recurring_donations"

    id: Mapped[str] = mapped_column(String(50), primary_key=True, default=generate_subscription_id)
    donor_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    # Plan details
    subscription_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # Scheduling
    frequency: Mapped[Frequency] = mapped_column(_enum_column(Frequency), nullable=False)
    interval_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    next_process_date: Mapped[date] = mapped_column(Date, nullable=False)

    # Payment information
    payment_method: Mapped[PaymentMethod] = mapped_column(
        _enum_column(PaymentMethod), nullable=False, default=PaymentMethod.CREDIT_CARD
    )
    payment_reference: Mapped[str] = mapped_column(String(255), nullable=False)

    # Lifecycle
    status: Mapped[SubscriptionStatus] = mapped_column(
        _enum_column(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE
    )
    pause_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    # Statistics
    total_collected: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False, default=Decimal("0")
    )
    successful_payments: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_payments: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_payment_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    last_payment_amount: Mapped[Decimal | None] = mapped_column(Numeric(15, 2), nullable=True)
    last_failure_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    last_failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Donor communication
    send_receipts: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    send_reminders: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reminder_days_before: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    campaign_id: Mapped[str | None] = mapped_column(
        String(50), ForeignKey("recurring_donation_campaigns.id"), nullable=True, index=True
    )
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_recurring_donations_status_next", "status", "next_process_date"),
        Index("ix_recurring_donations_created", "created_at"),
    )


class ScheduledPayment(TimestampMixin, Base):
    """SQLAlchemy table for individual payment attempts."""

    __tablename__ = "recurring_donation_payments"

    id: Mapped[str] = mapped_column(String(50), primary_key=True, default=generate_payment_id)
    subscription_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("recurring_donations.id"), nullable=False, index=True
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    base_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)

    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[PaymentStatus] = mapped_column(
        _enum_column(PaymentStatus), nullable=False, default=PaymentStatus.SCHEDULED
    )
    processing_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processed_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    provider_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    receipt_generated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    receipt_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reminder_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_recurring_payments_status_date", "status", "scheduled_date"),
        # At most one open attempt per plan
        Index(
            "uq_recurring_payments_open_attempt",
            "subscription_id",
            unique=True,
            sqlite_where=text("status IN ('scheduled', 'processing')"),
            postgresql_where=text("status IN ('scheduled', 'processing')"),
        ),
    )

    @property
    def idempotency_key(self) -> str:
        """Provider idempotency key; stable for the lifetime of this attempt."""
        return f"recurring-payment-{self.id}"


class Campaign(TimestampMixin, Base):
    """SQLAlchemy table for recurring donation campaigns."""

    __tablename__ = "recurring_donation_campaigns"

    id: Mapped[str] = mapped_column(String(50), primary_key=True, default=generate_campaign_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    campaign_type: Mapped[CampaignType] = mapped_column(
        _enum_column(CampaignType), nullable=False, default=CampaignType.GENERAL
    )
    status: Mapped[CampaignStatus] = mapped_column(
        _enum_column(CampaignStatus), nullable=False, default=CampaignStatus.DRAFT
    )

    target_amount: Mapped[Decimal | None] = mapped_column(Numeric(15, 2), nullable=True)
    raised_amount: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False, default=Decimal("0")
    )
    subscriber_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active_subscriber_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Suggested amounts are stored as strings to keep Decimal precision in JSON
    suggested_amounts: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    default_amount: Mapped[Decimal | None] = mapped_column(Numeric(15, 2), nullable=True)
    default_frequency: Mapped[Frequency | None] = mapped_column(
        _enum_column(Frequency), nullable=True
    )

    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)


class ChangeRequest(Base):
    """SQLAlchemy table for donor-initiated plan change requests."""

    __tablename__ = "subscription_change_requests"

    id: Mapped[str] = mapped_column(
        String(50), primary_key=True, default=generate_change_request_id
    )
    subscription_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("recurring_donations.id"), nullable=False, index=True
    )

    change_type: Mapped[ChangeType] = mapped_column(_enum_column(ChangeType), nullable=False)
    old_value: Mapped[Any] = mapped_column(JSON, nullable=True)
    new_value: Mapped[Any] = mapped_column(JSON, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    requested_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    effective_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    requires_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    approved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[ChangeRequestStatus] = mapped_column(
        _enum_column(ChangeRequestStatus), nullable=False, default=ChangeRequestStatus.PENDING
    )

    donor_notified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notification_sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)


__all__ = [
    "Frequency",
    "SubscriptionStatus",
    "PaymentStatus",
    "PaymentMethod",
    "CampaignType",
    "CampaignStatus",
    "ChangeType",
    "ChangeRequestStatus",
    "SUBSCRIPTION_TRANSITIONS",
    "PAYMENT_TRANSITIONS",
    "OPEN_PAYMENT_STATUSES",
    "can_transition",
    "RecurringDonation",
    "ScheduledPayment",
    "Campaign",
    "ChangeRequest",
]
