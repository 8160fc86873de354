"""
Recurring donation request and response schemas.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from charity.platform.donations.recurring.models import (
    CampaignStatus,
    CampaignType,
    ChangeRequestStatus,
    ChangeType,
    Frequency,
    PaymentMethod,
    PaymentStatus,
    SubscriptionStatus,
)


class DonationBaseModel(BaseModel):
    """Base schema for recurring donation payloads."""

    model_config = ConfigDict(
        from_attributes=True,
        str_strip_whitespace=True,
        validate_assignment=True,
    )


# ============================================================================
# Subscriptions
# ============================================================================


class SubscriptionCreateRequest(DonationBaseModel):
    """Request to create a recurring donation plan."""

    donor_id: str = Field(min_length=1, max_length=50)
    subscription_name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    amount: Decimal = Field(description="Amount charged every cycle")
    currency: str | None = Field(None, min_length=3, max_length=3)
    frequency: Frequency
    interval_count: int = Field(1, description="Every N periods, e.g. monthly + 2")
    start_date: date
    end_date: date | None = None
    payment_method: PaymentMethod = PaymentMethod.CREDIT_CARD
    payment_reference: str = Field(min_length=1, max_length=255)
    max_retries: int | None = None
    send_receipts: bool = True
    send_reminders: bool = False
    reminder_days_before: int = Field(3, ge=0)
    campaign_id: str | None = None
    created_by: str | None = None


class SubscriptionUpdateRequest(DonationBaseModel):
    """Partial update of a recurring donation plan. Unset fields are left unchanged."""

    subscription_name: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = None
    amount: Decimal | None = None
    frequency: Frequency | None = None
    interval_count: int | None = None
    end_date: date | None = None
    payment_method: PaymentMethod | None = None
    payment_reference: str | None = Field(None, min_length=1, max_length=255)
    send_receipts: bool | None = None
    send_reminders: bool | None = None
    reminder_days_before: int | None = Field(None, ge=0)
    campaign_id: str | None = None


class SubscriptionFilters(DonationBaseModel):
    """Search filters for recurring donation plans."""

    status: list[SubscriptionStatus] | None = None
    frequency: list[Frequency] | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    campaign_id: str | None = None
    payment_method: list[PaymentMethod] | None = None
    search_query: str | None = None


class PauseRequest(DonationBaseModel):
    reason: str | None = None


class CancelRequest(DonationBaseModel):
    reason: str | None = None


class SubscriptionResponse(DonationBaseModel):
    """Recurring donation plan as returned by the API."""

    id: str
    donor_id: str
    subscription_name: str
    description: str | None
    amount: Decimal
    currency: str
    frequency: Frequency
    interval_count: int
    start_date: date
    end_date: date | None
    next_process_date: date
    payment_method: PaymentMethod
    status: SubscriptionStatus
    pause_reason: str | None
    cancellation_reason: str | None
    retry_count: int
    max_retries: int
    total_collected: Decimal
    successful_payments: int
    failed_payments: int
    last_payment_date: date | None
    last_payment_amount: Decimal | None
    last_failure_date: date | None
    last_failure_reason: str | None
    send_receipts: bool
    send_reminders: bool
    campaign_id: str | None
    created_at: datetime
    updated_at: datetime


class SubscriptionListResponse(DonationBaseModel):
    items: list[SubscriptionResponse]
    total_count: int
    page: int
    page_size: int


class ScheduledPaymentResponse(DonationBaseModel):
    """Single payment attempt as returned by the API."""

    id: str
    subscription_id: str
    amount: Decimal
    currency: str
    base_amount: Decimal
    scheduled_date: date
    attempt_number: int
    status: PaymentStatus
    processed_date: datetime | None
    provider_transaction_id: str | None
    failure_reason: str | None
    receipt_generated: bool
    receipt_sent: bool


# ============================================================================
# Campaigns
# ============================================================================


class CampaignCreateRequest(DonationBaseModel):
    """Request to create a recurring donation campaign."""

    name: str = Field(min_length=1, max_length=255)
    description: str = ""
    campaign_type: CampaignType = CampaignType.GENERAL
    status: CampaignStatus = CampaignStatus.DRAFT
    target_amount: Decimal | None = Field(None, gt=0)
    suggested_amounts: list[Decimal] = Field(default_factory=list)
    default_amount: Decimal | None = Field(None, gt=0)
    default_frequency: Frequency | None = None
    start_date: date
    end_date: date | None = None
    created_by: str | None = None


class CampaignResponse(DonationBaseModel):
    id: str
    name: str
    description: str
    campaign_type: CampaignType
    status: CampaignStatus
    target_amount: Decimal | None
    raised_amount: Decimal
    subscriber_count: int
    active_subscriber_count: int
    suggested_amounts: list[Decimal]
    default_amount: Decimal | None
    default_frequency: Frequency | None
    start_date: date
    end_date: date | None


# ============================================================================
# Change requests
# ============================================================================


class ChangeRequestCreate(DonationBaseModel):
    """Donor-initiated change to a plan."""

    subscription_id: str
    change_type: ChangeType
    new_value: Any = None
    reason: str | None = None
    created_by: str | None = None


class ChangeRequestDecision(DonationBaseModel):
    decided_by: str = Field(min_length=1)
    reason: str | None = None


class ChangeRequestResponse(DonationBaseModel):
    id: str
    subscription_id: str
    change_type: ChangeType
    old_value: Any
    new_value: Any
    reason: str | None
    requested_date: datetime
    effective_date: datetime
    requires_approval: bool
    status: ChangeRequestStatus
    approved_by: str | None
    approved_at: datetime | None
    rejection_reason: str | None
    donor_notified: bool


# ============================================================================
# Dashboard
# ============================================================================


class RecentSubscription(DonationBaseModel):
    id: str
    donor_id: str
    amount: Decimal
    frequency: Frequency
    start_date: date


class RecentPayment(DonationBaseModel):
    id: str
    subscription_id: str
    amount: Decimal
    status: PaymentStatus
    processed_date: datetime | None


class RecentFailure(DonationBaseModel):
    id: str
    subscription_id: str
    amount: Decimal
    reason: str | None
    failed_date: datetime | None


class FailureReasonCount(DonationBaseModel):
    reason: str
    count: int
    percentage: float


class DashboardAlert(DonationBaseModel):
    type: str
    message: str
    severity: str
    count: int
    action_required: bool


class DashboardResponse(DonationBaseModel):
    """Operational rollup of the recurring donation book."""

    total_mrr: Decimal
    total_arr: Decimal
    active_subscriptions: int
    new_this_month: int
    churn_this_month: int
    net_growth: int
    average_amount: Decimal
    payment_success_rate: float
    upcoming_payments: int
    overdue_payments: int
    frequency_distribution: dict[str, int]
    failure_reasons: list[FailureReasonCount]
    recent_subscriptions: list[RecentSubscription]
    recent_payments: list[RecentPayment]
    recent_failures: list[RecentFailure]
    alerts: list[DashboardAlert]
    calculated_at: datetime


class ProcessingSummary(DonationBaseModel):
    """Outcome counts of one processing tick or reconciliation sweep."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0
    payment_ids: list[str] = Field(default_factory=list)
