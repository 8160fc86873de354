"""
Recurring donation analytics and campaign rollups.
"""

from datetime import UTC, date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import structlog
from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from charity.platform.donations.config import RecurringDonationConfig, get_donation_config
from charity.platform.donations.exceptions import (
    CampaignNotFoundError,
    PersistenceError,
    ValidationError,
)
from charity.platform.donations.recurring.models import (
    Campaign,
    Frequency,
    PaymentStatus,
    RecurringDonation,
    ScheduledPayment,
    SubscriptionStatus,
    generate_campaign_id,
)
from charity.platform.donations.recurring.scheduling import Clock, utc_now
from charity.platform.donations.recurring.schemas import (
    CampaignCreateRequest,
    DashboardAlert,
    DashboardResponse,
    FailureReasonCount,
    RecentFailure,
    RecentPayment,
    RecentSubscription,
)
from charity.platform.logging import log_audit_event

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")

# Multipliers normalizing one cycle's amount to a monthly figure
WEEKS_PER_MONTH = Decimal("4.33")
MONTHS_PER_QUARTER = Decimal("3")
MONTHS_PER_YEAR = Decimal("12")

RECENT_FEED_SIZE = 10
TOP_FAILURE_REASONS = 5
FAILURE_ALERT_WINDOW_DAYS = 7
FAILURE_ALERT_HIGH_COUNT = 10
ENDING_ALERT_WINDOW_DAYS = 30


def _monthly_unrounded(amount: Decimal, frequency: Frequency) -> Decimal:
    if frequency == Frequency.WEEKLY:
        return amount * WEEKS_PER_MONTH
    if frequency == Frequency.MONTHLY:
        return amount
    if frequency == Frequency.QUARTERLY:
        return amount / MONTHS_PER_QUARTER
    if frequency == Frequency.ANNUALLY:
        return amount / MONTHS_PER_YEAR
    raise ValidationError(f"Unknown frequency: {frequency}", field="frequency")


def monthly_equivalent(amount: Decimal, frequency: Frequency) -> Decimal:
    """
    Normalize a per-cycle amount to a monthly amount, rounded to cents.

    Weekly amounts use 4.33 weeks per month; quarterly and annual amounts are
    divided by 3 and 12.
    """
    return _monthly_unrounded(Decimal(amount), frequency).quantize(CENTS, rounding=ROUND_HALF_UP)


def _month_bounds(today: date) -> tuple[datetime, datetime]:
    start = datetime(today.year, today.month, 1, tzinfo=UTC)
    if today.month == 12:
        end = datetime(today.year + 1, 1, 1, tzinfo=UTC)
    else:
        end = datetime(today.year, today.month + 1, 1, tzinfo=UTC)
    return start, end


class CampaignAggregator:
    """Dashboard metrics over the recurring donation book and campaign rollups."""

    def __init__(
        self,
        db: AsyncSession,
        config: RecurringDonationConfig | None = None,
        clock: Clock | None = None,
    ):
        self.db = db
        self.config = config or get_donation_config()
        self._clock = clock or utc_now

    async def compute_dashboard(self, today: date | None = None) -> DashboardResponse:
        """Compute the recurring donation dashboard as of ``today``."""
        now = self._clock()
        today = today or now.date()
        month_start, month_end = _month_bounds(today)

        # Active book grouped by frequency
        active_rows = (
            await self.db.execute(
                select(
                    RecurringDonation.frequency,
                    func.count(RecurringDonation.id),
                    func.coalesce(func.sum(RecurringDonation.amount), 0),
                )
                .where(RecurringDonation.status == SubscriptionStatus.ACTIVE)
                .group_by(RecurringDonation.frequency)
            )
        ).all()

        frequency_distribution = {frequency.value: 0 for frequency in Frequency}
        active_count = 0
        active_total = Decimal("0")
        mrr = Decimal("0")
        for frequency, count, total in active_rows:
            total = Decimal(str(total))
            frequency_distribution[frequency.value] = count
            active_count += count
            active_total += total
            mrr += _monthly_unrounded(total, frequency)

        total_mrr = mrr.quantize(CENTS, rounding=ROUND_HALF_UP)
        total_arr = (total_mrr * MONTHS_PER_YEAR).quantize(CENTS, rounding=ROUND_HALF_UP)
        average_amount = (
            (active_total / active_count).quantize(CENTS, rounding=ROUND_HALF_UP)
            if active_count
            else Decimal("0.00")
        )

        new_this_month = await self._count(
            select(func.count(RecurringDonation.id)).where(
                RecurringDonation.created_at >= month_start,
                RecurringDonation.created_at < month_end,
            )
        )
        churn_this_month = await self._count(
            select(func.count(RecurringDonation.id)).where(
                RecurringDonation.status == SubscriptionStatus.CANCELLED,
                RecurringDonation.cancelled_at >= month_start,
                RecurringDonation.cancelled_at < month_end,
            )
        )

        completed, failed = (
            await self.db.execute(
                select(
                    func.coalesce(
                        func.sum(case((ScheduledPayment.status == PaymentStatus.COMPLETED, 1), else_=0)),
                        0,
                    ),
                    func.coalesce(
                        func.sum(case((ScheduledPayment.status == PaymentStatus.FAILED, 1), else_=0)),
                        0,
                    ),
                )
            )
        ).one()
        settled = completed + failed
        success_rate = round(completed / settled * 100, 2) if settled else 0.0

        upcoming = await self._count(
            select(func.count(ScheduledPayment.id)).where(
                ScheduledPayment.status == PaymentStatus.SCHEDULED,
                ScheduledPayment.scheduled_date > today,
            )
        )
        overdue = await self._count(
            select(func.count(ScheduledPayment.id)).where(
                ScheduledPayment.status == PaymentStatus.SCHEDULED,
                ScheduledPayment.scheduled_date < today,
            )
        )

        failure_reasons = await self._failure_reasons(failed)
        recent_subscriptions, recent_payments, recent_failures = await self._recent_feeds()
        alerts = await self._alerts(now, today, new_this_month, churn_this_month)

        logger.debug(
            "recurring.dashboard.computed",
            active=active_count,
            mrr=str(total_mrr),
            alerts=len(alerts),
        )
        return DashboardResponse(
            total_mrr=total_mrr,
            total_arr=total_arr,
            active_subscriptions=active_count,
            new_this_month=new_this_month,
            churn_this_month=churn_this_month,
            net_growth=new_this_month - churn_this_month,
            average_amount=average_amount,
            payment_success_rate=success_rate,
            upcoming_payments=upcoming,
            overdue_payments=overdue,
            frequency_distribution=frequency_distribution,
            failure_reasons=failure_reasons,
            recent_subscriptions=recent_subscriptions,
            recent_payments=recent_payments,
            recent_failures=recent_failures,
            alerts=alerts,
            calculated_at=now,
        )

    # ==================== Campaigns ====================

    async def create_campaign(
        self, request: CampaignCreateRequest | dict[str, Any]
    ) -> Campaign:
        if isinstance(request, dict):
            request = CampaignCreateRequest.model_validate(request)
        if request.end_date is not None and request.end_date < request.start_date:
            raise ValidationError("end_date must not be before start_date", field="end_date")

        campaign = Campaign(
            id=generate_campaign_id(),
            name=request.name,
            description=request.description,
            campaign_type=request.campaign_type,
            status=request.status,
            target_amount=request.target_amount,
            raised_amount=Decimal("0"),
            subscriber_count=0,
            active_subscriber_count=0,
            suggested_amounts=[str(amount) for amount in request.suggested_amounts],
            default_amount=request.default_amount,
            default_frequency=request.default_frequency,
            start_date=request.start_date,
            end_date=request.end_date,
            created_by=request.created_by,
        )
        try:
            self.db.add(campaign)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError("Could not create campaign", operation="create_campaign") from e

        logger.info("recurring.campaign.created", campaign_id=campaign.id, name=campaign.name)
        log_audit_event(
            "recurring_campaign.created",
            resource_type="recurring_campaign",
            resource_id=campaign.id,
            user_id=request.created_by,
        )
        return campaign

    async def list_campaigns(self) -> list[Campaign]:
        result = await self.db.execute(
            select(Campaign).order_by(Campaign.start_date.desc(), Campaign.name)
        )
        return list(result.scalars().all())

    async def refresh_campaign_rollups(self, campaign_id: str) -> Campaign:
        """Recompute raised amount and subscriber counts from the campaign's plans."""
        campaign = await self.db.get(Campaign, campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(
                f"Campaign {campaign_id} not found", campaign_id=campaign_id
            )

        raised, subscribers, active = (
            await self.db.execute(
                select(
                    func.coalesce(func.sum(RecurringDonation.total_collected), 0),
                    func.count(RecurringDonation.id),
                    func.coalesce(
                        func.sum(
                            case((RecurringDonation.status == SubscriptionStatus.ACTIVE, 1), else_=0)
                        ),
                        0,
                    ),
                ).where(RecurringDonation.campaign_id == campaign_id)
            )
        ).one()

        campaign.raised_amount = Decimal(str(raised))
        campaign.subscriber_count = subscribers
        campaign.active_subscriber_count = active
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(
                "Could not refresh campaign rollups",
                operation="refresh_campaign_rollups",
                context={"campaign_id": campaign_id},
            ) from e

        logger.info(
            "recurring.campaign.rollups_refreshed",
            campaign_id=campaign_id,
            raised_amount=str(campaign.raised_amount),
            subscriber_count=subscribers,
        )
        return campaign

    # ==================== Helpers ====================

    async def _count(self, stmt: Any) -> int:
        return (await self.db.execute(stmt)).scalar_one()

    async def _failure_reasons(self, failed_total: int) -> list[FailureReasonCount]:
        if not failed_total:
            return []
        rows = (
            await self.db.execute(
                select(ScheduledPayment.failure_reason, func.count(ScheduledPayment.id).label("n"))
                .where(ScheduledPayment.status == PaymentStatus.FAILED)
                .group_by(ScheduledPayment.failure_reason)
                .order_by(func.count(ScheduledPayment.id).desc())
                .limit(TOP_FAILURE_REASONS)
            )
        ).all()
        return [
            FailureReasonCount(
                reason=reason or "Unknown",
                count=count,
                percentage=round(count / failed_total * 100, 2),
            )
            for reason, count in rows
        ]

    async def _recent_feeds(
        self,
    ) -> tuple[list[RecentSubscription], list[RecentPayment], list[RecentFailure]]:
        subscriptions = (
            await self.db.execute(
                select(RecurringDonation)
                .order_by(RecurringDonation.created_at.desc())
                .limit(RECENT_FEED_SIZE)
            )
        ).scalars().all()
        payments = (
            await self.db.execute(
                select(ScheduledPayment)
                .where(ScheduledPayment.status == PaymentStatus.COMPLETED)
                .order_by(ScheduledPayment.processed_date.desc())
                .limit(RECENT_FEED_SIZE)
            )
        ).scalars().all()
        failures = (
            await self.db.execute(
                select(ScheduledPayment)
                .where(ScheduledPayment.status == PaymentStatus.FAILED)
                .order_by(ScheduledPayment.processed_date.desc())
                .limit(RECENT_FEED_SIZE)
            )
        ).scalars().all()

        return (
            [RecentSubscription.model_validate(s) for s in subscriptions],
            [RecentPayment.model_validate(p) for p in payments],
            [
                RecentFailure(
                    id=p.id,
                    subscription_id=p.subscription_id,
                    amount=p.amount,
                    reason=p.failure_reason,
                    failed_date=p.processed_date,
                )
                for p in failures
            ],
        )

    async def _alerts(
        self, now: datetime, today: date, new_this_month: int, churn_this_month: int
    ) -> list[DashboardAlert]:
        alerts: list[DashboardAlert] = []

        recent_failures = await self._count(
            select(func.count(ScheduledPayment.id)).where(
                ScheduledPayment.status == PaymentStatus.FAILED,
                ScheduledPayment.processed_date >= now - timedelta(days=FAILURE_ALERT_WINDOW_DAYS),
            )
        )
        if recent_failures:
            alerts.append(
                DashboardAlert(
                    type="payment_failure",
                    message=f"{recent_failures} payments failed in the last {FAILURE_ALERT_WINDOW_DAYS} days",
                    severity="high" if recent_failures >= FAILURE_ALERT_HIGH_COUNT else "medium",
                    count=recent_failures,
                    action_required=True,
                )
            )

        stuck = await self._count(
            select(func.count(ScheduledPayment.id)).where(
                ScheduledPayment.status == PaymentStatus.PROCESSING,
                ScheduledPayment.processing_started_at
                < now - timedelta(minutes=self.config.processing_timeout_minutes),
            )
        )
        if stuck:
            alerts.append(
                DashboardAlert(
                    type="processing_issue",
                    message=f"{stuck} payments are stuck in processing",
                    severity="critical",
                    count=stuck,
                    action_required=True,
                )
            )

        if churn_this_month and churn_this_month > new_this_month:
            alerts.append(
                DashboardAlert(
                    type="high_churn",
                    message=f"{churn_this_month} cancellations against {new_this_month} new plans this month",
                    severity="high",
                    count=churn_this_month,
                    action_required=True,
                )
            )

        ending = await self._count(
            select(func.count(RecurringDonation.id)).where(
                RecurringDonation.status == SubscriptionStatus.ACTIVE,
                RecurringDonation.end_date.is_not(None),
                RecurringDonation.end_date >= today,
                RecurringDonation.end_date <= today + timedelta(days=ENDING_ALERT_WINDOW_DAYS),
            )
        )
        if ending:
            alerts.append(
                DashboardAlert(
                    type="subscription_ending",
                    message=f"{ending} plans end within {ENDING_ALERT_WINDOW_DAYS} days",
                    severity="low",
                    count=ending,
                    action_required=False,
                )
            )
        return alerts
