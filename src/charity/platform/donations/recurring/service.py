"""
Recurring donation plan management.

Creates plans and drives the pause/resume/cancel lifecycle. Every public
method commits its own unit of work; store failures surface as
``PersistenceError`` after the session is rolled back.
"""

from datetime import date
from decimal import Decimal
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from charity.platform.donations.config import (
    RecurringDonationConfig,
    ResumeAnchor,
    get_donation_config,
)
from charity.platform.donations.exceptions import (
    DonationError,
    InvalidStateError,
    PersistenceError,
    SubscriptionNotFoundError,
    ValidationError,
)
from charity.platform.donations.recurring.models import (
    Campaign,
    RecurringDonation,
    ScheduledPayment,
    SubscriptionStatus,
    can_transition,
    generate_subscription_id,
)
from charity.platform.donations.recurring.scheduling import (
    Clock,
    PaymentScheduler,
    advance_to,
    compute_next_date,
    utc_now,
)
from charity.platform.donations.recurring.schemas import (
    SubscriptionCreateRequest,
    SubscriptionFilters,
    SubscriptionUpdateRequest,
)
from charity.platform.logging import log_audit_event

logger = structlog.get_logger(__name__)

# Fields whose change invalidates the pending attempt
RESCHEDULE_FIELDS = frozenset({"amount", "frequency", "interval_count"})

# Update fields that may be cleared with an explicit null
NULLABLE_FIELDS = frozenset({"description", "end_date", "campaign_id"})


def _first_error_field(error: PydanticValidationError) -> str | None:
    errors = error.errors()
    if errors and errors[0].get("loc"):
        return ".".join(str(part) for part in errors[0]["loc"])
    return None


class SubscriptionManager:
    """Lifecycle operations on recurring donation plans."""

    def __init__(
        self,
        db: AsyncSession,
        config: RecurringDonationConfig | None = None,
        scheduler: PaymentScheduler | None = None,
        clock: Clock | None = None,
    ):
        self.db = db
        self.config = config or get_donation_config()
        self._clock = clock or utc_now
        self.scheduler = scheduler or PaymentScheduler(db, clock=self._clock)

    def today(self) -> date:
        return self._clock().date()

    # ==================== Create / Read ====================

    async def create(
        self, request: SubscriptionCreateRequest | dict[str, Any]
    ) -> RecurringDonation:
        """
        Create a plan and schedule its first payment on the start date.

        Args:
            request: Plan details, either the schema or a plain mapping

        Returns:
            The persisted plan with ``next_process_date`` already advanced
            past the first scheduled attempt

        Raises:
            ValidationError: Invalid amount, frequency, interval or dates
        """
        if isinstance(request, dict):
            try:
                request = SubscriptionCreateRequest.model_validate(request)
            except PydanticValidationError as e:
                raise ValidationError(
                    "Invalid recurring donation request", field=_first_error_field(e)
                ) from e

        self._validate_terms(
            amount=request.amount,
            interval_count=request.interval_count,
            start_date=request.start_date,
            end_date=request.end_date,
        )
        max_retries = (
            self.config.max_retries if request.max_retries is None else request.max_retries
        )
        if max_retries < 1:
            raise ValidationError("max_retries must be at least 1", field="max_retries")

        if request.campaign_id is not None:
            await self._ensure_campaign(request.campaign_id)

        subscription = RecurringDonation(
            id=generate_subscription_id(),
            donor_id=request.donor_id,
            subscription_name=request.subscription_name,
            description=request.description,
            amount=request.amount,
            currency=(request.currency or self.config.default_currency).upper(),
            frequency=request.frequency,
            interval_count=request.interval_count,
            start_date=request.start_date,
            end_date=request.end_date,
            next_process_date=request.start_date,
            payment_method=request.payment_method,
            payment_reference=request.payment_reference,
            status=SubscriptionStatus.ACTIVE,
            retry_count=0,
            max_retries=max_retries,
            total_collected=Decimal("0"),
            successful_payments=0,
            failed_payments=0,
            send_receipts=request.send_receipts,
            send_reminders=request.send_reminders,
            reminder_days_before=request.reminder_days_before,
            campaign_id=request.campaign_id,
            created_by=request.created_by,
            created_at=self._clock(),
        )

        try:
            self.db.add(subscription)
            await self.db.flush()
            await self.scheduler.schedule_next(subscription.id)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self._rollback_and_raise(e, "create", subscription_id=subscription.id)
        except DonationError:
            await self.db.rollback()
            raise

        logger.info(
            "recurring.subscription.created",
            subscription_id=subscription.id,
            donor_id=subscription.donor_id,
            amount=str(subscription.amount),
            frequency=subscription.frequency.value,
        )
        log_audit_event(
            "recurring_donation.created",
            resource_type="recurring_donation",
            resource_id=subscription.id,
            user_id=request.created_by,
        )
        return subscription

    async def get(self, subscription_id: str) -> RecurringDonation:
        """Fetch a plan by id, reading through to the store."""
        try:
            subscription = await self.db.get(
                RecurringDonation, subscription_id, populate_existing=True
            )
        except SQLAlchemyError as e:
            await self._rollback_and_raise(e, "get", subscription_id=subscription_id)

        if subscription is None:
            raise SubscriptionNotFoundError(
                f"Recurring donation {subscription_id} not found",
                subscription_id=subscription_id,
            )
        return subscription

    async def search(
        self,
        filters: SubscriptionFilters | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[RecurringDonation], int]:
        """
        Search plans with filters and pagination, newest first.

        Returns:
            Tuple of (plans on the requested page, total matching count)
        """
        if page < 1 or page_size < 1:
            raise ValidationError("page and page_size must be positive", field="page")

        filters = filters or SubscriptionFilters()
        conditions = []
        if filters.status:
            conditions.append(RecurringDonation.status.in_(filters.status))
        if filters.frequency:
            conditions.append(RecurringDonation.frequency.in_(filters.frequency))
        if filters.min_amount is not None:
            conditions.append(RecurringDonation.amount >= filters.min_amount)
        if filters.max_amount is not None:
            conditions.append(RecurringDonation.amount <= filters.max_amount)
        if filters.created_from is not None:
            conditions.append(RecurringDonation.created_at >= filters.created_from)
        if filters.created_to is not None:
            conditions.append(RecurringDonation.created_at <= filters.created_to)
        if filters.campaign_id:
            conditions.append(RecurringDonation.campaign_id == filters.campaign_id)
        if filters.payment_method:
            conditions.append(RecurringDonation.payment_method.in_(filters.payment_method))
        if filters.search_query:
            pattern = f"%{filters.search_query}%"
            conditions.append(
                or_(
                    RecurringDonation.subscription_name.ilike(pattern),
                    RecurringDonation.donor_id.ilike(pattern),
                )
            )

        count_stmt = select(func.count()).select_from(RecurringDonation).where(*conditions)
        stmt = (
            select(RecurringDonation)
            .where(*conditions)
            .order_by(RecurringDonation.created_at.desc(), RecurringDonation.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        try:
            total = (await self.db.execute(count_stmt)).scalar_one()
            items = list((await self.db.execute(stmt)).scalars().all())
        except SQLAlchemyError as e:
            await self._rollback_and_raise(e, "search")
        return items, total

    async def list_payments(self, subscription_id: str) -> list[ScheduledPayment]:
        """All payment attempts of a plan, newest first."""
        await self.get(subscription_id)
        stmt = (
            select(ScheduledPayment)
            .where(ScheduledPayment.subscription_id == subscription_id)
            .order_by(ScheduledPayment.scheduled_date.desc(), ScheduledPayment.created_at.desc())
        )
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            await self._rollback_and_raise(e, "list_payments", subscription_id=subscription_id)
        return list(result.scalars().all())

    # ==================== Update ====================

    async def update(
        self,
        subscription_id: str,
        changes: SubscriptionUpdateRequest | dict[str, Any],
        updated_by: str | None = None,
    ) -> RecurringDonation:
        """
        Apply a partial update.

        A change to amount, frequency or interval withdraws the pending attempt
        and schedules a new one on the new terms. When the withdrawn attempt was
        the first attempt of its cycle, the cycle date is kept.
        """
        if isinstance(changes, dict):
            try:
                changes = SubscriptionUpdateRequest.model_validate(changes)
            except PydanticValidationError as e:
                raise ValidationError(
                    "Invalid recurring donation update", field=_first_error_field(e)
                ) from e

        subscription = await self.get(subscription_id)
        if subscription.status in (
            SubscriptionStatus.CANCELLED,
            SubscriptionStatus.COMPLETED,
            SubscriptionStatus.FAILED,
        ):
            raise InvalidStateError(
                f"Recurring donation {subscription_id} is {subscription.status.value} and cannot be updated",
                current_state=subscription.status.value,
                requested_state="updated",
                context={"subscription_id": subscription_id},
            )

        values = changes.model_dump(exclude_unset=True)
        for field, value in values.items():
            if value is None and field not in NULLABLE_FIELDS:
                raise ValidationError(f"{field} cannot be null", field=field)
        self._validate_terms(
            amount=values.get("amount", subscription.amount),
            interval_count=values.get("interval_count", subscription.interval_count),
            start_date=subscription.start_date,
            end_date=values.get("end_date", subscription.end_date),
        )
        if "campaign_id" in values and values["campaign_id"] is not None:
            await self._ensure_campaign(values["campaign_id"])

        changed = {
            field: value for field, value in values.items() if getattr(subscription, field) != value
        }
        if not changed:
            return subscription

        try:
            for field, value in changed.items():
                setattr(subscription, field, value)

            if RESCHEDULE_FIELDS & changed.keys():
                withdrawn = await self.scheduler.cancel_pending(subscription_id)
                first_attempts = [p for p in withdrawn if p.attempt_number == 1]
                if first_attempts:
                    subscription.next_process_date = min(p.scheduled_date for p in first_attempts)
                await self.db.flush()
                await self.scheduler.schedule_next(subscription_id)

            await self.db.commit()
        except SQLAlchemyError as e:
            await self._rollback_and_raise(e, "update", subscription_id=subscription_id)
        except DonationError:
            await self.db.rollback()
            raise

        logger.info(
            "recurring.subscription.updated",
            subscription_id=subscription_id,
            fields=sorted(changed),
        )
        log_audit_event(
            "recurring_donation.updated",
            resource_type="recurring_donation",
            resource_id=subscription_id,
            user_id=updated_by,
            fields=sorted(changed),
        )
        return subscription

    # ==================== Lifecycle ====================

    async def pause(
        self, subscription_id: str, reason: str | None = None, paused_by: str | None = None
    ) -> RecurringDonation:
        """Pause an active plan and withdraw its pending attempt."""
        subscription = await self.get(subscription_id)
        self._require_transition(subscription, SubscriptionStatus.PAUSED)

        try:
            subscription.status = SubscriptionStatus.PAUSED
            subscription.pause_reason = reason
            await self.scheduler.cancel_pending(subscription_id)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self._rollback_and_raise(e, "pause", subscription_id=subscription_id)

        logger.info("recurring.subscription.paused", subscription_id=subscription_id, reason=reason)
        log_audit_event(
            "recurring_donation.paused",
            resource_type="recurring_donation",
            resource_id=subscription_id,
            user_id=paused_by,
            reason=reason,
        )
        return subscription

    async def resume(self, subscription_id: str, resumed_by: str | None = None) -> RecurringDonation:
        """
        Resume a paused plan.

        With the default ``resume_date`` anchor the next cycle is one period
        after today. With ``original_cycle`` the pre-pause cycle is stepped
        forward to the first date on or after today.
        """
        subscription = await self.get(subscription_id)
        self._require_transition(subscription, SubscriptionStatus.ACTIVE)

        today = self.today()
        if self.config.resume_anchor == ResumeAnchor.ORIGINAL_CYCLE:
            next_date = advance_to(
                subscription.next_process_date,
                today,
                subscription.frequency,
                subscription.interval_count,
            )
        else:
            next_date = compute_next_date(
                today, subscription.frequency, subscription.interval_count
            )

        try:
            subscription.status = SubscriptionStatus.ACTIVE
            subscription.pause_reason = None
            subscription.retry_count = 0
            subscription.next_process_date = next_date
            await self.db.flush()
            await self.scheduler.schedule_next(subscription_id)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self._rollback_and_raise(e, "resume", subscription_id=subscription_id)
        except DonationError:
            await self.db.rollback()
            raise

        logger.info(
            "recurring.subscription.resumed",
            subscription_id=subscription_id,
            anchor=self.config.resume_anchor.value,
            next_payment_date=next_date.isoformat(),
        )
        log_audit_event(
            "recurring_donation.resumed",
            resource_type="recurring_donation",
            resource_id=subscription_id,
            user_id=resumed_by,
        )
        return subscription

    async def cancel(
        self,
        subscription_id: str,
        reason: str | None = None,
        cancelled_by: str | None = None,
    ) -> RecurringDonation:
        """Cancel a plan for good and withdraw its pending attempt."""
        subscription = await self.get(subscription_id)
        self._require_transition(subscription, SubscriptionStatus.CANCELLED)

        try:
            subscription.status = SubscriptionStatus.CANCELLED
            subscription.cancellation_reason = reason
            subscription.cancelled_at = self._clock()
            await self.scheduler.cancel_pending(subscription_id)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self._rollback_and_raise(e, "cancel", subscription_id=subscription_id)

        logger.info(
            "recurring.subscription.cancelled", subscription_id=subscription_id, reason=reason
        )
        log_audit_event(
            "recurring_donation.cancelled",
            resource_type="recurring_donation",
            resource_id=subscription_id,
            user_id=cancelled_by,
            reason=reason,
        )
        return subscription

    # ==================== Helpers ====================

    def _validate_terms(
        self,
        amount: Decimal,
        interval_count: int,
        start_date: date | None,
        end_date: date | None,
    ) -> None:
        if amount is None or amount <= 0:
            raise ValidationError("Amount must be greater than zero", field="amount")
        if interval_count is None or interval_count < 1:
            raise ValidationError("interval_count must be at least 1", field="interval_count")
        if start_date is None:
            raise ValidationError("start_date is required", field="start_date")
        if end_date is not None and end_date < start_date:
            raise ValidationError("end_date must not be before start_date", field="end_date")

    def _require_transition(
        self, subscription: RecurringDonation, target: SubscriptionStatus
    ) -> None:
        if not can_transition(subscription.status, target):
            raise InvalidStateError(
                f"Cannot move recurring donation {subscription.id} from "
                f"{subscription.status.value} to {target.value}",
                current_state=subscription.status.value,
                requested_state=target.value,
                context={"subscription_id": subscription.id},
            )

    async def _ensure_campaign(self, campaign_id: str) -> None:
        if await self.db.get(Campaign, campaign_id) is None:
            raise ValidationError(f"Campaign {campaign_id} does not exist", field="campaign_id")

    async def _rollback_and_raise(
        self, error: SQLAlchemyError, operation: str, **context: Any
    ) -> None:
        await self.db.rollback()
        logger.error(
            "recurring.subscription.persistence_failed",
            operation=operation,
            error=str(error),
            **context,
        )
        raise PersistenceError(
            f"Could not {operation} recurring donation", operation=operation, context=context
        ) from error
