"""
Billing date arithmetic and payment attempt materialization.

``compute_next_date`` is pure. ``PaymentScheduler`` works inside the caller's
transaction: it flushes but never commits.
"""

from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import structlog
from dateutil.relativedelta import relativedelta
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from charity.platform.donations.exceptions import (
    ConcurrencyConflictError,
    SubscriptionNotFoundError,
    ValidationError,
)
from charity.platform.donations.recurring.models import (
    OPEN_PAYMENT_STATUSES,
    Frequency,
    PaymentStatus,
    RecurringDonation,
    ScheduledPayment,
    SubscriptionStatus,
    generate_payment_id,
)

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


def compute_next_date(current: date, frequency: Frequency, interval_count: int = 1) -> date:
    """
    Return the billing date one cycle after ``current``.

    Month and year steps clamp to the last valid day of the target month
    (Jan 31 + 1 month is Feb 28 or 29, Feb 29 + 1 year is Feb 28). The clamp
    applies to the date passed in, so a series anchored on the 31st stays on
    the clamped day once it has been clamped.
    """
    if interval_count < 1:
        raise ValidationError("interval_count must be at least 1", field="interval_count")

    if frequency == Frequency.WEEKLY:
        return current + timedelta(days=7 * interval_count)
    if frequency == Frequency.MONTHLY:
        return current + relativedelta(months=interval_count)
    if frequency == Frequency.QUARTERLY:
        return current + relativedelta(months=3 * interval_count)
    if frequency == Frequency.ANNUALLY:
        return current + relativedelta(years=interval_count)
    raise ValidationError(f"Unknown frequency: {frequency}", field="frequency")


def advance_to(anchor: date, target: date, frequency: Frequency, interval_count: int) -> date:
    """Step ``anchor`` forward one cycle at a time until it is on or after ``target``."""
    current = anchor
    while current < target:
        current = compute_next_date(current, frequency, interval_count)
    return current


class PaymentScheduler:
    """Creates and withdraws scheduled payment attempts for recurring donation plans."""

    def __init__(self, db: AsyncSession, clock: Clock | None = None):
        self.db = db
        self._clock = clock or utc_now

    def today(self) -> date:
        return self._clock().date()

    async def get_open_payment(self, subscription_id: str) -> ScheduledPayment | None:
        """Return the attempt currently scheduled or processing for a plan, if any."""
        stmt = select(ScheduledPayment).where(
            ScheduledPayment.subscription_id == subscription_id,
            ScheduledPayment.status.in_(OPEN_PAYMENT_STATUSES),
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def schedule_next(self, subscription_id: str) -> ScheduledPayment | None:
        """
        Materialize the next cycle's payment attempt.

        Returns the open attempt (new or pre-existing), or None when the plan is
        not active or has reached its end date (in which case it is completed).
        """
        subscription = await self.db.get(RecurringDonation, subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(
                f"Recurring donation {subscription_id} not found",
                subscription_id=subscription_id,
            )

        if subscription.status != SubscriptionStatus.ACTIVE:
            logger.debug(
                "recurring.schedule.skipped_inactive",
                subscription_id=subscription_id,
                status=subscription.status.value,
            )
            return None

        existing = await self.get_open_payment(subscription_id)
        if existing is not None:
            logger.debug(
                "recurring.schedule.already_open",
                subscription_id=subscription_id,
                payment_id=existing.id,
            )
            return existing

        end_date = subscription.end_date
        if end_date is not None and (
            end_date < self.today() or subscription.next_process_date > end_date
        ):
            subscription.status = SubscriptionStatus.COMPLETED
            await self.db.flush()
            logger.info(
                "recurring.subscription.completed",
                subscription_id=subscription_id,
                end_date=end_date.isoformat(),
            )
            return None

        payment = self._build_payment(
            subscription,
            amount=subscription.amount,
            scheduled_date=subscription.next_process_date,
            attempt_number=1,
        )
        subscription.next_process_date = compute_next_date(
            subscription.next_process_date, subscription.frequency, subscription.interval_count
        )
        subscription.retry_count = 0
        await self._flush_new_payment(payment)

        logger.info(
            "recurring.payment.scheduled",
            subscription_id=subscription_id,
            payment_id=payment.id,
            scheduled_date=payment.scheduled_date.isoformat(),
            next_process_date=subscription.next_process_date.isoformat(),
        )
        return payment

    async def create_retry(
        self,
        subscription: RecurringDonation,
        amount: Decimal,
        retry_date: date,
        attempt_number: int,
    ) -> ScheduledPayment:
        """Create a retry attempt for a cycle whose previous attempt failed."""
        payment = self._build_payment(
            subscription,
            amount=amount,
            scheduled_date=retry_date,
            attempt_number=attempt_number,
        )
        await self._flush_new_payment(payment)

        logger.info(
            "recurring.payment.retry_scheduled",
            subscription_id=subscription.id,
            payment_id=payment.id,
            scheduled_date=retry_date.isoformat(),
            attempt_number=attempt_number,
        )
        return payment

    async def cancel_pending(self, subscription_id: str) -> list[ScheduledPayment]:
        """Withdraw attempts still in ``scheduled`` status. History is left untouched."""
        stmt = select(ScheduledPayment).where(
            ScheduledPayment.subscription_id == subscription_id,
            ScheduledPayment.status == PaymentStatus.SCHEDULED,
        )
        result = await self.db.execute(stmt)
        pending = list(result.scalars().all())

        for payment in pending:
            payment.status = PaymentStatus.CANCELLED
        if pending:
            await self.db.flush()
            logger.info(
                "recurring.payment.cancelled_pending",
                subscription_id=subscription_id,
                payment_ids=[payment.id for payment in pending],
            )
        return pending

    def _build_payment(
        self,
        subscription: RecurringDonation,
        amount: Decimal,
        scheduled_date: date,
        attempt_number: int,
    ) -> ScheduledPayment:
        return ScheduledPayment(
            id=generate_payment_id(),
            subscription_id=subscription.id,
            amount=amount,
            currency=subscription.currency,
            base_amount=amount,
            scheduled_date=scheduled_date,
            attempt_number=attempt_number,
            status=PaymentStatus.SCHEDULED,
            receipt_generated=False,
            receipt_sent=False,
            reminder_sent=False,
        )

    async def _flush_new_payment(self, payment: ScheduledPayment) -> None:
        self.db.add(payment)
        try:
            await self.db.flush()
        except IntegrityError as e:
            # The partial unique index rejected a second open attempt
            raise ConcurrencyConflictError(
                f"Recurring donation {payment.subscription_id} already has an open payment",
                payment_id=payment.id,
            ) from e
