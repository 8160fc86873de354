"""
Payment processing for recurring donations.

Each due attempt is claimed with a conditional ``scheduled -> processing``
update, charged through the payment provider, and settled. Declines and
provider errors go through the retry policy; retries are always new attempts.
"""

import asyncio
from datetime import date, datetime, timedelta
from decimal import Decimal

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from charity.platform.donations.config import RecurringDonationConfig, get_donation_config
from charity.platform.donations.exceptions import (
    ConcurrencyConflictError,
    DonationError,
    PaymentNotFoundError,
    PaymentProviderError,
    SubscriptionNotFoundError,
)
from charity.platform.donations.recurring.models import (
    PaymentStatus,
    RecurringDonation,
    ScheduledPayment,
    SubscriptionStatus,
)
from charity.platform.donations.recurring.notifications import (
    NotificationService,
    dispatch_payment_reminders,
)
from charity.platform.donations.recurring.providers import ChargeResult, PaymentProvider
from charity.platform.donations.recurring.scheduling import Clock, PaymentScheduler, utc_now
from charity.platform.donations.recurring.schemas import ProcessingSummary

logger = structlog.get_logger(__name__)

PROCESSING_TIMEOUT_REASON = "Processing timed out"


class PaymentProcessor:
    """Processes due payment attempts and applies the retry policy."""

    def __init__(
        self,
        db: AsyncSession,
        provider: PaymentProvider,
        notifier: NotificationService,
        config: RecurringDonationConfig | None = None,
        scheduler: PaymentScheduler | None = None,
        clock: Clock | None = None,
    ):
        self.db = db
        self.provider = provider
        self.notifier = notifier
        self.config = config or get_donation_config()
        self._clock = clock or utc_now
        self.scheduler = scheduler or PaymentScheduler(db, clock=self._clock)

    def today(self) -> date:
        return self._clock().date()

    async def process_due(self, as_of: date | None = None) -> ProcessingSummary:
        """
        Process every scheduled attempt dated on or before ``as_of``.

        Attempts are handled one at a time in their own transaction, so a
        failure on one attempt never aborts the rest of the batch. Attempts
        claimed by another worker are counted as skipped.

        At most ``batch_size`` attempts are handled per call, oldest first.
        Due attempts beyond that bound stay scheduled and are picked up by
        the next tick.
        """
        as_of = as_of or self.today()
        stmt = (
            select(ScheduledPayment.id)
            .where(
                ScheduledPayment.status == PaymentStatus.SCHEDULED,
                ScheduledPayment.scheduled_date <= as_of,
            )
            .order_by(ScheduledPayment.scheduled_date, ScheduledPayment.created_at)
            .limit(self.config.batch_size)
        )
        payment_ids = list((await self.db.execute(stmt)).scalars().all())
        # Release the read transaction before the per-attempt units of work
        await self.db.commit()

        summary = ProcessingSummary()
        for payment_id in payment_ids:
            try:
                payment = await self.process_one(payment_id)
            except ConcurrencyConflictError:
                summary.skipped += 1
                logger.info("recurring.payment.claim_lost", payment_id=payment_id)
                continue
            except (DonationError, SQLAlchemyError) as e:
                await self.db.rollback()
                summary.errors += 1
                logger.error(
                    "recurring.payment.processing_error",
                    payment_id=payment_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue
            except Exception:
                await self.db.rollback()
                summary.errors += 1
                logger.exception("recurring.payment.unexpected_error", payment_id=payment_id)
                continue

            summary.processed += 1
            summary.payment_ids.append(payment_id)
            if payment.status == PaymentStatus.COMPLETED:
                summary.succeeded += 1
            else:
                summary.failed += 1

        logger.info(
            "recurring.process_due.finished",
            as_of=as_of.isoformat(),
            due=len(payment_ids),
            processed=summary.processed,
            succeeded=summary.succeeded,
            failed=summary.failed,
            skipped=summary.skipped,
            errors=summary.errors,
        )
        return summary

    async def process_one(self, payment_id: str) -> ScheduledPayment:
        """
        Claim, charge and settle a single attempt.

        Raises:
            ConcurrencyConflictError: The attempt is no longer ``scheduled``
            PaymentNotFoundError: Unknown payment id
        """
        await self._claim(payment_id)

        payment = await self.db.get(ScheduledPayment, payment_id, populate_existing=True)
        if payment is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found", payment_id=payment_id)
        subscription = await self._get_subscription(payment.subscription_id)

        try:
            result = await asyncio.wait_for(
                self.provider.charge(
                    account_ref=subscription.payment_reference,
                    amount=payment.amount,
                    currency=payment.currency,
                    idempotency_key=payment.idempotency_key,
                ),
                timeout=self.config.provider.timeout_seconds,
            )
        except TimeoutError:
            result = ChargeResult.declined("Payment provider timed out")
            logger.warning(
                "recurring.payment.provider_timeout",
                payment_id=payment_id,
                provider=self.provider.name,
            )
        except PaymentProviderError as e:
            result = ChargeResult.declined(e.message)
            logger.warning(
                "recurring.payment.provider_error",
                payment_id=payment_id,
                provider=self.provider.name,
                error=e.message,
            )

        if result.success:
            await self._settle_success(payment, subscription, result)
        else:
            await self._settle_failure(payment, result.failure_reason or "Payment declined")
        return payment

    async def reconcile_stuck(self, now: datetime | None = None) -> ProcessingSummary:
        """
        Fail attempts left in ``processing`` longer than the processing timeout.

        Each reclaimed attempt goes through the retry policy like any decline.
        """
        now = now or self._clock()
        cutoff = now - timedelta(minutes=self.config.processing_timeout_minutes)
        stmt = (
            select(ScheduledPayment.id)
            .where(
                ScheduledPayment.status == PaymentStatus.PROCESSING,
                ScheduledPayment.processing_started_at < cutoff,
            )
            .order_by(ScheduledPayment.processing_started_at)
            .limit(self.config.batch_size)
        )
        payment_ids = list((await self.db.execute(stmt)).scalars().all())
        await self.db.commit()

        summary = ProcessingSummary()
        for payment_id in payment_ids:
            try:
                claimed = await self.db.execute(
                    update(ScheduledPayment)
                    .where(
                        ScheduledPayment.id == payment_id,
                        ScheduledPayment.status == PaymentStatus.PROCESSING,
                        ScheduledPayment.processing_started_at < cutoff,
                    )
                    .values(
                        status=PaymentStatus.FAILED,
                        failure_reason=PROCESSING_TIMEOUT_REASON,
                        processed_date=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount == 0:
                    await self.db.rollback()
                    summary.skipped += 1
                    continue

                payment = await self.db.get(ScheduledPayment, payment_id, populate_existing=True)
                await self._apply_failure(payment, PROCESSING_TIMEOUT_REASON)
            except (DonationError, SQLAlchemyError) as e:
                await self.db.rollback()
                summary.errors += 1
                logger.error(
                    "recurring.reconcile.error",
                    payment_id=payment_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            summary.processed += 1
            summary.failed += 1
            summary.payment_ids.append(payment_id)
            logger.warning("recurring.payment.reconciled", payment_id=payment_id)

        if payment_ids:
            logger.info(
                "recurring.reconcile.finished",
                stuck=len(payment_ids),
                reconciled=summary.processed,
                skipped=summary.skipped,
                errors=summary.errors,
            )
        return summary

    async def send_reminders(self, as_of: date | None = None) -> list[str]:
        """Queue upcoming-payment reminders and commit the reminder flags."""
        reminded = await dispatch_payment_reminders(self.db, self.notifier, as_of or self.today())
        await self.db.commit()
        return reminded

    # ==================== Settlement ====================

    async def _claim(self, payment_id: str) -> None:
        result = await self.db.execute(
            update(ScheduledPayment)
            .where(
                ScheduledPayment.id == payment_id,
                ScheduledPayment.status == PaymentStatus.SCHEDULED,
            )
            .values(status=PaymentStatus.PROCESSING, processing_started_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            raise ConcurrencyConflictError(
                f"Payment {payment_id} is not scheduled or was claimed by another worker",
                payment_id=payment_id,
            )
        # The claim is visible to other workers before the provider is called
        await self.db.commit()
        logger.debug("recurring.payment.claimed", payment_id=payment_id)

    async def _settle_success(
        self,
        payment: ScheduledPayment,
        subscription: RecurringDonation,
        result: ChargeResult,
    ) -> None:
        payment.status = PaymentStatus.COMPLETED
        payment.processed_date = self._clock()
        payment.provider_transaction_id = result.transaction_id
        await self.db.flush()

        await self.db.execute(
            update(RecurringDonation)
            .where(RecurringDonation.id == subscription.id)
            .values(
                successful_payments=RecurringDonation.successful_payments + 1,
                total_collected=RecurringDonation.total_collected + payment.amount,
                last_payment_date=self.today(),
                last_payment_amount=payment.amount,
            )
            .execution_options(synchronize_session=False)
        )
        subscription = await self._get_subscription(subscription.id)
        if subscription.status == SubscriptionStatus.ACTIVE:
            await self.scheduler.schedule_next(subscription.id)
        await self.db.commit()

        logger.info(
            "recurring.payment.completed",
            payment_id=payment.id,
            subscription_id=subscription.id,
            amount=str(payment.amount),
            transaction_id=result.transaction_id,
        )
        if subscription.send_receipts:
            self.notifier.send_receipt(payment.id)

    async def _settle_failure(self, payment: ScheduledPayment, reason: str) -> None:
        payment.status = PaymentStatus.FAILED
        payment.processed_date = self._clock()
        payment.failure_reason = reason
        await self.db.flush()
        await self._apply_failure(payment, reason)

    async def _apply_failure(self, payment: ScheduledPayment, reason: str) -> None:
        """Record a failed attempt and either schedule a retry or fail the plan."""
        today = self.today()
        await self.db.execute(
            update(RecurringDonation)
            .where(RecurringDonation.id == payment.subscription_id)
            .values(
                failed_payments=RecurringDonation.failed_payments + 1,
                last_failure_date=today,
                last_failure_reason=reason,
            )
            .execution_options(synchronize_session=False)
        )
        subscription = await self._get_subscription(payment.subscription_id)

        logger.warning(
            "recurring.payment.failed",
            payment_id=payment.id,
            subscription_id=subscription.id,
            attempt_number=payment.attempt_number,
            reason=reason,
        )

        if subscription.status != SubscriptionStatus.ACTIVE:
            await self.db.commit()
            logger.info(
                "recurring.payment.retry_skipped",
                subscription_id=subscription.id,
                status=subscription.status.value,
            )
            return

        new_retry_count = subscription.retry_count + 1
        subscription.retry_count = new_retry_count

        if new_retry_count < subscription.max_retries:
            await self.scheduler.create_retry(
                subscription,
                amount=Decimal(payment.amount),
                retry_date=today + timedelta(days=self.config.retry_delay_days),
                attempt_number=new_retry_count + 1,
            )
            await self.db.commit()
            return

        subscription.status = SubscriptionStatus.FAILED
        await self.db.commit()
        logger.error(
            "recurring.subscription.failed",
            subscription_id=subscription.id,
            retry_count=new_retry_count,
            reason=reason,
        )
        self.notifier.send_failure_notification(subscription.id, reason)

    async def _get_subscription(self, subscription_id: str) -> RecurringDonation:
        subscription = await self.db.get(
            RecurringDonation, subscription_id, populate_existing=True
        )
        if subscription is None:
            raise SubscriptionNotFoundError(
                f"Recurring donation {subscription_id} not found",
                subscription_id=subscription_id,
            )
        return subscription
