"""
Tests for billing date arithmetic and payment attempt scheduling.
"""

from datetime import date

import pytest
from sqlalchemy import select

from charity.platform.donations.exceptions import (
    ConcurrencyConflictError,
    SubscriptionNotFoundError,
    ValidationError,
)
from charity.platform.donations.recurring.models import (
    Frequency,
    PaymentStatus,
    ScheduledPayment,
    SubscriptionStatus,
)
from charity.platform.donations.recurring.scheduling import (
    PaymentScheduler,
    advance_to,
    compute_next_date,
)

pytestmark = pytest.mark.unit


class TestComputeNextDate:
    """Pure date arithmetic."""

    @pytest.mark.parametrize(
        ("frequency", "interval", "expected"),
        [
            (Frequency.WEEKLY, 1, date(2024, 3, 22)),
            (Frequency.WEEKLY, 2, date(2024, 3, 29)),
            (Frequency.MONTHLY, 1, date(2024, 4, 15)),
            (Frequency.MONTHLY, 3, date(2024, 6, 15)),
            (Frequency.QUARTERLY, 1, date(2024, 6, 15)),
            (Frequency.QUARTERLY, 2, date(2024, 9, 15)),
            (Frequency.ANNUALLY, 1, date(2025, 3, 15)),
        ],
    )
    def test_steps(self, frequency, interval, expected):
        assert compute_next_date(date(2024, 3, 15), frequency, interval) == expected

    def test_month_end_clamps_in_leap_year(self):
        assert compute_next_date(date(2024, 1, 31), Frequency.MONTHLY) == date(2024, 2, 29)

    def test_month_end_clamps_in_common_year(self):
        assert compute_next_date(date(2023, 1, 31), Frequency.MONTHLY) == date(2023, 2, 28)

    def test_leap_day_plus_one_year(self):
        assert compute_next_date(date(2024, 2, 29), Frequency.ANNUALLY) == date(2025, 2, 28)

    def test_clamped_series_stays_on_clamped_day(self):
        feb = compute_next_date(date(2024, 1, 31), Frequency.MONTHLY)
        assert compute_next_date(feb, Frequency.MONTHLY) == date(2024, 3, 29)

    def test_quarterly_clamps(self):
        assert compute_next_date(date(2023, 11, 30), Frequency.QUARTERLY) == date(2024, 2, 29)

    def test_weekly_crosses_year(self):
        assert compute_next_date(date(2023, 12, 28), Frequency.WEEKLY) == date(2024, 1, 4)

    def test_rejects_zero_interval(self):
        with pytest.raises(ValidationError):
            compute_next_date(date(2024, 1, 1), Frequency.MONTHLY, 0)

    def test_advance_to_steps_until_target(self):
        assert advance_to(date(2024, 1, 1), date(2024, 3, 10), Frequency.MONTHLY, 1) == date(
            2024, 4, 1
        )

    def test_advance_to_keeps_future_anchor(self):
        assert advance_to(date(2024, 5, 1), date(2024, 3, 10), Frequency.MONTHLY, 1) == date(
            2024, 5, 1
        )


@pytest.mark.asyncio
class TestPaymentScheduler:
    """Scheduling against the database."""

    async def _open_payments(self, async_db, subscription_id):
        result = await async_db.execute(
            select(ScheduledPayment).where(
                ScheduledPayment.subscription_id == subscription_id,
                ScheduledPayment.status == PaymentStatus.SCHEDULED,
            )
        )
        return list(result.scalars().all())

    async def test_schedule_next_is_idempotent(self, async_db, manager, make_request, clock):
        subscription = await manager.create(make_request())
        scheduler = PaymentScheduler(async_db, clock=clock)

        first = await scheduler.schedule_next(subscription.id)
        second = await scheduler.schedule_next(subscription.id)

        assert first.id == second.id
        assert len(await self._open_payments(async_db, subscription.id)) == 1
        # The cycle was not advanced a second time
        assert subscription.next_process_date == date(2024, 2, 1)

    async def test_schedule_next_skips_inactive(self, async_db, manager, make_request, clock):
        subscription = await manager.create(make_request())
        await manager.pause(subscription.id)

        scheduler = PaymentScheduler(async_db, clock=clock)
        assert await scheduler.schedule_next(subscription.id) is None
        assert await self._open_payments(async_db, subscription.id) == []

    async def test_schedule_next_completes_after_end_date(
        self, async_db, manager, make_request, clock
    ):
        subscription = await manager.create(make_request(end_date=date(2024, 1, 15)))
        scheduler = PaymentScheduler(async_db, clock=clock)

        # Only the first cycle fits before the end date
        first = await scheduler.get_open_payment(subscription.id)
        first.status = PaymentStatus.COMPLETED
        await async_db.flush()

        assert await scheduler.schedule_next(subscription.id) is None
        assert subscription.status == SubscriptionStatus.COMPLETED

    async def test_schedule_next_completes_when_end_date_passed(
        self, async_db, manager, make_request, clock
    ):
        subscription = await manager.create(make_request(end_date=date(2024, 6, 30)))
        await manager.pause(subscription.id)
        subscription.status = SubscriptionStatus.ACTIVE
        clock.set_date(2024, 7, 2)

        scheduler = PaymentScheduler(async_db, clock=clock)
        assert await scheduler.schedule_next(subscription.id) is None
        assert subscription.status == SubscriptionStatus.COMPLETED

    async def test_schedule_next_unknown_subscription(self, async_db, clock):
        scheduler = PaymentScheduler(async_db, clock=clock)
        with pytest.raises(SubscriptionNotFoundError):
            await scheduler.schedule_next("rd_missing")

    async def test_cancel_pending_only_touches_scheduled(
        self, async_db, manager, make_request, clock
    ):
        subscription = await manager.create(make_request())
        scheduler = PaymentScheduler(async_db, clock=clock)
        payment = await scheduler.get_open_payment(subscription.id)

        cancelled = await scheduler.cancel_pending(subscription.id)

        assert [p.id for p in cancelled] == [payment.id]
        assert payment.status == PaymentStatus.CANCELLED
        assert await scheduler.cancel_pending(subscription.id) == []

    async def test_second_open_attempt_is_rejected(self, async_db, manager, make_request, clock):
        subscription = await manager.create(make_request())
        scheduler = PaymentScheduler(async_db, clock=clock)

        with pytest.raises(ConcurrencyConflictError):
            await scheduler.create_retry(
                subscription,
                amount=subscription.amount,
                retry_date=date(2024, 1, 4),
                attempt_number=2,
            )
        await async_db.rollback()
