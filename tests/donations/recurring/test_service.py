"""
Tests for recurring donation plan lifecycle management.
"""

from datetime import date
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from charity.platform.donations.config import ResumeAnchor
from charity.platform.donations.exceptions import (
    InvalidStateError,
    PersistenceError,
    SubscriptionNotFoundError,
    ValidationError,
)
from charity.platform.donations.recurring.models import (
    Frequency,
    PaymentStatus,
    SubscriptionStatus,
)
from charity.platform.donations.recurring.schemas import SubscriptionFilters
from charity.platform.donations.recurring.service import SubscriptionManager

pytestmark = pytest.mark.unit


@pytest.mark.asyncio
class TestCreate:
    async def test_create_schedules_first_payment(self, manager, make_request):
        subscription = await manager.create(make_request())

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.next_process_date == date(2024, 2, 1)
        assert subscription.retry_count == 0
        assert subscription.successful_payments == 0
        assert subscription.total_collected == Decimal("0")
        assert subscription.max_retries == 3
        assert subscription.currency == "TRY"

        payments = await manager.list_payments(subscription.id)
        assert len(payments) == 1
        assert payments[0].scheduled_date == date(2024, 1, 1)
        assert payments[0].attempt_number == 1
        assert payments[0].status == PaymentStatus.SCHEDULED
        assert payments[0].amount == Decimal("50")

    async def test_create_accepts_mapping(self, manager):
        subscription = await manager.create(
            {
                "donor_id": "donor-2",
                "subscription_name": "Weekly meals",
                "amount": "25.50",
                "frequency": "weekly",
                "start_date": "2024-01-05",
                "payment_reference": "iban_tok_9",
                "currency": "usd",
            }
        )

        assert subscription.frequency == Frequency.WEEKLY
        assert subscription.currency == "USD"
        assert subscription.next_process_date == date(2024, 1, 12)

    async def test_create_uses_explicit_max_retries(self, manager, make_request):
        subscription = await manager.create(make_request(max_retries=5))
        assert subscription.max_retries == 5

    async def test_create_rejects_zero_max_retries(self, manager, make_request):
        with pytest.raises(ValidationError) as exc_info:
            await manager.create(make_request(max_retries=0))
        assert exc_info.value.context["field"] == "max_retries"

    @pytest.mark.parametrize(
        ("overrides", "field"),
        [
            ({"amount": Decimal("0")}, "amount"),
            ({"amount": Decimal("-10")}, "amount"),
            ({"interval_count": 0}, "interval_count"),
            ({"end_date": date(2023, 12, 31)}, "end_date"),
        ],
    )
    async def test_create_rejects_invalid_terms(self, manager, make_request, overrides, field):
        with pytest.raises(ValidationError) as exc_info:
            await manager.create(make_request(**overrides))
        assert exc_info.value.context["field"] == field
        assert exc_info.value.status_code == 422

    async def test_create_rejects_unknown_frequency(self, manager):
        with pytest.raises(ValidationError):
            await manager.create(
                {
                    "donor_id": "donor-1",
                    "subscription_name": "Bad",
                    "amount": "10",
                    "frequency": "fortnightly",
                    "start_date": "2024-01-01",
                    "payment_reference": "tok",
                }
            )

    async def test_create_rejects_unknown_campaign(self, manager, make_request):
        with pytest.raises(ValidationError) as exc_info:
            await manager.create(make_request(campaign_id="cmp_missing"))
        assert exc_info.value.context["field"] == "campaign_id"


@pytest.mark.asyncio
class TestLifecycle:
    async def test_pause_cancels_pending_payment(self, manager, make_request):
        subscription = await manager.create(make_request())

        paused = await manager.pause(subscription.id, reason="Donor request")

        assert paused.status == SubscriptionStatus.PAUSED
        assert paused.pause_reason == "Donor request"
        payments = await manager.list_payments(subscription.id)
        assert [p.status for p in payments] == [PaymentStatus.CANCELLED]

    async def test_pause_requires_active(self, manager, make_request):
        subscription = await manager.create(make_request())
        await manager.pause(subscription.id)

        with pytest.raises(InvalidStateError) as exc_info:
            await manager.pause(subscription.id)
        assert exc_info.value.status_code == 409

    async def test_resume_schedules_from_resume_date(
        self, async_db, manager, make_request, clock
    ):
        subscription = await manager.create(make_request())
        await manager.pause(subscription.id, reason="Travel")
        subscription.retry_count = 2
        await async_db.commit()

        clock.set_date(2024, 2, 15)
        resumed = await manager.resume(subscription.id)

        assert resumed.status == SubscriptionStatus.ACTIVE
        assert resumed.retry_count == 0
        assert resumed.pause_reason is None
        scheduled = [
            p for p in await manager.list_payments(subscription.id)
            if p.status == PaymentStatus.SCHEDULED
        ]
        assert len(scheduled) == 1
        assert scheduled[0].scheduled_date == date(2024, 3, 15)
        assert resumed.next_process_date == date(2024, 4, 15)

    async def test_resume_on_original_cycle(
        self, async_db, donation_config, make_request, clock
    ):
        config = donation_config.model_copy(update={"resume_anchor": ResumeAnchor.ORIGINAL_CYCLE})
        manager = SubscriptionManager(async_db, config=config, clock=clock)
        subscription = await manager.create(make_request())
        await manager.pause(subscription.id)

        clock.set_date(2024, 2, 15)
        await manager.resume(subscription.id)

        scheduled = [
            p for p in await manager.list_payments(subscription.id)
            if p.status == PaymentStatus.SCHEDULED
        ]
        assert scheduled[0].scheduled_date == date(2024, 3, 1)

    async def test_resume_requires_paused(self, manager, make_request):
        subscription = await manager.create(make_request())
        with pytest.raises(InvalidStateError):
            await manager.resume(subscription.id)

    async def test_failed_plan_cannot_resume(self, async_db, manager, make_request):
        subscription = await manager.create(make_request())
        subscription.status = SubscriptionStatus.FAILED
        await async_db.commit()

        with pytest.raises(InvalidStateError):
            await manager.resume(subscription.id)

    async def test_cancel_is_terminal(self, manager, make_request, clock):
        subscription = await manager.create(make_request())

        cancelled = await manager.cancel(subscription.id, reason="Moved abroad")

        assert cancelled.status == SubscriptionStatus.CANCELLED
        assert cancelled.cancellation_reason == "Moved abroad"
        assert cancelled.cancelled_at is not None
        payments = await manager.list_payments(subscription.id)
        assert payments[0].status == PaymentStatus.CANCELLED

        with pytest.raises(InvalidStateError):
            await manager.resume(subscription.id)
        with pytest.raises(InvalidStateError):
            await manager.pause(subscription.id)

    async def test_cancel_paused_plan(self, manager, make_request):
        subscription = await manager.create(make_request())
        await manager.pause(subscription.id)

        cancelled = await manager.cancel(subscription.id)
        assert cancelled.status == SubscriptionStatus.CANCELLED


@pytest.mark.asyncio
class TestUpdate:
    async def test_amount_change_reschedules_same_cycle(self, manager, make_request):
        subscription = await manager.create(make_request())

        updated = await manager.update(subscription.id, {"amount": Decimal("75")})

        payments = await manager.list_payments(subscription.id)
        statuses = sorted(p.status.value for p in payments)
        assert statuses == ["cancelled", "scheduled"]
        scheduled = next(p for p in payments if p.status == PaymentStatus.SCHEDULED)
        assert scheduled.amount == Decimal("75")
        assert scheduled.scheduled_date == date(2024, 1, 1)
        assert updated.next_process_date == date(2024, 2, 1)

    async def test_frequency_change_reschedules(self, manager, make_request):
        subscription = await manager.create(make_request())

        updated = await manager.update(subscription.id, {"frequency": Frequency.WEEKLY})

        assert updated.frequency == Frequency.WEEKLY
        assert updated.next_process_date == date(2024, 1, 8)

    async def test_cosmetic_change_keeps_payment(self, manager, make_request):
        subscription = await manager.create(make_request())

        await manager.update(subscription.id, {"subscription_name": "Renamed"})

        payments = await manager.list_payments(subscription.id)
        assert [p.status for p in payments] == [PaymentStatus.SCHEDULED]

    async def test_update_validates_amount(self, manager, make_request):
        subscription = await manager.create(make_request())
        with pytest.raises(ValidationError):
            await manager.update(subscription.id, {"amount": Decimal("0")})

    @pytest.mark.parametrize(
        "field",
        [
            "subscription_name",
            "amount",
            "frequency",
            "interval_count",
            "payment_method",
            "payment_reference",
            "send_receipts",
            "reminder_days_before",
        ],
    )
    async def test_update_rejects_null_required_field(self, manager, make_request, field):
        subscription = await manager.create(make_request())
        subscription_id = subscription.id

        with pytest.raises(ValidationError) as exc_info:
            await manager.update(subscription_id, {field: None})

        assert exc_info.value.context["field"] == field
        reloaded = await manager.get(subscription_id)
        assert reloaded.payment_reference == "card_tok_1"
        assert reloaded.frequency == Frequency.MONTHLY

    async def test_update_clears_nullable_field(self, manager, make_request):
        subscription = await manager.create(make_request(end_date=date(2024, 12, 31)))

        updated = await manager.update(subscription.id, {"end_date": None})

        assert updated.end_date is None

    async def test_update_cancelled_plan_rejected(self, manager, make_request):
        subscription = await manager.create(make_request())
        await manager.cancel(subscription.id)
        with pytest.raises(InvalidStateError):
            await manager.update(subscription.id, {"amount": Decimal("10")})


@pytest.mark.asyncio
class TestQueries:
    async def test_get_unknown(self, manager):
        with pytest.raises(SubscriptionNotFoundError) as exc_info:
            await manager.get("rd_missing")
        assert exc_info.value.to_dict()["error_code"] == "SUBSCRIPTION_NOT_FOUND"

    async def test_search_filters_and_paginates(self, manager, make_request, clock):
        await manager.create(make_request(subscription_name="Orphan care", amount=Decimal("20")))
        clock.advance(minutes=1)
        await manager.create(
            make_request(
                subscription_name="Winter aid",
                frequency=Frequency.ANNUALLY,
                amount=Decimal("1200"),
            )
        )
        clock.advance(minutes=1)
        third = await manager.create(
            make_request(subscription_name="Orphan education", amount=Decimal("80"))
        )
        await manager.pause(third.id)

        items, total = await manager.search()
        assert total == 3
        assert items[0].id == third.id

        items, total = await manager.search(SubscriptionFilters(search_query="orphan"))
        assert total == 2

        items, total = await manager.search(
            SubscriptionFilters(status=[SubscriptionStatus.ACTIVE], frequency=[Frequency.MONTHLY])
        )
        assert total == 1
        assert items[0].subscription_name == "Orphan care"

        items, total = await manager.search(SubscriptionFilters(min_amount=Decimal("50")))
        assert total == 2

        items, total = await manager.search(page=2, page_size=2)
        assert total == 3
        assert len(items) == 1

    async def test_search_rejects_bad_page(self, manager):
        with pytest.raises(ValidationError):
            await manager.search(page=0)

    async def test_store_failure_becomes_persistence_error(self, async_db, manager, make_request):
        with patch.object(
            async_db, "commit", side_effect=OperationalError("COMMIT", {}, Exception("disk full"))
        ):
            with pytest.raises(PersistenceError) as exc_info:
                await manager.create(make_request())
        assert exc_info.value.status_code == 503
        assert exc_info.value.context["operation"] == "create"
