"""
Tests for dashboard metrics and campaign rollups.
"""

from datetime import date
from decimal import Decimal

import pytest

from charity.platform.donations.exceptions import CampaignNotFoundError, ValidationError
from charity.platform.donations.recurring.analytics import (
    CampaignAggregator,
    monthly_equivalent,
)
from charity.platform.donations.recurring.models import CampaignStatus, Frequency
from charity.platform.donations.recurring.processor import PaymentProcessor
from charity.platform.donations.recurring.providers import ChargeResult

pytestmark = pytest.mark.unit


class TestMonthlyEquivalent:
    @pytest.mark.parametrize(
        ("amount", "frequency", "expected"),
        [
            (Decimal("100"), Frequency.WEEKLY, Decimal("433.00")),
            (Decimal("100"), Frequency.MONTHLY, Decimal("100.00")),
            (Decimal("300"), Frequency.QUARTERLY, Decimal("100.00")),
            (Decimal("1200"), Frequency.ANNUALLY, Decimal("100.00")),
            (Decimal("100"), Frequency.QUARTERLY, Decimal("33.33")),
            (Decimal("10"), Frequency.ANNUALLY, Decimal("0.83")),
        ],
    )
    def test_normalizes_to_monthly(self, amount, frequency, expected):
        assert monthly_equivalent(amount, frequency) == expected


@pytest.mark.asyncio
class TestDashboard:
    async def test_empty_book(self, async_db, donation_config, clock):
        aggregator = CampaignAggregator(async_db, config=donation_config, clock=clock)

        dashboard = await aggregator.compute_dashboard()

        assert dashboard.total_mrr == Decimal("0")
        assert dashboard.active_subscriptions == 0
        assert dashboard.average_amount == Decimal("0")
        assert dashboard.payment_success_rate == 0.0
        assert dashboard.alerts == []
        assert dashboard.frequency_distribution == {
            "weekly": 0,
            "monthly": 0,
            "quarterly": 0,
            "annually": 0,
        }

    async def test_mixed_book(self, async_db, manager, make_request, donation_config, clock):
        clock.set_date(2024, 3, 10)
        await manager.create(
            make_request(amount=Decimal("100"), frequency=Frequency.WEEKLY, start_date=date(2024, 3, 10))
        )
        await manager.create(make_request(amount=Decimal("100"), start_date=date(2024, 3, 20)))
        await manager.create(
            make_request(
                amount=Decimal("300"), frequency=Frequency.QUARTERLY, start_date=date(2024, 3, 1)
            )
        )
        await manager.create(
            make_request(
                amount=Decimal("1200"), frequency=Frequency.ANNUALLY, start_date=date(2024, 3, 10)
            )
        )

        aggregator = CampaignAggregator(async_db, config=donation_config, clock=clock)
        dashboard = await aggregator.compute_dashboard()

        assert dashboard.total_mrr == Decimal("733.00")
        assert dashboard.total_arr == Decimal("8796.00")
        assert dashboard.active_subscriptions == 4
        assert dashboard.average_amount == Decimal("425.00")
        assert dashboard.new_this_month == 4
        assert dashboard.churn_this_month == 0
        assert dashboard.net_growth == 4
        assert dashboard.upcoming_payments == 1
        assert dashboard.overdue_payments == 1
        assert dashboard.frequency_distribution["weekly"] == 1
        assert dashboard.frequency_distribution["annually"] == 1
        assert len(dashboard.recent_subscriptions) == 4

    async def test_paused_plans_are_excluded_from_mrr(
        self, async_db, manager, make_request, donation_config, clock
    ):
        await manager.create(make_request(amount=Decimal("40")))
        paused = await manager.create(make_request(amount=Decimal("60")))
        await manager.pause(paused.id)

        aggregator = CampaignAggregator(async_db, config=donation_config, clock=clock)
        dashboard = await aggregator.compute_dashboard()

        assert dashboard.total_mrr == Decimal("40.00")
        assert dashboard.active_subscriptions == 1

    async def test_success_rate_and_failure_reasons(
        self, async_db, manager, make_request, provider, notifier, donation_config, clock
    ):
        provider.queue(
            ChargeResult.declined("Insufficient funds"),
            ChargeResult.declined("Card expired"),
            ChargeResult.declined("Insufficient funds"),
        )
        for donor in ("d-1", "d-2", "d-3", "d-4"):
            await manager.create(make_request(donor_id=donor))
        processor = PaymentProcessor(
            async_db, provider, notifier, config=donation_config, clock=clock
        )
        await processor.process_due(date(2024, 1, 1))

        aggregator = CampaignAggregator(async_db, config=donation_config, clock=clock)
        dashboard = await aggregator.compute_dashboard()

        assert dashboard.payment_success_rate == 25.0
        assert dashboard.failure_reasons[0].reason == "Insufficient funds"
        assert dashboard.failure_reasons[0].count == 2
        assert dashboard.failure_reasons[0].percentage == 66.67
        assert len(dashboard.recent_payments) == 1
        assert len(dashboard.recent_failures) == 3

        failure_alert = next(a for a in dashboard.alerts if a.type == "payment_failure")
        assert failure_alert.count == 3
        assert failure_alert.severity == "medium"
        assert failure_alert.action_required is True

    async def test_churn_and_ending_alerts(
        self, async_db, manager, make_request, donation_config, clock
    ):
        first = await manager.create(make_request())
        second = await manager.create(make_request(donor_id="donor-2"))
        clock.set_date(2024, 2, 5)
        await manager.cancel(first.id)
        await manager.cancel(second.id)
        await manager.create(make_request(donor_id="donor-3", end_date=date(2024, 2, 20)))

        aggregator = CampaignAggregator(async_db, config=donation_config, clock=clock)
        dashboard = await aggregator.compute_dashboard()

        assert dashboard.new_this_month == 1
        assert dashboard.churn_this_month == 2
        assert dashboard.net_growth == -1
        alert_types = {a.type for a in dashboard.alerts}
        assert "high_churn" in alert_types
        assert "subscription_ending" in alert_types


@pytest.mark.asyncio
class TestCampaigns:
    async def test_create_and_list(self, async_db, donation_config, clock):
        aggregator = CampaignAggregator(async_db, config=donation_config, clock=clock)

        campaign = await aggregator.create_campaign(
            {
                "name": "Ramadan food parcels",
                "campaign_type": "seasonal",
                "status": "active",
                "target_amount": "50000",
                "suggested_amounts": ["50", "100"],
                "start_date": "2024-03-01",
            }
        )

        assert campaign.status == CampaignStatus.ACTIVE
        assert campaign.raised_amount == Decimal("0")
        assert [c.id for c in await aggregator.list_campaigns()] == [campaign.id]

    async def test_create_rejects_inverted_dates(self, async_db, donation_config, clock):
        aggregator = CampaignAggregator(async_db, config=donation_config, clock=clock)
        with pytest.raises(ValidationError):
            await aggregator.create_campaign(
                {"name": "Bad", "start_date": "2024-03-01", "end_date": "2024-02-01"}
            )

    async def test_refresh_rollups(
        self, async_db, manager, make_request, provider, notifier, donation_config, clock
    ):
        aggregator = CampaignAggregator(async_db, config=donation_config, clock=clock)
        campaign = await aggregator.create_campaign(
            {"name": "Clean water", "start_date": "2024-01-01"}
        )
        kept = await manager.create(make_request(campaign_id=campaign.id, amount=Decimal("30")))
        dropped = await manager.create(
            make_request(donor_id="donor-2", campaign_id=campaign.id, amount=Decimal("20"))
        )
        await manager.create(make_request(donor_id="donor-3", amount=Decimal("999")))

        processor = PaymentProcessor(
            async_db, provider, notifier, config=donation_config, clock=clock
        )
        await processor.process_due(date(2024, 1, 1))
        await manager.cancel(dropped.id)

        campaign = await aggregator.refresh_campaign_rollups(campaign.id)

        assert campaign.raised_amount == Decimal("50")
        assert campaign.subscriber_count == 2
        assert campaign.active_subscriber_count == 1
        assert kept.campaign_id == campaign.id

    async def test_refresh_unknown_campaign(self, async_db, donation_config, clock):
        aggregator = CampaignAggregator(async_db, config=donation_config, clock=clock)
        with pytest.raises(CampaignNotFoundError):
            await aggregator.refresh_campaign_rollups("cmp_missing")
