"""Tests for the recurring donation API router."""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from fastapi import status
from httpx import ASGITransport, AsyncClient

from charity.platform.db import get_async_session
from charity.platform.donations.config import set_donation_config
from charity.platform.donations.recurring.router import get_notifier
from charity.platform.main import create_application

pytestmark = pytest.mark.integration

BASE_URL = "/api/v1/recurring-donations"


@pytest_asyncio.fixture
async def async_client(async_db, donation_config):
    """HTTP client bound to the application with the test session injected."""
    set_donation_config(donation_config)
    app = create_application()

    async def _session_override():
        yield async_db

    app.dependency_overrides[get_async_session] = _session_override
    app.dependency_overrides[get_notifier] = lambda: MagicMock()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def plan_payload():
    return {
        "donor_id": "donor-1",
        "subscription_name": "Orphan sponsorship",
        "amount": "50.00",
        "frequency": "monthly",
        "start_date": "2024-01-01",
        "payment_reference": "card_tok_1",
    }


async def _create(client: AsyncClient, payload: dict) -> dict:
    response = await client.post(BASE_URL, json=payload)
    assert response.status_code == status.HTTP_201_CREATED
    return response.json()


@pytest.mark.asyncio
class TestSubscriptionEndpoints:
    async def test_create_subscription(self, async_client, plan_payload):
        data = await _create(async_client, plan_payload)

        assert data["id"].startswith("rd_")
        assert data["status"] == "active"
        assert data["next_process_date"] == "2024-02-01"
        assert Decimal(data["amount"]) == Decimal("50")

        response = await async_client.get(f"{BASE_URL}/{data['id']}/payments")
        payments = response.json()
        assert len(payments) == 1
        assert payments[0]["scheduled_date"] == "2024-01-01"

    async def test_create_rejects_zero_amount(self, async_client, plan_payload):
        response = await async_client.post(BASE_URL, json={**plan_payload, "amount": "0"})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    async def test_unknown_subscription(self, async_client):
        response = await async_client.get(f"{BASE_URL}/rd_missing")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        body = response.json()
        assert body["error_code"] == "SUBSCRIPTION_NOT_FOUND"
        assert body["context"] == {"subscription_id": "rd_missing"}

    async def test_lifecycle(self, async_client, plan_payload):
        plan = await _create(async_client, plan_payload)
        url = f"{BASE_URL}/{plan['id']}"

        paused = await async_client.post(
            f"{url}/pause", json={"reason": "Travel"}, headers={"X-User-ID": "donor-1"}
        )
        assert paused.json()["status"] == "paused"

        again = await async_client.post(f"{url}/pause", json={})
        assert again.status_code == status.HTTP_409_CONFLICT
        assert again.json()["error_code"] == "INVALID_STATE"

        resumed = await async_client.post(f"{url}/resume")
        assert resumed.json()["status"] == "active"

        cancelled = await async_client.post(f"{url}/cancel", json={"reason": "Done"})
        assert cancelled.json()["status"] == "cancelled"
        assert cancelled.json()["cancellation_reason"] == "Done"

    async def test_update_subscription(self, async_client, plan_payload):
        plan = await _create(async_client, plan_payload)

        response = await async_client.patch(
            f"{BASE_URL}/{plan['id']}", json={"subscription_name": "Renamed"}
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["subscription_name"] == "Renamed"

    async def test_search(self, async_client, plan_payload):
        await _create(async_client, plan_payload)
        await _create(
            async_client,
            {**plan_payload, "subscription_name": "Weekly meals", "frequency": "weekly"},
        )

        response = await async_client.get(BASE_URL, params={"frequency": "weekly"})
        data = response.json()
        assert data["total_count"] == 1
        assert data["items"][0]["subscription_name"] == "Weekly meals"

        response = await async_client.get(BASE_URL, params={"page_size": 1, "page": 2})
        data = response.json()
        assert data["total_count"] == 2
        assert len(data["items"]) == 1


@pytest.mark.asyncio
class TestDashboardAndCampaigns:
    async def test_dashboard(self, async_client, plan_payload):
        await _create(async_client, plan_payload)

        response = await async_client.get(f"{BASE_URL}/dashboard")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["active_subscriptions"] == 1
        assert Decimal(data["total_mrr"]) == Decimal("50")

    async def test_campaign_flow(self, async_client, plan_payload):
        response = await async_client.post(
            f"{BASE_URL}/campaigns", json={"name": "Clean water", "start_date": "2024-01-01"}
        )
        assert response.status_code == status.HTTP_201_CREATED
        campaign = response.json()

        await _create(async_client, {**plan_payload, "campaign_id": campaign["id"]})

        refreshed = await async_client.post(f"{BASE_URL}/campaigns/{campaign['id']}/refresh")
        assert refreshed.json()["subscriber_count"] == 1

        listed = await async_client.get(f"{BASE_URL}/campaigns")
        assert [c["id"] for c in listed.json()] == [campaign["id"]]


@pytest.mark.asyncio
class TestChangeRequestEndpoints:
    async def test_create_and_approve(self, async_client, plan_payload):
        plan = await _create(async_client, plan_payload)

        response = await async_client.post(
            f"{BASE_URL}/change-requests",
            json={"subscription_id": plan["id"], "change_type": "amount", "new_value": "120"},
        )
        assert response.status_code == status.HTTP_201_CREATED
        change = response.json()
        assert change["status"] == "pending"

        approved = await async_client.post(
            f"{BASE_URL}/change-requests/{change['id']}/approve", json={"decided_by": "ops-1"}
        )
        assert approved.json()["status"] == "applied"

        plan = (await async_client.get(f"{BASE_URL}/{plan['id']}")).json()
        assert Decimal(plan["amount"]) == Decimal("120")

        listed = await async_client.get(f"{BASE_URL}/{plan['id']}/change-requests")
        assert [r["id"] for r in listed.json()] == [change["id"]]

    async def test_reject_twice_conflicts(self, async_client, plan_payload):
        plan = await _create(async_client, plan_payload)
        change = (
            await async_client.post(
                f"{BASE_URL}/change-requests",
                json={"subscription_id": plan["id"], "change_type": "pause"},
            )
        ).json()
        url = f"{BASE_URL}/change-requests/{change['id']}/reject"

        first = await async_client.post(url, json={"decided_by": "ops-1", "reason": "No"})
        second = await async_client.post(url, json={"decided_by": "ops-1"})

        assert first.json()["rejection_reason"] == "No"
        assert second.status_code == status.HTTP_409_CONFLICT


@pytest.mark.asyncio
async def test_health(async_client):
    response = await async_client.get("/health")
    assert response.json()["status"] == "healthy"
