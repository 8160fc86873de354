"""
Recurring donation API router.

``DonationError`` subclasses raised by the services are turned into JSON
responses by the application-level handler in ``charity.platform.main``.
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated

from fastapi import APIRouter, Depends, Header, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from charity.platform.db import get_async_session
from charity.platform.donations.recurring.analytics import CampaignAggregator
from charity.platform.donations.recurring.change_requests import ChangeRequestManager
from charity.platform.donations.recurring.models import Frequency, PaymentMethod, SubscriptionStatus
from charity.platform.donations.recurring.notifications import (
    CeleryNotificationDispatcher,
    NotificationService,
)
from charity.platform.donations.recurring.schemas import (
    CampaignCreateRequest,
    CampaignResponse,
    CancelRequest,
    ChangeRequestCreate,
    ChangeRequestDecision,
    ChangeRequestResponse,
    DashboardResponse,
    PauseRequest,
    ScheduledPaymentResponse,
    SubscriptionCreateRequest,
    SubscriptionFilters,
    SubscriptionListResponse,
    SubscriptionResponse,
    SubscriptionUpdateRequest,
)
from charity.platform.donations.recurring.service import SubscriptionManager

router = APIRouter(prefix="/recurring-donations", tags=["Recurring Donations"])

UserIdHeader = Annotated[str | None, Header(alias="X-User-ID")]


def get_notifier() -> NotificationService:
    """Dependency providing the notification dispatcher."""
    return CeleryNotificationDispatcher()


def get_subscription_manager(
    db: Annotated[AsyncSession, Depends(get_async_session)],
) -> SubscriptionManager:
    """Dependency to get SubscriptionManager instance."""
    return SubscriptionManager(db)


def get_campaign_aggregator(
    db: Annotated[AsyncSession, Depends(get_async_session)],
) -> CampaignAggregator:
    return CampaignAggregator(db)


def get_change_request_manager(
    db: Annotated[AsyncSession, Depends(get_async_session)],
    notifier: Annotated[NotificationService, Depends(get_notifier)],
) -> ChangeRequestManager:
    return ChangeRequestManager(db, notifier)


# ==================== Subscriptions ====================


@router.post("", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    request: SubscriptionCreateRequest,
    manager: Annotated[SubscriptionManager, Depends(get_subscription_manager)],
) -> SubscriptionResponse:
    """Create a recurring donation plan and schedule its first payment."""
    subscription = await manager.create(request)
    return SubscriptionResponse.model_validate(subscription)


@router.get("", response_model=SubscriptionListResponse)
async def search_subscriptions(
    manager: Annotated[SubscriptionManager, Depends(get_subscription_manager)],
    status_filter: list[SubscriptionStatus] | None = Query(None, alias="status"),
    frequency: list[Frequency] | None = Query(None),
    payment_method: list[PaymentMethod] | None = Query(None),
    min_amount: Decimal | None = Query(None, ge=0),
    max_amount: Decimal | None = Query(None, ge=0),
    created_from: datetime | None = Query(None),
    created_to: datetime | None = Query(None),
    campaign_id: str | None = Query(None),
    q: str | None = Query(None, description="Search plan name or donor id"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Items per page"),
) -> SubscriptionListResponse:
    """Search recurring donation plans with filtering and pagination."""
    filters = SubscriptionFilters(
        status=status_filter,
        frequency=frequency,
        payment_method=payment_method,
        min_amount=min_amount,
        max_amount=max_amount,
        created_from=created_from,
        created_to=created_to,
        campaign_id=campaign_id,
        search_query=q,
    )
    items, total = await manager.search(filters, page=page, page_size=page_size)
    return SubscriptionListResponse(
        items=[SubscriptionResponse.model_validate(item) for item in items],
        total_count=total,
        page=page,
        page_size=page_size,
    )


# ==================== Dashboard ====================


@router.get("/dashboard", response_model=DashboardResponse)
async def get_dashboard(
    aggregator: Annotated[CampaignAggregator, Depends(get_campaign_aggregator)],
) -> DashboardResponse:
    """Recurring revenue, growth and payment health metrics."""
    return await aggregator.compute_dashboard()


# ==================== Campaigns ====================


@router.post(
    "/campaigns", response_model=CampaignResponse, status_code=status.HTTP_201_CREATED
)
async def create_campaign(
    request: CampaignCreateRequest,
    aggregator: Annotated[CampaignAggregator, Depends(get_campaign_aggregator)],
) -> CampaignResponse:
    campaign = await aggregator.create_campaign(request)
    return CampaignResponse.model_validate(campaign)


@router.get("/campaigns", response_model=list[CampaignResponse])
async def list_campaigns(
    aggregator: Annotated[CampaignAggregator, Depends(get_campaign_aggregator)],
) -> list[CampaignResponse]:
    campaigns = await aggregator.list_campaigns()
    return [CampaignResponse.model_validate(campaign) for campaign in campaigns]


@router.post("/campaigns/{campaign_id}/refresh", response_model=CampaignResponse)
async def refresh_campaign(
    campaign_id: str,
    aggregator: Annotated[CampaignAggregator, Depends(get_campaign_aggregator)],
) -> CampaignResponse:
    """Recompute a campaign's raised amount and subscriber counts."""
    campaign = await aggregator.refresh_campaign_rollups(campaign_id)
    return CampaignResponse.model_validate(campaign)


# ==================== Change requests ====================


@router.post(
    "/change-requests",
    response_model=ChangeRequestResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_change_request(
    request: ChangeRequestCreate,
    manager: Annotated[ChangeRequestManager, Depends(get_change_request_manager)],
) -> ChangeRequestResponse:
    change_request = await manager.create_change_request(
        request.subscription_id,
        request.change_type,
        new_value=request.new_value,
        reason=request.reason,
        created_by=request.created_by,
    )
    return ChangeRequestResponse.model_validate(change_request)


@router.post("/change-requests/{request_id}/approve", response_model=ChangeRequestResponse)
async def approve_change_request(
    request_id: str,
    decision: ChangeRequestDecision,
    manager: Annotated[ChangeRequestManager, Depends(get_change_request_manager)],
) -> ChangeRequestResponse:
    """Apply a pending change request to its plan."""
    change_request = await manager.approve(request_id, approved_by=decision.decided_by)
    return ChangeRequestResponse.model_validate(change_request)


@router.post("/change-requests/{request_id}/reject", response_model=ChangeRequestResponse)
async def reject_change_request(
    request_id: str,
    decision: ChangeRequestDecision,
    manager: Annotated[ChangeRequestManager, Depends(get_change_request_manager)],
) -> ChangeRequestResponse:
    change_request = await manager.reject(
        request_id, reason=decision.reason, rejected_by=decision.decided_by
    )
    return ChangeRequestResponse.model_validate(change_request)


# ==================== Single subscription ====================


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(
    subscription_id: str,
    manager: Annotated[SubscriptionManager, Depends(get_subscription_manager)],
) -> SubscriptionResponse:
    subscription = await manager.get(subscription_id)
    return SubscriptionResponse.model_validate(subscription)


@router.patch("/{subscription_id}", response_model=SubscriptionResponse)
async def update_subscription(
    subscription_id: str,
    changes: SubscriptionUpdateRequest,
    manager: Annotated[SubscriptionManager, Depends(get_subscription_manager)],
    user_id: UserIdHeader = None,
) -> SubscriptionResponse:
    """Partially update a plan; term changes reschedule the pending payment."""
    subscription = await manager.update(subscription_id, changes, updated_by=user_id)
    return SubscriptionResponse.model_validate(subscription)


@router.post("/{subscription_id}/pause", response_model=SubscriptionResponse)
async def pause_subscription(
    subscription_id: str,
    request: PauseRequest,
    manager: Annotated[SubscriptionManager, Depends(get_subscription_manager)],
    user_id: UserIdHeader = None,
) -> SubscriptionResponse:
    subscription = await manager.pause(subscription_id, reason=request.reason, paused_by=user_id)
    return SubscriptionResponse.model_validate(subscription)


@router.post("/{subscription_id}/resume", response_model=SubscriptionResponse)
async def resume_subscription(
    subscription_id: str,
    manager: Annotated[SubscriptionManager, Depends(get_subscription_manager)],
    user_id: UserIdHeader = None,
) -> SubscriptionResponse:
    subscription = await manager.resume(subscription_id, resumed_by=user_id)
    return SubscriptionResponse.model_validate(subscription)


@router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: str,
    request: CancelRequest,
    manager: Annotated[SubscriptionManager, Depends(get_subscription_manager)],
    user_id: UserIdHeader = None,
) -> SubscriptionResponse:
    subscription = await manager.cancel(
        subscription_id, reason=request.reason, cancelled_by=user_id
    )
    return SubscriptionResponse.model_validate(subscription)


@router.get("/{subscription_id}/payments", response_model=list[ScheduledPaymentResponse])
async def list_subscription_payments(
    subscription_id: str,
    manager: Annotated[SubscriptionManager, Depends(get_subscription_manager)],
) -> list[ScheduledPaymentResponse]:
    payments = await manager.list_payments(subscription_id)
    return [ScheduledPaymentResponse.model_validate(payment) for payment in payments]


@router.get(
    "/{subscription_id}/change-requests", response_model=list[ChangeRequestResponse]
)
async def list_subscription_change_requests(
    subscription_id: str,
    manager: Annotated[ChangeRequestManager, Depends(get_change_request_manager)],
) -> list[ChangeRequestResponse]:
    requests = await manager.list_for_subscription(subscription_id)
    return [ChangeRequestResponse.model_validate(request) for request in requests]
