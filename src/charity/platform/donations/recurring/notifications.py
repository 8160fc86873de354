"""
Donor notifications for recurring donations.

The payment state machine only talks to a ``NotificationService``. The
default implementation enqueues Celery tasks, so a slow or failing channel
never holds up payment processing. Delivery itself is done by
``WebhookNotificationClient`` inside the task.
"""

from datetime import date, datetime, timedelta
from typing import Any, Protocol

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from charity.platform.donations.config import NotificationConfig, get_donation_config
from charity.platform.donations.recurring.models import (
    PaymentStatus,
    RecurringDonation,
    ScheduledPayment,
    SubscriptionStatus,
)

logger = structlog.get_logger(__name__)

# Longest reminder lead time considered by the reminder sweep
MAX_REMINDER_DAYS = 30


class NotificationService(Protocol):
    """Fire-and-forget donor notifications."""

    def send_receipt(self, payment_id: str) -> None: ...

    def send_failure_notification(self, subscription_id: str, reason: str) -> None: ...

    def send_change_request_update(self, request_id: str) -> None: ...

    def send_payment_reminder(self, payment_id: str) -> None: ...


class CeleryNotificationDispatcher:
    """Dispatches each notification as a Celery task. Dispatch failures are logged only."""

    def send_receipt(self, payment_id: str) -> None:
        from charity.platform.donations.recurring.tasks import send_receipt_task

        self._dispatch(send_receipt_task, payment_id, payment_id=payment_id)

    def send_failure_notification(self, subscription_id: str, reason: str) -> None:
        from charity.platform.donations.recurring.tasks import send_failure_notification_task

        self._dispatch(
            send_failure_notification_task,
            subscription_id,
            reason,
            subscription_id=subscription_id,
        )

    def send_change_request_update(self, request_id: str) -> None:
        from charity.platform.donations.recurring.tasks import send_change_request_update_task

        self._dispatch(send_change_request_update_task, request_id, request_id=request_id)

    def send_payment_reminder(self, payment_id: str) -> None:
        from charity.platform.donations.recurring.tasks import send_payment_reminder_task

        self._dispatch(send_payment_reminder_task, payment_id, payment_id=payment_id)

    def _dispatch(self, task: Any, *args: Any, **log_context: Any) -> None:
        try:
            task.delay(*args)
        except Exception as e:
            logger.warning(
                "recurring.notification.dispatch_failed",
                task=task.name,
                error=str(e),
                **log_context,
            )


class WebhookNotificationClient:
    """
    Delivers notification requests to the configured webhook endpoint.

    Message content and channel (email, SMS, ...) are decided by the
    receiving service. Without an endpoint the request is only logged.
    """

    def __init__(
        self,
        config: NotificationConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.config = config or get_donation_config().notifications
        self._client = client

    async def deliver(self, event_type: str, payload: dict[str, Any]) -> bool:
        """Send one notification. Returns True when the endpoint accepted it."""
        if not self.config.webhook_url:
            logger.info("recurring.notification.logged", event_type=event_type, **payload)
            return True

        body = {"type": event_type, "data": payload}
        try:
            if self._client is not None:
                response = await self._client.post(self.config.webhook_url, json=body)
            else:
                async with httpx.AsyncClient(
                    timeout=httpx.Timeout(self.config.timeout_seconds)
                ) as client:
                    response = await client.post(self.config.webhook_url, json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(
                "recurring.notification.delivery_failed",
                event_type=event_type,
                error=str(e),
            )
            return False

        logger.info("recurring.notification.delivered", event_type=event_type)
        return True


def _jsonable(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if value is None or isinstance(value, (bool, int, str)):
        return value
    return str(value)


def receipt_payload(payment: ScheduledPayment, subscription: RecurringDonation) -> dict[str, Any]:
    return {
        "payment_id": payment.id,
        "subscription_id": subscription.id,
        "donor_id": subscription.donor_id,
        "amount": _jsonable(payment.amount),
        "currency": payment.currency,
        "transaction_id": payment.provider_transaction_id,
        "processed_date": _jsonable(payment.processed_date),
    }


def reminder_payload(payment: ScheduledPayment, subscription: RecurringDonation) -> dict[str, Any]:
    return {
        "payment_id": payment.id,
        "subscription_id": subscription.id,
        "donor_id": subscription.donor_id,
        "amount": _jsonable(payment.amount),
        "currency": payment.currency,
        "scheduled_date": _jsonable(payment.scheduled_date),
    }


async def dispatch_payment_reminders(
    db: AsyncSession,
    notifier: NotificationService,
    as_of: date,
) -> list[str]:
    """
    Queue upcoming-payment reminders for plans that asked for them.

    A reminder is due once ``as_of`` is within the plan's ``reminder_days_before``
    of the scheduled date. Each attempt is reminded at most once.
    """
    stmt = (
        select(ScheduledPayment, RecurringDonation)
        .join(RecurringDonation, RecurringDonation.id == ScheduledPayment.subscription_id)
        .where(
            ScheduledPayment.status == PaymentStatus.SCHEDULED,
            ScheduledPayment.reminder_sent.is_(False),
            ScheduledPayment.scheduled_date > as_of,
            ScheduledPayment.scheduled_date <= as_of + timedelta(days=MAX_REMINDER_DAYS),
            RecurringDonation.send_reminders.is_(True),
            RecurringDonation.status == SubscriptionStatus.ACTIVE,
        )
        .order_by(ScheduledPayment.scheduled_date)
    )
    result = await db.execute(stmt)

    reminded: list[str] = []
    for payment, subscription in result.all():
        if payment.scheduled_date - timedelta(days=subscription.reminder_days_before) > as_of:
            continue
        payment.reminder_sent = True
        reminded.append(payment.id)
        notifier.send_payment_reminder(payment.id)

    if reminded:
        await db.flush()
        logger.info("recurring.reminders.dispatched", count=len(reminded), as_of=as_of.isoformat())
    return reminded