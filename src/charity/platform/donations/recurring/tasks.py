"""
Celery tasks for recurring donations.

Tasks are thin sync wrappers around async bodies run with ``asyncio.run``;
each body opens its own ``task_session``.
"""

import asyncio
from datetime import UTC, date, datetime
from typing import Any

import structlog
from celery import Task

from charity.platform.celery_app import celery_app
from charity.platform.db import task_session
from charity.platform.donations.recurring.models import (
    ChangeRequest,
    RecurringDonation,
    ScheduledPayment,
)
from charity.platform.donations.recurring.notifications import (
    CeleryNotificationDispatcher,
    WebhookNotificationClient,
    dispatch_payment_reminders,
    receipt_payload,
    reminder_payload,
)
from charity.platform.donations.recurring.processor import PaymentProcessor
from charity.platform.donations.recurring.providers import get_payment_provider

logger = structlog.get_logger(__name__)

NOTIFICATION_RETRY_DELAY_SECONDS = 300


# ==================== Periodic processing ====================


async def _process_due_payments(as_of: str | None = None) -> dict[str, Any]:
    as_of_date = date.fromisoformat(as_of) if as_of else None
    provider = get_payment_provider()
    try:
        async with task_session() as session:
            processor = PaymentProcessor(session, provider, CeleryNotificationDispatcher())
            summary = await processor.process_due(as_of_date)
    finally:
        close = getattr(provider, "close", None)
        if close is not None:
            await close()

    result = summary.model_dump()
    result["timestamp"] = datetime.now(UTC).isoformat()
    return result


async def _reconcile_stuck_payments() -> dict[str, Any]:
    provider = get_payment_provider()
    try:
        async with task_session() as session:
            processor = PaymentProcessor(session, provider, CeleryNotificationDispatcher())
            summary = await processor.reconcile_stuck()
    finally:
        close = getattr(provider, "close", None)
        if close is not None:
            await close()

    result = summary.model_dump()
    result["timestamp"] = datetime.now(UTC).isoformat()
    return result


async def _send_payment_reminders(as_of: str | None = None) -> dict[str, Any]:
    as_of_date = date.fromisoformat(as_of) if as_of else datetime.now(UTC).date()
    # Reminders never charge, so no payment provider is opened
    async with task_session() as session:
        reminded = await dispatch_payment_reminders(
            session, CeleryNotificationDispatcher(), as_of_date
        )
    return {"reminded": len(reminded), "payment_ids": reminded}


@celery_app.task(name="donations.process_due_payments")
def process_due_payments_task(as_of: str | None = None) -> dict[str, Any]:
    """Periodic task charging every scheduled payment that is due."""
    logger.info("donations.process_due_payments.started", as_of=as_of)
    result = asyncio.run(_process_due_payments(as_of))
    logger.info(
        "donations.process_due_payments.completed",
        processed=result["processed"],
        failed=result["failed"],
        skipped=result["skipped"],
        errors=result["errors"],
    )
    return result


@celery_app.task(name="donations.reconcile_stuck_payments")
def reconcile_stuck_payments_task() -> dict[str, Any]:
    """Periodic task failing payments stuck in processing past the timeout."""
    result = asyncio.run(_reconcile_stuck_payments())
    if result["processed"]:
        logger.warning("donations.reconcile_stuck_payments.reconciled", count=result["processed"])
    return result


@celery_app.task(name="donations.send_payment_reminders")
def send_payment_reminders_task(as_of: str | None = None) -> dict[str, Any]:
    """Periodic task queueing upcoming-payment reminders."""
    return asyncio.run(_send_payment_reminders(as_of))


# ==================== Donor notifications ====================


async def _send_receipt(payment_id: str) -> dict[str, Any]:
    async with task_session() as session:
        payment = await session.get(ScheduledPayment, payment_id)
        if payment is None:
            return {"payment_id": payment_id, "delivered": False, "reason": "not_found"}
        subscription = await session.get(RecurringDonation, payment.subscription_id)

        payment.receipt_generated = True
        delivered = await WebhookNotificationClient().deliver(
            "donation.receipt", receipt_payload(payment, subscription)
        )
        if delivered:
            payment.receipt_sent = True
    return {"payment_id": payment_id, "delivered": delivered}


async def _send_failure_notification(subscription_id: str, reason: str) -> dict[str, Any]:
    async with task_session() as session:
        subscription = await session.get(RecurringDonation, subscription_id)
        if subscription is None:
            return {"subscription_id": subscription_id, "delivered": False, "reason": "not_found"}
        delivered = await WebhookNotificationClient().deliver(
            "donation.subscription_failed",
            {
                "subscription_id": subscription.id,
                "donor_id": subscription.donor_id,
                "reason": reason,
                "failed_payments": subscription.failed_payments,
            },
        )
    return {"subscription_id": subscription_id, "delivered": delivered}


async def _send_change_request_update(request_id: str) -> dict[str, Any]:
    async with task_session() as session:
        request = await session.get(ChangeRequest, request_id)
        if request is None:
            return {"request_id": request_id, "delivered": False, "reason": "not_found"}
        delivered = await WebhookNotificationClient().deliver(
            "donation.change_request_updated",
            {
                "request_id": request.id,
                "subscription_id": request.subscription_id,
                "change_type": request.change_type.value,
                "status": request.status.value,
                "rejection_reason": request.rejection_reason,
            },
        )
    return {"request_id": request_id, "delivered": delivered}


async def _send_payment_reminder(payment_id: str) -> dict[str, Any]:
    async with task_session() as session:
        payment = await session.get(ScheduledPayment, payment_id)
        if payment is None:
            return {"payment_id": payment_id, "delivered": False, "reason": "not_found"}
        subscription = await session.get(RecurringDonation, payment.subscription_id)
        delivered = await WebhookNotificationClient().deliver(
            "donation.payment_reminder", reminder_payload(payment, subscription)
        )
    return {"payment_id": payment_id, "delivered": delivered}


def _retry_undelivered(task: Task, result: dict[str, Any]) -> dict[str, Any]:
    if result["delivered"] or result.get("reason") == "not_found":
        return result
    raise task.retry(countdown=NOTIFICATION_RETRY_DELAY_SECONDS)


@celery_app.task(bind=True, name="donations.send_receipt", max_retries=3)
def send_receipt_task(self: Task, payment_id: str) -> dict[str, Any]:
    """Deliver a donation receipt for a completed payment."""
    return _retry_undelivered(self, asyncio.run(_send_receipt(payment_id)))


@celery_app.task(bind=True, name="donations.send_failure_notification", max_retries=3)
def send_failure_notification_task(
    self: Task, subscription_id: str, reason: str
) -> dict[str, Any]:
    """Tell the donor their plan failed after exhausting retries."""
    return _retry_undelivered(
        self, asyncio.run(_send_failure_notification(subscription_id, reason))
    )


@celery_app.task(bind=True, name="donations.send_change_request_update", max_retries=3)
def send_change_request_update_task(self: Task, request_id: str) -> dict[str, Any]:
    """Tell the donor their change request was decided."""
    return _retry_undelivered(self, asyncio.run(_send_change_request_update(request_id)))


@celery_app.task(bind=True, name="donations.send_payment_reminder", max_retries=3)
def send_payment_reminder_task(self: Task, payment_id: str) -> dict[str, Any]:
    """Remind the donor of an upcoming charge."""
    return _retry_undelivered(self, asyncio.run(_send_payment_reminder(payment_id)))


__all__ = [
    "process_due_payments_task",
    "reconcile_stuck_payments_task",
    "send_payment_reminders_task",
    "send_receipt_task",
    "send_failure_notification_task",
    "send_change_request_update_task",
    "send_payment_reminder_task",
]
