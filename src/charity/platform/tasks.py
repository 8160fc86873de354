"""
Central task registration module for Celery.

This module imports all task definitions to ensure they are registered
with the main Celery application instance.
"""

from charity.platform.donations.recurring.tasks import (  # noqa: F401
    process_due_payments_task,
    reconcile_stuck_payments_task,
    send_change_request_update_task,
    send_failure_notification_task,
    send_payment_reminder_task,
    send_payment_reminders_task,
    send_receipt_task,
)

__all__ = [
    "process_due_payments_task",
    "reconcile_stuck_payments_task",
    "send_payment_reminders_task",
    "send_receipt_task",
    "send_failure_notification_task",
    "send_change_request_update_task",
    "send_payment_reminder_task",
]
