"""
Celery application configuration.

Registers the recurring donation task modules and their beat schedule.
"""

from typing import Any

import structlog
from celery import Celery
from kombu import Queue

from charity.platform.settings import settings

# Create Celery application
celery_app = Celery(
    "charity_platform",
    broker=settings.celery.broker_url,
    backend=settings.celery.result_backend,
    include=[
        "charity.platform.tasks",
        "charity.platform.donations.recurring.tasks",
    ],  # Auto-discover task modules
)

# Configure Celery settings
celery_app.conf.update(
    # Task routing
    task_routes={
        "donations.process_due_payments": {"queue": "payments"},
        "donations.reconcile_stuck_payments": {"queue": "payments"},
        "donations.send_*": {"queue": "notifications"},
    },
    # Queue configuration
    task_default_queue="default",
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("payments", routing_key="payments"),
        Queue("notifications", routing_key="notifications"),
    ),
    # Task execution settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_always_eager=settings.celery.task_always_eager,
    # Task result settings
    result_expires=3600,  # 1 hour
    task_track_started=True,
    task_time_limit=settings.celery.task_time_limit,
    task_soft_time_limit=settings.celery.task_soft_time_limit,
    # Worker settings
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    worker_max_tasks_per_child=1000,
    # Monitoring
    worker_send_task_events=True,
    task_send_sent_event=True,
)


@celery_app.on_after_configure.connect  # type: ignore[misc]
def setup_worker_logging(sender: Any, **kwargs: Any) -> None:
    """Configure structlog for worker processes."""
    from charity.platform.logging import setup_logging

    setup_logging()


@celery_app.on_after_finalize.connect  # type: ignore[misc]
def setup_periodic_tasks(sender: Any, **kwargs: Any) -> None:
    """Register the recurring donation beat schedule."""
    from charity.platform.donations.recurring.tasks import (
        process_due_payments_task,
        reconcile_stuck_payments_task,
        send_payment_reminders_task,
    )

    # Charge due payments (daily by default)
    sender.add_periodic_task(
        float(settings.celery.process_due_interval_seconds),
        process_due_payments_task.s(),
        name="donations-process-due-payments",
    )

    # Fail payments stuck in processing
    sender.add_periodic_task(
        float(settings.celery.reconcile_interval_seconds),
        reconcile_stuck_payments_task.s(),
        name="donations-reconcile-stuck-payments",
    )

    # Upcoming payment reminders
    sender.add_periodic_task(
        float(settings.celery.reminder_interval_seconds),
        send_payment_reminders_task.s(),
        name="donations-send-payment-reminders",
    )

    logger = structlog.get_logger(__name__)
    logger.info(
        "celery.worker.configured",
        broker=settings.celery.broker_url,
        backend=settings.celery.result_backend,
        queues=["default", "payments", "notifications"],
        periodic_tasks=[
            "donations-process-due-payments",
            "donations-reconcile-stuck-payments",
            "donations-send-payment-reminders",
        ],
    )


if __name__ == "__main__":
    # For running worker directly: python -m charity.platform.celery_app worker
    celery_app.start()
