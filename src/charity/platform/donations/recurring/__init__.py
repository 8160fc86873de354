"""
Recurring donations.

Plans (``RecurringDonation``) generate one ``ScheduledPayment`` per billing
cycle. ``PaymentProcessor`` charges due attempts and applies the retry policy.
"""

from charity.platform.donations.recurring.models import (
    Campaign,
    ChangeRequest,
    Frequency,
    PaymentStatus,
    RecurringDonation,
    ScheduledPayment,
    SubscriptionStatus,
)
from charity.platform.donations.recurring.scheduling import PaymentScheduler, compute_next_date

__all__ = [
    "Campaign",
    "ChangeRequest",
    "Frequency",
    "PaymentStatus",
    "RecurringDonation",
    "ScheduledPayment",
    "SubscriptionStatus",
    "PaymentScheduler",
    "compute_next_date",
]
