"""
Donations module.

Shared exceptions and configuration for donation features.
"""

from charity.platform.donations.exceptions import (
    CampaignNotFoundError,
    ChangeRequestNotFoundError,
    ConcurrencyConflictError,
    DonationError,
    InvalidStateError,
    PaymentNotFoundError,
    PaymentProviderError,
    PersistenceError,
    SubscriptionNotFoundError,
    ValidationError,
)

__all__ = [
    "DonationError",
    "ValidationError",
    "InvalidStateError",
    "SubscriptionNotFoundError",
    "PaymentNotFoundError",
    "CampaignNotFoundError",
    "ChangeRequestNotFoundError",
    "PersistenceError",
    "PaymentProviderError",
    "ConcurrencyConflictError",
]
