"""
Recurring donation exceptions.

Custom exceptions for donation plan and payment operations with clear error messages.
Each error carries a status code, context, and a recovery hint.
"""

from typing import Any


class DonationError(Exception):
    """
    Base donation system error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "DONATION_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class ValidationError(DonationError):
    """Invalid input when creating or updating a donation plan."""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        context = dict(context or {})
        if field:
            context["field"] = field

        super().__init__(
            message,
            "VALIDATION_ERROR",
            status_code=422,
            context=context,
            recovery_hint="Correct the highlighted field and submit the request again",
        )


class InvalidStateError(DonationError):
    """Illegal lifecycle transition."""

    def __init__(
        self,
        message: str,
        current_state: str,
        requested_state: str,
        context: dict[str, Any] | None = None,
    ):
        context = dict(context or {})
        context.update({"current_state": current_state, "requested_state": requested_state})

        super().__init__(
            message,
            "INVALID_STATE",
            status_code=409,
            context=context,
            recovery_hint=f"Cannot transition from {current_state} to {requested_state}. Check the current status first.",
        )


class SubscriptionNotFoundError(DonationError):
    """Donation plan not found."""

    def __init__(self, message: str, subscription_id: str | None = None) -> None:
        context = {}
        if subscription_id:
            context["subscription_id"] = subscription_id

        super().__init__(
            message,
            "SUBSCRIPTION_NOT_FOUND",
            status_code=404,
            context=context,
            recovery_hint="Verify the recurring donation ID and ensure it exists",
        )


class PaymentNotFoundError(DonationError):
    """Scheduled payment not found."""

    def __init__(self, message: str, payment_id: str | None = None) -> None:
        context = {}
        if payment_id:
            context["payment_id"] = payment_id

        super().__init__(
            message,
            "PAYMENT_NOT_FOUND",
            status_code=404,
            context=context,
            recovery_hint="Verify the payment ID and ensure it exists",
        )


class CampaignNotFoundError(DonationError):
    """Campaign not found."""

    def __init__(self, message: str, campaign_id: str | None = None) -> None:
        context = {}
        if campaign_id:
            context["campaign_id"] = campaign_id

        super().__init__(
            message,
            "CAMPAIGN_NOT_FOUND",
            status_code=404,
            context=context,
            recovery_hint="Verify the campaign ID and ensure it exists",
        )


class ChangeRequestNotFoundError(DonationError):
    """Change request not found."""

    def __init__(self, message: str, request_id: str | None = None) -> None:
        context = {}
        if request_id:
            context["request_id"] = request_id

        super().__init__(
            message,
            "CHANGE_REQUEST_NOT_FOUND",
            status_code=404,
            context=context,
            recovery_hint="Verify the change request ID and ensure it exists",
        )


class PersistenceError(DonationError):
    """The durable store rejected or could not complete an operation."""

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        context = dict(context or {})
        if operation:
            context["operation"] = operation

        super().__init__(
            message,
            "PERSISTENCE_ERROR",
            status_code=503,
            context=context,
            recovery_hint="The store is unavailable. Retry the operation later",
        )


class PaymentProviderError(DonationError):
    """The payment provider could not be reached or returned an unusable response."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        payment_id: str | None = None,
    ):
        context = {}
        if provider:
            context["provider"] = provider
        if payment_id:
            context["payment_id"] = payment_id

        super().__init__(
            message,
            "PAYMENT_PROVIDER_ERROR",
            status_code=502,
            context=context,
            recovery_hint="The attempt is retried automatically according to the retry policy",
        )


class ConcurrencyConflictError(DonationError):
    """Another worker already claimed or changed the record."""

    def __init__(self, message: str, payment_id: str | None = None) -> None:
        context = {}
        if payment_id:
            context["payment_id"] = payment_id

        super().__init__(
            message,
            "CONCURRENCY_CONFLICT",
            status_code=409,
            context=context,
            recovery_hint="The record was already handled by another worker",
        )
