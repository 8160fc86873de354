"""
Recurring donations module configuration
"""

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ResumeAnchor(str, Enum):
    """How the billing cycle is re-anchored when a paused plan resumes."""

    RESUME_DATE = "resume_date"
    ORIGINAL_CYCLE = "original_cycle"


class ProviderConfig(BaseModel):
    """Payment provider configuration"""

    model_config = ConfigDict()

    name: str = Field("mock", description="Provider implementation (mock or http)")
    base_url: str = Field("https://payments.example.org", description="Provider API base URL")
    api_key: str = Field("", description="Provider API key")
    timeout_seconds: float = Field(15.0, gt=0, description="Charge request timeout")


class NotificationConfig(BaseModel):
    """Donor notification configuration"""

    model_config = ConfigDict()

    webhook_url: str | None = Field(None, description="Notification endpoint, log-only if unset")
    timeout_seconds: float = Field(10.0, gt=0, description="Notification request timeout")


class RecurringDonationConfig(BaseModel):
    """Main recurring donation configuration"""

    model_config = ConfigDict()

    default_currency: str = Field("TRY", description="Default donation currency")
    max_retries: int = Field(3, ge=1, description="Failed attempts before a plan fails")
    retry_delay_days: int = Field(3, ge=0, description="Days between retry attempts")
    change_approval_threshold: Decimal = Field(
        Decimal("10000"), description="Amount change above which approval is required"
    )
    processing_timeout_minutes: int = Field(
        30, ge=1, description="Minutes before a processing payment counts as stuck"
    )
    batch_size: int = Field(500, ge=1, description="Max payments handled per tick")
    resume_anchor: ResumeAnchor = Field(
        ResumeAnchor.RESUME_DATE, description="Cycle anchor used on resume"
    )

    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)

    @classmethod
    def from_settings(cls) -> "RecurringDonationConfig":
        """Create configuration from the centralized settings."""
        from charity.platform.settings import settings

        donations = settings.donations
        return cls(
            default_currency=donations.default_currency,
            max_retries=donations.max_retries,
            retry_delay_days=donations.retry_delay_days,
            change_approval_threshold=donations.change_approval_threshold,
            processing_timeout_minutes=donations.processing_timeout_minutes,
            batch_size=donations.batch_size,
            resume_anchor=ResumeAnchor(donations.resume_anchor),
            provider=ProviderConfig(
                name=donations.payment_provider,
                base_url=donations.provider_base_url,
                api_key=donations.provider_api_key,
                timeout_seconds=donations.provider_timeout_seconds,
            ),
            notifications=NotificationConfig(
                webhook_url=donations.notification_webhook_url,
                timeout_seconds=donations.notification_timeout_seconds,
            ),
        )


# Global configuration instance
_donation_config: RecurringDonationConfig | None = None


def get_donation_config() -> RecurringDonationConfig:
    """Get the global recurring donation configuration instance"""
    global _donation_config
    if _donation_config is None:
        _donation_config = RecurringDonationConfig.from_settings()
    return _donation_config


def set_donation_config(config: RecurringDonationConfig | None) -> None:
    """Set (or clear) the global recurring donation configuration instance"""
    global _donation_config
    _donation_config = config
