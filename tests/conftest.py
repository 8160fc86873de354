"""
Global pytest configuration and fixtures for the charity platform tests.
"""

import os
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock

# Keep tests on SQLite and away from any local .env database settings
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.pop("DATABASE__URL", None)

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from charity.platform.db import Base  # noqa: E402
from charity.platform.donations.config import (  # noqa: E402
    RecurringDonationConfig,
    set_donation_config,
)
from charity.platform.donations.recurring import models  # noqa: E402,F401
from charity.platform.donations.recurring.models import Frequency  # noqa: E402
from charity.platform.donations.recurring.providers import MockPaymentProvider  # noqa: E402
from charity.platform.donations.recurring.schemas import SubscriptionCreateRequest  # noqa: E402
from charity.platform.donations.recurring.service import SubscriptionManager  # noqa: E402


class FakeClock:
    """Settable clock injected into the services."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set_date(self, year: int, month: int, day: int, hour: int = 10) -> None:
        self.now = datetime(year, month, day, hour, tzinfo=UTC)

    def advance(self, **kwargs: Any) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest_asyncio.fixture
async def async_db():
    """Create an in-memory database with the recurring donation tables."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    await engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 1, 10, tzinfo=UTC))


@pytest.fixture
def donation_config() -> RecurringDonationConfig:
    return RecurringDonationConfig()


@pytest.fixture(autouse=True)
def _reset_donation_config():
    yield
    set_donation_config(None)


@pytest.fixture
def provider() -> MockPaymentProvider:
    return MockPaymentProvider()


@pytest.fixture
def notifier() -> MagicMock:
    """Records notification dispatches instead of queueing Celery tasks."""
    return MagicMock()


@pytest.fixture
def manager(async_db, donation_config, clock) -> SubscriptionManager:
    return SubscriptionManager(async_db, config=donation_config, clock=clock)


@pytest.fixture
def make_request():
    """Factory building a valid monthly plan request."""

    def _make(**overrides: Any) -> SubscriptionCreateRequest:
        data: dict[str, Any] = {
            "donor_id": "donor-1",
            "subscription_name": "Monthly water well support",
            "amount": Decimal("50"),
            "frequency": Frequency.MONTHLY,
            "interval_count": 1,
            "start_date": date(2024, 1, 1),
            "payment_reference": "card_tok_1",
        }
        data.update(overrides)
        return SubscriptionCreateRequest(**data)

    return _make
