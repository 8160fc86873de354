"""
Payment provider abstraction for recurring donation charges.

A provider answers a charge with a ``ChargeResult``: a decline is a normal
result, while transport problems raise ``PaymentProviderError``.
"""

from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol, runtime_checkable

import httpx
import structlog

from charity.platform.donations.config import ProviderConfig, get_donation_config
from charity.platform.donations.exceptions import PaymentProviderError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ChargeResult:
    """Result of a single charge request."""

    success: bool
    transaction_id: str | None = None
    failure_reason: str | None = None

    @classmethod
    def succeeded(cls, transaction_id: str) -> "ChargeResult":
        return cls(success=True, transaction_id=transaction_id)

    @classmethod
    def declined(cls, reason: str) -> "ChargeResult":
        return cls(success=False, failure_reason=reason)


@runtime_checkable
class PaymentProvider(Protocol):
    """Contract every payment provider integration implements."""

    name: str

    async def charge(
        self,
        account_ref: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> ChargeResult: ...


class MockPaymentProvider:
    """
    Deterministic provider for development and tests.

    Outcomes are consumed in order; once the script is exhausted every charge
    uses ``default``. Repeating an idempotency key replays the first result.
    """

    name = "mock"

    def __init__(
        self,
        outcomes: Iterable[ChargeResult | Exception] | None = None,
        default: ChargeResult | None = None,
    ):
        self._outcomes: deque[ChargeResult | Exception] = deque(outcomes or [])
        self._default = default
        self._counter = 0
        self._replays: dict[str, ChargeResult] = {}
        self.calls: list[dict[str, object]] = []

    @classmethod
    def always_succeed(cls) -> "MockPaymentProvider":
        return cls()

    @classmethod
    def always_decline(cls, reason: str = "Insufficient funds") -> "MockPaymentProvider":
        return cls(default=ChargeResult.declined(reason))

    def queue(self, *outcomes: ChargeResult | Exception) -> None:
        self._outcomes.extend(outcomes)

    async def charge(
        self,
        account_ref: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> ChargeResult:
        self.calls.append(
            {
                "account_ref": account_ref,
                "amount": amount,
                "currency": currency,
                "idempotency_key": idempotency_key,
            }
        )
        if idempotency_key in self._replays:
            return self._replays[idempotency_key]

        outcome: ChargeResult | Exception | None = (
            self._outcomes.popleft() if self._outcomes else self._default
        )
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            self._counter += 1
            outcome = ChargeResult.succeeded(f"mock_txn_{self._counter}")

        self._replays[idempotency_key] = outcome
        return outcome


class HttpPaymentProvider:
    """
    Provider speaking a simple JSON charge API over HTTPS.

    ``POST {base_url}/v1/charges`` with an ``Idempotency-Key`` header. A 2xx
    response with ``status == "succeeded"`` is a success; 402 or a ``failed``
    status is a decline; anything else is a provider error.
    """

    name = "http"

    def __init__(self, config: ProviderConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=httpx.Timeout(config.timeout_seconds),
            headers={"Authorization": f"Bearer {config.api_key}"},
        )

    async def charge(
        self,
        account_ref: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> ChargeResult:
        payload = {
            "account_ref": account_ref,
            "amount": str(amount),
            "currency": currency,
        }
        try:
            response = await self._client.post(
                "/v1/charges",
                json=payload,
                headers={"Idempotency-Key": idempotency_key},
            )
        except httpx.TimeoutException as e:
            raise PaymentProviderError("Payment provider timed out", provider=self.name) from e
        except httpx.HTTPError as e:
            raise PaymentProviderError(
                f"Payment provider unreachable: {e}", provider=self.name
            ) from e

        if response.status_code == 402:
            body = self._json(response)
            return ChargeResult.declined(str(body.get("failure_reason") or "Payment declined"))
        if response.status_code >= 400:
            raise PaymentProviderError(
                f"Payment provider returned HTTP {response.status_code}", provider=self.name
            )

        body = self._json(response)
        status = body.get("status")
        if status == "succeeded" and body.get("transaction_id"):
            return ChargeResult.succeeded(str(body["transaction_id"]))
        if status == "failed":
            return ChargeResult.declined(str(body.get("failure_reason") or "Payment declined"))
        raise PaymentProviderError(
            f"Unexpected charge status from provider: {status!r}", provider=self.name
        )

    async def close(self) -> None:
        await self._client.aclose()

    def _json(self, response: httpx.Response) -> dict[str, object]:
        try:
            body = response.json()
        except ValueError as e:
            raise PaymentProviderError(
                "Payment provider returned invalid JSON", provider=self.name
            ) from e
        if not isinstance(body, dict):
            raise PaymentProviderError(
                "Payment provider returned an unexpected body", provider=self.name
            )
        return body


def get_payment_provider(config: ProviderConfig | None = None) -> PaymentProvider:
    """Build the configured payment provider."""
    config = config or get_donation_config().provider
    if config.name == "http":
        return HttpPaymentProvider(config)
    if config.name == "mock":
        logger.warning("recurring.provider.mock_in_use")
        return MockPaymentProvider()
    raise PaymentProviderError(f"Unknown payment provider: {config.name}", provider=config.name)
