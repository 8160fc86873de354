#!/usr/bin/env python
"""
CLI management commands for the charity platform.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date
from typing import Any, Protocol

import click

from charity.platform.db import create_all_tables_async, get_async_db
from charity.platform.donations.recurring.analytics import CampaignAggregator
from charity.platform.donations.recurring.notifications import (
    CeleryNotificationDispatcher,
    NotificationService,
)
from charity.platform.donations.recurring.processor import PaymentProcessor
from charity.platform.donations.recurring.providers import PaymentProvider, get_payment_provider
from charity.platform.logging import setup_logging


class AsyncSessionManager(Protocol):
    async def __aenter__(self) -> Any: ...  # pragma: no cover - protocol definition
    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> Any: ...  # pragma: no cover


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    session_factory: Callable[[], AsyncSessionManager]
    init_db: Callable[[], Awaitable[None]]
    provider_factory: Callable[[], PaymentProvider]
    notifier_factory: Callable[[], NotificationService]


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(
        session_factory=get_async_db,
        init_db=create_all_tables_async,
        provider_factory=get_payment_provider,
        notifier_factory=CeleryNotificationDispatcher,
    )


def _parse_date(value: str | None) -> date | None:
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise click.BadParameter(f"expected YYYY-MM-DD, got {value!r}") from e


@click.group()
def cli() -> None:
    """Charity Platform CLI."""
    setup_logging()


@cli.command()
def init_db() -> None:
    """Create the recurring donation tables."""
    deps = _get_cli_dependencies()
    click.echo("Initializing database...")
    asyncio.run(deps.init_db())
    click.echo("Database initialized successfully!")


@cli.command()
@click.option("--as-of", "as_of", default=None, help="Process payments due on or before this date")
def process_due(as_of: str | None) -> None:
    """Charge every scheduled payment that is due."""
    deps = _get_cli_dependencies()
    as_of_date = _parse_date(as_of)

    async def _process() -> dict[str, Any]:
        async with deps.session_factory() as session:
            processor = PaymentProcessor(session, deps.provider_factory(), deps.notifier_factory())
            summary = await processor.process_due(as_of_date)
        return summary.model_dump()

    result = asyncio.run(_process())
    click.echo(
        f"Processed {result['processed']} payments: {result['succeeded']} succeeded, "
        f"{result['failed']} failed, {result['skipped']} skipped, {result['errors']} errors"
    )


@cli.command()
def reconcile() -> None:
    """Fail payments stuck in processing past the timeout."""
    deps = _get_cli_dependencies()

    async def _reconcile() -> dict[str, Any]:
        async with deps.session_factory() as session:
            processor = PaymentProcessor(session, deps.provider_factory(), deps.notifier_factory())
            summary = await processor.reconcile_stuck()
        return summary.model_dump()

    result = asyncio.run(_reconcile())
    click.echo(f"Reconciled {result['processed']} stuck payments")


@cli.command()
@click.option("--as-of", "as_of", default=None, help="Reference date for the reminder window")
def send_reminders(as_of: str | None) -> None:
    """Queue reminders for upcoming payments."""
    deps = _get_cli_dependencies()
    as_of_date = _parse_date(as_of)

    async def _send() -> list[str]:
        async with deps.session_factory() as session:
            processor = PaymentProcessor(session, deps.provider_factory(), deps.notifier_factory())
            return await processor.send_reminders(as_of_date)

    reminded = asyncio.run(_send())
    click.echo(f"Queued {len(reminded)} payment reminders")


@cli.command()
def dashboard() -> None:
    """Print the recurring donation dashboard as JSON."""
    deps = _get_cli_dependencies()

    async def _dashboard() -> str:
        async with deps.session_factory() as session:
            result = await CampaignAggregator(session).compute_dashboard()
        return result.model_dump_json(indent=2)

    click.echo(asyncio.run(_dashboard()))


if __name__ == "__main__":
    cli()
