"""
Greeter CLI - run the greeting jobs by hand.

Usage:
    greeter --help                   Show all commands
    greeter poll                     Run one polling cycle and drain the queue
    greeter consume                  Drain the delivery queue
    greeter retry                    Run one dead-letter retry cycle
    greeter purge                    Delete expired delivery records
    greeter status USER_ID           Show a user's delivery record for today
    greeter status USER_ID -d DATE   ... for a given UTC date
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from datetime import date
from typing import TypeVar

import typer

from greeter.bootstrap import Services, open_services
from greeter.config import get_config
from greeter.core.datetime_utils import aware_utc_now
from greeter.core.errors import GreeterError
from greeter.core.logging import setup_logging

app = typer.Typer(
    name="greeter",
    help="Greeter CLI - birthday greeting job runner",
    no_args_is_help=True,
)

T = TypeVar("T")


def _print_success(message: str) -> None:
    """Print a success message."""
    typer.echo(f"  ✅ {message}")


def _print_warning(message: str) -> None:
    """Print a warning message."""
    typer.echo(f"  ⚠️ {message}")


def _print_error(message: str) -> None:
    """Print an error message to stderr."""
    typer.echo(f"❌ {message}", err=True)


def _run(work: Callable[[Services], Awaitable[T]]) -> T:
    """Open services, run one unit of work, close services."""
    setup_logging()

    async def _main() -> T:
        async with open_services(get_config()) as services:
            return await work(services)

    try:
        return asyncio.run(_main())
    except GreeterError as e:
        _print_error(e.message)
        raise typer.Exit(code=1) from e


@app.command()
def init_db():
    """Create tables directly (local development; use Alembic elsewhere)."""

    async def work(services: Services) -> None:
        await services.database.create_all()

    _run(work)
    _print_success("Tables created")


@app.command()
def poll():
    """Run one polling cycle (find due users, enqueue) and drain the queue."""

    async def work(services: Services) -> None:
        cycle = await services.pipeline.run_polling_cycle()
        consumed = await services.queue.consume(services.config.queue.consume_max_messages)
        _print_success(
            f"Due: {cycle.due}, claimed: {cycle.claimed}, enqueued: {cycle.enqueued}, "
            f"delivered: {consumed.delivered}"
        )
        if cycle.failed or consumed.dead_lettered:
            _print_warning(
                f"Enqueue failures: {cycle.failed}, dead-lettered: {consumed.dead_lettered}"
            )

    _run(work)


@app.command()
def consume(
    max_messages: int = typer.Option(500, "--max", "-m", help="Maximum messages to process"),
):
    """Drain the delivery queue into the webhook."""

    async def work(services: Services) -> None:
        report = await services.queue.consume(max_messages)
        _print_success(
            f"Received: {report.received}, delivered: {report.delivered}, "
            f"skipped: {report.skipped}, dead-lettered: {report.dead_lettered}"
        )

    _run(work)


@app.command()
def retry():
    """Run one dead-letter retry cycle."""

    async def work(services: Services) -> None:
        report = await services.retry_loop.run_cycle()
        if report.pending == 0:
            _print_success("Dead-letter queue is empty")
            return
        _print_success(
            f"Received: {report.received}, delivered: {report.delivered}, "
            f"removed: {report.removed}, still failing: {report.left}"
        )

    _run(work)


@app.command()
def purge():
    """Delete delivery records past their retention."""

    async def work(services: Services) -> int:
        return await services.tracker.purge_expired()

    purged = _run(work)
    _print_success(f"Purged {purged} expired records")


@app.command()
def status(
    user_id: str = typer.Argument(..., help="User ID"),
    on: str | None = typer.Option(None, "--date", "-d", help="UTC date, YYYY-MM-DD"),
):
    """Show the delivery record for a user's greeting."""
    try:
        parsed_id = uuid.UUID(user_id)
        occurrence = date.fromisoformat(on) if on else aware_utc_now().date()
    except ValueError as e:
        _print_error(f"Invalid argument: {e}")
        raise typer.Exit(code=2) from e

    async def work(services: Services) -> None:
        key = services.tracker.make_key(parsed_id, occurrence)
        record = await services.tracker.get(key)
        if record is None:
            _print_warning(f"No delivery record for {key}")
            return
        typer.echo(f"{record.key}: {record.status.value} (attempts: {record.attempts})")
        if record.last_error:
            typer.echo(f"  last error: {record.last_error}")

    _run(work)


if __name__ == "__main__":
    app()
