# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for campaign-mailer.

Usage:
    campaign-mailer serve [--host 0.0.0.0] [--port 8000]
    campaign-mailer process [--manual] [--json]
    campaign-mailer stats [--json]
    campaign-mailer add-user EMAIL
    campaign-mailer generate-secret

Every command reads the same settings as the server (``--config`` or
``$CM_CONFIG``, then ``CM_*`` environment variables).
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

import click
from rich.console import Console
from rich.table import Table

from .config_loader import ConfigurationError, ServiceSettings, load_settings
from .core import CampaignMailerCore, RegistrationError
from .encryption import generate_secret
from .logger import configure_logging
from .processor import Trigger

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _settings(ctx: click.Context) -> ServiceSettings:
    return ctx.obj["settings"]


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Path to config.ini (default: $CM_CONFIG or ./config.ini).")
@click.version_option(package_name="campaign-mailer")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str]) -> None:
    """campaign-mailer: scheduled, encrypted bulk email delivery."""
    settings = load_settings(config_path)
    configure_logging(settings.log_level)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to.")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on.")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Run the HTTP service (API, tracking and scheduler)."""
    import uvicorn

    from .server import build_app

    settings = _settings(ctx)
    if host:
        settings.host = host
    if port:
        settings.port = port
    console.print(f"[bold]Starting campaign-mailer[/bold] on http://{settings.host}:{settings.port}")
    uvicorn.run(build_app(settings), host=settings.host, port=settings.port)


@main.command("process")
@click.option("--manual", is_flag=True, help="Manual round: ignore retry ceiling and retry FAILED jobs.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def process(ctx: click.Context, manual: bool, as_json: bool) -> None:
    """Run one processing round and wait for its continuations."""
    settings = _settings(ctx)

    async def _process():
        core = CampaignMailerCore(settings)
        await core.init()
        try:
            result = await core.process(Trigger(manual=manual, source="manual" if manual else "cli"))
            await core.continuation.drain()
            return result
        finally:
            await core.stop()

    try:
        result = run_async(_process())
    except ConfigurationError as exc:
        print_error(str(exc))
        raise SystemExit(1)

    if as_json:
        print_json(result)
        return
    if not result.get("processed") and "message" in result:
        console.print(f"[dim]{result['message']}[/dim]")
        console.print(f"  Future pending:    {result['futurePendingCount']}")
        console.print(f"  Retryable failed:  {result['failedRetryableCount']}")
        return

    table = Table(title=f"Processed {result['processed']} of {result['batchSize']} selected")
    table.add_column("Job", style="cyan")
    table.add_column("Outcome")
    for item in result["results"]:
        if item["success"]:
            outcome = "[green]sent[/green]"
        elif item.get("retrying"):
            outcome = "[yellow]retrying[/yellow]"
        else:
            outcome = "[red]failed[/red]"
        table.add_row(item["id"], outcome)
    console.print(table)


@main.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def stats(ctx: click.Context, as_json: bool) -> None:
    """Show job counts by status."""
    settings = _settings(ctx)

    async def _stats():
        core = CampaignMailerCore(settings)
        await core.init()
        return await core.persistence.count_by_status()

    counts = run_async(_stats())
    if as_json:
        print_json(counts)
        return
    table = Table(title="Email jobs")
    table.add_column("Status", style="cyan")
    table.add_column("Count", justify="right")
    for status in ("PENDING", "SENDING", "SENT", "FAILED", "CANCELLED"):
        table.add_row(status, str(counts.get(status, 0)))
    console.print(table)


@main.command("add-user")
@click.argument("email")
@click.password_option("--password", help="Password for the new user.")
@click.pass_context
def add_user(ctx: click.Context, email: str, password: str) -> None:
    """Create a user who can log in and own campaigns."""
    settings = _settings(ctx)

    async def _add():
        core = CampaignMailerCore(settings)
        await core.init()
        return await core.register_user(email, password)

    try:
        user = run_async(_add())
    except RegistrationError as exc:
        print_error(str(exc))
        raise SystemExit(1)
    print_success(f"User {user['email']} created (id={user['id']})")


@main.command("generate-secret")
def generate_secret_cmd() -> None:
    """Print a new random value for encryption_key or cron_secret."""
    click.echo(generate_secret())


if __name__ == "__main__":
    main()
