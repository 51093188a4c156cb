# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for the email dispatch service.

The CLI works directly on the configured database, without going through
the HTTP API. Only ``serve`` starts the background loops; the other commands
open the store, run one operation and exit.

Usage:
    email-dispatch serve
    email-dispatch settings show
    email-dispatch settings set --maintenance-mode on --max-per-day 3
    email-dispatch campaigns list --status SENT
    email-dispatch campaigns send <campaign_id>
    email-dispatch logs --status FAILED --limit 20
    email-dispatch stats

Example:
    $ email-dispatch --config /etc/email-dispatch/config.ini settings set \\
        --from-email news@shop.example --from-name "Shop News"
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any, Optional

import click
from rich.console import Console
from rich.table import Table

from .config_loader import DispatchConfig, load_config
from .core import DispatchCore
from .errors import DispatchError
from .logger import configure_logging
from .models import CampaignStatus, EmailStatus

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


def _build_core(config: DispatchConfig) -> DispatchCore:
    from .bootstrap import build_core

    return build_core(config)


def _run(ctx: click.Context, operation):
    """Open the store, run ``operation(core)`` and translate dispatch errors."""
    core = _build_core(ctx.obj["config"])

    async def _go():
        await core.persistence.init_db()
        return await operation(core)

    try:
        return run_async(_go())
    except DispatchError as exc:
        print_error(f"{exc} ({exc.code})")
        sys.exit(1)


@click.group()
@click.option("--config", "config_path", default=None, help="Path to the INI config file.")
@click.option("--db", "db_path", default=None, help="Override the database path.")
@click.version_option(package_name="email-dispatch")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], db_path: Optional[str]) -> None:
    """Email dispatch engine: campaigns, transactional sends and delivery logs."""
    config = load_config(config_path)
    if db_path:
        config.db_path = db_path
    configure_logging(config.log_level)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to.")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on.")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Run the HTTP API and the background dispatch loops."""
    import uvicorn

    from .bootstrap import build_app

    config: DispatchConfig = ctx.obj["config"]
    app = build_app(config)
    uvicorn.run(app, host=host or config.host, port=port or config.port, log_level=config.log_level.lower())


# Settings -------------------------------------------------------------------
@main.group("settings")
def settings_group() -> None:
    """Show or change the admin email settings."""


@settings_group.command("show")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def settings_show(ctx: click.Context, as_json: bool) -> None:
    """Show the current settings."""
    settings = _run(ctx, lambda core: core.load_settings())
    data = settings.model_dump(mode="json")
    if as_json:
        print_json(data)
        return
    table = Table(title="Email settings")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in data.items():
        if isinstance(value, bool):
            value = "[green]on[/green]" if value else "[red]off[/red]"
        table.add_row(key, "-" if value is None else str(value))
    console.print(table)


@settings_group.command("set")
@click.option("--system-enabled", type=bool, default=None, help="Master switch (on/off).")
@click.option("--maintenance-mode", type=bool, default=None, help="Only critical emails are sent.")
@click.option("--sales/--no-sales", "enable_sales_emails", default=None, help="Sales announcements.")
@click.option("--offers/--no-offers", "enable_offer_emails", default=None, help="Special offers.")
@click.option("--new-products/--no-new-products", "enable_new_product_emails", default=None, help="New product emails.")
@click.option("--orders/--no-orders", "enable_order_emails", default=None, help="Order emails.")
@click.option("--from-name", default=None, help="Sender display name.")
@click.option("--from-email", default=None, help="Sender address.")
@click.option("--reply-to", default=None, help="Reply-To address.")
@click.option("--max-per-day", "max_emails_per_recipient_per_day", type=int, default=None,
              help="Daily ceiling per recipient (0 = unlimited).")
@click.option("--by", "updated_by", default="cli", help="Editor recorded on the settings.")
@click.pass_context
def settings_set(ctx: click.Context, updated_by: str, **changes: Any) -> None:
    """Update one or more settings."""
    changes = {k: v for k, v in changes.items() if v is not None}
    if not changes:
        print_error("Nothing to update.")
        sys.exit(1)
    _run(ctx, lambda core: core.update_settings(changes, updated_by=updated_by, updated_by_name=updated_by))
    print_success(f"Settings updated: {', '.join(sorted(changes))}")


# Campaigns ------------------------------------------------------------------
@main.group("campaigns")
def campaigns_group() -> None:
    """List and send campaigns."""


@campaigns_group.command("list")
@click.option("--status", type=click.Choice([s.value for s in CampaignStatus]), default=None)
@click.option("--limit", type=int, default=20, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def campaigns_list(ctx: click.Context, status: Optional[str], limit: int, as_json: bool) -> None:
    """List campaigns, newest first."""
    campaigns = _run(ctx, lambda core: core.campaigns.list_campaigns(status, limit=limit))
    if as_json:
        print_json([c.model_dump(mode="json") for c in campaigns])
        return
    if not campaigns:
        console.print("[dim]No campaigns found.[/dim]")
        return
    table = Table(title="Campaigns")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Sent", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Skipped", justify="right")
    for c in campaigns:
        table.add_row(
            c.id,
            c.name,
            c.type.value,
            c.status.value,
            str(c.success_count),
            str(c.failure_count),
            str(c.skipped_count),
        )
    console.print(table)


@campaigns_group.command("send")
@click.argument("campaign_id")
@click.pass_context
def campaigns_send(ctx: click.Context, campaign_id: str) -> None:
    """Dispatch a DRAFT or SCHEDULED campaign now and wait for the result."""
    result = _run(ctx, lambda core: core.resolve_and_dispatch(campaign_id))
    print_success(f"Campaign {campaign_id} sent")
    console.print(f"  Success: {result.success}  Failed: {result.failed}  Skipped: {result.skipped}")


# Reporting ------------------------------------------------------------------
@main.command("logs")
@click.option("--status", type=click.Choice([s.value for s in EmailStatus]), default=None)
@click.option("--campaign", "campaign_id", default=None, help="Only logs of this campaign.")
@click.option("--page", type=int, default=1, show_default=True)
@click.option("--limit", type=int, default=50, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def logs(ctx: click.Context, status: Optional[str], campaign_id: Optional[str], page: int, limit: int, as_json: bool) -> None:
    """Browse the delivery log, newest first."""
    data = _run(ctx, lambda core: core.list_logs(status=status, campaign_id=campaign_id, page=page, limit=limit))
    if as_json:
        print_json(data)
        return
    if not data["logs"]:
        console.print("[dim]No log entries found.[/dim]")
        return
    table = Table(title=f"Email logs (page {data['page']}/{max(1, data['pages'])}, {data['total']} total)")
    table.add_column("Created")
    table.add_column("User", style="cyan")
    table.add_column("Email")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Reason")
    for row in data["logs"]:
        table.add_row(
            row["created_at"] or "-",
            row["user_id"],
            row["email"],
            row["type"],
            row["status"],
            row.get("reason") or "-",
        )
    console.print(table)


@main.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def stats(ctx: click.Context, as_json: bool) -> None:
    """Show dashboard statistics."""
    data = _run(ctx, lambda core: core.stats())
    if as_json:
        print_json(data)
        return
    console.print("\n[bold cyan]Email dispatch statistics[/bold cyan]\n")
    console.print(f"  Emails sent:       {data['total_emails_sent']}")
    console.print(f"  Success rate:      {data['success_rate']}%")
    console.print(f"  Campaigns:         {data['total_campaigns']} ({data['active_campaigns']} active)")
    console.print(f"  Users with prefs:  {data['users_with_preferences']}")
    console.print(f"  Templates:         {data['templates_count']}")
    for status_name, count in sorted(data["status_counts"].items()):
        console.print(f"    {status_name:<10} {count}")
    console.print()


if __name__ == "__main__":
    main()
