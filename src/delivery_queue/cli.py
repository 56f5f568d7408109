# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for the parks mail queue.

Works directly on the queue database, without going through the HTTP API.

Usage:
    parks-mail-queue init
    parks-mail-queue enqueue --to ranger@example.org --subject "Shift" --text "See you at 8"
    parks-mail-queue enqueue --to ranger@example.org --template-id 3 --var name=Ada
    parks-mail-queue list --status failed
    parks-mail-queue show 42
    parks-mail-queue retry 42
    parks-mail-queue tick
    parks-mail-queue templates list
    parks-mail-queue serve --port 8000

Example:
    $ parks-mail-queue --db ./queue.db stats
    $ parks-mail-queue --config /etc/parks/queue.ini prune --days 30
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.table import Table

from .config import QueueSettings, load_settings
from .core import DeliveryQueue
from .errors import DeliveryQueueError
from .logger import configure_logging
from .models import Priority, QueueEntry, QueueStatus

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")

STATUS_STYLES = {
    "pending": "yellow",
    "sending": "blue",
    "sent": "green",
    "failed": "red",
    "cancelled": "dim",
}


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


def parse_variables(values: tuple[str, ...]) -> dict[str, str]:
    """Turn repeated ``KEY=VALUE`` options into a dict."""
    variables: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint="--var")
        variables[key.strip()] = value
    return variables


def with_queue(settings: QueueSettings, action: Callable[[DeliveryQueue], Awaitable[T]]) -> T:
    """Open the queue, run ``action`` and report domain errors on stderr."""
    queue = DeliveryQueue.from_settings(settings)

    async def _run() -> T:
        await queue.init()
        return await action(queue)

    try:
        return run_async(_run())
    except DeliveryQueueError as exc:
        print_error(exc.message)
        sys.exit(1)


def _fmt(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _status(entry: QueueEntry) -> str:
    style = STATUS_STYLES.get(entry.status.value, "white")
    return f"[{style}]{entry.status.value}[/{style}]"


def _print_entry(entry: QueueEntry) -> None:
    console.print(f"\n[bold cyan]Entry {entry.id}[/bold cyan]\n")
    console.print(f"  Recipient:     {entry.recipient}")
    if entry.cc:
        console.print(f"  Cc:            {', '.join(entry.cc)}")
    if entry.bcc:
        console.print(f"  Bcc:           {', '.join(entry.bcc)}")
    console.print(f"  Subject:       {entry.subject}")
    console.print(f"  Status:        {_status(entry)}")
    console.print(f"  Priority:      {entry.priority.value}")
    console.print(f"  Attempts:      {entry.attempts}/{entry.max_attempts}")
    console.print(f"  Scheduled for: {_fmt(entry.scheduled_for)}")
    console.print(f"  Template:      {entry.template_id or '-'}")
    console.print(f"  Created:       {_fmt(entry.created_at)}")
    console.print(f"  Sent:          {_fmt(entry.sent_at)}")
    if entry.error_message:
        console.print(f"  Last error:    [red]{entry.error_message}[/red]")
    console.print()


@click.group()
@click.option("--db", "db_path", default=None, help="Queue database path (overrides settings).")
@click.option("--config", "config_path", default=None, type=click.Path(dir_okay=False),
              help="INI settings file (default: $DQ_CONFIG or config.ini).")
@click.option("--verbose", "-v", is_flag=True, help="Show log output.")
@click.version_option(package_name="parks-mail-queue")
@click.pass_context
def main(ctx: click.Context, db_path: str | None, config_path: str | None, verbose: bool) -> None:
    """parks-mail-queue: outbound email delivery queue."""
    settings = load_settings(config_path)
    if db_path:
        settings.db_path = db_path
    configure_logging(settings.log_level if verbose else "WARNING")
    ctx.obj = settings


@main.command("init")
@click.pass_obj
def init_db(settings: QueueSettings) -> None:
    """Create the queue database."""
    Path(settings.db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)

    async def _noop(queue: DeliveryQueue) -> None:
        return None

    with_queue(settings, _noop)
    print_success(f"Database ready at {settings.db_path}")


@main.command("enqueue")
@click.option("--to", "recipient", required=True, help="Recipient address.")
@click.option("--cc", multiple=True, help="CC address (repeatable).")
@click.option("--bcc", multiple=True, help="BCC address (repeatable).")
@click.option("--subject", default=None, help="Subject (overrides the template subject).")
@click.option("--text", default=None, help="Plain text body.")
@click.option("--html", default=None, help="HTML body.")
@click.option("--template-id", type=int, default=None, help="Stored template to render.")
@click.option("--var", "variables", multiple=True, help="Template variable KEY=VALUE (repeatable).")
@click.option("--priority", type=click.Choice([p.value for p in Priority]), default="normal")
@click.option("--at", "scheduled_for", type=click.DateTime(), default=None,
              help="Earliest delivery time (UTC).")
@click.option("--max-attempts", type=int, default=None, help="Attempt ceiling for this message.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def enqueue(
    settings: QueueSettings,
    recipient: str,
    cc: tuple[str, ...],
    bcc: tuple[str, ...],
    subject: str | None,
    text: str | None,
    html: str | None,
    template_id: int | None,
    variables: tuple[str, ...],
    priority: str,
    scheduled_for: datetime | None,
    max_attempts: int | None,
    as_json: bool,
) -> None:
    """Queue a message for delivery."""
    payload: dict[str, Any] = {
        "recipient": recipient,
        "cc": list(cc) or None,
        "bcc": list(bcc) or None,
        "subject": subject,
        "text": text,
        "html": html,
        "template_id": template_id,
        "template_variables": parse_variables(variables),
        "priority": priority,
        "scheduled_for": scheduled_for,
        "max_attempts": max_attempts,
    }
    entry = with_queue(settings, lambda queue: queue.enqueue(payload))
    if as_json:
        print_json(entry.model_dump(mode="json"))
        return
    print_success(f"Queued entry {entry.id} for {entry.recipient} ({entry.priority.value})")


@main.command("list")
@click.option("--status", type=click.Choice([s.value for s in QueueStatus]), default=None)
@click.option("--priority", type=click.Choice([p.value for p in Priority]), default=None)
@click.option("--limit", type=int, default=50, show_default=True)
@click.option("--offset", type=int, default=0, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def list_entries(
    settings: QueueSettings,
    status: str | None,
    priority: str | None,
    limit: int,
    offset: int,
    as_json: bool,
) -> None:
    """List queue entries, newest first."""
    entries = with_queue(
        settings,
        lambda queue: queue.get_entries(status=status, priority=priority, limit=limit, offset=offset),
    )
    if as_json:
        print_json([e.model_dump(mode="json") for e in entries])
        return
    if not entries:
        console.print("[dim]No entries found.[/dim]")
        return

    table = Table(title="Queue entries")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Recipient")
    table.add_column("Subject")
    table.add_column("Priority")
    table.add_column("Status")
    table.add_column("Attempts", justify="center")
    table.add_column("Scheduled")
    for e in entries:
        table.add_row(
            str(e.id),
            e.recipient,
            e.subject[:40],
            e.priority.value,
            _status(e),
            f"{e.attempts}/{e.max_attempts}",
            _fmt(e.scheduled_for),
        )
    console.print(table)


@main.command("show")
@click.argument("entry_id", type=int)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def show_entry(settings: QueueSettings, entry_id: int, as_json: bool) -> None:
    """Show one entry and its delivery log."""

    async def _show(queue: DeliveryQueue):
        return await queue.get_entry(entry_id), await queue.get_delivery_log(entry_id)

    entry, log = with_queue(settings, _show)
    if as_json:
        print_json({"entry": entry.model_dump(mode="json"), "log": [r.model_dump(mode="json") for r in log]})
        return
    _print_entry(entry)
    for record in log:
        console.print(
            f"  [dim]{_fmt(record.created_at)}[/dim] {record.outcome.value} "
            f"after {record.attempts} attempt(s) {record.error_message or ''}"
        )


@main.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def stats(settings: QueueSettings, as_json: bool) -> None:
    """Show entry counts per status."""
    result = with_queue(settings, lambda queue: queue.get_stats())
    if as_json:
        print_json(result.model_dump())
        return
    table = Table(title="Queue statistics")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for status in QueueStatus:
        style = STATUS_STYLES[status.value]
        table.add_row(f"[{style}]{status.value}[/{style}]", str(getattr(result, status.value)))
    table.add_row("[bold]total[/bold]", f"[bold]{result.total}[/bold]")
    console.print(table)


@main.command("cancel")
@click.argument("entry_id", type=int)
@click.pass_obj
def cancel(settings: QueueSettings, entry_id: int) -> None:
    """Cancel a pending entry."""
    with_queue(settings, lambda queue: queue.cancel(entry_id))
    print_success(f"Entry {entry_id} cancelled")


@main.command("retry")
@click.argument("entry_id", type=int)
@click.pass_obj
def retry(settings: QueueSettings, entry_id: int) -> None:
    """Queue a failed entry again."""
    with_queue(settings, lambda queue: queue.retry(entry_id))
    print_success(f"Entry {entry_id} queued again")


@main.command("tick")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def tick(settings: QueueSettings, as_json: bool) -> None:
    """Run one processing tick now."""
    summary = with_queue(settings, lambda queue: queue.process_tick())
    if as_json:
        print_json(summary.model_dump())
        return
    if summary.skipped:
        console.print("[yellow]Tick skipped[/yellow] (paused or already running)")
        return
    print_success(
        f"attempted={summary.attempted} sent={summary.sent} "
        f"retried={summary.retried} failed={summary.failed}"
    )


@main.command("prune")
@click.option("--days", type=int, default=None, help="Keep this many days of log (default: settings).")
@click.pass_obj
def prune(settings: QueueSettings, days: int | None) -> None:
    """Delete old delivery log records."""
    cutoff = datetime.now(timezone.utc) - timedelta(days=days) if days is not None else None
    removed = with_queue(settings, lambda queue: queue.prune_logs(cutoff))
    print_success(f"Removed {removed} delivery log record(s)")


@main.command("pause")
@click.pass_obj
def pause(settings: QueueSettings) -> None:
    """Stop processing until resumed."""
    with_queue(settings, lambda queue: queue.pause())
    print_success("Queue paused")


@main.command("resume")
@click.pass_obj
def resume(settings: QueueSettings) -> None:
    """Resume processing."""
    with_queue(settings, lambda queue: queue.resume())
    print_success("Queue resumed")


@main.group("templates")
def templates() -> None:
    """Manage email templates."""


@templates.command("list")
@click.option("--active-only", is_flag=True, help="Hide inactive templates.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def templates_list(settings: QueueSettings, active_only: bool, as_json: bool) -> None:
    """List stored templates."""
    items = with_queue(settings, lambda queue: queue.list_templates(active_only))
    if as_json:
        print_json([t.model_dump(mode="json") for t in items])
        return
    if not items:
        console.print("[dim]No templates found.[/dim]")
        return
    table = Table(title="Templates")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Name")
    table.add_column("Category")
    table.add_column("Active", justify="center")
    table.add_column("Subject")
    for t in items:
        active = "[green]✓[/green]" if t.active else "[red]✗[/red]"
        table.add_row(str(t.id), t.name, t.category or "-", active, t.subject)
    console.print(table)


@templates.command("add")
@click.option("--name", required=True)
@click.option("--subject", required=True)
@click.option("--text", default=None, help="Plain text body.")
@click.option("--html", default=None, help="HTML body.")
@click.option("--text-file", type=click.Path(exists=True, dir_okay=False), default=None)
@click.option("--html-file", type=click.Path(exists=True, dir_okay=False), default=None)
@click.option("--category", default=None)
@click.option("--inactive", is_flag=True, help="Store the template disabled.")
@click.pass_obj
def templates_add(
    settings: QueueSettings,
    name: str,
    subject: str,
    text: str | None,
    html: str | None,
    text_file: str | None,
    html_file: str | None,
    category: str | None,
    inactive: bool,
) -> None:
    """Store a new template."""
    payload = {
        "name": name,
        "subject": subject,
        "text": Path(text_file).read_text(encoding="utf-8") if text_file else text,
        "html": Path(html_file).read_text(encoding="utf-8") if html_file else html,
        "category": category,
        "active": not inactive,
    }
    template = with_queue(settings, lambda queue: queue.add_template(payload))
    print_success(f"Template {template.id} '{template.name}' added")


@templates.command("preview")
@click.argument("template_id", type=int)
@click.option("--var", "variables", multiple=True, help="Template variable KEY=VALUE (repeatable).")
@click.pass_obj
def templates_preview(settings: QueueSettings, template_id: int, variables: tuple[str, ...]) -> None:
    """Render a template without queueing anything."""
    values = parse_variables(variables)
    content = with_queue(settings, lambda queue: queue.preview_template(template_id, values))
    console.print(f"[bold]Subject:[/bold] {content.subject}")
    if content.text:
        console.print("\n[bold]Text:[/bold]")
        console.print(content.text, markup=False)
    if content.html:
        console.print("\n[bold]HTML:[/bold]")
        console.print(content.html, markup=False)


@templates.command("delete")
@click.argument("template_id", type=int)
@click.pass_obj
def templates_delete(settings: QueueSettings, template_id: int) -> None:
    """Remove a template. Queued entries keep their content."""
    with_queue(settings, lambda queue: queue.delete_template(template_id))
    print_success(f"Template {template_id} deleted")


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default: settings).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default: settings).")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development.")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, reload: bool) -> None:
    """Run the HTTP API and the tick scheduler."""
    import uvicorn

    settings: QueueSettings = ctx.obj
    options = ctx.find_root().params
    # The server module loads its own settings: hand it the same file and database.
    if options.get("config_path"):
        os.environ["DQ_CONFIG"] = str(Path(options["config_path"]).resolve())
    if options.get("db_path"):
        os.environ["DQ_DB_PATH_OVERRIDE"] = settings.db_path
    uvicorn.run(
        "delivery_queue.server:app",
        host=host or settings.http_host,
        port=port or settings.http_port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
