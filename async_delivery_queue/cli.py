"""Command-line interface for the async delivery queue.

Usage:
    delivery-queue worker                 # run the dispatcher loop
    delivery-queue worker --once          # run a single poll cycle
    delivery-queue serve --port 8000      # HTTP API plus dispatcher
    delivery-queue enqueue ticket-42 reply-1 user@example.com -s "Re: your ticket" -b "Hello"
    delivery-queue retry <job_id>
    delivery-queue jobs list --status permanent_failure
    delivery-queue jobs show <job_id>
    delivery-queue delivery ticket-42 reply-1
    delivery-queue suppress add user@example.com --source bounce
    delivery-queue suppress link <job_id>
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import click
from rich.console import Console
from rich.table import Table

from .config_loader import load_settings
from .core import AsyncDeliveryCore
from .errors import DeliveryQueueError
from .models import JobStatus, SuppressionSource

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")

STATUS_STYLES = {
    JobStatus.QUEUED.value: "yellow",
    JobStatus.SENDING.value: "blue",
    JobStatus.SENT.value: "green",
    JobStatus.FAILED.value: "red",
    JobStatus.PERMANENT_FAILURE.value: "red",
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


def _fmt_ts(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(float(value), timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format='[%(asctime)s] [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True,
    )


def _with_core(ctx: click.Context, action: Callable[[AsyncDeliveryCore], Awaitable[T]]) -> T:
    """Run ``action`` against an initialised core that does not dispatch."""
    settings = ctx.obj["settings"]

    async def _run():
        core = AsyncDeliveryCore.from_settings(settings, start_active=False)
        await core.init()
        try:
            return await action(core)
        finally:
            await core.transport.close()

    try:
        return run_async(_run())
    except DeliveryQueueError as exc:
        print_error(str(exc))
        sys.exit(1)


@click.group()
@click.option("--config", "-c", "config_path", default=None, help="Path to the INI configuration file.")
@click.option("--db", "db_path", default=None, help="Override the SQLite database path.")
@click.option("--log-level", default=None, help="Override the logging level.")
@click.version_option(package_name="async-delivery-queue")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], db_path: Optional[str], log_level: Optional[str]) -> None:
    """Async delivery queue: enqueue, dispatch and inspect outbound deliveries."""
    settings = load_settings(config_path)
    if db_path:
        settings["db_path"] = db_path
    _configure_logging(log_level or settings.get("log_level") or "INFO")
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


# ============================================================================
# Processes
# ============================================================================

@main.command("worker")
@click.option("--once", is_flag=True, help="Run a single poll cycle and exit.")
@click.option("--worker-id", default=None, help="Override the generated worker id.")
@click.pass_context
def worker(ctx: click.Context, once: bool, worker_id: Optional[str]) -> None:
    """Run the dispatcher loop until interrupted."""
    settings = dict(ctx.obj["settings"])
    if worker_id:
        settings["worker_id"] = worker_id
    core = AsyncDeliveryCore.from_settings(settings, start_active=True)

    async def _run() -> int:
        if once:
            await core.init()
            try:
                return await core.dispatcher.run_once()
            finally:
                await core.transport.close()
        await core.start()
        try:
            await asyncio.Event().wait()
        finally:
            await core.stop()
        return 0

    try:
        attempted = run_async(_run())
    except KeyboardInterrupt:
        console.print("[dim]Worker stopped.[/dim]")
        return
    if once:
        print_success(f"Attempted {attempted} job(s) as {core.worker_id}")


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default from settings).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default from settings).")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Serve the HTTP API with an embedded dispatcher."""
    import uvicorn

    from .server import build_app

    settings = ctx.obj["settings"]
    app = build_app(settings)
    uvicorn.run(
        app,
        host=host or str(settings["http_host"]),
        port=port or int(settings["http_port"]),
        log_level=str(settings.get("log_level") or "info").lower(),
    )


# ============================================================================
# Jobs
# ============================================================================

@main.command("enqueue")
@click.argument("parent_ref")
@click.argument("sub_ref")
@click.argument("recipient")
@click.option("--subject", "-s", default="", help="Message subject.")
@click.option("--body", "-b", default=None, help="Message body (read from stdin when omitted).")
@click.option("--priority", type=int, default=None, help="Lower is dispatched first.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def enqueue(
    ctx: click.Context,
    parent_ref: str,
    sub_ref: str,
    recipient: str,
    subject: str,
    body: Optional[str],
    priority: Optional[int],
    as_json: bool,
) -> None:
    """Queue a message for delivery."""
    if body is None:
        body = click.get_text_stream("stdin").read()

    job = _with_core(ctx, lambda core: core.enqueue(parent_ref, sub_ref, recipient, subject, body, priority))
    if as_json:
        print_json(job.model_dump(mode="json"))
        return
    print_success(f"Job {job.id} is {job.status.value}")


@main.command("retry")
@click.argument("job_id")
@click.pass_context
def retry(ctx: click.Context, job_id: str) -> None:
    """Requeue a job that ended in permanent failure."""
    job = _with_core(ctx, lambda core: core.retry(job_id))
    print_success(f"Job {job.id} requeued (attempt_count={job.attempt_count}/{job.max_attempts})")


@main.group("jobs")
def jobs() -> None:
    """Inspect delivery jobs."""


@jobs.command("list")
@click.option(
    "--status",
    "job_status",
    type=click.Choice([s.value for s in JobStatus]),
    default=None,
    help="Show only jobs in this state.",
)
@click.option("--limit", type=int, default=None, help="Maximum number of jobs.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def jobs_list(ctx: click.Context, job_status: Optional[str], limit: Optional[int], as_json: bool) -> None:
    """List jobs in dispatch order."""
    job_list = _with_core(ctx, lambda core: core.list_jobs(status=job_status, limit=limit))

    if as_json:
        print_json([job.model_dump(mode="json", exclude={"body"}) for job in job_list])
        return

    if not job_list:
        console.print("[dim]No jobs found.[/dim]")
        return

    table = Table(title="Delivery Jobs")
    table.add_column("ID", style="cyan")
    table.add_column("Recipient")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Priority", justify="right")
    table.add_column("Next Attempt")
    table.add_column("Last Error")

    for job in job_list:
        style = STATUS_STYLES.get(job.status.value, "white")
        table.add_row(
            job.id,
            job.recipient,
            f"[{style}]{job.status.value}[/{style}]",
            f"{job.attempt_count}/{job.max_attempts}",
            str(job.priority),
            _fmt_ts(job.next_attempt_at),
            (job.last_error or "-")[:60],
        )

    console.print(table)


@jobs.command("show")
@click.argument("job_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def jobs_show(ctx: click.Context, job_id: str, as_json: bool) -> None:
    """Show details for a specific job."""
    job = _with_core(ctx, lambda core: core.get_job(job_id))

    if as_json:
        print_json(job.model_dump(mode="json"))
        return

    console.print(f"\n[bold cyan]Job: {job.id}[/bold cyan]\n")
    console.print(f"  Parent:        {job.parent_ref} / {job.sub_ref}")
    console.print(f"  Recipient:     {job.recipient}")
    console.print(f"  Subject:       {job.subject or '-'}")
    console.print(f"  Status:        {job.status.value}")
    console.print(f"  Attempts:      {job.attempt_count}/{job.max_attempts}")
    console.print(f"  Priority:      {job.priority}")
    console.print(f"  Queued:        {_fmt_ts(job.queued_at)}")
    console.print(f"  Next attempt:  {_fmt_ts(job.next_attempt_at)}")
    console.print(f"  Last tried:    {_fmt_ts(job.last_tried_at)}")
    console.print(f"  Sent:          {_fmt_ts(job.sent_at)}")
    console.print(f"  Provider:      {job.provider or '-'} {job.provider_message_id or ''}")
    if job.lease_owner:
        console.print(f"  Leased by:     {job.lease_owner} since {_fmt_ts(job.lease_at)}")
    if job.last_error:
        console.print(f"  Last error:    [red]{job.last_error}[/red]")
    console.print()


@main.command("delivery")
@click.argument("parent_ref")
@click.argument("sub_ref")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def delivery(ctx: click.Context, parent_ref: str, sub_ref: str, as_json: bool) -> None:
    """Show the delivery status recorded on a parent record."""
    record = _with_core(ctx, lambda core: core.get_delivery(parent_ref, sub_ref))
    if record is None:
        print_error(f"No delivery recorded for {parent_ref}/{sub_ref}.")
        sys.exit(1)

    data: Dict[str, Any] = record.model_dump(mode="json")
    if as_json:
        print_json(data)
        return

    console.print(f"\n[bold cyan]Delivery: {parent_ref} / {sub_ref}[/bold cyan]\n")
    console.print(f"  Status:        {data['status']}")
    console.print(f"  Attempts:      {data['attempt_count']}/{data.get('max_attempts') or '-'}")
    for label, key in (("Queued", "queued_at"), ("Last tried", "last_tried_at"), ("Next attempt", "next_attempt_at"), ("Sent", "sent_at")):
        console.print(f"  {label + ':':<15}{_fmt_ts(data.get(key))}")
    if data.get("provider"):
        console.print(f"  Provider:      {data['provider']} {data.get('provider_message_id') or ''}")
    if data.get("error_message"):
        console.print(f"  Error:         [red]{data['error_message']}[/red]")
    console.print()


# ============================================================================
# Suppression list
# ============================================================================

@main.group("suppress")
def suppress() -> None:
    """Manage suppressed recipients."""


@suppress.command("add")
@click.argument("email")
@click.option("--reason", "-r", default=None, help="Why the address is suppressed.")
@click.option(
    "--source",
    type=click.Choice([s.value for s in SuppressionSource]),
    default=SuppressionSource.ADMIN.value,
    help="Origin of the suppression.",
)
@click.pass_context
def suppress_add(ctx: click.Context, email: str, reason: Optional[str], source: str) -> None:
    """Stop deliveries to EMAIL."""
    entry = _with_core(ctx, lambda core: core.suppress(email, reason=reason, source=source))
    print_success(f"{entry['email']} suppressed ({entry['source']}, hits={entry['hit_count']})")


@suppress.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def suppress_list(ctx: click.Context, as_json: bool) -> None:
    """List suppressed recipients."""
    entries = _with_core(ctx, lambda core: core.list_suppressed())

    if as_json:
        print_json(entries)
        return

    if not entries:
        console.print("[dim]No suppressed recipients.[/dim]")
        return

    table = Table(title="Suppressed Recipients")
    table.add_column("Email", style="cyan")
    table.add_column("Source")
    table.add_column("Reason")
    table.add_column("Hits", justify="right")
    table.add_column("Manual", justify="center")
    table.add_column("Expires")

    for entry in entries:
        table.add_row(
            entry["email"],
            entry["source"],
            entry.get("reason") or "-",
            str(entry["hit_count"]),
            "[green]✓[/green]" if entry["manual"] else "-",
            _fmt_ts(entry.get("expires_at")),
        )

    console.print(table)


@suppress.command("remove")
@click.argument("email")
@click.pass_context
def suppress_remove(ctx: click.Context, email: str) -> None:
    """Allow deliveries to EMAIL again."""
    removed = _with_core(ctx, lambda core: core.unsuppress(email))
    if not removed:
        print_error(f"{email} is not suppressed.")
        sys.exit(1)
    print_success(f"{email} removed from the suppression list")


@suppress.command("link")
@click.argument("job_id")
@click.pass_context
def suppress_link(ctx: click.Context, job_id: str) -> None:
    """Print the signed report-misdirected link for JOB_ID."""
    if not ctx.obj["settings"].get("misdirect_secret"):
        print_error("No misdirect secret configured; set ADQ_MISDIRECT_SECRET.")
        sys.exit(1)
    link = _with_core(ctx, lambda core: core.misdirected_link(job_id))
    click.echo(link)


if __name__ == "__main__":
    main()
