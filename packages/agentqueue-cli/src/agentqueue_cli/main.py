"""Agent Queue CLI: inspect and operate the task queue.

Entry point for the ``agent-queue`` command. Connection settings come from
``--redis-url`` or, when the flag is absent, from ``AGENT_QUEUE_REDIS_URL``
/ ``REDIS_URL`` and ``AGENT_QUEUE_PREFIX``.

Usage::

    agent-queue stats
    agent-queue dispatch '{"type": "code", "payload": {"prompt": "fix #12"}}'
    agent-queue results --limit 20
    agent-queue dlq list
    agent-queue dlq retry <task_id>
    agent-queue dlq purge --age-hours 48
    agent-queue reclaim --idle-ms 120000
    agent-queue drain --confirm
    agent-queue --redis-url redis://queue:6379 monitor
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Annotated, Any, TypeVar
from urllib.parse import urlparse

import typer
from rich.console import Console
from rich.table import Table

from agentqueue.client import QueueClient
from agentqueue.config import QueueConfig
from agentqueue.observability.logging import configure_logging
from agentqueue.producer import TaskProducer
from agentqueue.reliability import ReliabilityManager
from agentqueue.types import NotFoundError, TransientInfraError, ValidationError

T = TypeVar("T")


class CLIError(Exception):
    """Raised for CLI-level errors (bad arguments, unparseable input)."""


# ---------------------------------------------------------------------------
# Typer CLI app
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="agent-queue",
    help="Agent Queue: reliable task queue CLI.",
    no_args_is_help=True,
)

console = Console()


def _mask_redis_url(url: str) -> str:
    """Return a masked version of the Redis URL showing only the host."""
    try:
        parsed = urlparse(url)
        host = parsed.hostname or "unknown"
        port = parsed.port or 6379
        return f"redis://{host}:{port}/***"
    except Exception:
        return "redis://***"


def _resolve_config(redis_url: str | None) -> QueueConfig:
    """Environment config with an optional ``--redis-url`` override."""
    config = QueueConfig.from_env()
    if redis_url:
        config = config.model_copy(update={"redis_url": redis_url})
    return config


def _config(ctx: typer.Context) -> QueueConfig:
    return ctx.obj["config"]


def _run(ctx: typer.Context, fn: Callable[[QueueClient], Awaitable[T]]) -> T:
    """Connect, run *fn*, disconnect; turn queue errors into a non-zero exit."""
    config = _config(ctx)

    async def _main() -> T:
        async with QueueClient(config=config) as client:
            return await fn(client)

    try:
        return asyncio.run(_main())
    except TransientInfraError as exc:
        console.print(
            f"[red]Error: cannot reach Redis at {_mask_redis_url(config.redis_url)}: {exc}[/red]"
        )
        raise typer.Exit(code=1) from exc
    except ValidationError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc


def _format_entry_time(entry_id: str) -> str:
    """Format the millisecond part of a stream entry id."""
    millis = int(entry_id.split("-", 1)[0])
    return datetime.fromtimestamp(millis / 1000, tz=UTC).strftime("%Y-%m-%d %H:%M:%S UTC")


def _status_color(status: str) -> str:
    """Return a Rich color name for a result status."""
    colors: dict[str, str] = {
        "success": "green",
        "failed": "red",
        "timeout": "yellow",
    }
    return colors.get(status, "white")


@app.callback()
def main(
    ctx: typer.Context,
    redis_url: Annotated[
        str | None,
        typer.Option(
            "--redis-url",
            help="Redis connection URL (default: AGENT_QUEUE_REDIS_URL or REDIS_URL env var).",
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging."),
    ] = False,
) -> None:
    """Agent Queue CLI: inspect and operate the task queue."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config"] = _resolve_config(redis_url)
    if verbose:
        configure_logging("DEBUG", force=True)
        console.print(f"[dim]Redis: {_mask_redis_url(ctx.obj['config'].redis_url)}[/dim]")


# ---------------------------------------------------------------------------
# Queue commands
# ---------------------------------------------------------------------------


@app.command()
def stats(ctx: typer.Context) -> None:
    """Show queue statistics."""

    async def _stats(client: QueueClient) -> None:
        s = await TaskProducer(client).stats()
        table = Table(title="Queue Statistics")
        table.add_column("Metric", style="cyan", no_wrap=True)
        table.add_column("Count", justify="right")
        table.add_row("Pending", str(s.pending))
        table.add_row("Processing", str(s.processing))
        table.add_row("Completed", str(s.completed))
        table.add_row("Failed", str(s.failed))
        console.print(table)

    _run(ctx, _stats)


def _parse_task_json(raw: str) -> dict[str, Any]:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise CLIError(f"Invalid JSON: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise CLIError("Task JSON must be an object")
    return data


@app.command()
def dispatch(
    ctx: typer.Context,
    task_json: Annotated[
        str,
        typer.Argument(help='Task as JSON, e.g. \'{"type": "code", "payload": {"prompt": "..."}}\'.'),
    ],
    urgent: Annotated[
        bool,
        typer.Option("--urgent", help="Dispatch with high priority."),
    ] = False,
) -> None:
    """Dispatch a task."""
    try:
        data = _parse_task_json(task_json)
    except CLIError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        raise typer.Exit(code=1) from exc

    async def _dispatch(client: QueueClient) -> str:
        producer = TaskProducer(client)
        if urgent:
            return await producer.dispatch_urgent(data)
        return await producer.dispatch(data)

    task_id = _run(ctx, _dispatch)
    console.print(f"[green]Dispatched task:[/green] {task_id}")


@app.command()
def results(
    ctx: typer.Context,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of results to display."),
    ] = 10,
) -> None:
    """Show the most recent results."""

    async def _results(client: QueueClient) -> None:
        recent = await TaskProducer(client).poll_results(limit)
        if not recent:
            console.print("[dim]No results.[/dim]")
            return

        table = Table(title="Recent Results")
        table.add_column("Task ID", style="cyan", no_wrap=True)
        table.add_column("Status", no_wrap=True)
        table.add_column("Duration", justify="right", no_wrap=True)
        table.add_column("Worker", no_wrap=True)
        for r in recent:
            color = _status_color(r.status)
            table.add_row(
                r.task_id,
                f"[{color}]{r.status}[/{color}]",
                f"{r.duration_ms}ms",
                r.worker,
            )
        console.print(table)

    _run(ctx, _results)


@app.command()
def reclaim(
    ctx: typer.Context,
    idle_ms: Annotated[
        int,
        typer.Option("--idle-ms", help="Reclaim entries pending at least this long."),
    ] = 60_000,
) -> None:
    """Reclaim tasks abandoned by crashed consumers."""

    async def _reclaim(client: QueueClient) -> int:
        return await ReliabilityManager(client).reclaim_stale(idle_ms)

    count = _run(ctx, _reclaim)
    console.print(f"Reclaimed {count} stale task(s).")


@app.command()
def drain(
    ctx: typer.Context,
    confirm: Annotated[
        bool,
        typer.Option("--confirm", help="Required: really delete every entry."),
    ] = False,
) -> None:
    """Empty the task, result and dead-letter streams."""
    if not confirm:
        console.print("[red]Error: drain deletes every entry; pass --confirm to proceed.[/red]")
        raise typer.Exit(code=1)

    async def _drain(client: QueueClient) -> None:
        for stream in client.config.streams:
            await client.trim(stream, 0)

    _run(ctx, _drain)
    console.print("[green]All streams drained.[/green]")


async def tail_streams(
    client: QueueClient,
    *,
    max_events: int = 0,
    block_ms: int = 1000,
) -> int:
    """Print every new entry on the three streams until interrupted.

    Args:
        client: Connected client.
        max_events: Stop after this many entries (0 runs until cancelled).
        block_ms: How long each read waits for new entries.

    Returns:
        The number of entries printed.
    """
    cfg = client.config
    labels = {cfg.tasks_stream: "TASK", cfg.results_stream: "RESULT", cfg.dlq_stream: "DLQ"}
    last_ids = dict.fromkeys(cfg.streams, "$")
    seen = 0
    while max_events <= 0 or seen < max_events:
        for stream, entry_id, fields in await client.tail(last_ids, block_ms=block_ms):
            last_ids[stream] = entry_id
            subject = fields.get("id") or fields.get("taskId") or "?"
            detail = fields.get("type") or fields.get("status") or ""
            console.print(
                f"[{_format_entry_time(entry_id)}] {labels.get(stream, stream):<6} {subject}  {detail}"
            )
            seen += 1
    return seen


@app.command()
def monitor(
    ctx: typer.Context,
    count: Annotated[
        int,
        typer.Option("--count", help="Exit after this many entries (0 = until Ctrl+C)."),
    ] = 0,
) -> None:
    """Live-tail all three streams."""
    console.print("[dim]Monitoring streams (Ctrl+C to stop)...[/dim]")

    async def _monitor(client: QueueClient) -> int:
        return await tail_streams(client, max_events=count)

    try:
        _run(ctx, _monitor)
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/dim]")


# ---------------------------------------------------------------------------
# Subcommand group: dlq
# ---------------------------------------------------------------------------

dlq_app = typer.Typer(
    name="dlq",
    help="Dead-letter queue operations.",
    no_args_is_help=True,
)
app.add_typer(dlq_app, name="dlq")


@dlq_app.command("list")
def dlq_list(
    ctx: typer.Context,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of entries to display."),
    ] = 100,
) -> None:
    """List dead-lettered tasks, oldest first."""

    async def _list(client: QueueClient) -> None:
        letters = await ReliabilityManager(client).list_dlq(limit)
        if not letters:
            console.print("[dim]DLQ is empty.[/dim]")
            return

        table = Table(title="Dead-Letter Queue")
        table.add_column("Task ID", style="cyan", no_wrap=True)
        table.add_column("Type", no_wrap=True)
        table.add_column("Attempts", justify="right", no_wrap=True)
        table.add_column("Created", no_wrap=True)
        table.add_column("Error")
        for letter in letters:
            error = letter.error
            if len(error) > 80:
                error = error[:80] + "..."
            table.add_row(
                letter.task.id,
                str(letter.task.type),
                str(letter.task.retry_count),
                letter.task.created_at,
                f"[red]{error}[/red]" if error else "-",
            )
        console.print(table)

    _run(ctx, _list)


@dlq_app.command("retry")
def dlq_retry(
    ctx: typer.Context,
    task_id: Annotated[
        str,
        typer.Argument(help="Task ID to move back to the task stream."),
    ],
) -> None:
    """Re-dispatch a dead-lettered task with its retry count reset."""

    async def _retry(client: QueueClient) -> None:
        await ReliabilityManager(client).retry_from_dlq(task_id)

    try:
        _run(ctx, _retry)
    except NotFoundError as exc:
        console.print(f"[yellow]{exc}[/yellow]")
        raise typer.Exit(code=1) from exc
    console.print(f"[green]Retried task {task_id}.[/green]")


@dlq_app.command("purge")
def dlq_purge(
    ctx: typer.Context,
    age_hours: Annotated[
        float,
        typer.Option("--age-hours", help="Delete entries whose task is older than this."),
    ] = 24.0,
) -> None:
    """Delete old dead-letter entries."""
    if age_hours < 0:
        console.print("[red]Error: --age-hours must not be negative.[/red]")
        raise typer.Exit(code=1)

    async def _purge(client: QueueClient) -> int:
        return await ReliabilityManager(client).purge_dlq(int(age_hours * 3_600_000))

    deleted = _run(ctx, _purge)
    console.print(f"Purged {deleted} entries from DLQ.")
