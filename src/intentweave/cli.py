"""CLI interface for intentweave."""

import asyncio
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from intentweave.config import load_config, merge_cli_overrides
from intentweave.errors import IntentweaveError
from intentweave.scheduler.models import TaskStatus
from intentweave.service import IntentService, build_service

app = typer.Typer(
    name="intentweave",
    help="Cluster browsing activity into intents and keep them enriched.",
)

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        from intentweave import __version__

        console.print(f"intentweave {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", help="Log debug output to stderr."),
    ] = False,
    config_path: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Path to .intentweave.toml."),
    ] = None,
    state_dir: Annotated[
        Optional[Path],
        typer.Option("--state-dir", help="Directory holding intentweave state files."),
    ] = None,
    model: Annotated[
        Optional[str],
        typer.Option("--model", help="Model name or alias (haiku, sonnet, opus)."),
    ] = None,
    max_concurrent: Annotated[
        Optional[int],
        typer.Option("--max-concurrent", help="Maximum tasks processed at once."),
    ] = None,
) -> None:
    """intentweave - group browsing into intents."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    ctx.obj = {
        "config_path": config_path,
        "state_dir": state_dir,
        "model": model,
        "max_concurrent": max_concurrent,
    }


def _service(ctx: typer.Context) -> IntentService:
    opts: dict[str, Any] = ctx.obj or {}
    config = merge_cli_overrides(
        load_config(opts.get("config_path")),
        state_dir=opts.get("state_dir"),
        model=opts.get("model"),
        max_concurrent=opts.get("max_concurrent"),
    )
    return build_service(config)


@contextmanager
def _user_errors() -> Iterator[None]:
    try:
        yield
    except (IntentweaveError, ValueError) as exc:
        console.print(f"[red]Error:[/red] {escape(str(exc))}")
        raise typer.Exit(1) from exc


def _read_records(path: Path) -> list[dict[str, Any]]:
    """Page records from a JSON array file or a JSON-lines file."""
    text = path.read_text(encoding="utf-8").strip()
    if not text:
        return []
    if text.startswith("["):
        data = json.loads(text)
        return [r for r in data if isinstance(r, dict)]
    return [json.loads(line) for line in text.splitlines() if line.strip()]


def _short(text: str, width: int = 50) -> str:
    return text if len(text) <= width else text[: width - 3] + "..."


# ── Ingestion & processing ───────────────────────────────────────────


@app.command()
def ingest(
    ctx: typer.Context,
    file: Annotated[
        Path,
        typer.Argument(help="JSON or JSON-lines file of page visits.", exists=True, dir_okay=False),
    ],
    run: Annotated[bool, typer.Option("--run", help="Process the queue afterwards.")] = False,
) -> None:
    """Ingest page visits and queue their enrichment."""
    service = _service(ctx)
    try:
        records = _read_records(file)
    except json.JSONDecodeError as exc:
        console.print(f"[red]Error:[/red] Invalid page file {file}: {escape(str(exc))}")
        raise typer.Exit(1) from exc

    with _user_errors():
        pages = service.ingest_many(records)
    queued = len(service.tasks(status=TaskStatus.QUEUED))
    console.print(f"[green]Ingested {len(pages)} page(s)[/green], {queued} task(s) queued")

    if run:
        counts = asyncio.run(service.run())
        console.print(f"Completed: {counts['completed']}  Failed: {counts['failed']}")


@app.command(name="run")
def run_cmd(ctx: typer.Context) -> None:
    """Process queued tasks until nothing is left to do."""
    service = _service(ctx)
    counts = asyncio.run(service.run())
    table = Table(title="Tasks")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for status, count in counts.items():
        table.add_row(status, str(count))
    console.print(table)


@app.command()
def sweep(ctx: typer.Context) -> None:
    """Apply time-driven lifecycle transitions."""
    service = _service(ctx)
    changed = service.sweep()
    if not changed:
        console.print("No lifecycle changes.")
        return
    for intent_id, status in changed:
        console.print(f"  {intent_id} -> {status}")


# ── Queries ──────────────────────────────────────────────────────────


@app.command()
def pages(
    ctx: typer.Context,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum pages to show.")] = 20,
) -> None:
    """List recent pages."""
    service = _service(ctx)
    table = Table(title="Pages")
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Domain")
    table.add_column("Intent")
    table.add_column("Enriched")
    for page in service.pages(limit):
        table.add_row(
            page.id,
            _short(page.title or page.url),
            page.domain,
            page.primary_intent_id or "-",
            "yes" if page.semantic_features else "no",
        )
    console.print(table)


@app.command()
def intents(
    ctx: typer.Context,
    show_all: Annotated[
        bool, typer.Option("--all", "-a", help="Include completed, merged and discarded intents.")
    ] = False,
) -> None:
    """List intents, most recently updated first."""
    service = _service(ctx)
    table = Table(title="Intents")
    table.add_column("ID")
    table.add_column("Label")
    table.add_column("Status")
    table.add_column("Pages", justify="right")
    table.add_column("Updated")
    for intent in service.intents(include_terminal=show_all):
        table.add_row(
            intent.id,
            _short(intent.display_label),
            intent.status.value,
            str(intent.page_count),
            intent.last_updated.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command()
def show(
    ctx: typer.Context,
    intent_id: Annotated[str, typer.Argument(help="Intent ID.")],
) -> None:
    """Show one intent in detail."""
    service = _service(ctx)
    with _user_errors():
        intent = service.intent(intent_id)
        members = service.pages_for_intent(intent_id)

    console.print(f"[bold]{intent.display_label}[/bold]  ({intent.id})")
    console.print(f"Status: {intent.status}" + (f" ({intent.status_reason})" if intent.status_reason else ""))
    if intent.merged_into:
        console.print(f"Merged into: {intent.merged_into}")
    if intent.goal:
        console.print(f"Goal: {intent.goal}")
    if intent.summary:
        console.print(f"\n{intent.summary}")
    keywords = intent.aggregated_signals.top_keywords(10)
    if keywords:
        console.print(f"\nKeywords: {', '.join(keywords)}")
    if intent.aggregated_signals.domains:
        console.print(f"Domains: {', '.join(intent.aggregated_signals.domains[:8])}")

    if members:
        console.print(f"\n[bold]Pages ({len(members)}):[/bold]")
        for page in members:
            console.print(f"  - {page.title or page.url} [dim]{page.id}[/dim]")
    if intent.insights:
        console.print("\n[bold]Insights:[/bold]")
        for insight in intent.insights:
            console.print(f"  - {insight.text}")
    if intent.next_steps:
        console.print("\n[bold]Next steps:[/bold]")
        for step in intent.next_steps:
            console.print(f"  - {step.action}")
    if intent.milestone:
        console.print(f"\nNext milestone: {intent.milestone.next_milestone}")


@app.command()
def tasks(
    ctx: typer.Context,
    entity: Annotated[
        Optional[str], typer.Option("--entity", "-e", help="Only tasks for this page or intent.")
    ] = None,
    status: Annotated[
        Optional[TaskStatus], typer.Option("--status", "-s", help="Only tasks with this status.")
    ] = None,
) -> None:
    """List scheduled tasks."""
    service = _service(ctx)
    table = Table(title="Tasks")
    table.add_column("ID")
    table.add_column("Task")
    table.add_column("Target")
    table.add_column("Priority", justify="right")
    table.add_column("Status")
    table.add_column("Retries", justify="right")
    table.add_column("Error")
    for task in service.tasks(entity_id=entity, status=status):
        table.add_row(
            task.id,
            task.friendly_name,
            task.target_id or "-",
            str(task.priority),
            task.status.value,
            str(task.retry_count),
            _short(task.error.message, 40) if task.error else "",
        )
    console.print(table)


@app.command()
def candidates(ctx: typer.Context) -> None:
    """Show intent pairs that look like duplicates."""
    service = _service(ctx)
    found = service.candidates()
    if not found:
        console.print("No merge candidates.")
        return
    table = Table(title="Merge candidates")
    table.add_column("Intent A")
    table.add_column("Intent B")
    table.add_column("Score", justify="right")
    table.add_column("Shared keywords")
    for candidate in found:
        a, b = candidate.pair
        table.add_row(a, b, f"{candidate.score:.2f}", ", ".join(candidate.signals.shared_keywords[:5]))
    console.print(table)


@app.command()
def stats(ctx: typer.Context) -> None:
    """Print summary statistics as JSON."""
    service = _service(ctx)
    console.print(json.dumps(service.stats(), indent=2))


# ── Commands ─────────────────────────────────────────────────────────


@app.command()
def merge(
    ctx: typer.Context,
    loser: Annotated[str, typer.Argument(help="Intent to fold away.")],
    winner: Annotated[str, typer.Argument(help="Intent that survives.")],
) -> None:
    """Merge one intent into another."""
    service = _service(ctx)
    with _user_errors():
        survivor = service.merge(loser, winner)
    console.print(f"[green]Merged[/green] {loser} into {survivor.id} ({survivor.page_count} pages)")


@app.command()
def complete(
    ctx: typer.Context,
    intent_id: Annotated[str, typer.Argument(help="Intent ID.")],
) -> None:
    """Mark an intent completed."""
    service = _service(ctx)
    with _user_errors():
        intent = service.complete(intent_id)
    console.print(f"[green]Completed[/green] {intent.display_label}")


@app.command()
def discard(
    ctx: typer.Context,
    intent_id: Annotated[str, typer.Argument(help="Intent ID.")],
) -> None:
    """Discard an intent."""
    service = _service(ctx)
    with _user_errors():
        intent = service.discard(intent_id)
    console.print(f"Discarded {intent.display_label}")


@app.command()
def nudges(
    ctx: typer.Context,
    generate: Annotated[
        bool, typer.Option("--generate", "-g", help="Run the suggestion rules first.")
    ] = False,
) -> None:
    """List pending nudges."""
    service = _service(ctx)
    if generate:
        created = asyncio.run(service.generate_nudges())
        console.print(f"Generated {len(created)} nudge(s)")
    pending = service.pending_nudges()
    if not pending:
        console.print("No pending nudges.")
        return
    table = Table(title="Nudges")
    table.add_column("ID")
    table.add_column("Type")
    table.add_column("Priority")
    table.add_column("Intent")
    table.add_column("Message")
    for nudge in pending:
        table.add_row(
            nudge.id,
            nudge.type.value,
            nudge.priority.value,
            nudge.intent_id,
            _short(nudge.message.title, 60),
        )
    console.print(table)


@app.command(name="nudge-ack")
def nudge_ack(
    ctx: typer.Context,
    nudge_id: Annotated[str, typer.Argument(help="Nudge ID.")],
) -> None:
    """Mark a nudge as acted on."""
    service = _service(ctx)
    with _user_errors():
        service.acknowledge_nudge(nudge_id)
    console.print(f"Acknowledged {nudge_id}")


@app.command(name="nudge-snooze")
def nudge_snooze(
    ctx: typer.Context,
    nudge_id: Annotated[str, typer.Argument(help="Nudge ID.")],
    hours: Annotated[float, typer.Option("--hours", help="Snooze duration in hours.")] = 24.0,
) -> None:
    """Hide a nudge for a while."""
    service = _service(ctx)
    with _user_errors():
        nudge = service.snooze_nudge(nudge_id, hours)
    until = nudge.timing.snoozed_until
    console.print(f"Snoozed {nudge_id} until {until:%Y-%m-%d %H:%M}" if until else f"Snoozed {nudge_id}")


@app.command(name="nudge-dismiss")
def nudge_dismiss(
    ctx: typer.Context,
    nudge_id: Annotated[str, typer.Argument(help="Nudge ID.")],
) -> None:
    """Dismiss a nudge."""
    service = _service(ctx)
    with _user_errors():
        service.dismiss_nudge(nudge_id)
    console.print(f"Dismissed {nudge_id}")


@app.command()
def reenrich(
    ctx: typer.Context,
    entity_id: Annotated[str, typer.Argument(help="Page or intent ID.")],
) -> None:
    """Force enrichment to run again for a page or intent."""
    service = _service(ctx)
    with _user_errors():
        task_ids = service.reenrich(entity_id)
    console.print(f"Queued {len(task_ids)} task(s) for {entity_id}")


@app.command()
def retry(
    ctx: typer.Context,
    task_id: Annotated[str, typer.Argument(help="Task ID.")],
) -> None:
    """Resubmit a finished task."""
    service = _service(ctx)
    with _user_errors():
        task = service.retry(task_id)
    console.print(f"Queued {task.friendly_name} as {task.id}")


@app.command()
def prune(
    ctx: typer.Context,
    days: Annotated[
        Optional[float], typer.Option("--days", help="Keep finished tasks newer than this.")
    ] = None,
) -> None:
    """Delete finished tasks older than the retention window."""
    service = _service(ctx)
    removed = service.prune(days)
    console.print(f"Pruned {removed} task(s)")
