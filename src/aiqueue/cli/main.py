import asyncio
from datetime import datetime
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as package_version
from typing import Annotated

import typer
from rich import print
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from aiqueue.cli.callbacks import older_than_callback, status_callback
from aiqueue.config import load_settings
from aiqueue.models import BatchStatus
from aiqueue.store import SQLQueueStore
from aiqueue.utils.logging import setup_logging

app = typer.Typer(no_args_is_help=True)


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Log at debug level")] = False,
):
    """Inspect and maintain the AI task queue"""
    settings = load_settings()
    setup_logging(level="DEBUG" if verbose else settings.log_level, json_logs=settings.log_json)


def get_store() -> SQLQueueStore:
    return SQLQueueStore.from_url(load_settings().database_url)


def format_ms(timestamp: int | None) -> str:
    if timestamp is None:
        return "-"
    return datetime.strftime(datetime.fromtimestamp(timestamp / 1000), "%Y-%m-%d %H:%M:%S")


def print_batch(status: BatchStatus):
    batch_dict = {
        "Queue": status.queue_name,
        "Status": f"[green]{status.status}[/green]",
        "Total Items": status.total_items,
        "Processing Items": status.processing_items,
        "Completed Items": status.completed_items,
        "Failed Items": status.failed_items,
        "Completion": f"{status.completion_percentage}%",
        "Webhook URL": status.webhook_url,
        "Created At": format_ms(status.created_at),
        "Updated At": format_ms(status.updated_at),
        "Completed At": format_ms(status.completed_at),
    }
    if not status.webhook_url:
        del batch_dict["Webhook URL"]
    if not status.is_complete:
        del batch_dict["Completed At"]
    values = "\n".join([f"{key}: {value}" for key, value in batch_dict.items()])
    console = Console()
    console.print(Panel(values, title=status.batch_id, expand=False, highlight=True))


@app.command(name="list")
def list_entries(
    status: Annotated[
        str | None,
        typer.Option(
            "-s",
            "--status",
            help="Only count entries with this status",
            callback=status_callback,
        ),
    ] = None,
):
    """Count queue entries per queue type and status"""
    table = Table("Queue", "Status", "Entries", title="Queue entries")
    rows = asyncio.run(get_store().summarize())
    for queue_type, entry_status, count in rows:
        if status is not None and entry_status != status:
            continue
        table.add_row(queue_type, entry_status, str(count))
    console = Console()
    console.print(table)


@app.command(name="batch")
def get_batch(
    batch_id: Annotated[str, typer.Argument(help="The id of the batch")],
):
    """Show the progress of a batch"""
    batch = asyncio.run(get_store().get_batch(batch_id=batch_id))
    if batch is None:
        typer.echo(f"Batch with id: {batch_id} not found")
        raise typer.Exit(1)
    print_batch(BatchStatus.from_batch(batch))


@app.command(name="reclaim")
def reclaim_entries(
    queue_type: Annotated[str, typer.Argument(help="The queue type, e.g. openai, fal, modal..")],
    older_than: Annotated[
        float,
        typer.Option(
            help="Reset entries stuck in processing for longer than this many seconds",
            callback=older_than_callback,
        ),
    ] = 3600.0,
):
    """Reset stale processing entries of a queue back to pending"""
    reclaimed = asyncio.run(
        get_store().reclaim_stale(queue_type=queue_type, older_than_ms=int(older_than * 1000))
    )
    print(f"Reset [green]{reclaimed}[/green] {queue_type} entries to pending")


@app.command(name="nuke")
def nuke_entries(
    queue_type: Annotated[
        str | None,
        typer.Option("--type", help="Only delete entries of this queue type"),
    ] = None,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Confirm the deletion"),
    ] = False,
):
    """Delete queue entries"""
    if not yes:
        typer.echo("Refusing to delete queue entries without --yes")
        raise typer.Exit(1)
    deleted = asyncio.run(get_store().nuke(queue_type=queue_type))
    print(f"Deleted [green]{deleted}[/green] queue entries")


@app.command()
def version():
    """Get the version of the package"""
    try:
        typer.echo(package_version("aiqueue"))
    except PackageNotFoundError:
        typer.echo("unknown")
    raise typer.Exit()
