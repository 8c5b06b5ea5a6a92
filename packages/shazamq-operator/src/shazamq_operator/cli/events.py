"""Event journal CLI command.

Lists journaled events in a rich table, or as JSON for automation.
"""

import asyncio
import json
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from shazamq_operator.db.events import EventJournal

DEFAULT_JOURNAL_PATH = Path.home() / ".shazamq-operator" / "events.db"


def events_command(
    cluster: str = typer.Option(
        None, "--cluster", "-c", help="Only events for this cluster (namespace/name)"
    ),
    reason: str = typer.Option(None, "--reason", "-r", help="Only events with this reason"),
    limit: int = typer.Option(50, "--limit", help="Maximum number of events"),
    journal: Path = typer.Option(
        DEFAULT_JOURNAL_PATH,
        "--journal",
        envvar="SHAZAMQ_OPERATOR_JOURNAL_PATH",
        help="Event journal database",
    ),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """List recorded operator events, newest first."""
    if not journal.exists():
        print(f"No journal at {journal}")
        raise typer.Exit(1)

    async def _list() -> None:
        async with EventJournal(journal) as db:
            events = await db.list_events(cluster_key=cluster, reason=reason, limit=limit)

        if json_output:
            print(json.dumps([e.to_dict() for e in events], indent=2, default=str))
            return

        console = Console()
        table = Table(title="Operator events")
        table.add_column("ID", justify="right", style="cyan")
        table.add_column("Time")
        table.add_column("Cluster")
        table.add_column("Reason", style="green")
        table.add_column("Message")

        for e in events:
            reason_cell = f"[red]{e.reason}[/red]" if e.severity == "warning" else e.reason
            table.add_row(
                str(e.id),
                e.recorded_at.strftime("%Y-%m-%d %H:%M:%S"),
                e.cluster_key,
                reason_cell,
                e.message,
            )

        console.print(table)

    asyncio.run(_list())
