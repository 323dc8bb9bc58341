"""CLI output formatters for Rich tables and JSON."""

import json

from rich.console import Console
from rich.table import Table

from rewardlink.db.models import PostConnection
from rewardlink.services.reconciler import SweepReport

console = Console()

STATE_COLORS = {
    "active": "green",
    "ended": "yellow",
    "archived": "dim",
}


def connection_summary(connection: PostConnection) -> dict:
    return {
        "id": connection.id,
        "kind": connection.kind,
        "entity_id": connection.entity_id,
        "guild_id": connection.guild_id,
        "channel_id": connection.channel_id,
        "state": connection.state,
        "entry_count": connection.entry_count,
        "failure_count": connection.failure_count,
        "last_reconciled_at": connection.last_reconciled_at,
        "last_error": connection.last_error,
    }


def format_connection_table(connections: list[PostConnection], as_json: bool = False) -> str:
    """Format connections as a Rich table or JSON."""
    if as_json:
        return json.dumps([connection_summary(c) for c in connections], indent=2)

    if not connections:
        return "No connections found."

    table = Table(title="Connections", show_lines=True)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Kind")
    table.add_column("Entity", style="white")
    table.add_column("Channel")
    table.add_column("State")
    table.add_column("Entries", justify="right", style="green")
    table.add_column("Failures", justify="right", style="red")
    table.add_column("Reconciled")

    for c in connections:
        color = STATE_COLORS.get(c.state, "white")
        table.add_row(
            c.id[:12],
            c.kind,
            c.entity_id,
            c.channel_id,
            f"[{color}]{c.state}[/{color}]",
            str(c.entry_count),
            str(c.failure_count),
            c.last_reconciled_at[:19] if c.last_reconciled_at else "-",
        )

    with console.capture() as capture:
        console.print(table)
    return capture.get()


def format_sweep_report(report: SweepReport) -> str:
    lines = [
        f"Reconciled: {report.reconciled}",
        f"Failed:     {report.failed}",
        f"Archived:   {report.archived}",
    ]
    for result in report.results:
        if result.status == "failed":
            lines.append(f"  ✗ {result.connection_id[:12]}: {result.error}")
    return "\n".join(lines)
