"""Display helpers and formatters for the CLI.

Contains Rich formatting utilities for unit statuses, run summaries and
escalations. This module should NOT import from the command modules.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from andon.models import UnitStatus
from andon.progress_store import STATUS_STYLES

if TYPE_CHECKING:
    from andon.escalation import EscalationEvent
    from andon.orchestrator import RunSummary


def format_status(status: UnitStatus) -> Text:
    """Format a unit status with its color."""
    return Text(status.value, style=STATUS_STYLES.get(status, "white"))


def format_cost(cost_usd: float) -> str:
    """Format cost in USD."""
    return f"${cost_usd:.2f}"


def format_delta(net: int) -> str:
    sign = "+" if net > 0 else ""
    return f"{sign}{net}"


class ProgressPrinter:
    """Prints orchestrator progress events as they happen."""

    def __init__(self, console: Console) -> None:
        self.console = console

    def __call__(self, event: str, data: dict) -> None:
        if event == "run_start":
            mode = " (parallel analysis)" if data.get("parallel") else ""
            self.console.print(
                f"[cyan]Run {data.get('run_id')}[/cyan]: {len(data.get('units', []))} unit(s){mode}"
            )
        elif event == "unit_start":
            self.console.print(f"[dim]->[/dim] {data.get('unit_id')}: {data.get('description', '')}")
        elif event == "unit_end":
            status = UnitStatus(data["status"])
            line = Text("   ")
            line.append_text(format_status(status))
            line.append(f" after {data.get('attempts', 0)} attempt(s)")
            if data.get("reason") and status != UnitStatus.COMPLETED:
                line.append(f": {data['reason']}", style="dim")
            self.console.print(line)


def escalation_panel(event: EscalationEvent) -> Panel:
    """Render an escalation with the repository state a human needs."""
    lines = [
        f"[red bold]{event.category.value}[/red bold]",
        "",
        f"Reason: {event.reason}",
    ]
    if event.unit_id:
        lines.append(f"Unit: {event.unit_id}")
    if event.step:
        lines.append(f"Step: {event.step}")
    lines.append(f"Committed this run: {', '.join(event.committed) or 'none'}")
    if event.in_flight:
        lines.append(f"In flight: {', '.join(event.in_flight)}")
    for unit_id, branch in event.branches:
        lines.append(f"Branch kept for {unit_id}: [cyan]{branch}[/cyan]")
    return Panel("\n".join(lines), title="Andon Cord Pulled", border_style="red")


def summary_table(summary: RunSummary) -> Table:
    table = Table(title=f"{summary.workflow} run {summary.run_id}")
    table.add_column("Unit")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Commit")
    table.add_column("Reason")
    for result in summary.results:
        table.add_row(
            result.unit_id,
            format_status(result.status),
            str(result.attempts),
            (result.commit or "")[:10],
            "" if result.status == UnitStatus.COMPLETED else result.reason,
        )
    return table


def show_summary(console: Console, summary: RunSummary) -> None:
    """Print the run summary and, when the cord was pulled, the escalation."""
    if summary.results:
        console.print(summary_table(summary))

    counts = (
        f"completed {len(summary.completed)}, "
        f"skipped {len(summary.skipped)}, "
        f"aborted {len(summary.aborted)}"
    )
    if summary.previously_completed:
        counts += f", already done {len(summary.previously_completed)}"
    console.print(counts)
    console.print(
        f"Net delta: {format_delta(summary.net_delta)} lines "
        f"(+{summary.insertions}/-{summary.deletions}), "
        f"commits: {len(summary.commits)}, cost: {format_cost(summary.cost_usd)}"
    )
    if summary.not_attempted:
        console.print(f"[dim]Not attempted: {', '.join(summary.not_attempted)}[/dim]")

    if summary.escalation is not None:
        console.print(escalation_panel(summary.escalation))
    elif summary.skipped or summary.aborted:
        console.print("[yellow]Partial success.[/yellow] Re-run to resume; use --retry-skipped to revisit skipped units.")
    else:
        console.print("[green]All units completed.[/green]")
