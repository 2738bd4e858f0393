"""Workflow commands: iterate, project, refactor, test-mutate, test-cover, arch-review.

Every command takes the same scope argument and run options and exits with
the run's outcome code: 0 success, 1 partial, 3 halted by escalation.
"""
from __future__ import annotations

from typing import Callable, Optional

import typer

from andon.cli.common import build_orchestrator, get_config_or_default, get_console
from andon.cli.display import ProgressPrinter, show_summary

console = get_console()

EXIT_USAGE = 2

SCOPE_HELP = (
    "Ticket ids or paths to work on. Omit to cover the whole project "
    "(or every open ticket)."
)


def run_workflow(
    name: str,
    items: Optional[list[str]],
    query: Optional[str],
    aggression: Optional[str],
    verify: Optional[str],
    max_attempts: Optional[int],
    dry_run: bool,
    retry_skipped: bool,
) -> None:
    """Resolve options, run one workflow and exit with its outcome code."""
    from andon.config import ConfigError, RunOptions, apply_overrides
    from andon.escalation import EscalationCategory, EscalationEvent
    from andon.orchestrator import EXIT_ESCALATED
    from andon.progress_store import ProgressStoreError
    from andon.scope import ScopeRequest
    from andon.workflows import get_workflow

    from andon.cli.display import escalation_panel

    spec = get_workflow(name)
    options = RunOptions(
        aggression=aggression,
        verify_command=verify,
        max_attempts=max_attempts,
        retry_skipped=True if retry_skipped else None,
        dry_run=dry_run,
    )
    try:
        config = apply_overrides(get_config_or_default(), options)
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(EXIT_USAGE)

    orchestrator = build_orchestrator(config, spec, options, progress_callback=ProgressPrinter(console))
    if dry_run:
        console.print("[yellow]Dry run:[/yellow] no agent calls, no verification, no git changes, nothing saved.")

    try:
        summary = orchestrator.run(ScopeRequest.from_args(items, query))
    except ProgressStoreError as e:
        event = EscalationEvent(
            category=EscalationCategory.ENVIRONMENT_UNAVAILABLE,
            reason=str(e),
            step="load_progress",
        )
        console.print(escalation_panel(event))
        raise typer.Exit(EXIT_ESCALATED)

    console.print()
    show_summary(console, summary)
    raise typer.Exit(summary.exit_code)


def _make_command(name: str) -> Callable[..., None]:
    def command(
        items: Optional[list[str]] = typer.Argument(None, help=SCOPE_HELP),
        query: Optional[str] = typer.Option(
            None, "--query", "-q", help="Select units by query (e.g. 'label:bug' or a path fragment).",
        ),
        aggression: Optional[str] = typer.Option(
            None, "--aggression", "-a", help="Aggression ceiling: maximum, high or low.",
        ),
        verify: Optional[str] = typer.Option(
            None, "--verify", help="Custom verification command (overrides verification.command).",
        ),
        max_attempts: Optional[int] = typer.Option(
            None, "--max-attempts", "-n", help="Invoke-then-verify cycles per unit.",
        ),
        dry_run: bool = typer.Option(
            False, "--dry-run", help="Resolve and walk the scope without calling agents or git.",
        ),
        retry_skipped: bool = typer.Option(
            False, "--retry-skipped", help="Also re-run units skipped in earlier runs.",
        ),
    ) -> None:
        run_workflow(name, items, query, aggression, verify, max_attempts, dry_run, retry_skipped)

    return command


COMMAND_HELP = {
    "iterate": "Implement open tickets one at a time, each verified and merged.",
    "project": "Build blueprint items in dependency order.",
    "refactor": "Refactor project files in batches without changing behavior.",
    "test-mutate": "Mutation-test each source file and strengthen its tests.",
    "test-cover": "Add tests for untested behavior, one source file at a time.",
    "arch-review": "Review each module for architectural problems (read-only).",
}


def register(app: typer.Typer) -> None:
    """Add one command per workflow to the app."""
    for name, help_text in COMMAND_HELP.items():
        app.command(name, help=help_text)(_make_command(name))
