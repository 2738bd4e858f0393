"""Progress commands: status and reset."""
from __future__ import annotations

import typer

from andon.cli.common import get_config_or_default, get_console

console = get_console()


def _load_store():
    from andon.config import ConfigError
    from andon.progress_store import ProgressStore, ProgressStoreError

    try:
        config = get_config_or_default()
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(2)

    store = ProgressStore(config)
    try:
        store.load()
    except ProgressStoreError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    return store


def status() -> None:
    """Show what is completed, skipped, aborted and still to do."""
    store = _load_store()
    if not store.state.units:
        console.print(f"[dim]No progress recorded yet ({store.path}).[/dim]")
        return
    console.print(store.summary_view())


def reset(
    unit_id: str = typer.Argument(..., help="Unit id to return to pending."),
) -> None:
    """Return one unit to pending so the next run picks it up again."""
    from andon.progress_store import ProgressStoreError

    store = _load_store()
    try:
        store.reset_unit(unit_id)
    except ProgressStoreError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    console.print(f"[green]{unit_id}[/green] reset to pending.")


def register(app: typer.Typer) -> None:
    app.command("status")(status)
    app.command("reset")(reset)
