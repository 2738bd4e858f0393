"""Typer application for the andon command.

Workflow commands and the progress commands are attached by their own
modules through ``register``; this module only owns the root callback.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from andon import __version__
from andon.cli.common import get_console, set_project_dir

app = typer.Typer(
    name="andon",
    help="Sequential multi-agent workflows with verification gates and an andon cord",
    add_completion=False,
    no_args_is_help=False,
)

console = get_console()


def _print_version(flag: bool) -> None:
    if not flag:
        return
    console.print(f"andon version {__version__}")
    raise typer.Exit()


@app.callback(invoke_without_command=True)
def root(
    ctx: typer.Context,
    project: Optional[Path] = typer.Option(
        None,
        "--project",
        "-p",
        help="Repository to work on; defaults to the current directory",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Print the andon version",
        callback=_print_version,
        is_eager=True,
    ),
) -> None:
    """
    Andon - run one workflow over a project, one verified unit at a time.

    Any unresolvable condition pulls the andon cord: the run halts and
    reports what was committed and what is still in flight.
    """
    if project is not None and not project.is_dir():
        console.print(f"[red]Error: Project directory not found: {project}[/red]")
        raise typer.Exit(2)
    set_project_dir(str(project.absolute()) if project is not None else None)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(0)


from andon.cli import status as status_commands  # noqa: E402
from andon.cli import workflows as workflow_commands  # noqa: E402

workflow_commands.register(app)
status_commands.register(app)


def cli_main() -> None:
    app()


__all__ = ["app", "cli_main"]
