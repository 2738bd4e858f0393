"""CLI package for andon.

Modules:
    app.py       - Main Typer app, version callback, command registration
    workflows.py - One command per workflow (iterate, refactor, arch-review, ...)
    status.py    - Progress commands (status, reset)
    display.py   - Rich formatting for progress, summaries and escalations
    common.py    - Shared helpers (console, project dir, config, component wiring)

Usage:
    from andon.cli import app, cli_main
"""
from andon.cli.app import app, cli_main

__all__ = ["app", "cli_main"]
