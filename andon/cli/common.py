"""Common utilities and global state for the CLI.

Contains project directory management, config loading and component wiring.
This module should NOT import from the command modules to avoid circular imports.
"""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

from rich.console import Console

if TYPE_CHECKING:
    from andon.config import AndonConfig, RunOptions
    from andon.orchestrator import Orchestrator
    from andon.workflows import WorkflowSpec

# ============================================================================
# Global State
# ============================================================================

# Global project directory override (set via --project flag)
_project_dir: Optional[str] = None

# Console singleton
_console: Optional[Console] = None


def get_project_dir() -> Optional[str]:
    """Get the project directory override if set."""
    return _project_dir


def set_project_dir(path: Optional[str]) -> None:
    """Set the project directory override."""
    global _project_dir
    _project_dir = path


def get_console() -> Console:
    """Get or create the console singleton."""
    global _console
    if _console is None:
        _console = Console()
    return _console


# ============================================================================
# Config Helpers
# ============================================================================


def project_root() -> Path:
    return Path(get_project_dir() or ".").absolute()


def get_config_or_default() -> "AndonConfig":
    """
    Load andon.yaml from the project root, or use defaults when it is absent.

    Raises:
        ConfigError: If the file exists but is invalid.
    """
    from andon.config import CONFIG_FILENAME, AndonConfig, load_config

    root = project_root()
    config_file = root / CONFIG_FILENAME
    if not config_file.exists():
        return AndonConfig(repo_root=str(root))
    return load_config(str(config_file))


def init_state_directory(config: "AndonConfig") -> None:
    """Create the .andon directory structure if it doesn't exist."""
    from andon.utils.fs import ensure_dir

    ensure_dir(config.state_path)
    ensure_dir(config.logs_path)


# ============================================================================
# Component Wiring
# ============================================================================


def build_orchestrator(
    config: "AndonConfig",
    spec: "WorkflowSpec",
    options: "RunOptions",
    progress_callback: Optional[Callable[[str, dict], None]] = None,
) -> "Orchestrator":
    """
    Wire the components for one run.

    Dry runs use the stub invoker, skip verification, leave git alone and
    keep the Progress Store in memory.
    """
    from andon.agents import ClaudeAgentInvoker, StubAgentInvoker
    from andon.logger import RunLogger
    from andon.orchestrator import Orchestrator
    from andon.progress_store import ProgressStore
    from andon.run_journal import RunJournal
    from andon.skill_loader import SkillLoader
    from andon.verification import (
        AgentVerificationGate,
        CommandVerificationGate,
        NullVerificationGate,
    )
    from andon.vcs import DryRunVcsAdapter, GitAdapter, GitDisabledAdapter
    from andon.workflows import build_instructions

    init_state_directory(config)
    logger = RunLogger(spec.name, config)
    journal = None if options.dry_run else RunJournal(config.journal_path)

    if options.dry_run:
        invoker = StubAgentInvoker(logger=logger)
    else:
        invoker = ClaudeAgentInvoker(config, logger=logger)

    if options.dry_run or spec.verify == "none":
        gate = NullVerificationGate(logger)
    elif spec.verify == "agent":
        gate = AgentVerificationGate(invoker, config, logger=logger)
    else:
        gate = CommandVerificationGate(config, logger=logger)

    if options.dry_run:
        vcs = DryRunVcsAdapter(config, spec.name, logger)
    elif not config.git.enabled:
        vcs = GitDisabledAdapter(config, spec.name, spec.mutates, logger)
    elif not spec.mutates:
        vcs = DryRunVcsAdapter(config, spec.name, logger)
    else:
        vcs = GitAdapter(config, spec.name, logger)

    store = ProgressStore(config, logger=logger, persist=not options.dry_run)
    skill = SkillLoader(config.skills_path).load_or_default(spec.name, spec.default_instructions)

    return Orchestrator(
        config,
        spec,
        invoker,
        gate,
        vcs,
        store,
        logger=logger,
        journal=journal,
        progress_callback=progress_callback,
        instructions=build_instructions(spec, config, skill),
    )
