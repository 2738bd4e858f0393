"""
Settings for an andon run.

Settings come from an optional ``andon.yaml`` at the project root. Every
field has a default, string values may reference ``${ENV_VARS}``, and the
command line can override a handful of fields for one run
(see apply_overrides).
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Optional

import yaml


CONFIG_FILENAME = "andon.yaml"

AGGRESSION_LEVELS = ("maximum", "high", "low")
EXHAUSTION_POLICIES = ("skip", "escalate")
TRACKER_SOURCES = ("file", "github")

ENV_REF = re.compile(r"\$\{([A-Za-z_]\w*)\}")


class ConfigError(Exception):
    """andon.yaml or a command-line override is unusable."""
    pass


@dataclass
class ClaudeConfig:
    binary: str = "claude"
    max_turns: int = 12
    timeout_seconds: int = 600                 # Per agent call


@dataclass
class RetryConfig:
    max_attempts: int = 3                      # Invoke-then-verify cycles per unit
    on_exhaustion: str = "skip"                # "skip" or "escalate"


@dataclass
class VerificationConfig:
    command: str = ""                          # e.g. "pytest -x -q"; empty disables the gate
    timeout_seconds: int = 900
    infrastructure_exit_codes: list[int] = field(default_factory=lambda: [126, 127])
    max_detail_chars: int = 4000               # Diagnostic fed back to the agent


@dataclass
class GitConfig:
    enabled: bool = True
    base_branch: str = ""                      # Empty means the branch checked out at run start
    branch_pattern: str = "andon/{workflow}/{unit_id}"
    commit_prefix: str = "andon"


@dataclass
class ProgressConfig:
    path: str = ".andon/progress.json"
    track_in_vcs: bool = False                 # Commit the progress file after each unit
    max_examples: int = 10


@dataclass
class PipelineConfig:
    aggression: str = "high"                   # "maximum", "high" or "low"
    fan_out_threshold: int = 15                # Units before analysis fans out
    max_parallel: int = 4
    escalate_severities: list[str] = field(default_factory=lambda: ["critical"])
    retry_skipped: bool = False


@dataclass
class TrackerConfig:
    source: str = "file"                       # "file" or "github"
    path: str = ".andon/tickets.yaml"
    repo: str = ""                             # owner/repo for the github source
    timeout_seconds: int = 60


@dataclass
class AndonConfig:
    """All settings for one project; paths are resolved against repo_root."""
    repo_root: str = "."
    state_dir: str = ".andon"

    claude: ClaudeConfig = field(default_factory=ClaudeConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    git: GitConfig = field(default_factory=GitConfig)
    progress: ProgressConfig = field(default_factory=ProgressConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)

    def __post_init__(self) -> None:
        self.repo_root = str(Path(self.repo_root).absolute())

    @property
    def state_path(self) -> Path:
        return Path(self.repo_root) / self.state_dir

    @property
    def logs_path(self) -> Path:
        return self.state_path / "logs"

    @property
    def progress_path(self) -> Path:
        return Path(self.repo_root) / self.progress.path

    @property
    def journal_path(self) -> Path:
        """Append-only, human readable companion of progress.json."""
        return self.state_path / "progress.txt"

    @property
    def skills_path(self) -> Path:
        return Path(self.repo_root) / ".claude" / "skills"


@dataclass
class RunOptions:
    """
    Options given on the command line for a single run.

    None means "keep the configured value".
    """
    aggression: Optional[str] = None
    verify_command: Optional[str] = None
    max_attempts: Optional[int] = None
    retry_skipped: Optional[bool] = None
    dry_run: bool = False


# Nested sections of andon.yaml and the dataclass each one fills
SECTIONS: dict[str, type] = {
    "claude": ClaudeConfig,
    "retry": RetryConfig,
    "verification": VerificationConfig,
    "git": GitConfig,
    "progress": ProgressConfig,
    "pipeline": PipelineConfig,
    "tracker": TrackerConfig,
}

_config_cache: Optional[AndonConfig] = None


def expand_env(value: Any) -> Any:
    """Substitute ``${NAME}`` in every string of a parsed YAML tree."""
    if isinstance(value, dict):
        return {key: expand_env(item) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_env(item) for item in value]
    if not isinstance(value, str):
        return value

    def lookup(match: re.Match) -> str:
        name = match.group(1)
        if name not in os.environ:
            raise ConfigError(f"andon.yaml references ${{{name}}} but it is not set")
        return os.environ[name]

    return ENV_REF.sub(lookup, value)


def _check_choice(name: str, value: str, choices: tuple[str, ...]) -> str:
    if value not in choices:
        raise ConfigError(f"{name} must be one of {', '.join(choices)}, got {value!r}")
    return value


def _check_max_attempts(value: Any) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < 1:
        raise ConfigError(f"retry.max_attempts must be a positive integer, got {value!r}")
    return value


def _section(name: str, data: Any) -> Any:
    """Fill the dataclass for section name; keys it does not know are ignored."""
    cls = SECTIONS[name]
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigError(f"Section '{name}' must be a mapping")
    known = {f.name for f in fields(cls)}
    return cls(**{key: value for key, value in data.items() if key in known})


def validate(config: AndonConfig) -> AndonConfig:
    """
    Check enumerated and bounded fields, normalising where harmless.

    Raises:
        ConfigError: Naming the first offending field.
    """
    _check_max_attempts(config.retry.max_attempts)
    _check_choice("retry.on_exhaustion", config.retry.on_exhaustion, EXHAUSTION_POLICIES)
    _check_choice("pipeline.aggression", config.pipeline.aggression, AGGRESSION_LEVELS)
    _check_choice("tracker.source", config.tracker.source, TRACKER_SOURCES)
    config.pipeline.escalate_severities = [str(s).lower() for s in config.pipeline.escalate_severities]
    config.verification.infrastructure_exit_codes = list(config.verification.infrastructure_exit_codes)
    return config


def load_config(config_path: Optional[str] = None) -> AndonConfig:
    """
    Read andon.yaml (from the working directory unless config_path is given).

    repo_root defaults to the directory holding the file.

    Raises:
        ConfigError: If the file is missing, malformed or fails validation.
    """
    path = Path(config_path or CONFIG_FILENAME)
    if not path.is_file():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        raw = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")

    data = expand_env(raw)
    config = AndonConfig(
        repo_root=data.get("repo_root") or str(path.absolute().parent),
        state_dir=data.get("state_dir", ".andon"),
        **{name: _section(name, data.get(name)) for name in SECTIONS},
    )
    return validate(config)


def apply_overrides(config: AndonConfig, options: RunOptions) -> AndonConfig:
    """
    Return a copy of config with the run's command-line options applied.

    Overrides are resolved once, at run start. The cached config is left
    untouched.

    Raises:
        ConfigError: If an override has an invalid value.
    """
    retry = config.retry
    if options.max_attempts is not None:
        retry = replace(retry, max_attempts=_check_max_attempts(options.max_attempts))

    verification = config.verification
    if options.verify_command is not None:
        verification = replace(verification, command=options.verify_command)

    pipeline = config.pipeline
    if options.aggression is not None:
        pipeline = replace(
            pipeline,
            aggression=_check_choice("--aggression", options.aggression, AGGRESSION_LEVELS),
        )
    if options.retry_skipped is not None:
        pipeline = replace(pipeline, retry_skipped=options.retry_skipped)

    return replace(config, retry=retry, verification=verification, pipeline=pipeline)


def get_config(config_path: Optional[str] = None, force_reload: bool = False) -> AndonConfig:
    """Process-wide config, loaded on first use."""
    global _config_cache
    if _config_cache is None or force_reload:
        _config_cache = load_config(config_path)
    return _config_cache


def clear_config_cache() -> None:
    global _config_cache
    _config_cache = None
