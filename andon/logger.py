"""
Per-workflow JSONL event log.

Each workflow appends to ``<logs_path>/<workflow>-<YYYY-MM-DD>.jsonl``, one
JSON object per line::

    {"timestamp": "...Z", "level": "info", "event_type": "unit_start",
     "workflow": "iterate", "data": {...}, "run_id": "..."}

``run_id`` is only present for entries written inside ``run_context``.
"""

from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from andon.config import AndonConfig, get_config


class LogLevel:
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class RunLogger:
    """Appends structured events for one workflow; safe to share across threads."""

    def __init__(self, workflow: str, config: Optional[AndonConfig] = None) -> None:
        self.workflow = workflow
        self._config = config
        self._run_id: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def config(self) -> AndonConfig:
        if self._config is None:
            self._config = get_config()
        return self._config

    def path_for(self, date: str) -> Path:
        return self.config.logs_path / f"{self.workflow}-{date}.jsonl"

    def log(self, event_type: str, data: Optional[dict[str, Any]] = None, level: str = LogLevel.INFO) -> None:
        entry: dict[str, Any] = {
            "timestamp": utc_now_iso(),
            "level": level,
            "event_type": event_type,
            "workflow": self.workflow,
            "data": data or {},
        }
        if self._run_id:
            entry["run_id"] = self._run_id

        line = json.dumps(entry, default=str)
        path = self.path_for(_today())
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a") as f:
                f.write(line + "\n")

    def debug(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.DEBUG)

    def info(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.INFO)

    def warn(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.WARN)

    def error(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.ERROR)

    @contextmanager
    def run_context(self, run_id: str) -> Iterator[RunLogger]:
        """
        Tag every entry written inside the block with run_id.

        The start and end of the block are logged too. Nesting restores the
        outer run id on exit.
        """
        outer, self._run_id = self._run_id, run_id
        self.info("run_context_start", {"run_id": run_id})
        try:
            yield self
        finally:
            self.info("run_context_end", {"run_id": run_id})
            self._run_id = outer

    def read_logs(
        self,
        date: Optional[str] = None,
        level: Optional[str] = None,
        event_type: Optional[str] = None,
        run_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Entries from one day's file (today by default) matching every given filter.

        Lines that are not valid JSON are skipped.
        """
        path = self.path_for(date or _today())
        if not path.exists():
            return []

        wanted = {"level": level, "event_type": event_type, "run_id": run_id}
        wanted = {k: v for k, v in wanted.items() if v}
        found: list[dict[str, Any]] = []
        for raw in path.read_text().splitlines():
            if not raw.strip():
                continue
            try:
                entry = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if any(entry.get(k) != v for k, v in wanted.items()):
                continue
            found.append(entry)
            if limit and len(found) >= limit:
                break
        return found


_loggers: dict[str, RunLogger] = {}


def get_logger(workflow: str, config: Optional[AndonConfig] = None) -> RunLogger:
    """Shared RunLogger per workflow name; config only applies on first use."""
    if workflow not in _loggers:
        _loggers[workflow] = RunLogger(workflow, config)
    return _loggers[workflow]


def clear_logger_cache() -> None:
    _loggers.clear()
