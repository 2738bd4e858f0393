"""
Progress Store for Andon.

This module handles:
- Loading and saving the project ledger (.andon/progress.json by default)
- Atomic writes so an interrupted run never leaves a partial file
- Recomputing the aggregate from every record on each save
- Resume ordering across sessions
- A rich table view of what is left

The store is read once at run start and written after every terminal
unit outcome. It is never written from worker threads.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, Optional

from rich.table import Table

from andon.models import ProgressRecord, ProjectState, UnitStatus, model_to_json
from andon.utils.fs import FileSystemError, file_exists, read_file, safe_write

if TYPE_CHECKING:
    from andon.config import AndonConfig
    from andon.logger import RunLogger


class ProgressStoreError(Exception):
    """Raised when the progress file cannot be read or written."""
    pass


STATUS_STYLES = {
    UnitStatus.PENDING: "dim",
    UnitStatus.IN_PROGRESS: "yellow",
    UnitStatus.COMPLETED: "green",
    UnitStatus.SKIPPED: "magenta",
    UnitStatus.ABORTED: "red",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _weight(record: ProgressRecord) -> float:
    total = record.metrics.get("total")
    if isinstance(total, (int, float)) and not isinstance(total, bool) and total > 0:
        return float(total)
    return 1.0


def compute_aggregate(units: dict[str, ProgressRecord]) -> dict[str, Any]:
    """
    Derive global statistics from the full set of records.

    overall_score is the mean of unit scores weighted by metrics["total"]
    (1 when absent), over units that have a score.
    """
    counts = {status: 0 for status in UnitStatus}
    weighted = 0.0
    weight_sum = 0.0
    for record in units.values():
        counts[record.status] += 1
        if record.score is not None:
            w = _weight(record)
            weighted += record.score * w
            weight_sum += w

    return {
        "total_units": len(units),
        "completed_units": counts[UnitStatus.COMPLETED],
        "pending_units": counts[UnitStatus.PENDING],
        "in_progress_units": counts[UnitStatus.IN_PROGRESS],
        "skipped_units": counts[UnitStatus.SKIPPED],
        "aborted_units": counts[UnitStatus.ABORTED],
        "overall_score": round(weighted / weight_sum, 2) if weight_sum else 0.0,
    }


class ProgressStore:
    """
    Durable, resumable record of per-unit progress.
    """

    def __init__(
        self,
        config: AndonConfig,
        logger: Optional[RunLogger] = None,
        path: Optional[Path] = None,
        persist: bool = True,
    ) -> None:
        """
        Initialize the store.

        Args:
            config: AndonConfig with the progress path configured.
            logger: Optional logger for recording operations.
            path: Override for the progress file location.
            persist: When False (dry runs) state is kept in memory only.
        """
        self._config = config
        self._logger = logger
        self._path = Path(path) if path else config.progress_path
        self._persist = persist
        self._state: Optional[ProjectState] = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def state(self) -> ProjectState:
        """The in-memory state, loading it on first access."""
        if self._state is None:
            self._state = self.load()
        return self._state

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def load(self) -> ProjectState:
        """
        Load the ledger from disk.

        Returns:
            The stored ProjectState, or a fresh default when no file exists.

        Raises:
            ProgressStoreError: If the file exists but cannot be parsed.
        """
        if not file_exists(self._path):
            self._log("progress_load_miss", {"path": str(self._path)}, level="debug")
            self._state = ProjectState(
                verification_command=self._config.verification.command,
                aggregate=compute_aggregate({}),
            )
            return self._state

        try:
            data = json.loads(read_file(self._path))
            if not isinstance(data, dict):
                raise ValueError("top-level value is not an object")
            state = ProjectState.from_dict(data)
        except (json.JSONDecodeError, KeyError, ValueError, TypeError, AttributeError) as e:
            self._log("progress_corrupted", {
                "path": str(self._path),
                "error": str(e),
            }, level="error")
            raise ProgressStoreError(
                f"Progress file {self._path} is corrupted ({e}); "
                "fix or remove it before resuming"
            )
        except FileSystemError as e:
            raise ProgressStoreError(f"Failed to read progress file {self._path}: {e}")

        self._log("progress_loaded", {
            "path": str(self._path),
            "units": len(state.units),
        })
        self._state = state
        return state

    def save(self) -> None:
        """
        Recompute the aggregate and write the ledger atomically.

        Raises:
            ProgressStoreError: If the write fails.
        """
        state = self.state
        state.aggregate = compute_aggregate(state.units)
        if self._config.verification.command:
            state.verification_command = self._config.verification.command
        if not self._persist:
            return
        try:
            safe_write(self._path, model_to_json(state.to_dict(), indent=2) + "\n")
        except FileSystemError as e:
            self._log("progress_save_error", {"error": str(e)}, level="error")
            raise ProgressStoreError(f"Failed to save progress file {self._path}: {e}")
        self._log("progress_saved", {"aggregate": state.aggregate}, level="debug")

    def get(self, unit_id: str) -> Optional[ProgressRecord]:
        return self.state.units.get(unit_id)

    def upsert(self, unit_id: str, record: ProgressRecord) -> None:
        """
        Write or replace one record, then save.
        """
        max_examples = self._config.progress.max_examples
        if len(record.examples) > max_examples:
            record.examples = record.examples[:max_examples]
        stamp = _now()
        record.last_updated = stamp
        self.state.units[unit_id] = record
        self.state.last_updated = stamp
        self.save()

    def register(self, unit_ids: Iterable[str]) -> list[str]:
        """
        Add newly discovered units as pending. Known units are left alone.

        Returns:
            The ids that were added.
        """
        added = []
        stamp = _now()
        for unit_id in unit_ids:
            if unit_id not in self.state.units:
                self.state.units[unit_id] = ProgressRecord(last_updated=stamp)
                added.append(unit_id)
        if added:
            self.state.last_updated = stamp
            self.save()
            self._log("progress_registered", {"unit_ids": added})
        return added

    def mark_in_progress(self, unit_id: str) -> None:
        record = self.get(unit_id) or ProgressRecord()
        record.status = UnitStatus.IN_PROGRESS
        self.upsert(unit_id, record)

    def record_outcome(
        self,
        unit_id: str,
        status: UnitStatus,
        attempts: int,
        *,
        metrics: Optional[dict[str, Any]] = None,
        score: Optional[float] = None,
        examples: Optional[list[Any]] = None,
        notes: Optional[list[str]] = None,
    ) -> ProgressRecord:
        """
        Record a unit's terminal outcome.

        Metrics are merged into the existing record; notes are appended.
        """
        record = self.get(unit_id) or ProgressRecord()
        record.status = status
        record.attempts = attempts
        if metrics:
            record.metrics.update(metrics)
        if score is not None:
            record.score = float(score)
        if examples is not None:
            record.examples = list(examples)
        if notes:
            record.notes.extend(notes)
        self.upsert(unit_id, record)
        return record

    def reset_unit(self, unit_id: str) -> None:
        """
        Return one unit to pending so the next run picks it up again.

        Raises:
            ProgressStoreError: If the unit is not tracked.
        """
        record = self.get(unit_id)
        if record is None:
            raise ProgressStoreError(f"Unknown unit: {unit_id}")
        record.status = UnitStatus.PENDING
        record.notes.append("reset to pending")
        self.upsert(unit_id, record)

    def resume_order(self, unit_ids: list[str], retry_skipped: bool = False) -> list[str]:
        """
        Order the units a run should process.

        in_progress units (interrupted last time) come first, then pending
        and aborted ones, then skipped ones when retry_skipped is set.
        Completed units are never returned. The given order is kept within
        each group.
        """
        first, middle, last = [], [], []
        for unit_id in unit_ids:
            record = self.get(unit_id)
            status = record.status if record else UnitStatus.PENDING
            if status == UnitStatus.IN_PROGRESS:
                first.append(unit_id)
            elif status in (UnitStatus.PENDING, UnitStatus.ABORTED):
                middle.append(unit_id)
            elif status == UnitStatus.SKIPPED and retry_skipped:
                last.append(unit_id)
        return first + middle + last

    def summary_view(self, title: str = "Progress") -> Table:
        """Render the ledger as a table grouped by status."""
        aggregate = compute_aggregate(self.state.units)
        table = Table(
            title=title,
            caption=(
                f"{aggregate['completed_units']}/{aggregate['total_units']} completed, "
                f"overall score {aggregate['overall_score']}"
            ),
        )
        table.add_column("Status", style="bold")
        table.add_column("Unit")
        table.add_column("Attempts", justify="right")
        table.add_column("Score", justify="right")
        table.add_column("Last note")

        order = [
            UnitStatus.IN_PROGRESS,
            UnitStatus.PENDING,
            UnitStatus.ABORTED,
            UnitStatus.SKIPPED,
            UnitStatus.COMPLETED,
        ]
        for status in order:
            for unit_id in sorted(self.state.units_with_status(status)):
                record = self.state.units[unit_id]
                style = STATUS_STYLES[status]
                table.add_row(
                    f"[{style}]{status.value}[/{style}]",
                    unit_id,
                    str(record.attempts),
                    "-" if record.score is None else f"{record.score:g}",
                    record.notes[-1] if record.notes else "",
                )
        return table
