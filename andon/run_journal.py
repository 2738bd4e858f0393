"""
Append-only run journal.

A human-readable companion to the JSONL log at .andon/progress.txt. Each
entry is timestamped and the file is never truncated, so it reads as the
complete history of every run in the project.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Optional


class RunJournal:
    """
    Append-only human-readable run journal.

    Writes timestamped entries to .andon/progress.txt.
    """

    def __init__(self, path: Path) -> None:
        """
        Initialize the journal.

        Args:
            path: Path to the journal file.
        """
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _append(self, entry: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().isoformat(timespec="seconds")
        with self._path.open("a") as f:
            f.write(f"[{timestamp}] {entry}\n")

    def log_run_start(self, workflow: str, run_id: str, unit_count: int) -> None:
        self._append(f"RUN_START workflow={workflow} run={run_id} units={unit_count}")

    def log_unit_start(self, unit_id: str, branch: Optional[str] = None) -> None:
        branch_str = f" branch={branch}" if branch else ""
        self._append(f"UNIT_START unit={unit_id}{branch_str}")

    def log_attempt_failed(self, unit_id: str, attempt: int, detail: str) -> None:
        """
        Log a failed attempt.

        Only the first line of the diagnostic is kept; the full text is in
        the JSONL log.
        """
        first_line = detail.strip().splitlines()[0] if detail.strip() else "no detail"
        self._append(f"ATTEMPT_FAILED unit={unit_id} attempt={attempt} {first_line[:160]}")

    def log_unit_end(
        self,
        unit_id: str,
        status: str,
        attempts: int,
        commit: Optional[str] = None,
    ) -> None:
        commit_str = commit[:10] if commit else "none"
        self._append(
            f"UNIT_END unit={unit_id} status={status} attempts={attempts} commit={commit_str}"
        )

    def log_escalation(self, unit_id: Optional[str], category: str, reason: str) -> None:
        self._append(f"ESCALATION unit={unit_id or '-'} category={category} {reason[:200]}")

    def log_run_end(self, run_id: str, completed: int, skipped: int, aborted: int) -> None:
        self._append(
            f"RUN_END run={run_id} completed={completed} skipped={skipped} aborted={aborted}"
        )
