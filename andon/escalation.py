"""
Escalation ("andon cord") signalling.

An EscalationEvent is the one failure class that halts a run. The controller
and the orchestrator hand events to the AndonCord, which is inspected at the
top of every unit.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class EscalationCategory(Enum):
    """Why a run was halted."""
    VERIFICATION_EXHAUSTED = "verification_exhausted"
    CONFLICT = "conflict"
    UNRESOLVABLE_FINDING = "unresolvable_finding"
    ENVIRONMENT_UNAVAILABLE = "environment_unavailable"
    VERIFICATION_INFRASTRUCTURE = "verification_infrastructure"
    SCOPE_UNRESOLVABLE = "scope_unresolvable"
    INTERRUPTED = "interrupted"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class EscalationEvent:
    """
    A terminal, run-halting signal.

    committed/in_flight/branches are a snapshot of repository state taken
    when the event is surfaced, so a human can resume without re-deriving
    context.
    """
    category: EscalationCategory
    reason: str
    unit_id: Optional[str] = None
    step: str = ""                                       # e.g. "verify", "merge"
    committed: tuple[str, ...] = ()                      # Unit ids already merged
    in_flight: tuple[str, ...] = ()                      # Unit ids reverted or left open
    branches: tuple[tuple[str, str], ...] = ()           # (unit_id, branch) pairs
    timestamp: str = field(default_factory=_now)

    def with_snapshot(
        self,
        committed: list[str],
        in_flight: list[str],
        branches: dict[str, str],
    ) -> EscalationEvent:
        """Return a copy carrying the given repository snapshot."""
        return EscalationEvent(
            category=self.category,
            reason=self.reason,
            unit_id=self.unit_id,
            step=self.step,
            committed=tuple(committed),
            in_flight=tuple(in_flight),
            branches=tuple(sorted(branches.items())),
            timestamp=self.timestamp,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "reason": self.reason,
            "unit_id": self.unit_id,
            "step": self.step,
            "committed": list(self.committed),
            "in_flight": list(self.in_flight),
            "branches": dict(self.branches),
            "timestamp": self.timestamp,
        }


class AndonCord:
    """
    Run-level halt flag.

    Armed at run start, tripped at most once. The first event wins; later
    trips are ignored and reported as such.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._armed = False
        self._event: Optional[EscalationEvent] = None

    def arm(self) -> None:
        """Reset for a new run."""
        with self._lock:
            self._armed = True
            self._event = None

    @property
    def armed(self) -> bool:
        return self._armed

    @property
    def tripped(self) -> bool:
        return self._event is not None

    @property
    def event(self) -> Optional[EscalationEvent]:
        return self._event

    def trip(self, event: EscalationEvent) -> bool:
        """
        Pull the cord.

        Returns:
            True if this call tripped the cord, False if it was already tripped.

        Raises:
            RuntimeError: If the cord was never armed.
        """
        with self._lock:
            if not self._armed:
                raise RuntimeError("AndonCord.trip() called before arm()")
            if self._event is not None:
                return False
            self._event = event
            return True
