"""
Core data models for Andon.

This module defines the foundational data structures used throughout the system:
- Enums for unit status and verification outcome
- Dataclasses for work units, attempts, progress records and Claude results
- JSON serialization support for all models
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from andon.agents.base import AgentFailure, AgentResult


PROGRESS_FORMAT_VERSION = "1"


class UnitStatus(Enum):
    """
    Status of a WorkUnit and of its ProgressRecord.

    A unit is terminal once it reaches completed, skipped or aborted.
    """
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (UnitStatus.COMPLETED, UnitStatus.SKIPPED, UnitStatus.ABORTED)


class VerificationOutcome(Enum):
    """Result of one verification gate run."""
    PASS = "pass"
    FAIL = "fail"


@dataclass
class Attempt:
    """
    One invoke-then-verify cycle for a WorkUnit.

    Created by the controller per cycle and never changed once appended
    to the unit.
    """
    number: int                                  # 1-based
    outcome: VerificationOutcome
    detail: str = ""                             # Diagnostic fed into the next attempt
    agent_result: Optional[AgentResult] = None
    agent_failure: Optional[AgentFailure] = None
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "outcome": self.outcome.value,
            "detail": self.detail,
            "agent_result": self.agent_result.to_dict() if self.agent_result else None,
            "agent_failure": self.agent_failure.to_dict() if self.agent_failure else None,
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class WorkUnit:
    """
    One addressable piece of work: a ticket, a file, a refactor batch.

    Owned by a single orchestration run.
    """
    id: str
    description: str
    paths: list[str] = field(default_factory=list)
    status: UnitStatus = UnitStatus.PENDING
    attempts: list[Attempt] = field(default_factory=list)
    result_summary: str = ""
    dependencies: list[str] = field(default_factory=list)
    complexity: int = 0                          # Lower runs first on ties
    body: str = ""                               # Ticket body / acceptance criteria

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "paths": list(self.paths),
            "status": self.status.value,
            "attempts": [a.to_dict() for a in self.attempts],
            "result_summary": self.result_summary,
            "dependencies": list(self.dependencies),
            "complexity": self.complexity,
            "body": self.body,
        }


@dataclass
class ProgressRecord:
    """
    Durable tracking entry for one unit in the Progress Store.

    examples holds only notable findings (survivors, exceptions), capped
    by the store.
    """
    status: UnitStatus = UnitStatus.PENDING
    attempts: int = 0
    metrics: dict[str, Any] = field(default_factory=dict)
    score: Optional[float] = None
    examples: list[Any] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    last_updated: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProgressRecord:
        """Create from dictionary."""
        score = data.get("score")
        return cls(
            status=UnitStatus(data.get("status", "pending")),
            attempts=int(data.get("attempts", 0)),
            metrics=dict(data.get("metrics") or {}),
            score=float(score) if score is not None else None,
            examples=list(data.get("examples") or []),
            notes=list(data.get("notes") or []),
            last_updated=data.get("last_updated", ""),
        )


@dataclass
class ProjectState:
    """
    Whole Progress Store contents.

    aggregate is always derived from units and is rewritten on every save.
    """
    version: str = PROGRESS_FORMAT_VERSION
    verification_command: str = ""
    last_updated: str = ""
    units: dict[str, ProgressRecord] = field(default_factory=dict)
    aggregate: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "version": self.version,
            "verification_command": self.verification_command,
            "last_updated": self.last_updated,
            "units": {uid: self.units[uid].to_dict() for uid in sorted(self.units)},
            "aggregate": dict(self.aggregate),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProjectState:
        """Create from dictionary."""
        units = {
            str(uid): ProgressRecord.from_dict(record)
            for uid, record in (data.get("units") or {}).items()
        }
        return cls(
            version=str(data.get("version", PROGRESS_FORMAT_VERSION)),
            verification_command=data.get("verification_command", ""),
            last_updated=data.get("last_updated", ""),
            units=units,
            aggregate=dict(data.get("aggregate") or {}),
        )

    def units_with_status(self, status: UnitStatus) -> list[str]:
        return [uid for uid, rec in self.units.items() if rec.status == status]


@dataclass
class ClaudeResult:
    """
    Result from a Claude CLI invocation.

    Contains the response text and metadata about the invocation.
    """
    text: str                        # The response text from Claude
    total_cost_usd: float = 0.0
    num_turns: int = 0
    duration_ms: int = 0
    session_id: str = ""
    raw: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


class AndonEncoder(json.JSONEncoder):
    """JSON encoder that handles Andon model types."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Enum):
            return obj.value
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        return super().default(obj)


def model_to_json(obj: Any, **kwargs: Any) -> str:
    """Serialize a model object to JSON string."""
    return json.dumps(obj, cls=AndonEncoder, **kwargs)
