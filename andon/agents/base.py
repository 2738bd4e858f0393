"""
Agent Invoker contract for Andon.

This module provides the boundary the engine talks to for generative work:
- AgentResult / AgentFailure, the two possible outcomes of one invocation
- FailureReason, the closed set of reasons an invocation can fail
- Finding, one issue reported by an agent
- AgentInvoker abstract class with logging and cost tracking

The engine never looks inside invoke(). Retrying a failed invocation is
the controller's job, not the invoker's.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional, Union

if TYPE_CHECKING:
    from andon.logger import RunLogger


class FailureReason(Enum):
    """Why an invocation produced no usable result."""
    TIMEOUT = "timeout"
    MALFORMED_OUTPUT = "malformed_output"
    REFUSED = "refused"
    INVOCATION_ERROR = "invocation_error"
    ENVIRONMENT_UNAVAILABLE = "environment_unavailable"


@dataclass
class Finding:
    """One issue reported by an agent (review finding, surviving mutant, ...)."""

    severity: str
    message: str
    location: str = ""
    resolved: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity,
            "message": self.message,
            "location": self.location,
            "resolved": self.resolved,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Finding:
        return cls(
            severity=str(data.get("severity", "info")).lower(),
            message=str(data.get("message", "")),
            location=str(data.get("location", "")),
            resolved=bool(data.get("resolved", False)),
        )


@dataclass
class AgentResult:
    """
    Successful outcome of one invocation.

    payload is role-specific and opaque to the engine; files_modified and
    findings are the two fields the engine reads.
    """

    role: str
    payload: dict[str, Any] = field(default_factory=dict)
    rationale: str = ""
    files_modified: list[str] = field(default_factory=list)
    findings: list[Finding] = field(default_factory=list)
    cost_usd: float = 0.0

    success = True

    def unresolved_findings(self, severities: list[str]) -> list[Finding]:
        """Findings at one of the given severities that the agent did not resolve."""
        wanted = {s.lower() for s in severities}
        return [f for f in self.findings if not f.resolved and f.severity.lower() in wanted]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "role": self.role,
            "payload": self.payload,
            "rationale": self.rationale,
            "files_modified": list(self.files_modified),
            "findings": [f.to_dict() for f in self.findings],
            "cost_usd": self.cost_usd,
        }


@dataclass
class AgentFailure:
    """Failed outcome of one invocation."""

    reason: FailureReason
    message: str = ""
    cost_usd: float = 0.0

    success = False

    @property
    def is_environmental(self) -> bool:
        """True when the tool itself is unusable, not the work."""
        return self.reason == FailureReason.ENVIRONMENT_UNAVAILABLE

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason.value,
            "message": self.message,
            "cost_usd": self.cost_usd,
        }


InvocationOutcome = Union[AgentResult, AgentFailure]


class AgentInvoker(ABC):
    """
    Performs one bounded piece of generative work per call.

    Subclasses implement invoke() and pass every outcome through
    _track_cost(), which keeps the running spend reported at run end.
    """

    name: str = "agent_invoker"

    def __init__(self, logger: Optional[RunLogger] = None) -> None:
        self._logger = logger
        self._total_cost: float = 0.0
        # Fan-out workers share one invoker
        self._cost_lock = threading.Lock()

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger is None:
            return
        self._logger.log(event_type, {"invoker": self.name, **(data or {})}, level=level)

    def _track_cost(self, outcome: InvocationOutcome) -> InvocationOutcome:
        with self._cost_lock:
            self._total_cost += outcome.cost_usd
        return outcome

    def get_total_cost(self) -> float:
        return self._total_cost

    @abstractmethod
    def invoke(self, role: str, instructions: str, scope: list[str]) -> InvocationOutcome:
        """
        Run role over scope with the given instructions.

        Failures of the work itself come back as AgentFailure and are never
        raised. scope lists the paths the agent may read or change.
        """

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"
