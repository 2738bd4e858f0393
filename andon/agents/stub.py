"""
Deterministic scripted invoker used by --dry-run and by tests.
"""

from __future__ import annotations

from collections import defaultdict, deque
from typing import TYPE_CHECKING, Callable, Optional, Union

from andon.agents.base import AgentFailure, AgentInvoker, AgentResult, InvocationOutcome

if TYPE_CHECKING:
    from andon.logger import RunLogger


ScriptStep = Union[AgentResult, AgentFailure, Callable[[str, str, list[str]], InvocationOutcome]]


class StubAgentInvoker(AgentInvoker):
    """
    Replays a queue of outcomes per role.

    A step may be a ready outcome or a callable taking (role, instructions,
    scope), which lets tests touch the working tree. When a role's queue is
    empty the invoker returns a plain success that modifies nothing.
    """

    name = "stub"

    def __init__(
        self,
        script: Optional[dict[str, list[ScriptStep]]] = None,
        logger: Optional[RunLogger] = None,
    ) -> None:
        super().__init__(logger)
        self._queues: dict[str, deque[ScriptStep]] = defaultdict(deque)
        self.calls: list[tuple[str, str, list[str]]] = []
        for role, steps in (script or {}).items():
            self._queues[role].extend(steps)

    def enqueue(self, role: str, *steps: ScriptStep) -> None:
        self._queues[role].extend(steps)

    def invoke(self, role: str, instructions: str, scope: list[str]) -> InvocationOutcome:
        self.calls.append((role, instructions, list(scope)))
        queue = self._queues[role]
        if not queue:
            outcome: InvocationOutcome = AgentResult(role=role, rationale="stub: no-op")
        else:
            step = queue.popleft()
            outcome = step(role, instructions, scope) if callable(step) else step
        self._log("stub_invoke", {"role": role, "success": outcome.success}, level="debug")
        return self._track_cost(outcome)
