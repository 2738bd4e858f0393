"""
Retry/Escalation Controller.

Runs the bounded repair loop for one WorkUnit:

    NOT_STARTED -> ATTEMPTING -> VERIFYING -> SUCCEEDED
                       ^             |
                       +---- fail ---+  (attempts < max_attempts)

After max_attempts failed cycles the unit ends REVERTED (or ESCALATED when
retry.on_exhaustion is "escalate"). Environment failures, broken
verification tooling and unresolved findings at an escalating severity go
straight to ESCALATED without consuming further attempts.

Component failures are turned into state transitions here; nothing but
KeyboardInterrupt leaves run() as an exception.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from andon.agents.base import AgentFailure, AgentInvoker, AgentResult
from andon.escalation import EscalationCategory, EscalationEvent
from andon.models import Attempt, VerificationOutcome, WorkUnit
from andon.verification import VerificationGate, VerificationInfrastructureError

if TYPE_CHECKING:
    from andon.config import AndonConfig
    from andon.logger import RunLogger
    from andon.run_journal import RunJournal


class ControllerState(Enum):
    NOT_STARTED = "not_started"
    ATTEMPTING = "attempting"
    VERIFYING = "verifying"
    SUCCEEDED = "succeeded"
    REVERTED = "reverted"
    ESCALATED = "escalated"


@dataclass
class ControllerOutcome:
    """Terminal result of RetryController.run()."""

    state: ControllerState
    attempts: list[Attempt] = field(default_factory=list)
    escalation: Optional[EscalationEvent] = None
    last_result: Optional[AgentResult] = None
    reason: str = ""

    @property
    def succeeded(self) -> bool:
        return self.state == ControllerState.SUCCEEDED

    @property
    def files_modified(self) -> list[str]:
        """Every path any attempt reported touching, in first-seen order."""
        seen: dict[str, None] = {}
        for attempt in self.attempts:
            if attempt.agent_result:
                for path in attempt.agent_result.files_modified:
                    seen.setdefault(path, None)
        return list(seen)


def build_repair_prompt(instructions: str, attempt_number: int, detail: str) -> str:
    """Append the previous failure to the unit's instructions."""
    return (
        f"{instructions.rstrip()}\n\n"
        f"## Previous attempt {attempt_number} failed\n\n"
        f"{detail.strip() or 'No diagnostic was produced.'}\n\n"
        "Repair the change so that verification passes. Keep the fix within scope."
    )


class RetryController:
    """Bounded invoke-then-verify loop for one unit at a time."""

    def __init__(
        self,
        config: AndonConfig,
        invoker: AgentInvoker,
        gate: VerificationGate,
        role: str = "coder",
        logger: Optional[RunLogger] = None,
        journal: Optional[RunJournal] = None,
        on_state_change: Optional[Callable[[WorkUnit, ControllerState], None]] = None,
    ) -> None:
        self.config = config
        self.invoker = invoker
        self.gate = gate
        self.role = role
        self._logger = logger
        self._journal = journal
        self._on_state_change = on_state_change

    @property
    def max_attempts(self) -> int:
        return self.config.retry.max_attempts

    def _log(
        self, event_type: str, data: Optional[dict] = None, level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def _enter(self, unit: WorkUnit, state: ControllerState) -> ControllerState:
        if self._on_state_change:
            self._on_state_change(unit, state)
        return state

    def _record(self, unit: WorkUnit, attempt: Attempt) -> None:
        unit.attempts.append(attempt)
        if attempt.outcome == VerificationOutcome.FAIL:
            self._log("attempt_failed", {
                "unit_id": unit.id,
                "attempt": attempt.number,
                "detail": attempt.detail[:1000],
            }, level="warn")
            if self._journal:
                self._journal.log_attempt_failed(unit.id, attempt.number, attempt.detail)

    def _escalate(
        self,
        unit: WorkUnit,
        category: EscalationCategory,
        step: str,
        reason: str,
        last_result: Optional[AgentResult],
    ) -> ControllerOutcome:
        event = EscalationEvent(category=category, reason=reason, unit_id=unit.id, step=step)
        self._log("unit_escalated", {
            "unit_id": unit.id,
            "category": category.value,
            "step": step,
            "reason": reason,
        }, level="error")
        return ControllerOutcome(
            state=self._enter(unit, ControllerState.ESCALATED),
            attempts=list(unit.attempts),
            escalation=event,
            last_result=last_result,
            reason=reason,
        )

    def run(self, unit: WorkUnit, instructions: str, scope: list[str]) -> ControllerOutcome:
        """
        Drive unit to a terminal controller state.

        Every cycle is appended to unit.attempts; their number never exceeds
        retry.max_attempts.
        """
        self._enter(unit, ControllerState.NOT_STARTED)
        prompt = instructions
        last_result: Optional[AgentResult] = None
        last_detail = ""

        for number in range(1, self.max_attempts + 1):
            self._enter(unit, ControllerState.ATTEMPTING)
            self._log("attempt_start", {"unit_id": unit.id, "attempt": number})
            started = time.monotonic()

            outcome = self.invoker.invoke(self.role, prompt, scope)

            if isinstance(outcome, AgentFailure):
                detail = f"Agent failure ({outcome.reason.value}): {outcome.message}"
                self._record(unit, Attempt(
                    number=number,
                    outcome=VerificationOutcome.FAIL,
                    detail=detail,
                    agent_failure=outcome,
                    duration_seconds=time.monotonic() - started,
                ))
                if outcome.is_environmental:
                    return self._escalate(
                        unit, EscalationCategory.ENVIRONMENT_UNAVAILABLE, "invoke", detail, last_result
                    )
                last_detail = detail
                prompt = build_repair_prompt(instructions, number, detail)
                continue

            last_result = outcome

            blocking = outcome.unresolved_findings(self.config.pipeline.escalate_severities)
            if blocking:
                detail = "; ".join(
                    f"[{f.severity}] {f.message}" + (f" ({f.location})" if f.location else "")
                    for f in blocking
                )
                self._record(unit, Attempt(
                    number=number,
                    outcome=VerificationOutcome.FAIL,
                    detail=f"Unresolved findings: {detail}",
                    agent_result=outcome,
                    duration_seconds=time.monotonic() - started,
                ))
                return self._escalate(
                    unit,
                    EscalationCategory.UNRESOLVABLE_FINDING,
                    "invoke",
                    f"Unresolved findings: {detail}",
                    last_result,
                )

            self._enter(unit, ControllerState.VERIFYING)
            try:
                verification = self.gate.verify(unit, outcome)
            except VerificationInfrastructureError as e:
                self._record(unit, Attempt(
                    number=number,
                    outcome=VerificationOutcome.FAIL,
                    detail=str(e),
                    agent_result=outcome,
                    duration_seconds=time.monotonic() - started,
                ))
                return self._escalate(
                    unit,
                    EscalationCategory.VERIFICATION_INFRASTRUCTURE,
                    "verify",
                    str(e),
                    last_result,
                )

            if verification.passed:
                self._record(unit, Attempt(
                    number=number,
                    outcome=VerificationOutcome.PASS,
                    agent_result=outcome,
                    duration_seconds=time.monotonic() - started,
                ))
                self._log("unit_verified", {"unit_id": unit.id, "attempts": number})
                return ControllerOutcome(
                    state=self._enter(unit, ControllerState.SUCCEEDED),
                    attempts=list(unit.attempts),
                    last_result=outcome,
                    reason=outcome.rationale,
                )

            detail = verification.detail or f"Verification failed with exit code {verification.exit_code}"
            self._record(unit, Attempt(
                number=number,
                outcome=VerificationOutcome.FAIL,
                detail=detail,
                agent_result=outcome,
                duration_seconds=time.monotonic() - started,
            ))
            last_detail = detail
            prompt = build_repair_prompt(instructions, number, detail)

        first_line = last_detail.strip().splitlines()[0] if last_detail.strip() else "no detail"
        reason = f"Failed verification {self.max_attempts} times; last failure: {first_line[:200]}"

        if self.config.retry.on_exhaustion == "escalate":
            return self._escalate(
                unit, EscalationCategory.VERIFICATION_EXHAUSTED, "verify", reason, last_result
            )

        self._log("unit_exhausted", {"unit_id": unit.id, "reason": reason}, level="warn")
        return ControllerOutcome(
            state=self._enter(unit, ControllerState.REVERTED),
            attempts=list(unit.attempts),
            last_result=last_result,
            reason=reason,
        )
