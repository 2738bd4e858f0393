"""
Verification gates for Andon.

A gate decides pass/fail for one attempt. It never parses tool-specific
output beyond the exit status; the combined output is kept as free-text
diagnostic for the repair prompt.

A failing check is a normal result. A check that cannot run at all raises
VerificationInfrastructureError, which the controller escalates.
"""

from __future__ import annotations

import os
import shlex
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from andon.agents.base import AgentInvoker, AgentResult, FailureReason

if TYPE_CHECKING:
    from andon.config import AndonConfig
    from andon.logger import RunLogger
    from andon.models import WorkUnit


class VerificationInfrastructureError(Exception):
    """Raised when the verification tooling itself is broken."""

    def __init__(self, message: str, exit_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


@dataclass
class VerificationResult:
    """Outcome of one gate run."""

    passed: bool
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    detail: str = ""                 # Truncated diagnostic for the repair prompt
    timed_out: bool = False
    duration_seconds: float = 0.0


def truncate_detail(text: str, max_chars: int) -> str:
    """Keep the tail of the output, where failures are usually summarized."""
    text = text.strip()
    if len(text) <= max_chars:
        return text
    return "...(truncated)...\n" + text[-max_chars:]


class VerificationGate(ABC):
    """Base class for gates."""

    def __init__(self, logger: Optional[RunLogger] = None) -> None:
        self._logger = logger

    def _log(
        self, event_type: str, data: Optional[dict] = None, level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    @abstractmethod
    def verify(self, unit: WorkUnit, agent_result: AgentResult) -> VerificationResult:
        """
        Check the change produced for unit.

        Raises:
            VerificationInfrastructureError: If the check cannot be run.
        """


class NullVerificationGate(VerificationGate):
    """Always passes. For analysis-only workflows that change nothing."""

    def verify(self, unit: WorkUnit, agent_result: AgentResult) -> VerificationResult:
        return VerificationResult(passed=True, detail="no verification required")


class CommandVerificationGate(VerificationGate):
    """Runs the configured verification command in the repository root."""

    def __init__(
        self,
        config: AndonConfig,
        logger: Optional[RunLogger] = None,
        command: Optional[str] = None,
    ) -> None:
        super().__init__(logger)
        self.config = config
        self.command = command if command is not None else config.verification.command

    def verify(self, unit: WorkUnit, agent_result: AgentResult) -> VerificationResult:
        if not self.command.strip():
            raise VerificationInfrastructureError(
                "No verification command configured; set verification.command "
                "in andon.yaml or pass --verify"
            )

        cmd = shlex.split(self.command)
        timeout = self.config.verification.timeout_seconds
        max_chars = self.config.verification.max_detail_chars

        # Tests import code from the repository under change
        env = os.environ.copy()
        existing_pythonpath = env.get("PYTHONPATH", "")
        repo_root = str(self.config.repo_root)
        env["PYTHONPATH"] = f"{repo_root}:{existing_pythonpath}" if existing_pythonpath else repo_root

        self._log("verification_start", {"unit_id": unit.id, "command": self.command})
        started = time.monotonic()
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                cwd=self.config.repo_root,
                env=env,
            )
        except subprocess.TimeoutExpired as e:
            elapsed = time.monotonic() - started
            output = _decode(e.stdout) + "\n" + _decode(e.stderr)
            self._log("verification_timeout", {
                "unit_id": unit.id,
                "timeout_seconds": timeout,
            }, level="warn")
            return VerificationResult(
                passed=False,
                stdout=_decode(e.stdout),
                stderr=_decode(e.stderr),
                detail=truncate_detail(
                    f"Verification timed out after {timeout} seconds.\n{output}", max_chars
                ),
                timed_out=True,
                duration_seconds=elapsed,
            )
        except OSError as e:
            self._log("verification_launch_failed", {
                "unit_id": unit.id,
                "error": str(e),
            }, level="error")
            raise VerificationInfrastructureError(
                f"Could not run verification command {cmd[0]!r}: {e}"
            ) from e

        elapsed = time.monotonic() - started
        if proc.returncode in self.config.verification.infrastructure_exit_codes:
            self._log("verification_infrastructure_exit", {
                "unit_id": unit.id,
                "exit_code": proc.returncode,
            }, level="error")
            raise VerificationInfrastructureError(
                f"Verification command exited with {proc.returncode}: "
                f"{truncate_detail(proc.stderr or proc.stdout, 500)}",
                exit_code=proc.returncode,
            )

        passed = proc.returncode == 0
        output = proc.stdout
        if proc.stderr:
            output += "\n" + proc.stderr

        self._log("verification_complete", {
            "unit_id": unit.id,
            "passed": passed,
            "exit_code": proc.returncode,
            "duration_seconds": round(elapsed, 2),
        })
        return VerificationResult(
            passed=passed,
            exit_code=proc.returncode,
            stdout=proc.stdout,
            stderr=proc.stderr,
            detail="" if passed else truncate_detail(output, max_chars),
            duration_seconds=elapsed,
        )


def _decode(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class AgentVerificationGate(VerificationGate):
    """
    Asks a QA-role agent to judge the change.

    The agent's payload must carry "passed" (bool) and optionally "detail".
    A QA call that times out, refuses or returns an unreadable reply counts
    as a failed check. Only an unavailable QA environment is escalated.
    """

    def __init__(
        self,
        invoker: AgentInvoker,
        config: AndonConfig,
        logger: Optional[RunLogger] = None,
        role: str = "qa",
        instructions: str = "Review the change for correctness against the unit description.",
    ) -> None:
        super().__init__(logger)
        self.invoker = invoker
        self.config = config
        self.role = role
        self.instructions = instructions

    def verify(self, unit: WorkUnit, agent_result: AgentResult) -> VerificationResult:
        prompt = (
            f"{self.instructions}\n\n"
            f"Unit {unit.id}: {unit.description}\n\n"
            f"The implementing agent reported:\n{agent_result.rationale}\n\n"
            f"Files modified: {', '.join(agent_result.files_modified) or 'none'}\n\n"
            'Put "passed": true or false and a "detail" string in payload.'
        )
        started = time.monotonic()
        outcome = self.invoker.invoke(self.role, prompt, agent_result.files_modified or unit.paths)
        elapsed = time.monotonic() - started

        if not isinstance(outcome, AgentResult):
            if outcome.reason == FailureReason.ENVIRONMENT_UNAVAILABLE:
                raise VerificationInfrastructureError(
                    f"QA agent unavailable: {outcome.message}"
                )
            # Timeouts, refusals and unreadable replies cost the unit one attempt
            self._log("verification_agent_failed", {
                "unit_id": unit.id,
                "reason": outcome.reason.value,
                "message": outcome.message[:300],
            }, level="warn")
            return VerificationResult(
                passed=False,
                detail=truncate_detail(
                    f"QA agent failed ({outcome.reason.value}): {outcome.message}",
                    self.config.verification.max_detail_chars,
                ),
                timed_out=outcome.reason == FailureReason.TIMEOUT,
                duration_seconds=elapsed,
            )

        passed = outcome.payload.get("passed")
        if not isinstance(passed, bool):
            self._log("verification_agent_failed", {
                "unit_id": unit.id,
                "reason": FailureReason.MALFORMED_OUTPUT.value,
            }, level="warn")
            return VerificationResult(
                passed=False,
                detail="QA agent result has no boolean 'passed' in payload",
                duration_seconds=elapsed,
            )
        detail = str(outcome.payload.get("detail", outcome.rationale))
        self._log("verification_complete", {
            "unit_id": unit.id,
            "passed": passed,
            "gate": "agent",
        })
        return VerificationResult(
            passed=passed,
            detail="" if passed else truncate_detail(detail, self.config.verification.max_detail_chars),
            duration_seconds=elapsed,
        )
