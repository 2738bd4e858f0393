"""
Agent Invoker backed by the Claude Code CLI.

The agent is asked to finish its reply with one fenced ```json block that
holds the structured result. Anything that cannot be read as a JSON object
is reported as malformed output; it is never coerced.
"""

from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING, Any, Optional

from andon.agents.base import (
    AgentFailure,
    AgentInvoker,
    AgentResult,
    FailureReason,
    Finding,
    InvocationOutcome,
)
from andon.errors import ErrorClassifier, LLMErrorType, get_user_action_message
from andon.llm_clients import ClaudeCliRunner, ClaudeInvocationError, ClaudeTimeoutError

if TYPE_CHECKING:
    from andon.config import AndonConfig
    from andon.logger import RunLogger


_JSON_BLOCK = re.compile(r"```json\s*\n(.*?)```", re.DOTALL)

RESULT_CONTRACT = """\
When you are done, end your reply with a single fenced ```json block containing
an object with these keys:
  "status": "done" or "refused",
  "rationale": short explanation of what you did,
  "files_modified": list of repository-relative paths you changed,
  "findings": list of {"severity", "message", "location", "resolved"},
  "payload": any other structured output for this role.
"""

_ERROR_REASONS = {
    LLMErrorType.AUTH_REQUIRED: FailureReason.ENVIRONMENT_UNAVAILABLE,
    LLMErrorType.CLI_NOT_FOUND: FailureReason.ENVIRONMENT_UNAVAILABLE,
    LLMErrorType.TIMEOUT: FailureReason.TIMEOUT,
    LLMErrorType.JSON_PARSE_ERROR: FailureReason.MALFORMED_OUTPUT,
}


def extract_json_object(text: str) -> Optional[dict[str, Any]]:
    """
    Pull the structured result out of a reply.

    Uses the last ```json block when there is one, else the whole text.
    Returns None when the result is not a JSON object.
    """
    blocks = _JSON_BLOCK.findall(text)
    candidate = blocks[-1] if blocks else text
    try:
        data = json.loads(candidate.strip())
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def failure_reason_for(error_type: LLMErrorType) -> FailureReason:
    """Map a classified CLI error onto an invocation failure reason."""
    return _ERROR_REASONS.get(error_type, FailureReason.INVOCATION_ERROR)


class ClaudeAgentInvoker(AgentInvoker):
    """Runs each invocation as one non-interactive Claude Code session."""

    name = "claude"

    def __init__(
        self,
        config: AndonConfig,
        logger: Optional[RunLogger] = None,
        runner: Optional[ClaudeCliRunner] = None,
    ) -> None:
        super().__init__(logger)
        self.config = config
        self._runner = runner

    @property
    def runner(self) -> ClaudeCliRunner:
        """Get the CLI runner (lazy initialization)."""
        if self._runner is None:
            self._runner = ClaudeCliRunner(config=self.config, logger=self._logger)
        return self._runner

    def build_prompt(self, role: str, instructions: str, scope: list[str]) -> str:
        scope_lines = "\n".join(f"- {p}" for p in scope) if scope else "- (entire repository)"
        return (
            f"You are acting as the {role} agent.\n\n"
            f"{instructions.strip()}\n\n"
            f"Scope (do not modify files outside it):\n{scope_lines}\n\n"
            f"{RESULT_CONTRACT}"
        )

    def invoke(self, role: str, instructions: str, scope: list[str]) -> InvocationOutcome:
        prompt = self.build_prompt(role, instructions, scope)
        try:
            result = self.runner.run(prompt)
        except ClaudeTimeoutError as e:
            self._log("agent_timeout", {"role": role, "error": str(e)}, level="warn")
            return self._track_cost(AgentFailure(FailureReason.TIMEOUT, str(e)))
        except ClaudeInvocationError as e:
            reason = failure_reason_for(e.error_type)
            self._log("agent_invocation_failed", {
                "role": role,
                "reason": reason.value,
                "error_type": e.error_type.name,
                "error": str(e),
            }, level="warn")
            message = f"{e} {e.stderr[:300]}".strip()
            if reason == FailureReason.ENVIRONMENT_UNAVAILABLE:
                message = get_user_action_message(
                    ErrorClassifier.create_error(e.error_type, str(e), e.stderr, e.returncode)
                )
            return self._track_cost(AgentFailure(reason, message))

        data = extract_json_object(result.text)
        if data is None:
            self._log("agent_malformed_output", {
                "role": role,
                "text_head": result.text[:300],
            }, level="warn")
            return self._track_cost(AgentFailure(
                FailureReason.MALFORMED_OUTPUT,
                "Reply did not contain a JSON object result",
                cost_usd=result.total_cost_usd,
            ))

        if str(data.get("status", "done")).lower() == "refused":
            self._log("agent_refused", {"role": role}, level="warn")
            return self._track_cost(AgentFailure(
                FailureReason.REFUSED,
                str(data.get("rationale", "agent refused the task")),
                cost_usd=result.total_cost_usd,
            ))

        try:
            outcome = AgentResult(
                role=role,
                payload=dict(data.get("payload") or {}),
                rationale=str(data.get("rationale", "")),
                files_modified=[str(p) for p in data.get("files_modified") or []],
                findings=[Finding.from_dict(f) for f in data.get("findings") or []],
                cost_usd=result.total_cost_usd,
            )
        except (TypeError, ValueError, AttributeError) as e:
            self._log("agent_malformed_output", {"role": role, "error": str(e)}, level="warn")
            return self._track_cost(AgentFailure(
                FailureReason.MALFORMED_OUTPUT,
                f"Result object has the wrong shape: {e}",
                cost_usd=result.total_cost_usd,
            ))

        self._log("agent_complete", {
            "role": role,
            "files_modified": len(outcome.files_modified),
            "findings": len(outcome.findings),
            "cost_usd": outcome.cost_usd,
        })
        return self._track_cost(outcome)
