"""
Subprocess wrapper around ``claude --print --output-format json``.

The CLI prints one JSON envelope per call. ClaudeCliRunner turns that
envelope into a ClaudeResult, and turns every way the call can go wrong
into a ClaudeInvocationError tagged with an LLMErrorType.
"""

from __future__ import annotations

import json
import subprocess
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from andon.errors import ErrorClassifier, LLMErrorType
from andon.models import ClaudeResult

if TYPE_CHECKING:
    from andon.config import AndonConfig
    from andon.logger import RunLogger

STDERR_HEAD = 500


class ClaudeInvocationError(Exception):

    def __init__(
        self,
        message: str,
        stderr: str = "",
        returncode: int = -1,
        error_type: LLMErrorType = LLMErrorType.UNKNOWN,
    ) -> None:
        super().__init__(message)
        self.stderr = stderr
        self.returncode = returncode
        self.error_type = error_type


class ClaudeTimeoutError(ClaudeInvocationError):

    def __init__(self, message: str) -> None:
        super().__init__(message, error_type=LLMErrorType.TIMEOUT)


def parse_envelope(stdout: str) -> dict[str, Any]:
    """Decode the CLI's JSON envelope, which must be an object."""
    try:
        data = json.loads(stdout)
    except json.JSONDecodeError as e:
        raise ClaudeInvocationError(
            f"Claude output is not JSON: {e}",
            stderr=stdout[:STDERR_HEAD],
            error_type=LLMErrorType.JSON_PARSE_ERROR,
        ) from e
    if not isinstance(data, dict):
        raise ClaudeInvocationError(
            f"Claude output is a JSON {type(data).__name__}, expected an object",
            stderr=stdout[:STDERR_HEAD],
            error_type=LLMErrorType.JSON_PARSE_ERROR,
        )
    return data


def _field(data: dict[str, Any], key: str, empty: Any) -> Any:
    # The CLI sends null for fields it has no value for
    value = data.get(key)
    return empty if value is None else value


@dataclass
class ClaudeCliRunner:
    """Runs one prompt per call through the configured claude binary."""

    config: AndonConfig
    logger: Optional[RunLogger] = None

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self.logger:
            self.logger.log(event_type, data, level=level)

    def command(
        self,
        prompt: str,
        max_turns: Optional[int] = None,
        allowed_tools: Optional[list[str]] = None,
    ) -> list[str]:
        claude = self.config.claude
        cmd = [
            claude.binary,
            "--print",
            "--output-format", "json",
            "--max-turns", str(max_turns or claude.max_turns),
        ]
        # None leaves the CLI's own tool set; an empty list allows nothing
        if allowed_tools is not None:
            cmd += ["--allowedTools", ",".join(allowed_tools)]
        # Prompts may start with "---"
        return cmd + ["--", prompt]

    def _execute(self, cmd: list[str], cwd: str, timeout: int) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(cmd, capture_output=True, text=True, cwd=cwd, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            self._log("claude_invocation_timeout", {"timeout_seconds": timeout}, level="error")
            raise ClaudeTimeoutError(f"Claude CLI timed out after {timeout} seconds") from e
        except FileNotFoundError as e:
            binary = self.config.claude.binary
            self._log("claude_cli_not_found", {"binary": binary}, level="error")
            raise ClaudeInvocationError(
                f"Claude CLI not found: {binary}",
                error_type=LLMErrorType.CLI_NOT_FOUND,
            ) from e

    def run(
        self,
        prompt: str,
        *,
        max_turns: Optional[int] = None,
        allowed_tools: Optional[list[str]] = None,
        working_dir: Optional[str] = None,
        timeout: Optional[int] = None,
    ) -> ClaudeResult:
        """
        Send prompt to Claude and wait for the final envelope.

        max_turns and timeout override the ``claude`` section of andon.yaml
        for this call only. The subprocess runs in working_dir, or the
        repository root when it is not given.

        Raises:
            ClaudeTimeoutError: The CLI did not finish in time.
            ClaudeInvocationError: Anything else; ``error_type`` says what.
        """
        timeout = timeout or self.config.claude.timeout_seconds
        self._log("claude_invocation_start", {
            "prompt_length": len(prompt),
            "max_turns": max_turns or self.config.claude.max_turns,
            "timeout": timeout,
        })

        proc = self._execute(
            self.command(prompt, max_turns=max_turns, allowed_tools=allowed_tools),
            cwd=working_dir or self.config.repo_root,
            timeout=timeout,
        )
        stderr = proc.stderr or ""

        if proc.returncode != 0:
            error_type = ErrorClassifier.classify_claude_error(stderr, proc.stdout or "", proc.returncode)
            self._log("claude_invocation_error", {
                "returncode": proc.returncode,
                "error_type": error_type.name,
                "stderr": stderr[:STDERR_HEAD],
            }, level="error")
            raise ClaudeInvocationError(
                f"Claude CLI exited with code {proc.returncode}",
                stderr=stderr,
                returncode=proc.returncode,
                error_type=error_type,
            )

        data = parse_envelope(proc.stdout)
        turns = _field(data, "num_turns", 0)

        # A zero exit can still carry error_max_turns or error_during_execution
        subtype = _field(data, "subtype", "")
        if subtype.startswith("error_"):
            self._log("claude_invocation_error_subtype", {
                "subtype": subtype,
                "num_turns": turns,
                "cost_usd": _field(data, "total_cost_usd", 0.0),
            }, level="error")
            raise ClaudeInvocationError(
                f"Claude CLI returned error: {subtype}",
                stderr=f"subtype={subtype}, num_turns={turns}",
                returncode=0,
                error_type=LLMErrorType.CLI_CRASH,
            )

        result = ClaudeResult(
            text=_field(data, "result", ""),
            total_cost_usd=_field(data, "total_cost_usd", 0.0),
            num_turns=turns,
            duration_ms=_field(data, "duration_ms", 0),
            session_id=_field(data, "session_id", ""),
            raw=data,
        )
        self._log("claude_invocation_complete", {
            "cost_usd": result.total_cost_usd,
            "num_turns": result.num_turns,
            "duration_ms": result.duration_ms,
            "session_id": result.session_id,
        })
        return result
