"""
Classified failures of the Claude CLI.

Every failed ``claude`` call is tagged with an LLMErrorType. The agent layer
uses the tag to decide whether the failure costs the unit an attempt or
pulls the andon cord.
"""

from __future__ import annotations

import re
from enum import Enum, auto
from typing import Optional


class LLMErrorType(Enum):
    AUTH_REQUIRED = auto()
    RATE_LIMIT = auto()
    SERVER_OVERLOADED = auto()
    TIMEOUT = auto()
    CLI_CRASH = auto()
    CLI_NOT_FOUND = auto()
    JSON_PARSE_ERROR = auto()
    UNKNOWN = auto()


# Types that no amount of retrying fixes.
NEEDS_HUMAN = frozenset({LLMErrorType.AUTH_REQUIRED, LLMErrorType.CLI_NOT_FOUND})


class LLMError(Exception):
    """A CLI failure together with its classification and raw stderr."""

    def __init__(
        self,
        message: str,
        error_type: LLMErrorType = LLMErrorType.UNKNOWN,
        stderr: str = "",
        returncode: int = -1,
    ) -> None:
        super().__init__(message)
        self.error_type = error_type
        self.stderr = stderr
        self.returncode = returncode

    @property
    def requires_user_action(self) -> bool:
        return self.error_type in NEEDS_HUMAN


class ClaudeAuthError(LLMError):

    def __init__(self, message: str, stderr: str = "") -> None:
        super().__init__(message, error_type=LLMErrorType.AUTH_REQUIRED, stderr=stderr)


class CLINotFoundError(LLMError):

    def __init__(self, cli_name: str) -> None:
        super().__init__(
            f"{cli_name} CLI not found on PATH",
            error_type=LLMErrorType.CLI_NOT_FOUND,
        )
        self.cli_name = cli_name


def _compile(*patterns: str) -> re.Pattern[str]:
    return re.compile("|".join(f"(?:{p})" for p in patterns), re.IGNORECASE)


class ErrorClassifier:
    """
    Maps CLI output to an LLMErrorType.

    Rules are tried in order, so output mentioning both a 401 and a 429 is
    reported as an authentication problem.
    """

    RULES: list[tuple[LLMErrorType, re.Pattern[str]]] = [
        (LLMErrorType.AUTH_REQUIRED, _compile(
            r"unauthorized",
            r"not\s+logged\s+in",
            r"(login|authentication)\s+required",
            r"please\s+log\s+in",
            r"\b401\b",
        )),
        (LLMErrorType.RATE_LIMIT, _compile(
            r"rate.?limit",
            r"usage\s+limit\s+reached",
            r"too\s+many\s+requests",
            r"\b429\b",
        )),
        (LLMErrorType.SERVER_OVERLOADED, _compile(
            r"overloaded",
            r"service\s+unavailable",
            r"\b5(29|03)\b",
        )),
    ]

    @classmethod
    def classify_claude_error(cls, stderr: str, stdout: str = "", returncode: int = -1) -> LLMErrorType:
        text = f"{stderr}\n{stdout}"
        for error_type, pattern in cls.RULES:
            if pattern.search(text):
                return error_type
        return LLMErrorType.CLI_CRASH if returncode != 0 else LLMErrorType.UNKNOWN

    @classmethod
    def create_error(
        cls,
        error_type: LLMErrorType,
        message: str,
        stderr: str = "",
        returncode: int = -1,
        cli_name: Optional[str] = None,
    ) -> LLMError:
        """Build the most specific exception class for error_type."""
        if error_type is LLMErrorType.AUTH_REQUIRED:
            return ClaudeAuthError(message, stderr)
        if error_type is LLMErrorType.CLI_NOT_FOUND:
            return CLINotFoundError(cli_name or "claude")
        return LLMError(message, error_type=error_type, stderr=stderr, returncode=returncode)


def get_user_action_message(error: LLMError) -> str:
    """One line telling the operator how to unblock the run."""
    if error.error_type is LLMErrorType.AUTH_REQUIRED:
        return (
            "Claude Code CLI is not authenticated. Run `claude` once to log in, "
            "then re-run the command. Progress so far has been saved."
        )
    if error.error_type is LLMErrorType.CLI_NOT_FOUND:
        name = getattr(error, "cli_name", "claude")
        return (
            f"The {name} CLI is not installed or not on PATH. Install it with "
            "`npm i -g @anthropic-ai/claude-code` or set claude.binary in andon.yaml."
        )
    if error.error_type is LLMErrorType.RATE_LIMIT:
        return "Usage limit reached. Wait a few minutes and re-run; completed units are kept."
    return f"Claude CLI error ({error.error_type.name}): {error}"
