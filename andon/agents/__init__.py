"""
Agent Invoker implementations for Andon.
"""

from andon.agents.base import (
    AgentFailure,
    AgentInvoker,
    AgentResult,
    FailureReason,
    Finding,
    InvocationOutcome,
)
from andon.agents.claude import ClaudeAgentInvoker
from andon.agents.stub import StubAgentInvoker

__all__ = [
    "AgentFailure",
    "AgentInvoker",
    "AgentResult",
    "ClaudeAgentInvoker",
    "FailureReason",
    "Finding",
    "InvocationOutcome",
    "StubAgentInvoker",
]
