"""Tests for the Claude-backed agent invoker, the CLI runner and the stub."""

import json
import subprocess
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock, patch

import pytest

from andon.agents import (
    AgentFailure,
    AgentResult,
    ClaudeAgentInvoker,
    FailureReason,
    Finding,
    StubAgentInvoker,
)
from andon.agents.claude import extract_json_object, failure_reason_for
from andon.errors import ErrorClassifier, LLMErrorType
from andon.llm_clients import ClaudeCliRunner, ClaudeInvocationError, ClaudeTimeoutError
from andon.models import ClaudeResult


def reply(obj, prose="Done. Here is the result:"):
    return f"{prose}\n\n```json\n{json.dumps(obj)}\n```\n"


def invoker_with(text=None, error=None, cost=0.25):
    runner = MagicMock()
    if error is not None:
        runner.run.side_effect = error
    else:
        runner.run.return_value = ClaudeResult(text=text, total_cost_usd=cost)
    return ClaudeAgentInvoker(config=MagicMock(), runner=runner), runner


class TestExtractJson:

    def test_last_fenced_block_wins(self):
        text = '```json\n{"a": 1}\n```\nthen\n```json\n{"a": 2}\n```'
        assert extract_json_object(text) == {"a": 2}

    def test_bare_object(self):
        assert extract_json_object('  {"status": "done"}  ') == {"status": "done"}

    @pytest.mark.parametrize("text", ["no json here", "```json\n[1, 2]\n```", "```json\n{oops\n```"])
    def test_not_an_object(self, text):
        assert extract_json_object(text) is None


class TestClaudeAgentInvoker:

    def test_success_parses_result(self):
        invoker, runner = invoker_with(reply({
            "status": "done",
            "rationale": "renamed helper",
            "files_modified": ["a.py"],
            "findings": [{"severity": "CRITICAL", "message": "sql injection", "location": "db.py:4"}],
            "payload": {"score": 80},
        }))
        outcome = invoker.invoke("coder", "Rename it", ["a.py"])

        assert isinstance(outcome, AgentResult)
        assert outcome.files_modified == ["a.py"]
        assert outcome.payload == {"score": 80}
        assert outcome.findings == [Finding("critical", "sql injection", "db.py:4")]
        assert outcome.cost_usd == 0.25
        assert invoker.get_total_cost() == 0.25

        prompt = runner.run.call_args[0][0]
        assert "You are acting as the coder agent." in prompt
        assert "- a.py" in prompt
        assert "Rename it" in prompt

    def test_malformed_reply(self):
        invoker, _ = invoker_with("I changed some things.")
        outcome = invoker.invoke("coder", "x", [])
        assert isinstance(outcome, AgentFailure)
        assert outcome.reason == FailureReason.MALFORMED_OUTPUT
        assert invoker.get_total_cost() == 0.25

    def test_wrong_shape_is_malformed(self):
        invoker, _ = invoker_with(reply({"findings": ["not an object"]}))
        outcome = invoker.invoke("coder", "x", [])
        assert outcome.reason == FailureReason.MALFORMED_OUTPUT

    def test_refusal(self):
        invoker, _ = invoker_with(reply({"status": "refused", "rationale": "out of scope"}))
        outcome = invoker.invoke("coder", "x", [])
        assert outcome.reason == FailureReason.REFUSED
        assert outcome.message == "out of scope"

    def test_timeout(self):
        invoker, _ = invoker_with(error=ClaudeTimeoutError("timed out after 600 seconds"))
        assert invoker.invoke("coder", "x", []).reason == FailureReason.TIMEOUT

    def test_auth_error_is_environmental_with_user_action(self):
        error = ClaudeInvocationError("exit 1", stderr="not logged in", error_type=LLMErrorType.AUTH_REQUIRED)
        invoker, _ = invoker_with(error=error)
        outcome = invoker.invoke("coder", "x", [])
        assert outcome.is_environmental
        assert "not authenticated" in outcome.message

    def test_rate_limit_consumes_an_attempt(self):
        error = ClaudeInvocationError("exit 1", stderr="429", error_type=LLMErrorType.RATE_LIMIT)
        invoker, _ = invoker_with(error=error)
        outcome = invoker.invoke("coder", "x", [])
        assert outcome.reason == FailureReason.INVOCATION_ERROR
        assert not outcome.is_environmental

    def test_failure_reason_mapping(self):
        assert failure_reason_for(LLMErrorType.CLI_NOT_FOUND) == FailureReason.ENVIRONMENT_UNAVAILABLE
        assert failure_reason_for(LLMErrorType.JSON_PARSE_ERROR) == FailureReason.MALFORMED_OUTPUT
        assert failure_reason_for(LLMErrorType.SERVER_OVERLOADED) == FailureReason.INVOCATION_ERROR


class TestClaudeCliRunner:

    def runner(self, config):
        return ClaudeCliRunner(config=config)

    def test_builds_command_and_parses_envelope(self, config):
        envelope = {"result": "hello", "total_cost_usd": 0.1, "num_turns": 2, "session_id": "s1"}
        proc = MagicMock(returncode=0, stdout=json.dumps(envelope), stderr="")
        with patch("andon.llm_clients.subprocess.run", return_value=proc) as run:
            result = self.runner(config).run("---\nprompt", allowed_tools=["Read", "Edit"])

        cmd = run.call_args[0][0]
        assert cmd[:4] == ["claude", "--print", "--output-format", "json"]
        assert cmd[cmd.index("--allowedTools") + 1] == "Read,Edit"
        assert cmd[-2:] == ["--", "---\nprompt"]
        assert result.text == "hello"
        assert result.total_cost_usd == 0.1
        assert result.session_id == "s1"

    def test_timeout(self, config):
        with patch("andon.llm_clients.subprocess.run", side_effect=subprocess.TimeoutExpired("claude", 1)):
            with pytest.raises(ClaudeTimeoutError):
                self.runner(config).run("p")

    def test_binary_missing(self, config):
        with patch("andon.llm_clients.subprocess.run", side_effect=FileNotFoundError()):
            with pytest.raises(ClaudeInvocationError) as exc_info:
                self.runner(config).run("p")
        assert exc_info.value.error_type == LLMErrorType.CLI_NOT_FOUND

    def test_nonzero_exit_is_classified(self, config):
        proc = MagicMock(returncode=1, stdout="", stderr="Error: Please log in")
        with patch("andon.llm_clients.subprocess.run", return_value=proc):
            with pytest.raises(ClaudeInvocationError) as exc_info:
                self.runner(config).run("p")
        assert exc_info.value.error_type == LLMErrorType.AUTH_REQUIRED

    def test_error_subtype(self, config):
        proc = MagicMock(returncode=0, stdout=json.dumps({"subtype": "error_max_turns"}), stderr="")
        with patch("andon.llm_clients.subprocess.run", return_value=proc):
            with pytest.raises(ClaudeInvocationError) as exc_info:
                self.runner(config).run("p")
        assert exc_info.value.error_type == LLMErrorType.CLI_CRASH

    def test_unparseable_envelope(self, config):
        proc = MagicMock(returncode=0, stdout="not json", stderr="")
        with patch("andon.llm_clients.subprocess.run", return_value=proc):
            with pytest.raises(ClaudeInvocationError) as exc_info:
                self.runner(config).run("p")
        assert exc_info.value.error_type == LLMErrorType.JSON_PARSE_ERROR


class TestErrorClassifier:

    @pytest.mark.parametrize("stderr,expected", [
        ("401 Unauthorized", LLMErrorType.AUTH_REQUIRED),
        ("usage limit reached", LLMErrorType.RATE_LIMIT),
        ("API overloaded (529)", LLMErrorType.SERVER_OVERLOADED),
        ("segfault", LLMErrorType.CLI_CRASH),
    ])
    def test_classify(self, stderr, expected):
        assert ErrorClassifier.classify_claude_error(stderr, "", 1) == expected

    def test_zero_exit_without_pattern_is_unknown(self):
        assert ErrorClassifier.classify_claude_error("", "", 0) == LLMErrorType.UNKNOWN

    def test_created_errors_know_when_a_human_is_needed(self):
        auth = ErrorClassifier.create_error(LLMErrorType.AUTH_REQUIRED, "x")
        missing = ErrorClassifier.create_error(LLMErrorType.CLI_NOT_FOUND, "x")
        crash = ErrorClassifier.create_error(LLMErrorType.CLI_CRASH, "x")
        assert auth.requires_user_action
        assert missing.requires_user_action
        assert not crash.requires_user_action


class TestStubAgentInvoker:

    def test_replays_queue_then_defaults_to_noop(self):
        failure = AgentFailure(FailureReason.TIMEOUT)
        stub = StubAgentInvoker({"coder": [failure]})
        assert stub.invoke("coder", "a", ["x"]) is failure
        default = stub.invoke("coder", "b", [])
        assert isinstance(default, AgentResult)
        assert default.files_modified == []
        assert [c[1] for c in stub.calls] == ["a", "b"]

    def test_callable_steps_receive_arguments(self):
        stub = StubAgentInvoker()
        stub.enqueue("coder", lambda role, instructions, scope: AgentResult(role=role, files_modified=scope))
        assert stub.invoke("coder", "x", ["a.py"]).files_modified == ["a.py"]

    def test_tracks_cost(self):
        stub = StubAgentInvoker({"qa": [AgentResult(role="qa", cost_usd=1.5)]})
        stub.invoke("qa", "x", [])
        assert stub.get_total_cost() == 1.5

    def test_cost_is_exact_under_concurrent_invocations(self):
        stub = StubAgentInvoker()
        outcome = AgentFailure(FailureReason.TIMEOUT, cost_usd=1.0)

        def spend(_):
            for _ in range(500):
                stub._track_cost(outcome)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(spend, range(8)))
        assert stub.get_total_cost() == 4000.0
