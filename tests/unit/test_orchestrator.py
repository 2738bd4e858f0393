"""End-to-end orchestrator runs against a real throwaway repository."""

import subprocess
import time
from dataclasses import replace

import pytest

from andon.agents import AgentFailure, AgentResult, FailureReason, StubAgentInvoker
from andon.escalation import EscalationCategory
from andon.models import UnitStatus, WorkUnit
from andon.orchestrator import EXIT_ESCALATED, EXIT_PARTIAL, EXIT_SUCCESS, Orchestrator, progress_fields
from andon.progress_store import ProgressStore
from andon.run_journal import RunJournal
from andon.scope import ScopeRequest
from andon.verification import NullVerificationGate, VerificationGate, VerificationResult
from andon.vcs import DryRunVcsAdapter, GitAdapter, GitDisabledAdapter
from andon.workflows import get_workflow


def git(repo, *args):
    return subprocess.run(
        ["git", *args], cwd=repo, capture_output=True, text=True, check=True
    ).stdout


class ScriptedGate(VerificationGate):
    """Pops one pass/fail per call; passes once the script runs out."""

    def __init__(self, *results):
        super().__init__()
        self.results = list(results)

    def verify(self, unit, agent_result):
        passed = self.results.pop(0) if self.results else True
        return VerificationResult(passed=passed, exit_code=0 if passed else 1,
                                  detail="" if passed else f"{unit.id} still failing")


def writes(repo, path, content):
    """Agent step that writes one file and reports it."""
    def step(role, instructions, scope):
        target = repo / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        return AgentResult(role=role, rationale=f"wrote {path}", files_modified=[path])
    return step


def units(*ids, paths=None):
    return [WorkUnit(id=uid, description=f"ticket {uid}", paths=list(paths or [])) for uid in ids]


def orchestrator(config, invoker, gate, vcs=None, workflow="iterate", **kwargs):
    spec = get_workflow(workflow)
    return Orchestrator(
        config,
        spec,
        invoker,
        gate,
        vcs or GitAdapter(config, spec.name),
        ProgressStore(config),
        **kwargs,
    )


class TestSequentialRuns:

    def test_all_units_pass(self, git_config, git_repo):
        invoker = StubAgentInvoker({"coder": [
            writes(git_repo, "app.py", "def add(a, b):\n    return b + a\n"),
            writes(git_repo, "util.py", "X = 1\n"),
        ]})
        summary = orchestrator(git_config, invoker, ScriptedGate()).run_all(units("T-1", "T-2"))

        assert summary.exit_code == EXIT_SUCCESS
        assert [r.unit_id for r in summary.completed] == ["T-1", "T-2"]
        assert len(summary.commits) == 2
        assert summary.escalation is None
        assert git(git_repo, "rev-parse", "--abbrev-ref", "HEAD").strip() == "main"
        assert (git_repo / "util.py").read_text() == "X = 1\n"
        assert "andon/iterate/T-1" not in git(git_repo, "branch")

    def test_fails_twice_then_passes(self, git_config, git_repo):
        step = writes(git_repo, "app.py", "def add(a, b):\n    return a + b  # fixed\n")
        invoker = StubAgentInvoker({"coder": [step, step, step]})
        summary = orchestrator(git_config, invoker, ScriptedGate(False, False, True)).run_all(units("T-1"))

        result = summary.results[0]
        assert result.status == UnitStatus.COMPLETED
        assert result.attempts == 3
        assert result.commit is not None
        # initial + unit commit + merge commit
        assert git(git_repo, "rev-list", "--count", "main").strip() == "3"
        assert "Previous attempt 2 failed" in invoker.calls[2][1]

    def test_exhausted_unit_is_reverted_and_run_continues(self, git_config, git_repo):
        original = (git_repo / "app.py").read_bytes()
        broken = writes(git_repo, "app.py", "broken(\n")
        invoker = StubAgentInvoker({"coder": [
            broken, broken, broken,
            writes(git_repo, "util.py", "X = 1\n"),
        ]})
        gate = ScriptedGate(False, False, False, True)
        summary = orchestrator(git_config, invoker, gate).run_all(units("T-1", "T-2"))

        assert summary.exit_code == EXIT_PARTIAL
        assert [r.unit_id for r in summary.skipped] == ["T-1"]
        assert [r.unit_id for r in summary.completed] == ["T-2"]
        assert summary.results[0].attempts == 3
        assert (git_repo / "app.py").read_bytes() == original
        assert "broken" not in git(git_repo, "log", "-p", "main")

    def test_merge_conflict_keeps_branch_and_halts(self, git_config, git_repo):
        class RacingGitAdapter(GitAdapter):
            """Lands a conflicting commit on the base branch right before merging."""

            def merge(self, handle):
                git(git_repo, "checkout", "-q", handle.base_branch)
                (git_repo / "app.py").write_text("changed on main\n")
                git(git_repo, "commit", "-q", "-am", "concurrent edit")
                git(git_repo, "checkout", "-q", handle.branch)
                return super().merge(handle)

        invoker = StubAgentInvoker({"coder": [writes(git_repo, "app.py", "changed on branch\n")]})
        vcs = RacingGitAdapter(git_config, "iterate")
        summary = orchestrator(git_config, invoker, ScriptedGate(), vcs=vcs).run_all(units("T-1", "T-2"))

        assert summary.exit_code == EXIT_ESCALATED
        assert summary.escalation.category == EscalationCategory.CONFLICT
        assert summary.escalation.step == "merge"
        assert dict(summary.escalation.branches) == {"T-1": "andon/iterate/T-1"}
        assert summary.results[0].status == UnitStatus.ABORTED
        assert summary.not_attempted == ["T-2"]
        assert vcs.branch_exists("andon/iterate/T-1")
        assert vcs.current_branch() == "main"
        assert vcs.changed_paths() == []

    def test_escalation_halts_remaining_units(self, git_config, git_repo):
        invoker = StubAgentInvoker({"coder": [
            writes(git_repo, "util.py", "X = 1\n"),
            AgentFailure(FailureReason.ENVIRONMENT_UNAVAILABLE, "not logged in"),
        ]})
        orch = orchestrator(git_config, invoker, ScriptedGate())
        summary = orch.run_all(units("T-1", "T-2", "T-3"))

        assert summary.exit_code == EXIT_ESCALATED
        assert summary.escalation.category == EscalationCategory.ENVIRONMENT_UNAVAILABLE
        assert summary.escalation.committed == ("T-1",)
        assert summary.escalation.in_flight == ("T-2",)
        assert summary.not_attempted == ["T-3"]
        assert len(invoker.calls) == 2
        assert orch.store.get("T-2").status == UnitStatus.ABORTED
        assert orch.store.get("T-3").status == UnitStatus.PENDING

    def test_stray_files_are_not_committed(self, git_config, git_repo):
        def step(role, instructions, scope):
            (git_repo / "util.py").write_text("X = 1\n")
            (git_repo / "scratch.txt").write_text("notes\n")
            return AgentResult(role=role, files_modified=["util.py"])

        summary = orchestrator(git_config, StubAgentInvoker({"coder": [step]}), ScriptedGate()).run_all(
            units("T-1")
        )
        assert summary.exit_code == EXIT_SUCCESS
        assert not (git_repo / "scratch.txt").exists()
        assert "scratch.txt" not in git(git_repo, "ls-files")

    def test_unreported_changes_inside_unit_paths_are_committed(self, git_config, git_repo):
        def step(role, instructions, scope):
            (git_repo / "app.py").write_text("def add(a, b):\n    return sum((a, b))\n")
            return AgentResult(role=role)

        summary = orchestrator(git_config, StubAgentInvoker({"coder": [step]}), ScriptedGate()).run_all(
            units("T-1", paths=["app.py"])
        )
        assert summary.results[0].commit is not None
        assert "sum((a, b))" in (git_repo / "app.py").read_text()

    def test_dirty_tree_escalates_before_any_unit(self, git_config, git_repo):
        (git_repo / "app.py").write_text("uncommitted\n")
        invoker = StubAgentInvoker()
        summary = orchestrator(git_config, invoker, ScriptedGate()).run_all(units("T-1"))

        assert summary.exit_code == EXIT_ESCALATED
        assert summary.escalation.step == "preflight"
        assert summary.not_attempted == ["T-1"]
        assert invoker.calls == []

    def test_interrupt_aborts_unit_and_reverts(self, git_config, git_repo):
        def step(role, instructions, scope):
            (git_repo / "app.py").write_text("half done\n")
            raise KeyboardInterrupt

        orch = orchestrator(git_config, StubAgentInvoker({"coder": [step]}), ScriptedGate())
        summary = orch.run_all(units("T-1", "T-2"))

        assert summary.escalation.category == EscalationCategory.INTERRUPTED
        assert summary.results[0].status == UnitStatus.ABORTED
        assert summary.not_attempted == ["T-2"]
        assert "half done" not in (git_repo / "app.py").read_text()
        assert orch.store.get("T-1").status == UnitStatus.ABORTED

    def test_mutating_run_without_git_changes_nothing(self, config, tmp_path):
        (tmp_path / "app.py").write_text("orig\n")
        config = replace(config, git=replace(config.git, enabled=False))
        broken = writes(tmp_path, "app.py", "broken\n")
        invoker = StubAgentInvoker({"coder": [broken, broken, broken]})
        vcs = GitDisabledAdapter(config, "iterate", mutates=True)
        summary = orchestrator(config, invoker, ScriptedGate(False, False, False), vcs=vcs).run_all(
            units("T-1")
        )

        assert summary.exit_code == EXIT_ESCALATED
        assert summary.escalation.category == EscalationCategory.ENVIRONMENT_UNAVAILABLE
        assert summary.escalation.step == "preflight"
        assert "mutating workflows need git" in summary.escalation.reason
        assert invoker.calls == []
        assert (tmp_path / "app.py").read_text() == "orig\n"

    def test_progress_file_committed_when_tracked(self, git_config, git_repo):
        config = replace(git_config, progress=replace(git_config.progress, track_in_vcs=True))
        invoker = StubAgentInvoker({"coder": [writes(git_repo, "util.py", "X = 1\n")]})
        orchestrator(config, invoker, ScriptedGate()).run_all(units("T-1"))

        assert ".andon/progress.json" in git(git_repo, "ls-files")
        assert "andon: progress after T-1" in git(git_repo, "log", "--format=%s", "main")


class TestResume:

    def test_completed_units_are_never_rerun(self, config):
        first = StubAgentInvoker()
        gate = ScriptedGate(True, False, False, False)
        orchestrator(config, first, gate, vcs=DryRunVcsAdapter(config, "iterate")).run_all(
            units("T-1", "T-2")
        )

        second = StubAgentInvoker()
        summary = orchestrator(config, second, ScriptedGate(), vcs=DryRunVcsAdapter(config, "iterate")).run_all(
            units("T-1", "T-2")
        )
        assert second.calls == []
        assert summary.previously_completed == ["T-1"]
        assert summary.results == []

    def test_retry_skipped_reruns_skipped_units(self, config):
        orchestrator(
            config, StubAgentInvoker(), ScriptedGate(False, False, False),
            vcs=DryRunVcsAdapter(config, "iterate"),
        ).run_all(units("T-1"))

        config = replace(config, pipeline=replace(config.pipeline, retry_skipped=True))
        invoker = StubAgentInvoker()
        summary = orchestrator(config, invoker, ScriptedGate(), vcs=DryRunVcsAdapter(config, "iterate")).run_all(
            units("T-1")
        )
        assert len(invoker.calls) == 1
        assert summary.completed[0].unit_id == "T-1"

    def test_interrupted_unit_runs_first(self, config):
        store = ProgressStore(config)
        store.register(["T-1", "T-2"])
        store.mark_in_progress("T-2")

        invoker = StubAgentInvoker()
        orchestrator(config, invoker, ScriptedGate(), vcs=DryRunVcsAdapter(config, "iterate")).run_all(
            units("T-1", "T-2")
        )
        assert "Work unit T-2" in invoker.calls[0][1]


class TestResumeWithGit:
    """A run that died between create_scope and merge left HEAD on the unit branch."""

    @pytest.fixture
    def crashed(self, git_config, git_repo):
        store = ProgressStore(git_config)
        store.register(["T-1"])
        store.mark_in_progress("T-1")
        git(git_repo, "checkout", "-q", "-b", "andon/iterate/T-1")
        (git_repo / "util.py").write_text("X = 'partial'\n")
        git(git_repo, "add", "util.py")
        git(git_repo, "commit", "-q", "-m", "partial attempt")
        return git_repo

    def test_unit_branch_is_not_taken_as_integration_branch(self, git_config, crashed):
        config = replace(git_config, git=replace(git_config.git, base_branch=""))
        invoker = StubAgentInvoker({"coder": [writes(crashed, "util.py", "X = 1\n")]})
        summary = orchestrator(config, invoker, ScriptedGate()).run_all(units("T-1"))

        assert summary.exit_code == EXIT_ESCALATED
        assert summary.escalation.category == EscalationCategory.ENVIRONMENT_UNAVAILABLE
        assert summary.escalation.step == "preflight"
        assert invoker.calls == []
        assert git(crashed, "log", "--format=%s", "main").split("\n")[0] == "initial"

        # Back on the integration branch the interrupted unit runs again
        git(crashed, "checkout", "-q", "main")
        invoker = StubAgentInvoker({"coder": [writes(crashed, "util.py", "X = 1\n")]})
        summary = orchestrator(config, invoker, ScriptedGate()).run_all(units("T-1"))

        assert summary.completed[0].unit_id == "T-1"
        assert git(crashed, "show", "main:util.py") == "X = 1\n"

    def test_configured_base_branch_resumes_onto_it(self, git_config, crashed):
        invoker = StubAgentInvoker({"coder": [writes(crashed, "util.py", "X = 1\n")]})
        orch = orchestrator(git_config, invoker, ScriptedGate())
        summary = orch.run_all(units("T-1"))

        assert summary.exit_code == EXIT_SUCCESS
        assert orch.store.get("T-1").status == UnitStatus.COMPLETED
        assert git(crashed, "rev-parse", "--abbrev-ref", "HEAD").strip() == "main"
        assert git(crashed, "show", "main:util.py") == "X = 1\n"
        assert "partial attempt" not in git(crashed, "log", "--format=%s", "main")
        assert "andon/iterate/T-1" not in git(crashed, "branch")


class TestScopeAndAnalysis:

    def test_unresolvable_scope_escalates(self, config):
        orch = orchestrator(config, StubAgentInvoker(), ScriptedGate(), vcs=DryRunVcsAdapter(config, "iterate"))
        summary = orch.run(ScopeRequest(kind="explicit", items=["42"]))

        assert summary.exit_code == EXIT_ESCALATED
        assert summary.escalation.category == EscalationCategory.SCOPE_UNRESOLVABLE
        assert "Ticket file not found" in summary.escalation.reason

    def test_tickets_from_file_run_in_dependency_order(self, config, tmp_path):
        (tmp_path / ".andon").mkdir()
        (tmp_path / ".andon" / "tickets.yaml").write_text(
            "tickets:\n"
            "  - id: '2'\n    title: second\n    depends_on: ['1']\n"
            "  - id: '1'\n    title: first\n"
        )
        invoker = StubAgentInvoker()
        summary = orchestrator(
            config, invoker, ScriptedGate(), vcs=DryRunVcsAdapter(config, "iterate"),
        ).run(ScopeRequest.from_args(None, None))

        assert [r.unit_id for r in summary.completed] == ["1", "2"]
        assert "first" in invoker.calls[0][1]

    @pytest.fixture
    def analysis_repo(self, config, tmp_path):
        for name in ("a", "b", "c"):
            (tmp_path / name).mkdir()
            (tmp_path / name / "mod.py").write_text("x = 1\n")
        return replace(
            config,
            git=replace(config.git, enabled=False),
            pipeline=replace(config.pipeline, fan_out_threshold=2, max_parallel=2),
        )

    def test_analysis_fans_out_and_records_scores(self, analysis_repo):
        invoker = StubAgentInvoker()
        for _ in range(3):
            invoker.enqueue("architect", lambda role, instructions, scope: AgentResult(
                role=role, payload={"score": 70}, files_modified=[],
            ))
        orch = orchestrator(
            analysis_repo, invoker, NullVerificationGate(),
            vcs=DryRunVcsAdapter(analysis_repo, "arch-review"), workflow="arch-review",
        )
        summary = orch.run(ScopeRequest())

        assert summary.exit_code == EXIT_SUCCESS
        assert [r.unit_id for r in summary.completed] == ["a", "b", "c"]
        assert orch.store.get("b").score == 70.0
        assert orch.store.state.aggregate["completed_units"] == 3

    def test_analysis_escalation_leaves_later_units_pending(self, analysis_repo):
        def step(role, instructions, scope):
            if "Work unit b" in instructions:
                return AgentFailure(FailureReason.ENVIRONMENT_UNAVAILABLE, "cli missing")
            return AgentResult(role=role, payload={"score": 90})

        invoker = StubAgentInvoker({"architect": [step, step, step]})
        orch = orchestrator(
            analysis_repo, invoker, NullVerificationGate(),
            vcs=DryRunVcsAdapter(analysis_repo, "arch-review"), workflow="arch-review",
        )
        summary = orch.run(ScopeRequest())

        assert summary.exit_code == EXIT_ESCALATED
        assert [r.unit_id for r in summary.completed] == ["a"]
        assert summary.not_attempted == ["c"]
        assert orch.store.get("c").status == UnitStatus.PENDING


    def test_interrupted_fan_out_waits_for_running_workers(self, analysis_repo):
        finished = []

        def step(role, instructions, scope):
            if "Work unit a" in instructions:
                raise KeyboardInterrupt
            if "Work unit b" in instructions:
                time.sleep(0.3)
                finished.append("b")
            return AgentResult(role=role, payload={"score": 50})

        invoker = StubAgentInvoker({"architect": [step, step, step]})
        orch = orchestrator(
            analysis_repo, invoker, NullVerificationGate(),
            vcs=DryRunVcsAdapter(analysis_repo, "arch-review"), workflow="arch-review",
        )
        summary = orch.run(ScopeRequest())

        assert summary.escalation.category == EscalationCategory.INTERRUPTED
        assert finished == ["b"]
        assert summary.results == []


class TestJournal:

    def test_run_is_journaled(self, config, tmp_path):
        journal = RunJournal(tmp_path / "journal.txt")
        orchestrator(
            config, StubAgentInvoker(), ScriptedGate(False, True),
            vcs=DryRunVcsAdapter(config, "iterate"), journal=journal,
        ).run_all(units("T-1"))

        text = journal.path.read_text()
        assert "ATTEMPT_FAILED unit=T-1 attempt=1" in text
        assert "RUN_END" in text


class TestProgressFields:

    def test_mutation_score_from_counts(self):
        result = AgentResult(role="mutation-tester", payload={"killed": 8, "survived": 2, "total": 10})
        fields = progress_fields(result)
        assert fields["score"] == 80.0
        assert fields["metrics"] == {"killed": 8, "survived": 2, "total": 10}

    def test_explicit_examples_and_no_score(self):
        result = AgentResult(role="coder", payload={"examples": ["m1"], "ok": True})
        fields = progress_fields(result)
        assert fields["examples"] == ["m1"]
        assert fields["metrics"] == {}
        assert "score" not in fields

    def test_none(self):
        assert progress_fields(None) == {}
