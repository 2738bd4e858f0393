"""
Orchestrator for Andon runs.

Sequences one workflow run from scope intake to summary:

    resolve scope -> register units -> resume order
      -> for each unit: check cord -> branch -> controller -> commit+merge | revert
         -> progress store
      -> summary

Units run strictly one at a time because they share the working tree.
Analysis-only workflows with many units fan out over a thread pool; every
worker is joined before anything is written to the Progress Store.

The AndonCord is armed when a run starts and inspected before each unit.
Once tripped, no further unit is touched, but the summary is still built
and the progress file is left consistent.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

from andon.agents.base import AgentInvoker, AgentResult
from andon.controller import ControllerOutcome, ControllerState, RetryController
from andon.escalation import AndonCord, EscalationCategory, EscalationEvent
from andon.models import UnitStatus, WorkUnit
from andon.progress_store import ProgressStore
from andon.scope import ScopeRequest, ScopeResolutionError, ScopeResolver
from andon.verification import VerificationGate
from andon.vcs import ConflictError, DryRunVcsAdapter, GitAdapter, ScopeHandle, VcsError
from andon.workflows import WorkflowSpec, unit_instructions

if TYPE_CHECKING:
    from andon.config import AndonConfig
    from andon.logger import RunLogger
    from andon.run_journal import RunJournal


VcsAdapter = Union[GitAdapter, DryRunVcsAdapter]

EXIT_SUCCESS = 0
EXIT_PARTIAL = 1
EXIT_ESCALATED = 3


@dataclass
class UnitResult:
    """Terminal outcome of one unit in this run."""

    unit_id: str
    status: UnitStatus
    attempts: int = 0
    reason: str = ""
    commit: Optional[str] = None
    branch: Optional[str] = None
    insertions: int = 0
    deletions: int = 0
    escalation: Optional[EscalationEvent] = None


@dataclass
class RunSummary:
    """Report of a whole run, for humans and for the exit code."""

    workflow: str
    run_id: str
    results: list[UnitResult] = field(default_factory=list)
    not_attempted: list[str] = field(default_factory=list)
    previously_completed: list[str] = field(default_factory=list)
    escalation: Optional[EscalationEvent] = None
    cost_usd: float = 0.0

    def _with_status(self, status: UnitStatus) -> list[UnitResult]:
        return [r for r in self.results if r.status == status]

    @property
    def completed(self) -> list[UnitResult]:
        return self._with_status(UnitStatus.COMPLETED)

    @property
    def skipped(self) -> list[UnitResult]:
        return self._with_status(UnitStatus.SKIPPED)

    @property
    def aborted(self) -> list[UnitResult]:
        return self._with_status(UnitStatus.ABORTED)

    @property
    def commits(self) -> list[str]:
        return [r.commit for r in self.results if r.commit]

    @property
    def insertions(self) -> int:
        return sum(r.insertions for r in self.completed)

    @property
    def deletions(self) -> int:
        return sum(r.deletions for r in self.completed)

    @property
    def net_delta(self) -> int:
        return self.insertions - self.deletions

    @property
    def exit_code(self) -> int:
        if self.escalation is not None:
            return EXIT_ESCALATED
        if self.skipped or self.aborted:
            return EXIT_PARTIAL
        return EXIT_SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow": self.workflow,
            "run_id": self.run_id,
            "completed": len(self.completed),
            "skipped": len(self.skipped),
            "aborted": len(self.aborted),
            "net_delta": self.net_delta,
            "commits": self.commits,
            "not_attempted": self.not_attempted,
            "escalation": self.escalation.to_dict() if self.escalation else None,
            "exit_code": self.exit_code,
        }


def progress_fields(result: Optional[AgentResult]) -> dict[str, Any]:
    """
    Pull metrics, score and notable examples out of an agent payload.

    Numeric payload values become metrics. The score is payload["score"]
    when given, else killed/total or covered/total as a percentage.
    """
    if result is None:
        return {}
    payload = result.payload
    metrics = {
        k: v for k, v in payload.items()
        if isinstance(v, (int, float)) and not isinstance(v, bool)
    }
    score = metrics.get("score")
    total = metrics.get("total")
    if score is None and total:
        for numerator in ("killed", "covered", "passed"):
            if numerator in metrics:
                score = round(100.0 * metrics[numerator] / total, 2)
                break

    examples = payload.get("examples")
    if not isinstance(examples, list):
        examples = [f.to_dict() for f in result.findings if not f.resolved]

    fields: dict[str, Any] = {"metrics": metrics, "examples": examples}
    if score is not None:
        fields["score"] = float(score)
    return fields


class Orchestrator:
    """
    Runs one workflow over a resolved scope.
    """

    def __init__(
        self,
        config: AndonConfig,
        workflow: WorkflowSpec,
        invoker: AgentInvoker,
        gate: VerificationGate,
        vcs: VcsAdapter,
        store: ProgressStore,
        logger: Optional[RunLogger] = None,
        journal: Optional[RunJournal] = None,
        progress_callback: Optional[Callable[[str, dict], None]] = None,
        resolver: Optional[ScopeResolver] = None,
        instructions: str = "",
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            config: AndonConfig with run options already applied.
            workflow: The workflow being run.
            invoker: Agent invoker that performs each unit's work.
            gate: Verification gate for each attempt.
            vcs: Git adapter, or the dry-run adapter.
            store: Progress Store for this project.
            logger: Optional logger for recording operations.
            journal: Optional human-readable run journal.
            progress_callback: Optional callback(event, data) for CLI output.
            resolver: Scope resolver (created if not provided).
            instructions: Run-level instructions shared by every unit.
        """
        self.config = config
        self.workflow = workflow
        self.invoker = invoker
        self.gate = gate
        self.vcs = vcs
        self.store = store
        self.logger = logger
        self.journal = journal
        self.instructions = instructions or workflow.default_instructions
        self.cord = AndonCord()
        self._progress_callback = progress_callback
        self._resolver = resolver or ScopeResolver(config, workflow, logger=logger)
        self._base_branch: Optional[str] = None
        self._results: list[UnitResult] = []
        self._kept_branches: dict[str, str] = {}
        self._merged: set[str] = set()
        self.controller = RetryController(
            config,
            invoker,
            gate,
            role=workflow.role,
            logger=logger,
            journal=journal,
        )

    def _log(
        self, event_type: str, data: Optional[dict] = None, level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self.logger:
            log_data = {"workflow": self.workflow.name}
            if data:
                log_data.update(data)
            self.logger.log(event_type, log_data, level=level)

    def _emit_progress(self, event: str, data: Optional[dict] = None) -> None:
        """Emit progress event to callback if configured."""
        if self._progress_callback:
            self._progress_callback(event, data or {})

    def _trip(self, event: EscalationEvent, in_flight: Optional[str] = None) -> EscalationEvent:
        """Snapshot repository state into the event and pull the cord."""
        committed = [r.unit_id for r in self._results if r.status == UnitStatus.COMPLETED]
        snapshot = event.with_snapshot(
            committed=committed,
            in_flight=[in_flight] if in_flight else [],
            branches=dict(self._kept_branches),
        )
        if self.cord.trip(snapshot):
            self._log("andon_cord_tripped", snapshot.to_dict(), level="error")
            if self.journal:
                self.journal.log_escalation(snapshot.unit_id, snapshot.category.value, snapshot.reason)
            self._emit_progress("escalation", snapshot.to_dict())
        return self.cord.event or snapshot

    # Scope

    def resolve_scope(self, request: ScopeRequest) -> list[WorkUnit]:
        """
        Resolve the request into an ordered unit list.

        Raises:
            ScopeResolutionError: If the scope cannot be resolved.
        """
        return self._resolver.resolve(request)

    def run(self, request: ScopeRequest) -> RunSummary:
        """Resolve the scope and run every unit in it."""
        self.cord.arm()
        try:
            units = self.resolve_scope(request)
        except ScopeResolutionError as e:
            self._log("scope_resolution_failed", {"error": str(e)}, level="error")
            self._trip(EscalationEvent(
                category=EscalationCategory.SCOPE_UNRESOLVABLE,
                reason=str(e),
                step="resolve_scope",
            ))
            return self.summarize(self._new_run_id(), [])

        if not self.workflow.mutates:
            return self.run_analysis(units)
        return self.run_all(units)

    # Per-unit execution

    def _new_run_id(self) -> str:
        return f"{self.workflow.name}-{datetime.now().strftime('%Y%m%d-%H%M%S')}"

    def _finish_unit(
        self,
        unit: WorkUnit,
        status: UnitStatus,
        reason: str,
        outcome: Optional[ControllerOutcome] = None,
        **extra: Any,
    ) -> UnitResult:
        unit.status = status
        unit.result_summary = reason
        last = outcome.last_result if outcome else None
        fields = progress_fields(last) if status == UnitStatus.COMPLETED else {}
        notes = [reason] if reason else []
        self.store.record_outcome(
            unit.id,
            status,
            unit.attempt_count,
            metrics=fields.get("metrics"),
            score=fields.get("score"),
            examples=fields.get("examples"),
            notes=notes,
        )
        if self.config.progress.track_in_vcs and self._base_branch is not None:
            try:
                self.vcs.commit_file(self.store.path, f"progress after {unit.id}")
            except VcsError as e:
                self._log("progress_commit_failed", {"error": str(e)}, level="warn")

        extra.setdefault("escalation", outcome.escalation if outcome else None)
        result = UnitResult(
            unit_id=unit.id,
            status=status,
            attempts=unit.attempt_count,
            reason=reason,
            **extra,
        )
        self._results.append(result)
        if self.journal:
            self.journal.log_unit_end(unit.id, status.value, unit.attempt_count, result.commit)
        self._log("unit_end", {
            "unit_id": unit.id,
            "status": status.value,
            "attempts": unit.attempt_count,
            "reason": reason,
            "commit": result.commit,
        })
        self._emit_progress("unit_end", {
            "unit_id": unit.id,
            "status": status.value,
            "attempts": unit.attempt_count,
            "reason": reason,
        })
        return result

    def _discard(self, handle: Optional[ScopeHandle]) -> Optional[str]:
        """Revert and remove a unit's scope. Returns an error note on failure."""
        if handle is None:
            return None
        try:
            self.vcs.revert(handle)
            self.vcs.destroy_scope(handle)
        except VcsError as e:
            self._log("revert_failed", {"unit_id": handle.unit_id, "error": str(e)}, level="error")
            return f"revert failed: {e}"
        return None

    def _changed_in_scope(self, unit: WorkUnit) -> list[str]:
        changed = self.vcs.changed_paths()
        if not unit.paths:
            return changed
        prefixes = [p.rstrip("/") for p in unit.paths]
        return [
            c for c in changed
            if any(c == p or c.startswith(p + "/") for p in prefixes)
        ]

    def run_unit(self, unit: WorkUnit) -> UnitResult:
        """
        Run one unit through the controller and settle it in version control.

        Returns the unit's terminal result. Escalations trip the cord
        before returning.
        """
        self.store.mark_in_progress(unit.id)
        unit.status = UnitStatus.IN_PROGRESS
        self._emit_progress("unit_start", {"unit_id": unit.id, "description": unit.description})

        handle: Optional[ScopeHandle] = None
        try:
            if self.workflow.mutates:
                try:
                    handle = self.vcs.create_scope(unit.id, self._base_branch or "")
                except VcsError as e:
                    event = self._trip(EscalationEvent(
                        category=EscalationCategory.ENVIRONMENT_UNAVAILABLE,
                        reason=str(e),
                        unit_id=unit.id,
                        step="create_scope",
                    ), in_flight=unit.id)
                    return self._finish_unit(unit, UnitStatus.ABORTED, str(e), escalation=event)

            if self.journal:
                self.journal.log_unit_start(unit.id, handle.branch if handle else None)
            self._log("unit_start", {"unit_id": unit.id, "branch": handle.branch if handle else None})

            outcome = self.controller.run(
                unit, unit_instructions(self.instructions, unit), unit.paths
            )

            if outcome.state == ControllerState.SUCCEEDED:
                return self._settle_success(unit, outcome, handle)

            if outcome.state == ControllerState.REVERTED:
                note = self._discard(handle)
                reason = outcome.reason + (f" ({note})" if note else "")
                return self._finish_unit(unit, UnitStatus.SKIPPED, reason, outcome)

            # ESCALATED
            note = self._discard(handle)
            reason = outcome.reason + (f" ({note})" if note else "")
            event = self._trip(outcome.escalation, in_flight=unit.id)
            return self._finish_unit(unit, UnitStatus.ABORTED, reason, outcome, escalation=event)

        except KeyboardInterrupt:
            if unit.id in self._merged:
                reason = "interrupted after merge"
                return self._finish_unit(unit, UnitStatus.COMPLETED, reason)
            note = self._discard(handle)
            reason = "interrupted by user" + (f" ({note})" if note else "")
            event = self._trip(EscalationEvent(
                category=EscalationCategory.INTERRUPTED,
                reason=reason,
                unit_id=unit.id,
                step="run_unit",
            ), in_flight=unit.id)
            return self._finish_unit(unit, UnitStatus.ABORTED, reason, escalation=event)

    def _settle_success(
        self,
        unit: WorkUnit,
        outcome: ControllerOutcome,
        handle: Optional[ScopeHandle],
    ) -> UnitResult:
        if handle is None:
            return self._finish_unit(unit, UnitStatus.COMPLETED, outcome.reason, outcome)

        try:
            paths = outcome.files_modified or self._changed_in_scope(unit)
            commit = self.vcs.commit(handle, paths, unit.description)
            self.vcs.discard_uncommitted(handle)
            insertions, deletions = self.vcs.diff_stat(handle)
            self.vcs.merge(handle)
            self._merged.add(unit.id)
        except ConflictError as e:
            self._kept_branches[unit.id] = e.branch
            try:
                self.vcs.destroy_scope(handle, keep_branch=True)
            except VcsError as cleanup_error:
                self._log("scope_cleanup_failed", {"error": str(cleanup_error)}, level="error")
            event = self._trip(EscalationEvent(
                category=EscalationCategory.CONFLICT,
                reason=str(e),
                unit_id=unit.id,
                step="merge",
            ), in_flight=unit.id)
            return self._finish_unit(
                unit, UnitStatus.ABORTED, f"merge conflict; branch {e.branch} kept",
                outcome, escalation=event, branch=e.branch,
            )
        except VcsError as e:
            note = self._discard(handle)
            reason = str(e) + (f" ({note})" if note else "")
            event = self._trip(EscalationEvent(
                category=EscalationCategory.ENVIRONMENT_UNAVAILABLE,
                reason=reason,
                unit_id=unit.id,
                step="commit",
            ), in_flight=unit.id)
            return self._finish_unit(unit, UnitStatus.ABORTED, reason, outcome, escalation=event)

        try:
            self.vcs.destroy_scope(handle)
        except VcsError as e:
            self._log("scope_cleanup_failed", {"unit_id": unit.id, "error": str(e)}, level="warn")

        reason = outcome.reason if commit else (outcome.reason or "no changes to commit")
        return self._finish_unit(
            unit, UnitStatus.COMPLETED, reason, outcome,
            commit=commit, branch=handle.branch, insertions=insertions, deletions=deletions,
        )

    # Whole runs

    def _prepare(self, units: list[WorkUnit]) -> tuple[list[WorkUnit], list[str]]:
        """Register units and return (units to run in resume order, already completed ids)."""
        ids = [u.id for u in units]
        by_id = {u.id: u for u in units}
        self.store.register(ids)
        order = self.store.resume_order(ids, retry_skipped=self.config.pipeline.retry_skipped)
        done = [
            uid for uid in ids
            if uid not in order and self.store.get(uid).status == UnitStatus.COMPLETED
        ]
        return [by_id[uid] for uid in order], done

    def run_all(self, units: list[WorkUnit]) -> RunSummary:
        """
        Run units one after another, halting as soon as the cord is tripped.
        """
        if not self.cord.armed:
            self.cord.arm()
        run_id = self._new_run_id()
        self._results = []

        try:
            self._base_branch = self.vcs.preflight()
        except VcsError as e:
            self._trip(EscalationEvent(
                category=EscalationCategory.ENVIRONMENT_UNAVAILABLE,
                reason=str(e),
                step="preflight",
            ))
            return self.summarize(run_id, [u.id for u in units])

        to_run, done = self._prepare(units)
        if self.journal:
            self.journal.log_run_start(self.workflow.name, run_id, len(to_run))
        self._emit_progress("run_start", {"run_id": run_id, "units": [u.id for u in to_run]})

        if self.logger:
            with self.logger.run_context(run_id):
                remaining = self._run_sequence(to_run)
        else:
            remaining = self._run_sequence(to_run)

        return self.summarize(run_id, remaining, previously_completed=done)

    def _run_sequence(self, units: list[WorkUnit]) -> list[str]:
        """Run units in order. Returns the ids left unattempted."""
        for index, unit in enumerate(units):
            if self.cord.tripped:
                return [u.id for u in units[index:]]
            self.run_unit(unit)
        return []

    def _analyze(self, unit: WorkUnit) -> Optional[ControllerOutcome]:
        if self.cord.tripped:
            return None
        return self.controller.run(unit, unit_instructions(self.instructions, unit), unit.paths)

    def run_analysis(self, units: list[WorkUnit]) -> RunSummary:
        """
        Run an analysis-only workflow.

        Below pipeline.fan_out_threshold units this is the sequential loop.
        At or above it, units are analysed on a bounded thread pool and
        every result is joined before outcomes are recorded in scope order.
        """
        if not (self.workflow.parallel_analysis and len(units) >= self.config.pipeline.fan_out_threshold):
            return self.run_all(units)

        if not self.cord.armed:
            self.cord.arm()
        run_id = self._new_run_id()
        self._results = []
        to_run, done = self._prepare(units)
        if self.journal:
            self.journal.log_run_start(self.workflow.name, run_id, len(to_run))
        self._emit_progress("run_start", {"run_id": run_id, "units": [u.id for u in to_run], "parallel": True})
        self._log("analysis_fan_out", {
            "units": len(to_run),
            "max_parallel": self.config.pipeline.max_parallel,
        })

        executor = ThreadPoolExecutor(max_workers=max(1, self.config.pipeline.max_parallel))
        try:
            futures = [executor.submit(self._analyze, unit) for unit in to_run]
            outcomes = [f.result() for f in futures]
        except KeyboardInterrupt:
            self._trip(EscalationEvent(
                category=EscalationCategory.INTERRUPTED,
                reason="interrupted by user during analysis fan-out",
                step="run_analysis",
            ))
            # Queued units never start; running ones are joined before the summary
            executor.shutdown(wait=True, cancel_futures=True)
            return self.summarize(run_id, [u.id for u in to_run], previously_completed=done)
        executor.shutdown(wait=True)

        remaining: list[str] = []
        for index, (unit, outcome) in enumerate(zip(to_run, outcomes)):
            if self.cord.tripped:
                remaining = [u.id for u in to_run[index:]]
                break
            if outcome.state == ControllerState.SUCCEEDED:
                self._finish_unit(unit, UnitStatus.COMPLETED, outcome.reason, outcome)
            elif outcome.state == ControllerState.REVERTED:
                self._finish_unit(unit, UnitStatus.SKIPPED, outcome.reason, outcome)
            else:
                event = self._trip(outcome.escalation, in_flight=unit.id)
                self._finish_unit(unit, UnitStatus.ABORTED, outcome.reason, outcome, escalation=event)

        return self.summarize(run_id, remaining, previously_completed=done)

    def summarize(
        self,
        run_id: str,
        not_attempted: list[str],
        previously_completed: Optional[list[str]] = None,
    ) -> RunSummary:
        """Aggregate this run's results into a RunSummary."""
        summary = RunSummary(
            workflow=self.workflow.name,
            run_id=run_id,
            results=list(self._results),
            not_attempted=list(not_attempted),
            previously_completed=list(previously_completed or []),
            escalation=self.cord.event,
            cost_usd=self.invoker.get_total_cost(),
        )
        if self.journal:
            self.journal.log_run_end(
                run_id, len(summary.completed), len(summary.skipped), len(summary.aborted)
            )
        self._log("run_summary", summary.to_dict())
        self._emit_progress("run_end", summary.to_dict())
        return summary
