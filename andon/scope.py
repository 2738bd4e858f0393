"""
Scope resolution for Andon.

Turns a scope request (explicit ids or paths, a query, or the whole
project) into an ordered list of WorkUnits:

- ticket workflows fetch from an IssueSource (a ticket file or GitHub)
- file workflows enumerate project files, one unit per file
- module workflows group files by directory, one unit per directory
- batch workflows partition files into directory-grouped batches

Ordering respects explicit dependencies plus shared-path overlap (a unit
touching a path an earlier unit touches runs after it), simplest first on
ties. The same inputs always give the same order.

Any failure to reach the source of truth raises ScopeResolutionError,
which the orchestrator escalates.
"""

from __future__ import annotations

import fnmatch
import json
import os
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, Protocol

import yaml

from andon.models import WorkUnit
from andon.planning import DependencyGraph

if TYPE_CHECKING:
    from andon.config import AndonConfig
    from andon.logger import RunLogger
    from andon.workflows import WorkflowSpec


class ScopeResolutionError(Exception):
    """Raised when the scope cannot be resolved."""
    pass


SCOPE_KINDS = ("explicit", "query", "project")

# Directories never treated as project source
_SKIP_DIRS = {".git", ".andon", ".claude", "__pycache__", "node_modules", ".venv", "venv", ".tox"}

_DEPENDS_ON = re.compile(r"depends\s+on\s+((?:#\d+[\s,]*(?:and\s+)?)+)", re.IGNORECASE)
_ISSUE_REF = re.compile(r"#(\d+)")
_SIZE_LABELS = {"xs": 1, "s": 2, "small": 2, "m": 3, "medium": 3, "l": 4, "large": 4, "xl": 5}


@dataclass
class ScopeRequest:
    """What the caller asked to work on."""

    kind: str = "project"
    items: list[str] = field(default_factory=list)      # ids or paths for "explicit"
    query: str = ""                                      # for "query"

    def __post_init__(self) -> None:
        if self.kind not in SCOPE_KINDS:
            raise ScopeResolutionError(
                f"Unknown scope kind {self.kind!r}; expected one of {', '.join(SCOPE_KINDS)}"
            )

    @classmethod
    def from_args(cls, items: Optional[list[str]], query: Optional[str]) -> ScopeRequest:
        """Build a request from CLI arguments."""
        if query:
            return cls(kind="query", query=query)
        if items:
            return cls(kind="explicit", items=list(items))
        return cls(kind="project")


@dataclass
class Ticket:
    """One item from an issue tracker or blueprint file."""

    id: str
    title: str
    body: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    paths: list[str] = field(default_factory=list)
    complexity: int = 0

    def to_work_unit(self) -> WorkUnit:
        body = self.body
        if self.acceptance_criteria:
            criteria = "\n".join(f"- {c}" for c in self.acceptance_criteria)
            body = f"{body}\n\nAcceptance criteria:\n{criteria}".strip()
        return WorkUnit(
            id=self.id,
            description=self.title,
            paths=list(self.paths),
            dependencies=list(self.dependencies),
            complexity=self.complexity,
            body=body,
        )


class IssueSource(Protocol):
    def fetch(self, query: Optional[str] = None) -> list[Ticket]:
        """Return tickets matching query (all open tickets when None)."""
        ...


def parse_acceptance_criteria(body: str) -> list[str]:
    """Checklist items under an "Acceptance Criteria" heading."""
    criteria = []
    in_section = False
    for line in body.splitlines():
        stripped = line.strip()
        if stripped.startswith("#"):
            in_section = "acceptance criteria" in stripped.lower()
            continue
        if in_section:
            match = re.match(r"^[-*]\s*(?:\[[ xX]\]\s*)?(.+)$", stripped)
            if match:
                criteria.append(match.group(1).strip())
    return criteria


def parse_dependencies(body: str) -> list[str]:
    """Issue numbers from "depends on #N" lines."""
    deps: list[str] = []
    for match in _DEPENDS_ON.finditer(body):
        for ref in _ISSUE_REF.findall(match.group(1)):
            if ref not in deps:
                deps.append(ref)
    return deps


def _ticket_from_dict(data: dict[str, Any]) -> Ticket:
    if "id" not in data:
        raise ScopeResolutionError(f"Ticket without an id: {data!r}")
    body = str(data.get("body", "") or "")
    criteria = data.get("acceptance_criteria")
    deps = data.get("dependencies", data.get("depends_on", [])) or []
    return Ticket(
        id=str(data["id"]),
        title=str(data.get("title", data["id"])),
        body=body,
        acceptance_criteria=[str(c) for c in criteria] if criteria else parse_acceptance_criteria(body),
        labels=[str(label) for label in data.get("labels", []) or []],
        dependencies=[str(d) for d in deps],
        paths=[str(p) for p in data.get("paths", []) or []],
        complexity=int(data.get("complexity", 0) or 0),
    )


def _matches_query(ticket: Ticket, query: Optional[str]) -> bool:
    if not query:
        return True
    query = query.strip()
    if query.lower().startswith("label:"):
        wanted = query.split(":", 1)[1].strip().lower()
        return any(label.lower() == wanted for label in ticket.labels)
    needle = query.lower()
    return needle in ticket.title.lower() or needle in ticket.body.lower()


class FileIssueSource:
    """
    Tickets from a YAML or JSON file.

    Accepts a top-level list or a mapping with a "tickets" list.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def fetch(self, query: Optional[str] = None) -> list[Ticket]:
        if not self.path.exists():
            raise ScopeResolutionError(f"Ticket file not found: {self.path}")
        try:
            data = yaml.safe_load(self.path.read_text())
        except (yaml.YAMLError, OSError) as e:
            raise ScopeResolutionError(f"Could not read ticket file {self.path}: {e}")

        if isinstance(data, dict):
            data = data.get("tickets", [])
        if not isinstance(data, list):
            raise ScopeResolutionError(f"Ticket file {self.path} must hold a list of tickets")

        tickets = [_ticket_from_dict(item) for item in data if isinstance(item, dict)]
        return [t for t in tickets if _matches_query(t, query)]


class GitHubIssueSource:
    """Open issues fetched through the `gh` CLI."""

    FIELDS = "number,title,body,labels"

    def __init__(self, config: AndonConfig, logger: Optional[RunLogger] = None) -> None:
        self.config = config
        self._logger = logger

    def _log(
        self, event_type: str, data: Optional[dict] = None, level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def _run_gh(self, args: list[str]) -> str:
        cmd = ["gh", *args]
        if self.config.tracker.repo:
            cmd.extend(["--repo", self.config.tracker.repo])
        try:
            result = subprocess.run(
                cmd,
                cwd=str(self.config.repo_root),
                capture_output=True,
                text=True,
                timeout=self.config.tracker.timeout_seconds,
            )
        except FileNotFoundError as e:
            raise ScopeResolutionError("gh CLI not found; install GitHub CLI or use tracker.source: file") from e
        except subprocess.TimeoutExpired as e:
            raise ScopeResolutionError(
                f"gh timed out after {self.config.tracker.timeout_seconds} seconds"
            ) from e
        if result.returncode != 0:
            self._log("gh_command_failed", {"args": args, "stderr": result.stderr[:300]}, level="error")
            raise ScopeResolutionError(f"gh {' '.join(args[:2])} failed: {result.stderr.strip()[:300]}")
        return result.stdout

    def _to_ticket(self, issue: dict[str, Any]) -> Ticket:
        body = issue.get("body") or ""
        labels = [label.get("name", "") for label in issue.get("labels", []) or []]
        complexity = 0
        for label in labels:
            lowered = label.lower()
            for prefix in ("size:", "complexity:"):
                if lowered.startswith(prefix):
                    value = lowered[len(prefix):].strip()
                    complexity = int(value) if value.isdigit() else _SIZE_LABELS.get(value, 0)
        criteria = parse_acceptance_criteria(body)
        return Ticket(
            id=str(issue["number"]),
            title=issue.get("title", ""),
            body=body,
            acceptance_criteria=criteria,
            labels=labels,
            dependencies=parse_dependencies(body),
            complexity=complexity or len(criteria),
        )

    def fetch(self, query: Optional[str] = None) -> list[Ticket]:
        args = ["issue", "list", "--state", "open", "--limit", "200", "--json", self.FIELDS]
        if query:
            args.extend(["--search", query])
        stdout = self._run_gh(args)
        try:
            issues = json.loads(stdout or "[]")
        except json.JSONDecodeError as e:
            raise ScopeResolutionError(f"gh returned invalid JSON: {e}")
        tickets = [self._to_ticket(issue) for issue in issues]
        self._log("issues_fetched", {"count": len(tickets), "query": query})
        return tickets


def issue_source_for(config: AndonConfig, logger: Optional[RunLogger] = None) -> IssueSource:
    if config.tracker.source == "github":
        return GitHubIssueSource(config, logger)
    return FileIssueSource(Path(config.repo_root) / config.tracker.path)


def list_project_files(repo_root: Path, use_git: bool = True) -> list[str]:
    """
    Repository-relative project files, sorted.

    Uses `git ls-files` when available, else walks the tree skipping
    hidden and tool directories.

    Raises:
        ScopeResolutionError: If git is requested but fails.
    """
    repo_root = Path(repo_root)
    if use_git and (repo_root / ".git").exists():
        try:
            result = subprocess.run(
                ["git", "ls-files"],
                cwd=repo_root,
                capture_output=True,
                text=True,
                check=True,
            )
        except (OSError, subprocess.CalledProcessError) as e:
            raise ScopeResolutionError(f"git ls-files failed: {e}")
        return sorted(line for line in result.stdout.splitlines() if line.strip())

    files = []
    for dirpath, dirnames, filenames in os.walk(repo_root):
        dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS and not d.startswith("."))
        for name in filenames:
            rel = (Path(dirpath) / name).relative_to(repo_root).as_posix()
            files.append(rel)
    return sorted(files)


def filter_paths(paths: list[str], include: list[str], exclude: list[str]) -> list[str]:
    """Keep paths matching any include glob and no exclude glob."""
    def matches(path: str, patterns: list[str]) -> bool:
        name = path.rsplit("/", 1)[-1]
        return any(fnmatch.fnmatch(path, p) or fnmatch.fnmatch(name, p) for p in patterns)

    return [
        p for p in paths
        if (not include or matches(p, include)) and not (exclude and matches(p, exclude))
    ]


def _parent(path: str) -> str:
    return path.rsplit("/", 1)[0] if "/" in path else "."


def partition(paths: list[str], batch_size: int) -> list[list[str]]:
    """
    Split paths into batches of at most batch_size, never mixing directories.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    groups: dict[str, list[str]] = {}
    for path in sorted(paths):
        groups.setdefault(_parent(path), []).append(path)
    batches = []
    for directory in sorted(groups):
        members = groups[directory]
        for start in range(0, len(members), batch_size):
            batches.append(members[start:start + batch_size])
    return batches


def _line_count(repo_root: Path, path: str) -> int:
    try:
        with open(repo_root / path, "rb") as f:
            return f.read().count(b"\n")
    except OSError:
        return 0


class ScopeResolver:
    """Resolves a ScopeRequest for one workflow into ordered WorkUnits."""

    def __init__(
        self,
        config: AndonConfig,
        workflow: WorkflowSpec,
        source: Optional[IssueSource] = None,
        logger: Optional[RunLogger] = None,
    ) -> None:
        self.config = config
        self.workflow = workflow
        self._source = source
        self._logger = logger
        self.repo_root = Path(config.repo_root)

    @property
    def source(self) -> IssueSource:
        if self._source is None:
            self._source = issue_source_for(self.config, self._logger)
        return self._source

    def _log(
        self, event_type: str, data: Optional[dict] = None, level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def resolve(self, request: ScopeRequest) -> list[WorkUnit]:
        """
        Produce the ordered, dependency-respecting list of units.

        Raises:
            ScopeResolutionError: If the source is unreachable, an explicit
                item is unknown, dependencies form a cycle, or nothing is in scope.
        """
        if self.workflow.scope_kind == "tickets":
            units = self._ticket_units(request)
        else:
            units = self._file_units(request)

        if not units:
            raise ScopeResolutionError(
                f"Nothing in scope for {self.workflow.name} ({request.kind}"
                + (f": {request.query}" if request.query else "")
                + ")"
            )

        ordered = self.order_units(units)
        self._log("scope_resolved", {
            "workflow": self.workflow.name,
            "kind": request.kind,
            "units": [u.id for u in ordered],
        })
        return ordered

    def _ticket_units(self, request: ScopeRequest) -> list[WorkUnit]:
        if request.kind == "query":
            tickets = self.source.fetch(request.query)
        else:
            tickets = self.source.fetch(None)

        if request.kind == "explicit":
            by_id = {t.id.lstrip("#"): t for t in tickets}
            wanted = [item.lstrip("#") for item in request.items]
            missing = [w for w in wanted if w not in by_id]
            if missing:
                raise ScopeResolutionError(f"Unknown ticket(s): {', '.join(missing)}")
            tickets = [by_id[w] for w in dict.fromkeys(wanted)]

        return [t.to_work_unit() for t in tickets]

    def _candidate_files(self, request: ScopeRequest) -> list[str]:
        all_files = list_project_files(self.repo_root, use_git=self.config.git.enabled)
        if request.kind == "explicit":
            selected: list[str] = []
            for item in request.items:
                item = item.rstrip("/")
                target = self.repo_root / item
                if target.is_dir():
                    prefix = "" if item in ("", ".") else item + "/"
                    selected.extend(f for f in all_files if f.startswith(prefix))
                elif target.exists():
                    selected.append(Path(item).as_posix())
                else:
                    raise ScopeResolutionError(f"Path not found: {item}")
            files = sorted(dict.fromkeys(selected))
        elif request.kind == "query":
            files = [f for f in all_files if fnmatch.fnmatch(f, request.query)]
        else:
            files = all_files
        return filter_paths(files, self.workflow.include, self.workflow.exclude)

    def _file_units(self, request: ScopeRequest) -> list[WorkUnit]:
        files = self._candidate_files(request)
        kind = self.workflow.scope_kind

        if kind == "files":
            return [
                WorkUnit(
                    id=path,
                    description=f"{self.workflow.name} {path}",
                    paths=[path],
                    complexity=_line_count(self.repo_root, path),
                )
                for path in files
            ]

        if kind == "modules":
            groups: dict[str, list[str]] = {}
            for path in files:
                groups.setdefault(_parent(path), []).append(path)
            return [
                WorkUnit(
                    id=directory,
                    description=f"{self.workflow.name} module {directory}",
                    paths=members,
                    complexity=len(members),
                )
                for directory, members in sorted(groups.items())
            ]

        batch_size = self.workflow.batch_size_for(self.config.pipeline.aggression)
        units = []
        counters: dict[str, int] = {}
        for batch in partition(files, batch_size):
            directory = _parent(batch[0])
            counters[directory] = counters.get(directory, 0) + 1
            units.append(WorkUnit(
                id=f"{directory}#{counters[directory]}",
                description=f"{self.workflow.name} batch of {len(batch)} file(s) in {directory}",
                paths=batch,
                complexity=sum(_line_count(self.repo_root, p) for p in batch),
            ))
        return units

    def order_units(self, units: list[WorkUnit]) -> list[WorkUnit]:
        """
        Topologically order units.

        Explicit dependencies on ids outside the scope are dropped with a
        warning. Shared-path overlap adds an edge from the later unit to the
        earlier one unless that would contradict an explicit dependency.

        Raises:
            ScopeResolutionError: If explicit dependencies form a cycle.
        """
        by_id = {u.id: u for u in units}
        if len(by_id) != len(units):
            raise ScopeResolutionError("Duplicate unit ids in scope")

        graph = DependencyGraph()
        for index, unit in enumerate(units):
            known = [d for d in unit.dependencies if d in by_id]
            unknown = [d for d in unit.dependencies if d not in by_id]
            if unknown:
                self._log("unknown_dependencies_ignored", {
                    "unit_id": unit.id,
                    "dependencies": unknown,
                }, level="warn")
            graph.add_unit(unit.id, known, complexity=unit.complexity, index=index)

        has_cycle, cycle = graph.has_cycle()
        if has_cycle:
            raise ScopeResolutionError(f"Dependency cycle between: {', '.join(cycle)}")

        for j, later in enumerate(units):
            later_paths = set(later.paths)
            if not later_paths:
                continue
            for earlier in units[:j]:
                if later_paths & set(earlier.paths) and not self._depends_on(graph, earlier.id, later.id):
                    graph.add_dependency(later.id, earlier.id)

        return [by_id[uid] for uid in graph.topological_sort()]

    @staticmethod
    def _depends_on(graph: DependencyGraph, unit_id: str, other_id: str) -> bool:
        """True if unit_id transitively depends on other_id."""
        stack = [unit_id]
        seen: set[str] = set()
        while stack:
            node = stack.pop()
            if node == other_id:
                return True
            if node in seen:
                continue
            seen.add(node)
            stack.extend(graph.get_direct_dependencies(node))
        return False
