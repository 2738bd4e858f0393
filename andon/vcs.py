"""
Version Control Adapter for Andon.

Every WorkUnit runs on its own branch cut from the integration branch:

- `create_scope(unit_id, base_branch)`: record the base commit and check out
  a fresh unit branch.
- `commit(handle, paths, message)`: stage only the given paths and commit.
  Returns None when nothing was staged.
- `merge(handle)`: merge the unit branch into its base with `--no-ff --no-edit`.
  On failure the merge is aborted and ConflictError is raised; conflicts
  are never resolved automatically.
- `revert(handle)`: `reset --hard` to the base commit, remove untracked files
  and any ignored files the unit created, leaving the tree as it was before
  the unit's first attempt. Ignored files that predate the unit are kept.
- `destroy_scope(handle)`: return to the base branch and delete the unit branch.

`DryRunVcsAdapter` has the same surface and touches nothing.
`GitDisabledAdapter` is the same for analysis workflows when git is off, and
refuses to start a mutating workflow.

The `.andon/` state directory is ignored by dirtiness checks and never
cleaned.
"""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from andon.config import AndonConfig
    from andon.logger import RunLogger


class VcsError(Exception):
    """Raised when a git operation fails."""

    def __init__(self, message: str, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


class ConflictError(VcsError):
    """Raised when a unit branch cannot be merged cleanly."""

    def __init__(self, message: str, branch: str, stderr: str = "") -> None:
        super().__init__(message, stderr)
        self.branch = branch


@dataclass(frozen=True)
class ScopeHandle:
    unit_id: str
    branch: str
    base_branch: str
    base_commit: str
    # Ignored files present before the unit started; revert removes any others
    ignored_before: frozenset[str] = frozenset()


_UNSAFE_REF_CHARS = re.compile(r"[^A-Za-z0-9._/-]+")


def branch_name_for(pattern: str, workflow: str, unit_id: str) -> str:
    """Render the unit branch name, replacing characters git refuses in refs."""
    safe_id = _UNSAFE_REF_CHARS.sub("-", unit_id).strip("-/.") or "unit"
    return pattern.format(workflow=workflow, unit_id=safe_id)


def is_unit_branch(pattern: str, branch: str) -> bool:
    """True when branch could have been rendered from pattern by branch_name_for."""
    pieces = re.split(r"(\{workflow\}|\{unit_id\})", pattern)
    regex = "".join(".+" if p in ("{workflow}", "{unit_id}") else re.escape(p) for p in pieces)
    return re.fullmatch(regex, branch) is not None


class GitAdapter:
    """Real implementation that shells out to `git`."""

    def __init__(
        self,
        config: AndonConfig,
        workflow: str,
        logger: Optional[RunLogger] = None,
    ) -> None:
        self.config = config
        self.workflow = workflow
        self.repo_root = Path(config.repo_root)
        self._logger = logger

    def _log(
        self, event_type: str, data: Optional[dict] = None, level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def _git(self, args: list[str], *, check: bool = True) -> subprocess.CompletedProcess:
        try:
            p = subprocess.run(
                ["git", *args],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as e:
            raise VcsError("git executable not found") from e
        if check and p.returncode != 0:
            raise VcsError(
                f"git {' '.join(args[:3])} failed: {p.stderr.strip() or p.stdout.strip()}",
                stderr=p.stderr,
            )
        return p

    def _out(self, args: list[str]) -> str:
        return self._git(args).stdout

    # Paths that belong to Andon itself, relative to the repo root
    def _state_excludes(self) -> list[str]:
        excludes = [self.config.state_dir.rstrip("/")]
        try:
            progress_rel = self.config.progress_path.relative_to(self.repo_root).as_posix()
        except ValueError:
            progress_rel = ""
        if progress_rel and not progress_rel.startswith(excludes[0] + "/"):
            excludes.append(progress_rel)
        return excludes

    def _is_state_path(self, path: str) -> bool:
        for exclude in self._state_excludes():
            if path == exclude or path.startswith(exclude + "/"):
                return True
        return False

    def current_branch(self) -> str:
        out = self._out(["rev-parse", "--abbrev-ref", "HEAD"]).strip()
        if out == "HEAD":
            raise VcsError("Detached HEAD; run andon from a named branch.")
        return out

    def head_commit(self, ref: str = "HEAD") -> str:
        return self._out(["rev-parse", ref]).strip()

    def branch_exists(self, branch: str) -> bool:
        p = self._git(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], check=False)
        return p.returncode == 0

    def changed_paths(self) -> list[str]:
        """Paths with uncommitted changes, excluding Andon state."""
        out = self._out(["status", "--porcelain", "--untracked-files=all"])
        paths = []
        for line in out.splitlines():
            if len(line) < 4:
                continue
            path = line[3:]
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            path = path.strip('"')
            if not self._is_state_path(path):
                paths.append(path)
        return paths

    def preflight(self) -> str:
        """
        Check the repository is safe to run in and return the integration branch.

        Raises:
            VcsError: If not in a work tree, HEAD is detached, the tree is
                dirty, or the integration branch would be a unit branch.
        """
        inside = self._git(["rev-parse", "--is-inside-work-tree"], check=False)
        if inside.returncode != 0 or inside.stdout.strip() != "true":
            raise VcsError(f"{self.repo_root} is not a git work tree")

        dirty = self.changed_paths()
        if dirty:
            raise VcsError(
                "Working tree has uncommitted changes; commit or stash them first: "
                + ", ".join(dirty[:10])
            )

        current = self.current_branch()
        base = self.config.git.base_branch or current
        if base == current and is_unit_branch(self.config.git.branch_pattern, current):
            # An interrupted run left HEAD on a unit branch; merging into it would strand the work
            raise VcsError(
                f"HEAD is on unit branch {current!r} left by an interrupted run; "
                "check out the integration branch (or set git.base_branch) and re-run"
            )
        if base != current:
            self._git(["checkout", base])
        self._log("vcs_preflight_ok", {"base_branch": base})
        return base

    def create_scope(self, unit_id: str, base_branch: str) -> ScopeHandle:
        branch = branch_name_for(self.config.git.branch_pattern, self.workflow, unit_id)
        base_commit = self.head_commit(base_branch)
        ignored = self.ignored_files()
        # -B resets a branch left behind by an earlier run
        self._git(["checkout", "-B", branch, base_commit])
        self._log("scope_created", {
            "unit_id": unit_id,
            "branch": branch,
            "base_commit": base_commit,
        })
        return ScopeHandle(
            unit_id=unit_id,
            branch=branch,
            base_branch=base_branch,
            base_commit=base_commit,
            ignored_before=ignored,
        )

    def ignored_files(self) -> frozenset[str]:
        """Untracked files matched by ignore rules, outside Andon state."""
        out = self._out(["ls-files", "--others", "--ignored", "--exclude-standard", "-z"])
        return frozenset(p for p in out.split("\0") if p and not self._is_state_path(p))

    def _remove_new_ignored(self, handle: ScopeHandle) -> list[str]:
        created = sorted(self.ignored_files() - handle.ignored_before)
        root = self.repo_root.resolve()
        for rel in created:
            target = self.repo_root / rel
            target.unlink(missing_ok=True)
            parent = target.parent.resolve()
            while parent != root and root in parent.parents and not any(parent.iterdir()):
                parent.rmdir()
                parent = parent.parent
        return created

    def _stageable(self, paths: list[str]) -> list[str]:
        result = []
        for path in paths:
            if self._is_state_path(path):
                continue
            if (self.repo_root / path).exists():
                result.append(path)
            elif self._out(["ls-files", "--", path]).strip():
                # Tracked and deleted
                result.append(path)
        return result

    def commit(self, handle: ScopeHandle, paths: list[str], message: str) -> Optional[str]:
        """
        Stage exactly `paths` (additions, edits and deletions) and commit.

        Returns:
            The new commit hash, or None when nothing was staged.
        """
        stageable = self._stageable(paths)
        if stageable:
            self._git(["add", "-A", "--", *stageable])

        staged = self._git(["diff", "--cached", "--quiet"], check=False)
        if staged.returncode == 0:
            self._log("commit_skipped_empty", {"unit_id": handle.unit_id})
            return None

        full_message = (
            f"{self.config.git.commit_prefix}({self.workflow}): {message} [{handle.unit_id}]"
        )
        self._git(["commit", "-m", full_message])
        commit_hash = self.head_commit()
        self._log("commit_created", {
            "unit_id": handle.unit_id,
            "commit": commit_hash,
            "paths": stageable,
        })
        return commit_hash

    def discard_uncommitted(self, handle: ScopeHandle) -> list[str]:
        """
        Drop changes the unit left outside its commit.

        Returns:
            The paths that were discarded.
        """
        leftovers = self.changed_paths()
        if leftovers:
            self._git(["reset", "--hard", "HEAD"])
            self._clean()
            self._log("uncommitted_changes_discarded", {
                "unit_id": handle.unit_id,
                "paths": leftovers,
            }, level="warn")
        return leftovers

    def merge(self, handle: ScopeHandle) -> str:
        """
        Merge the unit branch into its base branch.

        Returns:
            The base branch head after the merge.

        Raises:
            ConflictError: If the merge cannot be applied cleanly.
        """
        self._git(["checkout", handle.base_branch])
        p = self._git(["merge", "--no-ff", "--no-edit", handle.branch], check=False)
        if p.returncode != 0:
            self._git(["merge", "--abort"], check=False)
            self._log("merge_conflict", {
                "unit_id": handle.unit_id,
                "branch": handle.branch,
                "stderr": p.stderr[:500],
            }, level="error")
            raise ConflictError(
                f"Merging {handle.branch} into {handle.base_branch} failed: "
                f"{(p.stdout + p.stderr).strip()[:300]}",
                branch=handle.branch,
                stderr=p.stderr,
            )
        merged = self.head_commit()
        self._log("merge_complete", {"unit_id": handle.unit_id, "commit": merged})
        return merged

    def _clean(self) -> None:
        args = ["clean", "-fd"]
        for exclude in self._state_excludes():
            args.extend(["-e", exclude])
        self._git(args)

    def revert(self, handle: ScopeHandle) -> None:
        """
        Restore the working tree to the unit's base commit.

        Ignored files the unit created (build output, caches) are removed
        too. Ignored files that existed before the unit are left alone.
        """
        self._git(["reset", "--hard", handle.base_commit])
        self._clean()
        removed = self._remove_new_ignored(handle)
        self._log("scope_reverted", {
            "unit_id": handle.unit_id,
            "base_commit": handle.base_commit,
            "ignored_removed": removed,
        })

    def destroy_scope(self, handle: ScopeHandle, keep_branch: bool = False) -> None:
        """Return to the base branch and delete the unit branch unless keep_branch."""
        if self.current_branch() != handle.base_branch:
            self._git(["checkout", handle.base_branch])
        if not keep_branch and self.branch_exists(handle.branch):
            self._git(["branch", "-D", handle.branch])
        self._log("scope_destroyed", {
            "unit_id": handle.unit_id,
            "branch": handle.branch,
            "kept": keep_branch,
        })

    def diff_stat(self, handle: ScopeHandle) -> tuple[int, int]:
        """(insertions, deletions) between the base commit and the unit branch."""
        out = self._out(["diff", "--numstat", f"{handle.base_commit}..{handle.branch}"])
        insertions = deletions = 0
        for line in out.splitlines():
            parts = line.split("\t")
            if len(parts) < 3:
                continue
            # Binary files report "-"
            if parts[0].isdigit():
                insertions += int(parts[0])
            if parts[1].isdigit():
                deletions += int(parts[1])
        return insertions, deletions

    def commit_file(self, path: Path, message: str) -> Optional[str]:
        """Commit one file on the current branch, even if it lives under .andon/."""
        rel = Path(path).resolve().relative_to(self.repo_root.resolve()).as_posix()
        self._git(["add", "-f", "--", rel])
        staged = self._git(["diff", "--cached", "--quiet"], check=False)
        if staged.returncode == 0:
            return None
        self._git(["commit", "-m", f"{self.config.git.commit_prefix}: {message}"])
        return self.head_commit()


class DryRunVcsAdapter:
    """A no-op adapter for --dry-run."""

    def __init__(self, config: AndonConfig, workflow: str, logger: Optional[RunLogger] = None) -> None:
        self.config = config
        self.workflow = workflow
        self._logger = logger

    def preflight(self) -> str:
        return self.config.git.base_branch or "dry-run"

    def create_scope(self, unit_id: str, base_branch: str) -> ScopeHandle:
        branch = branch_name_for(self.config.git.branch_pattern, self.workflow, unit_id)
        return ScopeHandle(unit_id=unit_id, branch=branch, base_branch=base_branch, base_commit="DRYRUN")

    def changed_paths(self) -> list[str]:
        return []

    def commit(self, handle: ScopeHandle, paths: list[str], message: str) -> Optional[str]:
        return None

    def discard_uncommitted(self, handle: ScopeHandle) -> list[str]:
        return []

    def merge(self, handle: ScopeHandle) -> str:
        return "DRYRUN"

    def revert(self, handle: ScopeHandle) -> None:
        return None

    def destroy_scope(self, handle: ScopeHandle, keep_branch: bool = False) -> None:
        return None

    def diff_stat(self, handle: ScopeHandle) -> tuple[int, int]:
        return 0, 0

    def commit_file(self, path: Path, message: str) -> Optional[str]:
        return None


class GitDisabledAdapter(DryRunVcsAdapter):
    """
    Stands in for git when ``git.enabled`` is false.

    Analysis workflows never write, so they run normally. A mutating
    workflow could not revert a failed unit, so preflight refuses it.
    """

    def __init__(
        self,
        config: AndonConfig,
        workflow: str,
        mutates: bool,
        logger: Optional[RunLogger] = None,
    ) -> None:
        super().__init__(config, workflow, logger)
        self.mutates = mutates

    def preflight(self) -> str:
        if self.mutates:
            raise VcsError(
                f"git.enabled is false but {self.workflow} changes files; "
                "mutating workflows need git to revert failed units"
            )
        return super().preflight()
