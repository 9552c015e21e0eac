from __future__ import annotations

import logging
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from stepflow.config import WorktreeConfig
from stepflow.errors import WorktreeError
from stepflow.session import RunSession, SessionStatus
from stepflow.state.store import JsonEnvelopeStore

STATE_DIR = ".stepflow"
REGISTRY_KEY = "worktrees"

_internal = logging.getLogger(__name__)


@dataclass(slots=True)
class WorktreeHandle:
    path: Path
    owner_session_id: str
    base_ref: str
    branch: str = ""
    lineage_id: str = ""
    in_place: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "owner_session_id": self.owner_session_id,
            "base_ref": self.base_ref,
            "branch": self.branch,
            "lineage_id": self.lineage_id,
            "in_place": self.in_place,
        }


@dataclass(frozen=True, slots=True)
class MergeResult:
    success: bool
    strategy: str
    error: str = ""
    conflict_files: tuple[str, ...] = ()


class WorktreeManager:
    """Gives each run session a private git worktree on its own branch.

    Outside a git repository, or with worktrees disabled, sessions run in
    place and release is a no-op.
    """

    def __init__(
        self,
        repo_root: Path,
        config: WorktreeConfig,
        agent_name: str,
        *,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.config = config
        self.agent_name = agent_name
        self.event_hook = event_hook
        self.registry = JsonEnvelopeStore(self.repo_root / STATE_DIR)
        self._git_enabled = self._is_git_repo()

    @property
    def isolated(self) -> bool:
        return self.config.enabled and self._git_enabled

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    def _is_git_repo(self) -> bool:
        proc = subprocess.run(
            ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _run_git(
        self, args: list[str], *, cwd: Path | None = None, check: bool = True
    ) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=cwd or self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise WorktreeError(
                f"git {' '.join(args)} failed: {proc.stderr.strip() or proc.stdout.strip()}"
            )
        return proc

    def current_branch(self) -> str:
        branch = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()
        if branch == "HEAD":
            return self._run_git(["rev-parse", "HEAD"]).stdout.strip()
        return branch

    def _branch_exists(self, branch: str) -> bool:
        proc = self._run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], check=False
        )
        return proc.returncode == 0

    def _registry(self) -> dict[str, Any]:
        data = self.registry.read(REGISTRY_KEY)
        return data if isinstance(data, dict) else {}

    def _record(self, handle: WorktreeHandle, status: str) -> None:
        registry = self._registry()
        registry[handle.lineage_id] = {
            **handle.to_dict(),
            "agent": self.agent_name,
            "status": status,
        }
        self.registry.write(REGISTRY_KEY, registry)

    def _forget(self, handle: WorktreeHandle) -> None:
        registry = self._registry()
        if registry.pop(handle.lineage_id, None) is not None:
            self.registry.write(REGISTRY_KEY, registry)

    def _in_place(self, session: RunSession) -> WorktreeHandle:
        return WorktreeHandle(
            path=self.repo_root,
            owner_session_id=session.session_id,
            base_ref="",
            lineage_id=session.lineage_id,
            in_place=True,
        )

    def _check_unowned(self, session: RunSession) -> None:
        entry = self._registry().get(session.lineage_id)
        if not isinstance(entry, dict) or entry.get("status") != "active":
            return
        if entry.get("owner_session_id") != session.session_id:
            raise WorktreeError(
                f"Worktree for lineage {session.lineage_id} is owned by running session "
                f"{entry.get('owner_session_id')}.",
                context={"path": entry.get("path")},
            )

    def acquire(self, session: RunSession) -> WorktreeHandle:
        if not self.isolated:
            return self._in_place(session)
        self._check_unowned(session)

        base_ref = self.config.base_ref or self.current_branch()
        branch = f"stepflow/{self.agent_name}/{session.session_id}"
        path = self.repo_root / self.config.root / f"{self.agent_name}-{session.session_id}"
        if path.exists():
            raise WorktreeError(f"Worktree path already exists: {path}")
        path.parent.mkdir(parents=True, exist_ok=True)
        self._run_git(["worktree", "add", "-b", branch, str(path), base_ref])

        handle = WorktreeHandle(
            path=path,
            owner_session_id=session.session_id,
            base_ref=base_ref,
            branch=branch,
            lineage_id=session.lineage_id,
        )
        self._record(handle, "active")
        self._emit({"event": "worktree_acquired", **handle.to_dict()})
        return handle

    def reattach(self, worktree: dict[str, Any], session: RunSession) -> WorktreeHandle:
        """Take over the worktree a handed-off predecessor preserved."""
        if worktree.get("in_place") or not self.isolated:
            return self._in_place(session)
        self._check_unowned(session)

        path = Path(str(worktree.get("path", "")))
        branch = str(worktree.get("branch", ""))
        base_ref = str(worktree.get("base_ref", "")) or self.current_branch()
        if not path.is_dir():
            if not branch or not self._branch_exists(branch):
                raise WorktreeError(
                    f"Handed-off worktree {path} is gone and branch {branch!r} does not exist."
                )
            path.parent.mkdir(parents=True, exist_ok=True)
            self._run_git(["worktree", "add", str(path), branch])

        handle = WorktreeHandle(
            path=path,
            owner_session_id=session.session_id,
            base_ref=base_ref,
            branch=branch,
            lineage_id=session.lineage_id,
        )
        self._record(handle, "active")
        self._emit({"event": "worktree_reattached", **handle.to_dict()})
        return handle

    def auto_commit(self, handle: WorktreeHandle, status: SessionStatus) -> bool:
        """Commit anything left uncommitted in the worktree. Returns True if a commit was made."""
        if handle.in_place or not handle.path.is_dir():
            return False
        self._run_git(["add", "-A"], cwd=handle.path)
        message = f"stepflow: auto-commit {handle.owner_session_id} ({status.value})"
        proc = self._run_git(["commit", "-m", message], cwd=handle.path, check=False)
        if proc.returncode == 0:
            self._emit({"event": "worktree_auto_commit", "branch": handle.branch})
            return True
        output = f"{proc.stdout}\n{proc.stderr}"
        if "nothing to commit" in output or "nothing added to commit" in output:
            return False
        raise WorktreeError(f"Auto-commit failed in {handle.path}: {proc.stderr.strip()}")

    def _conflict_files(self) -> list[str]:
        proc = self._run_git(["diff", "--name-only", "--diff-filter=U"], check=False)
        return [line for line in proc.stdout.splitlines() if line.strip()]

    def _abort_merge(self) -> None:
        self._run_git(["reset", "--merge"], check=False)

    def _try_strategy(self, strategy: str, branch: str) -> MergeResult:
        if strategy == "fast-forward":
            proc = self._run_git(["merge", "--ff-only", branch], check=False)
            if proc.returncode == 0:
                return MergeResult(True, strategy)
            return MergeResult(False, strategy, proc.stderr.strip())

        if strategy == "squash":
            proc = self._run_git(["merge", "--squash", branch], check=False)
        else:
            proc = self._run_git(
                ["merge", "--no-ff", "-m", f"Merge branch '{branch}'", branch], check=False
            )
        if proc.returncode != 0:
            conflicts = self._conflict_files()
            self._abort_merge()
            if conflicts:
                return MergeResult(False, strategy, "Merge conflict", tuple(conflicts))
            return MergeResult(False, strategy, proc.stderr.strip() or proc.stdout.strip())
        if strategy == "merge-commit":
            return MergeResult(True, strategy)

        commit = self._run_git(
            ["commit", "-m", f"Squash merge branch '{branch}'"], check=False
        )
        nothing_staged = "nothing to commit" in commit.stdout or "nothing added" in commit.stdout
        if commit.returncode == 0 or nothing_staged:
            return MergeResult(True, strategy)
        self._abort_merge()
        return MergeResult(False, strategy, commit.stderr.strip() or commit.stdout.strip())

    def merge(self, handle: WorktreeHandle) -> MergeResult:
        if self.current_branch() != handle.base_ref:
            self._run_git(["checkout", handle.base_ref])
        result = MergeResult(False, "", "No merge strategies configured")
        for strategy in self.config.merge_strategies:
            result = self._try_strategy(strategy, handle.branch)
            if result.success or result.conflict_files:
                return result
        return MergeResult(False, result.strategy, f"All merge strategies failed: {result.error}")

    def _remove(self, handle: WorktreeHandle) -> None:
        if handle.path.exists():
            self._run_git(["worktree", "remove", "--force", str(handle.path)])
        self._run_git(["worktree", "prune"], check=False)

    def release(self, handle: WorktreeHandle, status: SessionStatus) -> dict[str, Any]:
        if handle.in_place:
            return {"action": "none", "in_place": True}

        if status is SessionStatus.HANDED_OFF:
            self._record(handle, "handed_off")
            self._emit({"event": "worktree_preserved", **handle.to_dict()})
            return {"action": "preserved", "path": str(handle.path)}

        committed = self.auto_commit(handle, status)
        if status is SessionStatus.COMPLETED:
            result = self.merge(handle)
            if not result.success:
                self._record(handle, "conflict")
                raise WorktreeError(
                    f"Could not merge {handle.branch} into {handle.base_ref}: {result.error}",
                    context={
                        "strategy": result.strategy,
                        "conflict_files": list(result.conflict_files),
                        "path": str(handle.path),
                    },
                )
            self._remove(handle)
            self._run_git(["branch", "-D", handle.branch], check=False)
            self._forget(handle)
            self._emit(
                {"event": "worktree_merged", "branch": handle.branch, "strategy": result.strategy}
            )
            return {"action": "merged", "strategy": result.strategy, "auto_commit": committed}

        # Unfinished work stays reachable on the session branch.
        self._remove(handle)
        self._forget(handle)
        self._emit({"event": "worktree_discarded", "branch": handle.branch})
        _internal.info(
            "Kept branch %s for session %s (%s)",
            handle.branch,
            handle.owner_session_id,
            status.value,
        )
        return {"action": "discarded", "branch": handle.branch, "auto_commit": committed}
