import subprocess
from pathlib import Path

import pytest

from stepflow.config import WorktreeConfig
from stepflow.errors import WorktreeError
from stepflow.session import RunSession, SessionStatus
from stepflow.state import WorktreeManager
from stepflow.state.worktree import REGISTRY_KEY


def _run(cmd: list[str], cwd: Path) -> str:
    proc = subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)
    return proc.stdout.strip()


def _init_git_repo(repo: Path) -> None:
    _run(["git", "init"], cwd=repo)
    _run(["git", "checkout", "-b", "main"], cwd=repo)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo)
    _run(["git", "config", "user.name", "Test User"], cwd=repo)
    (repo / "seed.txt").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "seed.txt"], cwd=repo)
    _run(["git", "commit", "-m", "seed"], cwd=repo)


def _session(session_id: str = "s1") -> RunSession:
    return RunSession(session_id=session_id, agent_name="iterator", current_step_id="work")


def _manager(repo: Path, events: list[dict] | None = None) -> WorktreeManager:
    hook = events.append if events is not None else None
    return WorktreeManager(repo, WorktreeConfig(), "iterator", event_hook=hook)


def test_outside_git_repository_runs_in_place(tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    handle = manager.acquire(_session())

    assert manager.isolated is False
    assert handle.in_place is True
    assert handle.path == tmp_path.resolve()
    assert manager.release(handle, SessionStatus.COMPLETED) == {"action": "none", "in_place": True}


def test_disabled_worktrees_run_in_place(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)

    manager = WorktreeManager(repo, WorktreeConfig(enabled=False), "iterator")

    assert manager.acquire(_session()).in_place is True


def test_completed_session_auto_commits_and_merges(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    events: list[dict] = []
    manager = _manager(repo, events)

    handle = manager.acquire(_session())
    assert handle.branch == "stepflow/iterator/s1"
    assert handle.base_ref == "main"
    assert handle.path.is_dir()
    assert manager.registry.read(REGISTRY_KEY)["s1"]["status"] == "active"

    (handle.path / "feature.txt").write_text("built by the agent\n", encoding="utf-8")
    outcome = manager.release(handle, SessionStatus.COMPLETED)

    assert outcome == {"action": "merged", "strategy": "squash", "auto_commit": True}
    assert (repo / "feature.txt").read_text(encoding="utf-8") == "built by the agent\n"
    assert not handle.path.exists()
    assert "stepflow/iterator/s1" not in _run(["git", "branch", "--list"], cwd=repo)
    assert manager.registry.read(REGISTRY_KEY) == {}
    assert "worktree_merged" in [event["event"] for event in events]


def test_handed_off_worktree_is_preserved_and_reattached(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    manager = _manager(repo)
    first = _session("s1")

    handle = manager.acquire(first)
    (handle.path / "partial.txt").write_text("half done\n", encoding="utf-8")
    outcome = manager.release(handle, SessionStatus.HANDED_OFF)

    assert outcome == {"action": "preserved", "path": str(handle.path)}
    assert (handle.path / "partial.txt").exists()
    assert manager.registry.read(REGISTRY_KEY)["s1"]["status"] == "handed_off"

    successor = RunSession(
        session_id="s2", agent_name="iterator", current_step_id="review", lineage_id="s1"
    )
    reattached = manager.reattach(handle.to_dict(), successor)

    assert reattached.path == handle.path
    assert reattached.owner_session_id == "s2"
    assert reattached.branch == handle.branch
    assert manager.registry.read(REGISTRY_KEY)["s1"]["owner_session_id"] == "s2"


def test_active_worktree_of_another_session_is_not_taken_over(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    manager = _manager(repo)

    handle = manager.acquire(_session("s1"))
    intruder = RunSession(
        session_id="s9", agent_name="iterator", current_step_id="work", lineage_id="s1"
    )

    with pytest.raises(WorktreeError, match="owned by running session s1"):
        manager.reattach(handle.to_dict(), intruder)


def test_failed_session_removes_worktree_but_keeps_branch(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    manager = _manager(repo)

    handle = manager.acquire(_session())
    (handle.path / "wip.txt").write_text("unfinished\n", encoding="utf-8")
    outcome = manager.release(handle, SessionStatus.FAILED)

    assert outcome == {"action": "discarded", "branch": handle.branch, "auto_commit": True}
    assert not handle.path.exists()
    assert not (repo / "wip.txt").exists()
    log = _run(["git", "log", "--format=%s", handle.branch], cwd=repo)
    assert log.splitlines()[0] == "stepflow: auto-commit s1 (failed)"


def test_merge_conflict_is_reported_and_aborted(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    manager = _manager(repo)

    handle = manager.acquire(_session())
    (handle.path / "seed.txt").write_text("agent version\n", encoding="utf-8")
    (repo / "seed.txt").write_text("human version\n", encoding="utf-8")
    _run(["git", "commit", "-am", "human edit"], cwd=repo)

    with pytest.raises(WorktreeError, match="Could not merge") as exc_info:
        manager.release(handle, SessionStatus.COMPLETED)

    assert exc_info.value.context["conflict_files"] == ["seed.txt"]
    assert (repo / "seed.txt").read_text(encoding="utf-8") == "human version\n"
    assert handle.path.exists()
    assert manager.registry.read(REGISTRY_KEY)["s1"]["status"] == "conflict"
