from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from stepflow.errors import HandoffMismatch
from stepflow.session import RunSession, new_session_id, utcnow_iso
from stepflow.state.store import JsonEnvelopeStore, StateStoreError

HANDOFF_DIR = ".stepflow/handoffs"


@dataclass(slots=True)
class HandoffPayload:
    lineage_session_id: str
    session_id: str
    agent_name: str
    last_step_id: str
    resume_step_id: str
    iteration_count: int
    summary: str = ""
    artifacts: list[Any] = field(default_factory=list)
    worktree: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "lineage_session_id": self.lineage_session_id,
            "session_id": self.session_id,
            "agent_name": self.agent_name,
            "last_step_id": self.last_step_id,
            "resume_step_id": self.resume_step_id,
            "iteration_count": self.iteration_count,
            "summary": self.summary,
            "artifacts": list(self.artifacts),
            "worktree": dict(self.worktree),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HandoffPayload:
        try:
            return cls(
                lineage_session_id=str(data["lineage_session_id"]),
                session_id=str(data["session_id"]),
                agent_name=str(data["agent_name"]),
                last_step_id=str(data["last_step_id"]),
                resume_step_id=str(data.get("resume_step_id") or data["last_step_id"]),
                iteration_count=int(data.get("iteration_count", 0)),
                summary=str(data.get("summary", "")),
                artifacts=list(data.get("artifacts") or []),
                worktree=dict(data.get("worktree") or {}),
                created_at=str(data.get("created_at") or utcnow_iso()),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise HandoffMismatch(f"Malformed hand-off payload: {exc}") from exc


def serialize_handoff(
    session: RunSession,
    *,
    last_step_id: str,
    summary: str = "",
    artifacts: list[Any] | None = None,
    worktree: dict[str, Any] | None = None,
) -> HandoffPayload:
    """Capture ``session`` so that a later process can continue it.

    ``session.current_step_id`` must already point at the step that runs
    after the hand-off point.
    """
    return HandoffPayload(
        lineage_session_id=session.lineage_id,
        session_id=session.session_id,
        agent_name=session.agent_name,
        last_step_id=last_step_id,
        resume_step_id=session.current_step_id,
        iteration_count=session.iteration_count,
        summary=summary,
        artifacts=list(artifacts or []),
        worktree=dict(worktree or {}),
    )


def restore_from_handoff(
    payload: HandoffPayload,
    *,
    agent_name: str,
    expected_lineage: str | None = None,
) -> RunSession:
    if expected_lineage is not None and payload.lineage_session_id != expected_lineage:
        raise HandoffMismatch(
            f"Hand-off lineage {payload.lineage_session_id} does not match requested "
            f"lineage {expected_lineage}.",
            context={"expected": expected_lineage, "found": payload.lineage_session_id},
        )
    if payload.agent_name != agent_name:
        raise HandoffMismatch(
            f"Hand-off belongs to agent '{payload.agent_name}', not '{agent_name}'.",
            context={"lineage": payload.lineage_session_id},
        )
    return RunSession(
        session_id=new_session_id(),
        agent_name=agent_name,
        current_step_id=payload.resume_step_id,
        iteration_count=payload.iteration_count,
        resumed_from_session_id=payload.session_id,
        lineage_id=payload.lineage_session_id,
    )


class HandoffStore:
    """Hand-off payloads keyed by lineage id under ``.stepflow/handoffs``."""

    def __init__(self, repo_root: Path) -> None:
        self.store = JsonEnvelopeStore(repo_root / HANDOFF_DIR)

    def path(self, lineage_id: str) -> Path:
        return self.store.path(lineage_id)

    def save(self, payload: HandoffPayload) -> Path:
        self.store.write(payload.lineage_session_id, payload.to_dict())
        return self.path(payload.lineage_session_id)

    def load(self, lineage_id: str) -> HandoffPayload:
        try:
            data = self.store.read(lineage_id)
        except StateStoreError as exc:
            raise HandoffMismatch(str(exc)) from exc
        if not isinstance(data, dict):
            raise HandoffMismatch(f"No hand-off found for lineage {lineage_id}.")
        payload = HandoffPayload.from_dict(data)
        if payload.lineage_session_id != lineage_id:
            raise HandoffMismatch(
                f"Hand-off stored under {lineage_id} carries lineage "
                f"{payload.lineage_session_id}."
            )
        return payload

    def list_handoffs(self, agent_name: str | None = None) -> list[HandoffPayload]:
        ranked: list[tuple[str, int, HandoffPayload]] = []
        for key in self.store.keys():
            data = self.store.read(key)
            if not isinstance(data, dict):
                continue
            payload = HandoffPayload.from_dict(data)
            if agent_name is None or payload.agent_name == agent_name:
                ranked.append((payload.created_at, self.path(key).stat().st_mtime_ns, payload))
        ranked.sort(key=lambda item: (item[0], item[1]))
        return [payload for _, _, payload in ranked]

    def latest(self, agent_name: str) -> HandoffPayload | None:
        payloads = self.list_handoffs(agent_name)
        return payloads[-1] if payloads else None

    def delete(self, lineage_id: str) -> bool:
        return self.store.delete(lineage_id)
