from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from stepflow.retry import RetryState


class SessionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    HANDED_OFF = "handed_off"

    @property
    def terminal(self) -> bool:
        return self is not SessionStatus.RUNNING


def new_session_id() -> str:
    stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
    return f"{stamp}-{uuid.uuid4().hex[:8]}"


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class RunSession:
    session_id: str
    agent_name: str
    current_step_id: str
    iteration_count: int = 0
    started_at: str = field(default_factory=utcnow_iso)
    resumed_from_session_id: str | None = None
    lineage_id: str = ""
    status: SessionStatus = SessionStatus.RUNNING
    last_output: str = ""
    retry_state: RetryState = field(default_factory=RetryState)

    def __post_init__(self) -> None:
        if not self.lineage_id:
            self.lineage_id = self.session_id

    @classmethod
    def start(cls, agent_name: str, entry_step: str) -> RunSession:
        return cls(session_id=new_session_id(), agent_name=agent_name, current_step_id=entry_step)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "agent_name": self.agent_name,
            "current_step_id": self.current_step_id,
            "iteration_count": self.iteration_count,
            "started_at": self.started_at,
            "resumed_from_session_id": self.resumed_from_session_id,
            "lineage_id": self.lineage_id,
            "status": self.status.value,
        }


@dataclass(slots=True)
class TerminalOutcome:
    status: SessionStatus
    session_id: str
    lineage_id: str
    step_id: str | None = None
    iterations: int = 0
    error_class: str | None = None
    error: str | None = None
    counters: dict[str, int] = field(default_factory=dict)
    handoff_path: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        if self.status in {SessionStatus.COMPLETED, SessionStatus.HANDED_OFF}:
            return 0
        return 1

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status.value,
            "session_id": self.session_id,
            "lineage_id": self.lineage_id,
            "step_id": self.step_id,
            "iterations": self.iterations,
            "exit_code": self.exit_code,
        }
        if self.error_class:
            payload["error_class"] = self.error_class
            payload["error"] = self.error
            payload["counters"] = dict(self.counters)
        if self.handoff_path:
            payload["handoff_path"] = self.handoff_path
        if self.context:
            payload["context"] = dict(self.context)
        return payload
