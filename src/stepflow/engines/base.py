from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

MessageType = Literal["assistant", "system", "tool_use", "tool_result", "result"]


class EngineError(RuntimeError):
    """Raised when a reasoning engine call fails."""

    def __init__(
        self,
        message: str,
        *,
        engine: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.engine = engine
        self.exit_code = exit_code
        self.retriable = retriable


class EngineTimeoutError(EngineError):
    """Raised when an engine call exceeds the configured timeout."""


class EngineProcessError(EngineError):
    """Raised when the engine process cannot be started or drained."""


@dataclass(frozen=True, slots=True)
class EngineRequest:
    prompt: str
    allowed_tools: tuple[str, ...]
    permission_mode: str = "acceptEdits"
    cwd: Path | None = None
    model: str = ""
    disallowed_tools: tuple[str, ...] = ()


@dataclass(slots=True)
class EngineMessage:
    type: MessageType
    content: str = ""
    tool_name: str | None = None
    tool_input: dict[str, Any] = field(default_factory=dict)
    is_error: bool = False
    cost_usd: float | None = None
    structured_output: dict[str, Any] | None = None


@dataclass(slots=True)
class EngineResult:
    text: str
    structured_output: dict[str, Any] | None = None
    cost_usd: float | None = None
    tool_calls: list[str] = field(default_factory=list)


class ReasoningEngine(ABC):
    name: str = "engine"

    @abstractmethod
    def stream(self, request: EngineRequest) -> AsyncIterator[EngineMessage]:
        """Send one step request and stream messages ending in a ``result`` message."""
