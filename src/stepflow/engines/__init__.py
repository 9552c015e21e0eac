from stepflow.engines.base import (
    EngineError,
    EngineMessage,
    EngineProcessError,
    EngineRequest,
    EngineResult,
    EngineTimeoutError,
    ReasoningEngine,
)
from stepflow.engines.claude import ClaudeCodeEngine

__all__ = [
    "ClaudeCodeEngine",
    "EngineError",
    "EngineMessage",
    "EngineProcessError",
    "EngineRequest",
    "EngineResult",
    "EngineTimeoutError",
    "ReasoningEngine",
]
