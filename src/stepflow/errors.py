from __future__ import annotations

from typing import Any


class StepFlowError(RuntimeError):
    """Base class for every error the orchestrator knows how to classify."""

    retriable: bool = False

    def __init__(
        self,
        message: str,
        *,
        step_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.step_id = step_id
        self.context = dict(context or {})

    @property
    def error_class(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_class": self.error_class,
            "message": str(self),
            "step_id": self.step_id,
            "retriable": self.retriable,
            "context": dict(self.context),
        }


class ConfigError(StepFlowError):
    """Malformed agent definition or step graph."""


class SchemaResolutionFailure(StepFlowError):
    """Structured output missing, unparsable, or not matching the step schema."""

    retriable = True


class RateLimitError(StepFlowError):
    retriable = True


class TransientError(StepFlowError):
    retriable = True


class StepGraphError(StepFlowError):
    """Transition to a step id that is not part of the graph."""


class BoundaryViolation(StepFlowError):
    """Disallowed tool or intent for the active step kind."""


class WorktreeError(StepFlowError):
    """Working copy could not be created, merged, or cleaned."""


class HandoffMismatch(StepFlowError):
    """Resume lineage does not match the stored hand-off payload."""


class RunCancelled(StepFlowError):
    """Abort flag observed at a step boundary."""


class IterationLimitExceeded(StepFlowError):
    """Safety cap on iterations reached without a completion signal."""
