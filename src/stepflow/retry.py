from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any

from stepflow.config import RetryConfig
from stepflow.engines.base import EngineError, EngineTimeoutError
from stepflow.errors import (
    RateLimitError,
    SchemaResolutionFailure,
    StepFlowError,
    TransientError,
)

RATE_LIMIT_PATTERNS = (
    re.compile(r"rate.?limit", re.IGNORECASE),
    re.compile(r"\b429\b"),
    re.compile(r"too many requests", re.IGNORECASE),
    re.compile(r"you've hit your limit", re.IGNORECASE),
    re.compile(r"usage limit", re.IGNORECASE),
)
TRANSIENT_PATTERNS = (
    re.compile(r"ECONNREFUSED|ECONNRESET|ETIMEDOUT|ENOTFOUND", re.IGNORECASE),
    re.compile(r"connection (?:refused|reset|aborted)", re.IGNORECASE),
    re.compile(r"timed? ?out", re.IGNORECASE),
    re.compile(r"network.*unreachable", re.IGNORECASE),
    re.compile(r"temporary failure in name resolution", re.IGNORECASE),
    re.compile(r"socket hang up", re.IGNORECASE),
    re.compile(r"\b50[0234]\b|internal server error|overloaded", re.IGNORECASE),
)
FATAL_PATTERNS = (
    re.compile(r"unauthori[sz]ed|\b401\b|authentication.*failed", re.IGNORECASE),
    re.compile(r"invalid.*api.*key", re.IGNORECASE),
    re.compile(r"permission denied|EACCES|operation not permitted", re.IGNORECASE),
    re.compile(r"invalid.*prompt|prompt.*too.*long", re.IGNORECASE),
)


class ErrorClass(str, Enum):
    RATE_LIMIT = "rateLimit"
    SCHEMA_FAILURE = "schemaFailure"
    TRANSIENT = "transient"
    FATAL = "fatal"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_retries: int = 5
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    max_schema_failures: int = 2

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        exponent = max(0, attempt - 1)
        delay = self.initial_delay_seconds * (self.backoff_multiplier**exponent)
        return min(delay, self.max_delay_seconds)

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        policy = PRESETS[config.preset]
        overrides: dict[str, Any] = {}
        if config.max_retries is not None:
            overrides["max_retries"] = max(0, int(config.max_retries))
        if config.initial_delay_seconds is not None:
            overrides["initial_delay_seconds"] = max(0.0, float(config.initial_delay_seconds))
        if config.max_delay_seconds is not None:
            overrides["max_delay_seconds"] = max(0.0, float(config.max_delay_seconds))
        if config.backoff_multiplier is not None:
            overrides["backoff_multiplier"] = max(1.0, float(config.backoff_multiplier))
        return replace(policy, **overrides)


DEFAULT_RETRY_POLICY = RetryPolicy()
AGGRESSIVE_RETRY_POLICY = RetryPolicy(
    max_retries=5, initial_delay_seconds=0.5, max_delay_seconds=60.0
)
NO_RETRY_POLICY = RetryPolicy(max_retries=0, initial_delay_seconds=0.0, max_delay_seconds=0.0)
PRESETS = {
    "default": DEFAULT_RETRY_POLICY,
    "aggressive": AGGRESSIVE_RETRY_POLICY,
    "none": NO_RETRY_POLICY,
}


def _matches(patterns: tuple[re.Pattern[str], ...], text: str) -> bool:
    return any(pattern.search(text) for pattern in patterns)


def classify(error: BaseException) -> ErrorClass:
    if isinstance(error, SchemaResolutionFailure):
        return ErrorClass.SCHEMA_FAILURE
    if isinstance(error, RateLimitError):
        return ErrorClass.RATE_LIMIT
    if isinstance(error, (TransientError, EngineTimeoutError, TimeoutError)):
        return ErrorClass.TRANSIENT
    if isinstance(error, StepFlowError):
        return ErrorClass.FATAL

    message = str(error)
    if _matches(RATE_LIMIT_PATTERNS, message):
        return ErrorClass.RATE_LIMIT
    if _matches(FATAL_PATTERNS, message):
        return ErrorClass.FATAL
    if isinstance(error, EngineError) and not error.retriable:
        return ErrorClass.FATAL
    if isinstance(error, (ConnectionError, asyncio.IncompleteReadError)):
        return ErrorClass.TRANSIENT
    if _matches(TRANSIENT_PATTERNS, message):
        return ErrorClass.TRANSIENT
    return ErrorClass.FATAL


@dataclass(slots=True)
class RetryState:
    rate_limit_retries: int = 0
    schema_failures: int = 0
    transient_retries: int = 0

    def reset(self) -> None:
        self.rate_limit_retries = 0
        self.schema_failures = 0
        self.transient_retries = 0

    def snapshot(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class RetryVerdict:
    error_class: ErrorClass
    retry: bool
    delay_seconds: float
    reason: str


class RetryController:
    """Per-session retry bookkeeping.

    Rate-limit and transient failures back off exponentially up to
    ``max_retries`` each. Schema failures allow one corrective retry; the
    second consecutive one is fatal.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        state: RetryState | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.policy = policy
        self.state = state or RetryState()
        self.sleep = sleep
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def verdict(self, error: BaseException) -> RetryVerdict:
        error_class = classify(error)
        state = self.state
        if error_class is ErrorClass.SCHEMA_FAILURE:
            state.schema_failures += 1
            if state.schema_failures < self.policy.max_schema_failures:
                return RetryVerdict(
                    error_class,
                    True,
                    0.0,
                    f"Schema failure {state.schema_failures}/"
                    f"{self.policy.max_schema_failures}; corrective re-prompt",
                )
            return RetryVerdict(
                error_class,
                False,
                0.0,
                f"Schema failure limit ({self.policy.max_schema_failures}) reached",
            )

        if error_class is ErrorClass.RATE_LIMIT:
            attempt = state.rate_limit_retries + 1
        elif error_class is ErrorClass.TRANSIENT:
            attempt = state.transient_retries + 1
        else:
            return RetryVerdict(error_class, False, 0.0, "Error is not recoverable")

        # Counters never pass the ceiling; the breaching attempt is terminal.
        if attempt > self.policy.max_retries:
            return RetryVerdict(
                error_class,
                False,
                0.0,
                f"Max retries ({self.policy.max_retries}) reached for {error_class.value}",
            )
        if error_class is ErrorClass.RATE_LIMIT:
            state.rate_limit_retries = attempt
        else:
            state.transient_retries = attempt
        delay = self.policy.delay_for(attempt)
        return RetryVerdict(
            error_class,
            True,
            delay,
            f"Retry {attempt}/{self.policy.max_retries} in {delay:.1f}s",
        )

    async def backoff(self, verdict: RetryVerdict, *, step_id: str | None = None) -> None:
        self._emit(
            {
                "event": "retry_backoff",
                "step_id": step_id,
                "error_class": verdict.error_class.value,
                "delay_seconds": verdict.delay_seconds,
                "reason": verdict.reason,
                "counters": self.state.snapshot(),
            }
        )
        if verdict.delay_seconds > 0:
            await self.sleep(verdict.delay_seconds)

    def record_success(self) -> None:
        self.state.reset()

    def escalate(
        self, error: BaseException, verdict: RetryVerdict, *, step_id: str | None
    ) -> StepFlowError:
        """Convert an exhausted or fatal failure into the taxonomy error to surface."""
        context = {"counters": self.state.snapshot(), "reason": verdict.reason}
        if isinstance(error, StepFlowError):
            error.context.update(context)
            if error.step_id is None:
                error.step_id = step_id
            return error
        message = str(error) or type(error).__name__
        if verdict.error_class is ErrorClass.RATE_LIMIT:
            return RateLimitError(message, step_id=step_id, context=context)
        if verdict.error_class is ErrorClass.TRANSIENT:
            return TransientError(message, step_id=step_id, context=context)
        failure = StepFlowError(message, step_id=step_id, context=context)
        failure.context["cause"] = type(error).__name__
        return failure
