import asyncio

from stepflow.config import RetryConfig
from stepflow.engines.base import EngineError, EngineTimeoutError
from stepflow.errors import (
    BoundaryViolation,
    RateLimitError,
    SchemaResolutionFailure,
    StepGraphError,
    TransientError,
)
from stepflow.retry import (
    AGGRESSIVE_RETRY_POLICY,
    DEFAULT_RETRY_POLICY,
    ErrorClass,
    RetryController,
    RetryPolicy,
    classify,
)


def test_classify_by_type_and_message() -> None:
    assert classify(SchemaResolutionFailure("bad json")) is ErrorClass.SCHEMA_FAILURE
    assert classify(RateLimitError("slow down")) is ErrorClass.RATE_LIMIT
    assert classify(TransientError("blip")) is ErrorClass.TRANSIENT
    assert classify(EngineTimeoutError("timed out")) is ErrorClass.TRANSIENT
    assert classify(BoundaryViolation("nope")) is ErrorClass.FATAL
    assert classify(StepGraphError("missing")) is ErrorClass.FATAL

    assert classify(EngineError("API Error: 429 Too Many Requests")) is ErrorClass.RATE_LIMIT
    assert classify(EngineError("You've hit your limit")) is ErrorClass.RATE_LIMIT
    assert classify(EngineError("connect ECONNRESET 10.0.0.1")) is ErrorClass.TRANSIENT
    assert classify(ConnectionResetError("peer went away")) is ErrorClass.TRANSIENT
    assert classify(EngineError("Invalid API key provided")) is ErrorClass.FATAL
    assert classify(EngineError("binary missing", retriable=False)) is ErrorClass.FATAL
    assert classify(ValueError("something odd")) is ErrorClass.FATAL


def test_backoff_doubles_and_caps() -> None:
    delays = [DEFAULT_RETRY_POLICY.delay_for(attempt) for attempt in range(1, 8)]
    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]

    assert AGGRESSIVE_RETRY_POLICY.max_retries == 5
    assert AGGRESSIVE_RETRY_POLICY.delay_for(1) == 0.5
    assert AGGRESSIVE_RETRY_POLICY.delay_for(10) == 60.0


def test_policy_from_config_applies_preset_and_overrides() -> None:
    policy = RetryPolicy.from_config(RetryConfig(preset="aggressive", max_retries=2))

    assert policy.max_retries == 2
    assert policy.initial_delay_seconds == 0.5
    assert policy.max_schema_failures == 2
    assert RetryPolicy.from_config(RetryConfig(preset="none")).max_retries == 0


def test_rate_limit_retries_stop_at_ceiling() -> None:
    controller = RetryController(RetryPolicy(max_retries=3))
    error = RateLimitError("429")

    verdicts = [controller.verdict(error) for _ in range(4)]

    assert [verdict.retry for verdict in verdicts] == [True, True, True, False]
    assert [verdict.delay_seconds for verdict in verdicts[:3]] == [1.0, 2.0, 4.0]
    assert controller.state.rate_limit_retries == 3


def test_schema_failures_allow_exactly_one_corrective_retry() -> None:
    controller = RetryController(DEFAULT_RETRY_POLICY)
    error = SchemaResolutionFailure("not json")

    first = controller.verdict(error)
    second = controller.verdict(error)

    assert first.retry is True
    assert first.delay_seconds == 0.0
    assert second.retry is False
    assert controller.state.schema_failures == 2


def test_transient_errors_do_not_consume_schema_budget() -> None:
    controller = RetryController(DEFAULT_RETRY_POLICY)

    controller.verdict(TransientError("blip"))
    controller.verdict(TransientError("blip"))

    assert controller.state.snapshot() == {
        "rate_limit_retries": 0,
        "schema_failures": 0,
        "transient_retries": 2,
    }


def test_record_success_resets_all_counters() -> None:
    controller = RetryController(DEFAULT_RETRY_POLICY)
    controller.verdict(RateLimitError("429"))
    controller.verdict(SchemaResolutionFailure("bad"))

    controller.record_success()

    assert controller.state.snapshot() == {
        "rate_limit_retries": 0,
        "schema_failures": 0,
        "transient_retries": 0,
    }


def test_backoff_sleeps_and_reports_event() -> None:
    slept: list[float] = []
    events: list[dict] = []

    async def fake_sleep(delay: float) -> None:
        slept.append(delay)

    controller = RetryController(
        DEFAULT_RETRY_POLICY, sleep=fake_sleep, event_hook=events.append
    )
    verdict = controller.verdict(RateLimitError("429"))

    asyncio.run(controller.backoff(verdict, step_id="work"))

    assert slept == [1.0]
    assert events[0]["event"] == "retry_backoff"
    assert events[0]["step_id"] == "work"
    assert events[0]["error_class"] == "rateLimit"


def test_escalate_maps_engine_errors_into_taxonomy() -> None:
    controller = RetryController(RetryPolicy(max_retries=0))
    error = EngineError("HTTP 429 rate limit exceeded")

    verdict = controller.verdict(error)
    escalated = controller.escalate(error, verdict, step_id="work")

    assert verdict.retry is False
    assert isinstance(escalated, RateLimitError)
    assert escalated.step_id == "work"
    assert escalated.context["counters"]["rate_limit_retries"] == 0

    schema_error = SchemaResolutionFailure("bad")
    same = controller.escalate(schema_error, verdict, step_id="review")
    assert same is schema_error
    assert same.step_id == "review"


def test_configured_schema_limit_cannot_loosen_two_strikes() -> None:
    policy = RetryPolicy.from_config(RetryConfig(max_schema_failures=5))
    controller = RetryController(policy)
    error = SchemaResolutionFailure("not json")

    verdicts = [controller.verdict(error) for _ in range(2)]

    assert policy.max_schema_failures == 2
    assert [verdict.retry for verdict in verdicts] == [True, False]
