from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from stepflow.completion import CompletionManager, CompletionVerdict, ExternalStateTracker
from stepflow.config import (
    AgentDefinition,
    ExternalStateCriterion,
    IterationBudgetCriterion,
    KeywordSignalCriterion,
    StepDefinition,
    StepMachineCriterion,
)
from stepflow.engines.base import (
    EngineError,
    EngineMessage,
    EngineRequest,
    EngineResult,
    EngineTimeoutError,
    ReasoningEngine,
)
from stepflow.errors import (
    BoundaryViolation,
    IterationLimitExceeded,
    RunCancelled,
    StepFlowError,
    StepGraphError,
    TransientError,
    WorktreeError,
)
from stepflow.intent import (
    Intent,
    IntentAction,
    IntentInterpreter,
    check_intent_allowed,
    extract_structured_output,
)
from stepflow.logger import SessionLogger
from stepflow.policy import ToolPolicy
from stepflow.prompts import PromptRenderer
from stepflow.retry import ErrorClass, RetryController, RetryPolicy
from stepflow.schema import SchemaRegistry
from stepflow.session import RunSession, SessionStatus, TerminalOutcome
from stepflow.state.handoff import HandoffPayload, HandoffStore, serialize_handoff
from stepflow.state.worktree import WorktreeHandle, WorktreeManager

ABORT_FLAG = "abort"


def abort_flag_path(repo_root: Path, agent_name: str) -> Path:
    return repo_root / ".stepflow" / agent_name / ABORT_FLAG


class CancellationToken:
    """Cooperative abort signal checked only between steps.

    Set in-process with ``cancel()`` or from another process by creating the
    flag file (``stepflow stop``).
    """

    def __init__(self, flag_path: Path | None = None) -> None:
        self.flag_path = flag_path
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self.flag_path is not None and self.flag_path.exists():
            self._event.set()
            return True
        return False

    def consume(self) -> None:
        if self.flag_path is not None:
            try:
                self.flag_path.unlink()
            except FileNotFoundError:
                pass


class StepFlowOrchestrator:
    """Drives one run session through an agent's step graph."""

    def __init__(
        self,
        definition: AgentDefinition,
        engine: ReasoningEngine,
        renderer: PromptRenderer,
        logger: SessionLogger,
        *,
        worktrees: WorktreeManager | None = None,
        handoffs: HandoffStore | None = None,
        tracker: ExternalStateTracker | None = None,
        cancel: CancellationToken | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.definition = definition
        self.engine = engine
        self.renderer = renderer
        self.logger = logger
        self.worktrees = worktrees
        self.handoffs = handoffs
        self.cancel = cancel or CancellationToken()
        self.sleep = sleep
        self.policy = ToolPolicy(definition.tools)
        self.schemas = SchemaRegistry(definition.schemas_dir)
        self.interpreter = IntentInterpreter()
        self.retry_policy = RetryPolicy.from_config(definition.retry)

        safety_cap = definition.max_iterations
        if isinstance(definition.completion, IterationBudgetCriterion):
            safety_cap = max(safety_cap, definition.completion.max_iterations)
        self.completion = CompletionManager(
            definition.completion, tracker, max_iterations=safety_cap
        )
        self._carry: dict[str, Any] = {}
        self._active_session: str | None = None

    # -- engine calls -------------------------------------------------------

    def _log_message(self, message: EngineMessage, step_id: str) -> None:
        metadata: dict[str, Any] = {"step_id": step_id}
        if message.type == "tool_use":
            metadata["tool_input"] = message.tool_input
            self.logger.write("tool_use", message.tool_name or "", metadata)
            return
        if message.is_error:
            metadata["is_error"] = True
        if message.cost_usd is not None:
            metadata["cost_usd"] = message.cost_usd
        self.logger.write(message.type, message.content, metadata)

    async def _call_engine(self, request: EngineRequest, step: StepDefinition) -> EngineResult:
        async def _consume() -> EngineResult:
            texts: list[str] = []
            tool_calls: list[str] = []
            final: EngineMessage | None = None
            stream = self.engine.stream(request)
            try:
                async for message in stream:
                    self._log_message(message, step.id)
                    if message.type == "tool_use":
                        tool = message.tool_name or ""
                        tool_calls.append(tool)
                        self.policy.enforce(
                            tool, step.kind, message.tool_input, step_id=step.id
                        )
                    elif message.type == "assistant":
                        texts.append(message.content)
                    elif message.type == "result":
                        final = message
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()

            if final is None:
                raise EngineError(
                    "Engine stream ended without a result message.", engine=self.engine.name
                )
            if final.is_error:
                raise EngineError(
                    final.content or "Engine reported an error result.", engine=self.engine.name
                )
            return EngineResult(
                text=final.content or "\n".join(texts),
                structured_output=final.structured_output,
                cost_usd=final.cost_usd,
                tool_calls=tool_calls,
            )

        timeout = self.definition.retry.timeout_seconds
        try:
            return await asyncio.wait_for(_consume(), timeout=timeout)
        except TimeoutError as exc:
            raise EngineTimeoutError(
                f"Engine call timed out after {timeout:.1f}s", engine=self.engine.name
            ) from exc

    def _structured(self, result: EngineResult, step: StepDefinition) -> dict[str, Any]:
        payload = result.structured_output
        if payload is None:
            payload = extract_structured_output(result.text)
        if step.output_schema is not None:
            self.schemas.validate(payload, step.output_schema, step_id=step.id)
        return payload

    def _corrective_suffix(self, error: BaseException, step: StepDefinition) -> str:
        lines = [
            "",
            "",
            "## Correction required",
            f"Your previous reply could not be used: {error}",
            "Reply again and end with a single JSON object. "
            f'Put the next action at "{step.intent_field}" '
            f"(one of: {', '.join(sorted(step.allowed_intents))}).",
        ]
        if step.output_schema is not None:
            lines.append("It must match this JSON Schema:")
            lines.append(self.schemas.describe(step.output_schema))
        return "\n".join(lines)

    def _variables(self, session: RunSession, step: StepDefinition) -> dict[str, Any]:
        variables: dict[str, Any] = {
            "agent_name": self.definition.name,
            "session_id": session.session_id,
            "lineage_id": session.lineage_id,
            "step_id": step.id,
            "iteration": session.iteration_count + 1,
            "max_iterations": self.completion.max_iterations,
        }
        criterion = self.definition.completion
        if isinstance(criterion, ExternalStateCriterion):
            variables["target"] = criterion.resource_id
            variables["issue"] = criterion.resource_id
        elif isinstance(criterion, KeywordSignalCriterion):
            variables["completion_keyword"] = criterion.keyword
        elif isinstance(criterion, IterationBudgetCriterion):
            variables["remaining"] = max(0, criterion.max_iterations - session.iteration_count)
        variables.update(self._carry)
        return variables

    def _request(
        self, prompt: str, step: StepDefinition, handle: WorktreeHandle | None
    ) -> EngineRequest:
        return EngineRequest(
            prompt=prompt,
            allowed_tools=tuple(sorted(self.policy.allowed_tools(step.kind))),
            permission_mode=self.definition.permission_mode,
            cwd=handle.path if handle is not None else None,
            model=self.definition.engine.model,
            disallowed_tools=self.policy.disallowed_tools(step.kind),
        )

    async def _execute_step(
        self,
        session: RunSession,
        step: StepDefinition,
        handle: WorktreeHandle | None,
        controller: RetryController,
    ) -> tuple[EngineResult, Intent]:
        prompt = self.renderer.render(step.id, self._variables(session, step))
        correction = ""
        while True:
            request = self._request(prompt + correction, step, handle)
            try:
                result = await self._call_engine(request, step)
                payload = self._structured(result, step)
                return result, self.interpreter.interpret(payload, step)
            except BoundaryViolation:
                raise
            except (StepFlowError, EngineError, OSError, TimeoutError) as exc:
                verdict = controller.verdict(exc)
                self.logger.error(
                    "step_error",
                    step_id=step.id,
                    error_class=verdict.error_class.value,
                    error=str(exc),
                    retry=verdict.retry,
                    reason=verdict.reason,
                    counters=controller.state.snapshot(),
                )
                if not verdict.retry:
                    escalated = controller.escalate(exc, verdict, step_id=step.id)
                    if escalated is exc:
                        raise
                    raise escalated from exc
                if verdict.error_class is ErrorClass.SCHEMA_FAILURE:
                    correction = self._corrective_suffix(exc, step)
                await controller.backoff(verdict, step_id=step.id)

    # -- transitions --------------------------------------------------------

    def _is_terminal_id(self, step_id: str) -> bool:
        criterion = self.definition.completion
        return isinstance(criterion, StepMachineCriterion) and step_id in criterion.terminal_steps

    def _successor(self, step: StepDefinition) -> str:
        if step.next is None:
            raise StepGraphError(
                f"Step '{step.id}' has no default successor.", step_id=step.id
            )
        return step.next

    def _resolve_next(self, step: StepDefinition, intent: Intent) -> str | None:
        """Return the next step id, or None when the intent ends the run."""
        action = intent.action
        if action is IntentAction.NEXT:
            return self._successor(step)
        if action is IntentAction.REPEAT:
            return step.id
        if action is IntentAction.JUMP:
            target = intent.target_step_id or ""
            if self.definition.step(target) is None and not self._is_terminal_id(target):
                raise StepGraphError(
                    f"Step '{step.id}' jumped to unknown step '{target}'.",
                    step_id=step.id,
                    context={"target": target},
                )
            return target
        if action is IntentAction.HANDOFF:
            return step.next or step.id
        if action is IntentAction.ESCALATE:
            self.logger.write("warn", "escalation", {"step_id": step.id, "reason": intent.reason})
            return self._successor(step)
        if action is IntentAction.CLOSING:
            return None
        raise StepGraphError(f"Unhandled intent action: {action!r}", step_id=step.id)

    async def _evaluate_completion(
        self, session: RunSession, controller: RetryController
    ) -> CompletionVerdict:
        while True:
            try:
                return await self.completion.evaluate(session)
            except TransientError as exc:
                verdict = controller.verdict(exc)
                self.logger.error(
                    "completion_check_error",
                    error=str(exc),
                    retry=verdict.retry,
                    counters=controller.state.snapshot(),
                )
                if not verdict.retry:
                    escalated = controller.escalate(exc, verdict, step_id=session.current_step_id)
                    if escalated is exc:
                        raise
                    raise escalated from exc
                await controller.backoff(verdict, step_id=session.current_step_id)

    def _hand_off(
        self,
        session: RunSession,
        step: StepDefinition,
        intent: Intent,
        handle: WorktreeHandle | None,
    ) -> str | None:
        artifacts: list[Any] = []
        if intent.handoff:
            artifacts.append({"step_id": step.id, **intent.handoff})
        payload = serialize_handoff(
            session,
            last_step_id=step.id,
            summary=intent.reason,
            artifacts=artifacts,
            worktree=handle.to_dict() if handle is not None else None,
        )
        if self.handoffs is None:
            self.logger.write("warn", "handoff_not_persisted", payload.to_dict())
            return None
        path = self.handoffs.save(payload)
        self.logger.info("handoff_saved", path=str(path), **payload.to_dict())
        return str(path)

    async def _drive(
        self,
        session: RunSession,
        handle: WorktreeHandle | None,
        controller: RetryController,
    ) -> TerminalOutcome:
        while True:
            if self.cancel.cancelled:
                raise RunCancelled(
                    "Run cancelled at step boundary.", step_id=session.current_step_id
                )
            step = self.definition.step(session.current_step_id)
            if step is None:
                raise StepGraphError(
                    f"Current step '{session.current_step_id}' is not part of the graph.",
                    step_id=session.current_step_id,
                )

            started = time.monotonic()
            result, intent = await self._execute_step(session, step, handle, controller)
            check_intent_allowed(intent, step)
            controller.record_success()
            session.iteration_count += 1
            session.last_output = result.text

            next_step = self._resolve_next(step, intent)
            if next_step is not None:
                session.current_step_id = next_step
            self._carry = dict(intent.handoff)

            status = SessionStatus.RUNNING
            if intent.action is IntentAction.CLOSING:
                status = SessionStatus.COMPLETED
            else:
                verdict = await self._evaluate_completion(session, controller)
                if verdict is CompletionVerdict.COMPLETED:
                    status = SessionStatus.COMPLETED
                elif verdict is CompletionVerdict.FAILED:
                    raise IterationLimitExceeded(
                        self.completion.last_reason,
                        step_id=step.id,
                        context={"iterations": session.iteration_count},
                    )
                elif intent.action is IntentAction.HANDOFF:
                    status = SessionStatus.HANDED_OFF

            handoff_path = None
            if status is SessionStatus.HANDED_OFF:
                handoff_path = self._hand_off(session, step, intent, handle)

            to_step = session.current_step_id if status is SessionStatus.RUNNING else status.value
            self.logger.info(
                "transition",
                from_step=step.id,
                to_step=to_step,
                intent=intent.to_dict(),
                iteration=session.iteration_count,
                duration_seconds=round(time.monotonic() - started, 3),
                cost_usd=result.cost_usd,
                completion=self.completion.last_reason,
            )
            if status is not SessionStatus.RUNNING:
                return TerminalOutcome(
                    status=status,
                    session_id=session.session_id,
                    lineage_id=session.lineage_id,
                    step_id=step.id,
                    iterations=session.iteration_count,
                    handoff_path=handoff_path,
                )

    # -- lifecycle ----------------------------------------------------------

    def _failure(
        self, session: RunSession, error: StepFlowError, controller: RetryController
    ) -> TerminalOutcome:
        counters = controller.state.snapshot()
        step_id = error.step_id or session.current_step_id
        self.logger.error(
            "session_failed",
            error_class=error.error_class,
            error=str(error),
            step_id=step_id,
            counters=counters,
            context=error.context,
        )
        return TerminalOutcome(
            status=SessionStatus.FAILED,
            session_id=session.session_id,
            lineage_id=session.lineage_id,
            step_id=step_id,
            iterations=session.iteration_count,
            error_class=error.error_class,
            error=str(error),
            counters=counters,
        )

    def _acquire(
        self, session: RunSession, resume_from: HandoffPayload | None
    ) -> WorktreeHandle | None:
        if self.worktrees is None:
            return None
        if resume_from is not None and resume_from.worktree:
            return self.worktrees.reattach(resume_from.worktree, session)
        return self.worktrees.acquire(session)

    def _release(
        self,
        handle: WorktreeHandle,
        session: RunSession,
        outcome: TerminalOutcome | None,
        controller: RetryController,
    ) -> TerminalOutcome | None:
        assert self.worktrees is not None
        status = outcome.status if outcome is not None else SessionStatus.FAILED
        try:
            summary = self.worktrees.release(handle, status)
        except WorktreeError as exc:
            if outcome is None or outcome.status is SessionStatus.FAILED:
                # The run already failed; keep its cause and attach the release error.
                self.logger.error("worktree_release_failed", error=str(exc), **exc.context)
                if outcome is not None:
                    outcome.context["release_error"] = str(exc)
                return outcome
            return self._failure(session, exc, controller)
        self.logger.info("worktree_released", status=status.value, **summary)
        return outcome

    async def run(
        self, session: RunSession, *, resume_from: HandoffPayload | None = None
    ) -> TerminalOutcome:
        if self._active_session is not None:
            raise StepFlowError(
                f"Agent '{self.definition.name}' is already running session "
                f"{self._active_session}."
            )
        self._active_session = session.session_id
        controller = RetryController(
            self.retry_policy,
            session.retry_state,
            sleep=self.sleep,
            event_hook=self.logger.event_hook,
        )
        session.status = SessionStatus.RUNNING
        self._carry = {}
        if resume_from is not None:
            for artifact in resume_from.artifacts:
                if isinstance(artifact, dict):
                    self._carry.update({k: v for k, v in artifact.items() if k != "step_id"})
            self._carry["handoff_summary"] = resume_from.summary
        self.logger.info("session_start", definition=self.definition.name, **session.to_dict())

        handle: WorktreeHandle | None = None
        outcome: TerminalOutcome | None = None
        try:
            handle = self._acquire(session, resume_from)
            outcome = await self._drive(session, handle, controller)
        except StepFlowError as exc:
            outcome = self._failure(session, exc, controller)
        finally:
            if handle is not None:
                outcome = self._release(handle, session, outcome, controller)
            self._active_session = None
            if isinstance(outcome, TerminalOutcome) and outcome.error_class == "RunCancelled":
                self.cancel.consume()

        assert outcome is not None
        session.status = outcome.status
        if (
            resume_from is not None
            and self.handoffs is not None
            and outcome.status is not SessionStatus.HANDED_OFF
        ):
            self.handoffs.delete(resume_from.lineage_session_id)
        self.logger.info("session_end", **outcome.to_dict())
        return outcome
