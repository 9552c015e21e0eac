from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from stepflow.config import KIND_ALLOWED_INTENTS, StepDefinition
from stepflow.errors import BoundaryViolation, SchemaResolutionFailure


class IntentAction(str, Enum):
    NEXT = "next"
    REPEAT = "repeat"
    JUMP = "jump"
    HANDOFF = "handoff"
    ESCALATE = "escalate"
    CLOSING = "closing"


ALIASES: dict[str, IntentAction] = {
    "continue": IntentAction.NEXT,
    "pass": IntentAction.NEXT,
    "retry": IntentAction.REPEAT,
    "wait": IntentAction.REPEAT,
    "fail": IntentAction.REPEAT,
    "done": IntentAction.CLOSING,
    "finished": IntentAction.CLOSING,
    "complete": IntentAction.CLOSING,
}
REASON_PATHS = ("next_action.reason", "reason", "message")

_FENCED_JSON = re.compile(r"```(?:json)?\s*\n(.*?)```", re.DOTALL | re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class Intent:
    action: IntentAction
    reason: str = ""
    target_step_id: str | None = None
    handoff: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"action": self.action.value, "reason": self.reason}
        if self.target_step_id is not None:
            payload["target_step_id"] = self.target_step_id
        if self.handoff:
            payload["handoff"] = dict(self.handoff)
        return payload


def get_value_at_path(payload: Any, path: str) -> Any:
    current = payload
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def _last_top_level_object(text: str) -> dict[str, Any] | None:
    decoder = json.JSONDecoder()
    found: dict[str, Any] | None = None
    index = text.find("{")
    while index != -1:
        try:
            candidate, end = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            index = text.find("{", index + 1)
            continue
        if isinstance(candidate, dict):
            found = candidate
        index = text.find("{", end)
    return found


def extract_structured_output(text: str) -> dict[str, Any]:
    """Parse the JSON object a step reported, tolerating prose around it."""
    stripped = text.strip()
    if not stripped:
        raise SchemaResolutionFailure("Step produced no output to parse.")
    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    for block in reversed(_FENCED_JSON.findall(stripped)):
        try:
            parsed = json.loads(block)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    found = _last_top_level_object(stripped)
    if found is None:
        raise SchemaResolutionFailure(
            "Step output does not contain a JSON object.",
            context={"output_excerpt": stripped[-500:]},
        )
    return found


def resolve_action(raw: Any) -> IntentAction | None:
    if raw is None:
        return None
    value = str(raw).strip().lower()
    if value in ALIASES:
        return ALIASES[value]
    try:
        return IntentAction(value)
    except ValueError:
        return None


class IntentInterpreter:
    """Turns a step's structured output into an Intent.

    Unreadable directives are schema failures so they go through the
    corrective re-prompt path rather than stopping the run outright.
    """

    def interpret(self, payload: dict[str, Any], step: StepDefinition) -> Intent:
        raw = get_value_at_path(payload, step.intent_field)
        action = resolve_action(raw)
        if action is None:
            if raw is None:
                detail = f"No value at path: {step.intent_field}"
            else:
                detail = f"Unknown intent value: {raw!r}"
            raise SchemaResolutionFailure(
                f"Cannot determine intent for step '{step.id}': {detail}",
                step_id=step.id,
                context={"intent_field": step.intent_field, "value": raw},
            )

        target: str | None = None
        if action is IntentAction.JUMP:
            raw_target = get_value_at_path(payload, step.target_field)
            if not isinstance(raw_target, str) or not raw_target.strip():
                raise SchemaResolutionFailure(
                    f"Step '{step.id}' requested a jump without a target at "
                    f"{step.target_field}.",
                    step_id=step.id,
                )
            target = raw_target.strip()

        handoff: dict[str, Any] = {}
        for path in step.handoff_fields:
            value = get_value_at_path(payload, path)
            if value is not None:
                handoff[path.rsplit(".", 1)[-1]] = value

        reason = ""
        for path in REASON_PATHS:
            value = get_value_at_path(payload, path)
            if isinstance(value, str) and value.strip():
                reason = value.strip()
                break

        return Intent(action=action, reason=reason, target_step_id=target, handoff=handoff)


def check_intent_allowed(intent: Intent, step: StepDefinition) -> None:
    """Reject an action the step's kind or declaration does not permit."""
    action = intent.action.value
    if action not in KIND_ALLOWED_INTENTS[step.kind]:
        raise BoundaryViolation(
            f"Step '{step.id}' ({step.kind.value}) may not emit '{action}'.",
            step_id=step.id,
            context={"intent": action, "step_kind": step.kind.value},
        )
    if action not in step.allowed_intents:
        raise BoundaryViolation(
            f"Step '{step.id}' emitted '{action}', which is not in its allowed intents "
            f"({', '.join(sorted(step.allowed_intents))}).",
            step_id=step.id,
            context={"intent": action, "step_kind": step.kind.value},
        )
