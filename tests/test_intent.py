import pytest

from stepflow.config import KIND_ALLOWED_INTENTS, StepDefinition, StepKind
from stepflow.errors import BoundaryViolation, SchemaResolutionFailure
from stepflow.intent import (
    Intent,
    IntentAction,
    IntentInterpreter,
    check_intent_allowed,
    extract_structured_output,
    get_value_at_path,
)


def _step(kind: StepKind = StepKind.WORK, **overrides: object) -> StepDefinition:
    values: dict[str, object] = {
        "id": "work",
        "kind": kind,
        "domain": ("steps", "work", "default"),
        "allowed_intents": KIND_ALLOWED_INTENTS[kind],
    }
    values.update(overrides)
    return StepDefinition(**values)  # type: ignore[arg-type]


def test_interpret_reads_action_and_reason() -> None:
    payload = {"next_action": {"action": "next", "reason": "tests pass"}}

    intent = IntentInterpreter().interpret(payload, _step())

    assert intent == Intent(action=IntentAction.NEXT, reason="tests pass")


def test_aliases_map_onto_canonical_actions() -> None:
    interpreter = IntentInterpreter()
    step = _step()

    def action_for(raw: str) -> IntentAction:
        return interpreter.interpret({"next_action": {"action": raw}}, step).action

    assert action_for("continue") is IntentAction.NEXT
    assert action_for(" PASS ") is IntentAction.NEXT
    assert action_for("retry") is IntentAction.REPEAT
    assert action_for("wait") is IntentAction.REPEAT
    assert action_for("done") is IntentAction.CLOSING
    assert action_for("Handoff") is IntentAction.HANDOFF


def test_missing_or_unknown_intent_is_schema_failure() -> None:
    interpreter = IntentInterpreter()

    with pytest.raises(SchemaResolutionFailure, match="No value at path") as exc_info:
        interpreter.interpret({"result": "ok"}, _step())
    assert exc_info.value.step_id == "work"

    with pytest.raises(SchemaResolutionFailure, match="Unknown intent value"):
        interpreter.interpret({"next_action": {"action": "dance"}}, _step())


def test_jump_requires_a_target() -> None:
    interpreter = IntentInterpreter()
    step = _step()

    intent = interpreter.interpret(
        {"next_action": {"action": "jump", "details": {"target": " review "}}}, step
    )
    assert intent.target_step_id == "review"

    with pytest.raises(SchemaResolutionFailure, match="without a target"):
        interpreter.interpret({"next_action": {"action": "jump"}}, step)


def test_custom_fields_and_handoff_values() -> None:
    step = _step(
        intent_field="decision.kind",
        handoff_fields=("decision.summary", "artifacts", "decision.missing"),
    )
    payload = {
        "decision": {"kind": "handoff", "summary": "half the parser is done"},
        "artifacts": ["src/parser.py"],
        "message": "context window filling up",
    }

    intent = IntentInterpreter().interpret(payload, step)

    assert intent.action is IntentAction.HANDOFF
    assert intent.reason == "context window filling up"
    assert intent.handoff == {
        "summary": "half the parser is done",
        "artifacts": ["src/parser.py"],
    }
    assert intent.to_dict()["handoff"]["summary"] == "half the parser is done"


def test_get_value_at_path_stops_at_non_objects() -> None:
    payload = {"a": {"b": [1, 2]}}

    assert get_value_at_path(payload, "a.b") == [1, 2]
    assert get_value_at_path(payload, "a.b.c") is None
    assert get_value_at_path(payload, "x.y") is None


def test_extract_structured_output_prefers_whole_text_then_fences() -> None:
    assert extract_structured_output('  {"a": 1}  ') == {"a": 1}

    text = (
        "Here is a draft:\n```json\n{\"draft\": true}\n```\n"
        "And the final answer:\n```json\n{\"next_action\": {\"action\": \"next\"}}\n```\n"
    )
    assert extract_structured_output(text) == {"next_action": {"action": "next"}}


def test_extract_structured_output_finds_last_object_in_prose() -> None:
    text = 'I looked at {"ignored": 1} first, then decided {"next_action": {"action": "repeat"}}.'

    assert extract_structured_output(text) == {"next_action": {"action": "repeat"}}


def test_extract_structured_output_without_json_fails() -> None:
    with pytest.raises(SchemaResolutionFailure, match="no output"):
        extract_structured_output("   ")
    with pytest.raises(SchemaResolutionFailure, match="does not contain a JSON object"):
        extract_structured_output("I am done {but this is not json")


def test_closing_is_rejected_outside_closure_steps() -> None:
    closing = Intent(action=IntentAction.CLOSING)

    for kind in (StepKind.WORK, StepKind.VERIFICATION):
        with pytest.raises(BoundaryViolation, match="may not emit 'closing'"):
            check_intent_allowed(closing, _step(kind))

    check_intent_allowed(closing, _step(StepKind.CLOSURE, id="close"))


def test_intent_outside_declared_allowed_set_is_rejected() -> None:
    step = _step(allowed_intents=frozenset({"next", "repeat"}))

    with pytest.raises(BoundaryViolation, match="not in its allowed intents") as exc_info:
        check_intent_allowed(Intent(action=IntentAction.HANDOFF), step)

    assert exc_info.value.context["intent"] == "handoff"
