import json
from pathlib import Path

import pytest

from stepflow.config import SchemaRef
from stepflow.errors import ConfigError, SchemaResolutionFailure
from stepflow.schema import SchemaRegistry

STEP_SCHEMAS = {
    "$defs": {
        "action": {"type": "string", "enum": ["next", "repeat", "jump", "handoff"]},
    },
    "work": {
        "type": "object",
        "required": ["next_action"],
        "properties": {
            "next_action": {
                "type": "object",
                "required": ["action"],
                "properties": {"action": {"$ref": "#/$defs/action"}},
            }
        },
    },
}


def _registry(tmp_path: Path) -> SchemaRegistry:
    (tmp_path / "outputs.json").write_text(json.dumps(STEP_SCHEMAS), encoding="utf-8")
    return SchemaRegistry(tmp_path)


def test_named_schema_keeps_shared_defs(tmp_path: Path) -> None:
    registry = _registry(tmp_path)

    schema = registry.resolve(SchemaRef(file="outputs.json", schema="work"))

    assert schema["required"] == ["next_action"]
    assert "action" in schema["$defs"]
    registry.validate(
        {"next_action": {"action": "jump"}},
        SchemaRef(file="outputs.json", schema="work"),
        step_id="work",
    )


def test_schema_can_be_picked_from_defs(tmp_path: Path) -> None:
    registry = _registry(tmp_path)

    schema = registry.resolve(SchemaRef(file="outputs.json", schema="action"))

    assert schema["enum"] == ["next", "repeat", "jump", "handoff"]


def test_validation_errors_are_schema_failures(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    ref = SchemaRef(file="outputs.json", schema="work")

    with pytest.raises(SchemaResolutionFailure) as exc_info:
        registry.validate({"next_action": {"action": "closing"}}, ref, step_id="work")

    error = exc_info.value
    assert error.step_id == "work"
    assert error.context["schema"] == "outputs.json#work"
    assert error.context["errors"][0].startswith("next_action/action:")

    with pytest.raises(SchemaResolutionFailure, match=r"\(root\)"):
        registry.validate({}, ref, step_id="work")


def test_missing_schema_file_or_entry_is_config_error(tmp_path: Path) -> None:
    registry = _registry(tmp_path)

    with pytest.raises(ConfigError, match="not found"):
        registry.resolve(SchemaRef(file="nope.json", schema="work"))
    with pytest.raises(ConfigError, match="'review' not found"):
        registry.resolve(SchemaRef(file="outputs.json", schema="review"))


def test_invalid_schema_is_config_error(tmp_path: Path) -> None:
    (tmp_path / "broken.json").write_text(json.dumps({"type": 12}), encoding="utf-8")
    registry = SchemaRegistry(tmp_path)

    with pytest.raises(ConfigError, match="Invalid output schema"):
        registry.validator(SchemaRef(file="broken.json", schema=""))


def test_describe_renders_resolved_schema(tmp_path: Path) -> None:
    registry = _registry(tmp_path)

    rendered = registry.describe(SchemaRef(file="outputs.json", schema="work"))

    assert json.loads(rendered)["required"] == ["next_action"]
