from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import jsonschema

from stepflow.config import SchemaRef
from stepflow.errors import ConfigError, SchemaResolutionFailure


class SchemaRegistry:
    """Loads step output schemas from an agent's ``schemas/`` directory.

    A schema file either is a JSON Schema itself or maps names to schemas;
    ``SchemaRef.schema`` picks the named entry. Shared ``$defs`` and
    ``definitions`` of the file stay resolvable from named entries.
    """

    def __init__(self, schemas_dir: Path | None) -> None:
        self.schemas_dir = schemas_dir
        self._files: dict[str, dict[str, Any]] = {}
        self._validators: dict[SchemaRef, Any] = {}

    def _load_file(self, name: str) -> dict[str, Any]:
        if name in self._files:
            return self._files[name]
        if self.schemas_dir is None:
            raise ConfigError(f"No schemas directory configured for {name}.")
        path = self.schemas_dir / name
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ConfigError(f"Output schema not found: {path}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Invalid JSON in schema file {path}: {exc}") from exc
        if not isinstance(document, dict):
            raise ConfigError(f"Schema file {path} must contain a JSON object.")
        self._files[name] = document
        return document

    def resolve(self, ref: SchemaRef) -> dict[str, Any]:
        document = self._load_file(ref.file)
        if not ref.schema:
            return document
        selected = document.get(ref.schema)
        if selected is None:
            selected = document.get("$defs", {}).get(ref.schema)
        if not isinstance(selected, dict):
            raise ConfigError(f"Schema '{ref.schema}' not found in {ref.file}.")
        schema = dict(selected)
        for shared in ("$defs", "definitions"):
            if shared in document and shared not in schema:
                schema[shared] = document[shared]
        return schema

    def validator(self, ref: SchemaRef) -> Any:
        if ref not in self._validators:
            schema = self.resolve(ref)
            validator_class = jsonschema.validators.validator_for(
                schema, default=jsonschema.Draft7Validator
            )
            try:
                validator_class.check_schema(schema)
            except jsonschema.SchemaError as exc:
                raise ConfigError(
                    f"Invalid output schema {ref.file}#{ref.schema}: {exc.message}"
                ) from exc
            self._validators[ref] = validator_class(schema)
        return self._validators[ref]

    def validate(self, payload: dict[str, Any], ref: SchemaRef, *, step_id: str) -> None:
        errors = sorted(
            self.validator(ref).iter_errors(payload),
            key=lambda error: [str(part) for part in error.path],
        )
        if not errors:
            return
        details = []
        for error in errors[:5]:
            location = "/".join(str(part) for part in error.path) or "(root)"
            details.append(f"{location}: {error.message}")
        raise SchemaResolutionFailure(
            f"Step '{step_id}' output does not match {ref.file}#{ref.schema}: "
            + "; ".join(details),
            step_id=step_id,
            context={"schema": f"{ref.file}#{ref.schema}", "errors": details},
        )

    def describe(self, ref: SchemaRef) -> str:
        """Pretty JSON of the resolved schema, for corrective prompts."""
        return json.dumps(self.resolve(ref), indent=2, ensure_ascii=False)
