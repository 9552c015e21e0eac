from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from stepflow.errors import ConfigError

PermissionMode = Literal["default", "plan", "acceptEdits", "bypassPermissions"]
MergeStrategy = Literal["squash", "fast-forward", "merge-commit"]

AGENT_ROOT = ".agent"
DEFINITION_FILE = "agent.toml"

BASE_TOOLS = (
    "Bash",
    "Read",
    "Write",
    "Edit",
    "Glob",
    "Grep",
    "WebFetch",
    "WebSearch",
    "Task",
    "TodoWrite",
)
BOUNDARY_TOOLS = (
    "githubIssueClose",
    "githubIssueUpdate",
    "githubIssueComment",
    "githubPrClose",
    "githubPrMerge",
    "githubPrUpdate",
    "githubReleaseCreate",
    "githubReleasePublish",
)
PERMISSION_MODES = {"default", "plan", "acceptEdits", "bypassPermissions"}
MERGE_STRATEGIES = ("squash", "fast-forward", "merge-commit")


class StepKind(str, Enum):
    WORK = "work"
    VERIFICATION = "verification"
    CLOSURE = "closure"


# Intent action names a step of each kind may declare in allowed_intents.
KIND_ALLOWED_INTENTS: dict[StepKind, frozenset[str]] = {
    StepKind.WORK: frozenset({"next", "repeat", "jump", "handoff", "escalate"}),
    StepKind.VERIFICATION: frozenset({"next", "repeat", "jump", "escalate"}),
    StepKind.CLOSURE: frozenset({"closing", "repeat", "escalate"}),
}


@dataclass(frozen=True, slots=True)
class SchemaRef:
    file: str
    schema: str


@dataclass(frozen=True, slots=True)
class StepDefinition:
    id: str
    kind: StepKind
    domain: tuple[str, str, str]
    allowed_intents: frozenset[str]
    output_schema: SchemaRef | None = None
    next: str | None = None
    intent_field: str = "next_action.action"
    target_field: str = "next_action.details.target"
    handoff_fields: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ExternalStateCriterion:
    resource_id: str
    predicate: str = "closed"
    type: str = "externalState"


@dataclass(frozen=True, slots=True)
class IterationBudgetCriterion:
    max_iterations: int
    type: str = "iterationBudget"


@dataclass(frozen=True, slots=True)
class KeywordSignalCriterion:
    keyword: str
    type: str = "keywordSignal"


@dataclass(frozen=True, slots=True)
class StepMachineCriterion:
    terminal_steps: frozenset[str]
    type: str = "stepMachine"


CompletionCriterion = (
    ExternalStateCriterion
    | IterationBudgetCriterion
    | KeywordSignalCriterion
    | StepMachineCriterion
)
COMPLETION_TYPES = ("externalState", "iterationBudget", "keywordSignal", "stepMachine")


@dataclass(frozen=True, slots=True)
class ToolsConfig:
    base: tuple[str, ...] = BASE_TOOLS
    boundary: tuple[str, ...] = BOUNDARY_TOOLS


@dataclass(frozen=True, slots=True)
class RetryConfig:
    preset: str = "default"
    max_retries: int | None = None
    initial_delay_seconds: float | None = None
    max_delay_seconds: float | None = None
    backoff_multiplier: float | None = None
    max_schema_failures: int = 2
    timeout_seconds: float = 600.0


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    directory: str = ""
    max_files: int = 100


@dataclass(frozen=True, slots=True)
class WorktreeConfig:
    enabled: bool = True
    root: str = ".stepflow/worktrees"
    base_ref: str = ""
    merge_strategies: tuple[str, ...] = MERGE_STRATEGIES


@dataclass(frozen=True, slots=True)
class EngineConfig:
    binary: str = "claude"
    model: str = ""


@dataclass(frozen=True, slots=True)
class AgentDefinition:
    name: str
    entry_step: str
    completion: CompletionCriterion
    steps: dict[str, StepDefinition]
    description: str = ""
    permission_mode: str = "acceptEdits"
    max_iterations: int = 100
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    worktree: WorktreeConfig = field(default_factory=WorktreeConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    agent_dir: Path | None = None

    def step(self, step_id: str) -> StepDefinition | None:
        return self.steps.get(step_id)

    @property
    def log_directory(self) -> str:
        return self.logging.directory or f"tmp/logs/agents/{self.name}"

    @property
    def schemas_dir(self) -> Path | None:
        if self.agent_dir is None:
            return None
        return self.agent_dir / "schemas"

    @property
    def prompts_dir(self) -> Path | None:
        if self.agent_dir is None:
            return None
        return self.agent_dir / "prompts"

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, agent_dir: Path | None = None) -> AgentDefinition:
        agent = _section(data, "agent")
        name = _require_str(agent, "name", "agent")
        steps = _parse_steps(data.get("steps"))
        completion = _parse_completion(_section(data, "completion"))

        entry_step = str(agent.get("entry_step") or "").strip()
        if not entry_step:
            entry_step = next(iter(steps))
        permission_mode = str(agent.get("permission_mode", "acceptEdits"))
        if permission_mode not in PERMISSION_MODES:
            raise ConfigError(f"Unsupported permission_mode: {permission_mode}")

        definition = cls(
            name=name,
            description=str(agent.get("description", "")),
            entry_step=entry_step,
            permission_mode=permission_mode,
            max_iterations=_positive_int(agent.get("max_iterations", 100), "agent.max_iterations"),
            completion=completion,
            steps=steps,
            tools=_parse_tools(data.get("tools", {})),
            retry=_parse_retry(data.get("retry", {})),
            logging=_parse_logging(data.get("logging", {})),
            worktree=_parse_worktree(data.get("worktree", {})),
            engine=EngineConfig(**_known(data.get("engine", {}), {"binary", "model"}, "engine")),
            agent_dir=agent_dir,
        )
        validate_definition(definition)
        return definition

    def to_dict(self) -> dict[str, Any]:
        completion: dict[str, Any] = {"type": self.completion.type}
        if isinstance(self.completion, ExternalStateCriterion):
            completion["resource_id"] = self.completion.resource_id
            completion["predicate"] = self.completion.predicate
        elif isinstance(self.completion, IterationBudgetCriterion):
            completion["max_iterations"] = self.completion.max_iterations
        elif isinstance(self.completion, KeywordSignalCriterion):
            completion["keyword"] = self.completion.keyword
        else:
            completion["terminal_steps"] = sorted(self.completion.terminal_steps)

        steps: list[dict[str, Any]] = []
        for step in self.steps.values():
            payload: dict[str, Any] = {
                "id": step.id,
                "kind": step.kind.value,
                "domain": list(step.domain),
                "allowed_intents": sorted(step.allowed_intents),
                "intent_field": step.intent_field,
                "target_field": step.target_field,
            }
            if step.next:
                payload["next"] = step.next
            if step.handoff_fields:
                payload["handoff_fields"] = list(step.handoff_fields)
            if step.output_schema:
                payload["output_schema"] = {
                    "file": step.output_schema.file,
                    "schema": step.output_schema.schema,
                }
            steps.append(payload)

        return {
            "agent": {
                "name": self.name,
                "description": self.description,
                "entry_step": self.entry_step,
                "permission_mode": self.permission_mode,
                "max_iterations": self.max_iterations,
            },
            "completion": completion,
            "tools": {"base": list(self.tools.base), "boundary": list(self.tools.boundary)},
            "retry": {
                key: value
                for key, value in {
                    "preset": self.retry.preset,
                    "max_retries": self.retry.max_retries,
                    "initial_delay_seconds": self.retry.initial_delay_seconds,
                    "max_delay_seconds": self.retry.max_delay_seconds,
                    "backoff_multiplier": self.retry.backoff_multiplier,
                    "max_schema_failures": self.retry.max_schema_failures,
                    "timeout_seconds": self.retry.timeout_seconds,
                }.items()
                if value is not None
            },
            "logging": {"directory": self.log_directory, "max_files": self.logging.max_files},
            "worktree": {
                "enabled": self.worktree.enabled,
                "root": self.worktree.root,
                "base_ref": self.worktree.base_ref,
                "merge_strategies": list(self.worktree.merge_strategies),
            },
            "engine": {"binary": self.engine.binary, "model": self.engine.model},
            "steps": steps,
        }


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name)
    if not isinstance(section, dict):
        raise ConfigError(f"Missing [{name}] section in agent definition.")
    return section


def _require_str(section: dict[str, Any], key: str, where: str) -> str:
    value = section.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{where}.{key} must be a non-empty string.")
    return value.strip()


def _positive_int(value: Any, where: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{where} must be an integer.") from exc
    if number < 1:
        raise ConfigError(f"{where} must be >= 1.")
    return number


def _known(section: Any, keys: set[str], where: str) -> dict[str, Any]:
    if not isinstance(section, dict):
        raise ConfigError(f"[{where}] must be a table.")
    unknown = sorted(set(section) - keys)
    if unknown:
        raise ConfigError(f"Unknown keys in [{where}]: {', '.join(unknown)}")
    return dict(section)


def _parse_completion(section: dict[str, Any]) -> CompletionCriterion:
    completion_type = section.get("type")
    if completion_type == "externalState":
        return ExternalStateCriterion(
            resource_id=str(section.get("resource_id", "")).strip(),
            predicate=str(section.get("predicate", "closed")),
        )
    if completion_type == "iterationBudget":
        return IterationBudgetCriterion(
            max_iterations=_positive_int(
                section.get("max_iterations"), "completion.max_iterations"
            )
        )
    if completion_type == "keywordSignal":
        return KeywordSignalCriterion(keyword=_require_str(section, "keyword", "completion"))
    if completion_type == "stepMachine":
        terminal = section.get("terminal_steps")
        if not isinstance(terminal, list) or not terminal:
            raise ConfigError("completion.terminal_steps must be a non-empty list.")
        return StepMachineCriterion(terminal_steps=frozenset(str(item) for item in terminal))
    raise ConfigError(
        f"Unknown completion type: {completion_type!r}. "
        f"Expected one of: {', '.join(COMPLETION_TYPES)}"
    )


def _parse_steps(raw_steps: Any) -> dict[str, StepDefinition]:
    if not isinstance(raw_steps, list) or not raw_steps:
        raise ConfigError("Agent definition must declare at least one [[steps]] entry.")

    steps: dict[str, StepDefinition] = {}
    for index, raw in enumerate(raw_steps):
        if not isinstance(raw, dict):
            raise ConfigError(f"steps[{index}] must be a table.")
        step_id = _require_str(raw, "id", f"steps[{index}]")
        if step_id in steps:
            raise ConfigError(f"Duplicate step id: {step_id}")
        try:
            kind = StepKind(str(raw.get("kind", "")))
        except ValueError as exc:
            raise ConfigError(
                f"Step '{step_id}' has unknown kind {raw.get('kind')!r}.", step_id=step_id
            ) from exc

        domain = raw.get("domain")
        if not isinstance(domain, list) or len(domain) != 3:
            raise ConfigError(
                f"Step '{step_id}' domain must have exactly three parts.", step_id=step_id
            )

        raw_intents = raw.get("allowed_intents")
        if raw_intents is None:
            allowed = KIND_ALLOWED_INTENTS[kind]
        elif isinstance(raw_intents, list) and raw_intents:
            allowed = frozenset(str(item) for item in raw_intents)
        else:
            raise ConfigError(
                f"Step '{step_id}' allowed_intents must be a non-empty list.", step_id=step_id
            )

        schema_ref = None
        raw_schema = raw.get("output_schema")
        if raw_schema is not None:
            if not isinstance(raw_schema, dict) or not raw_schema.get("file"):
                raise ConfigError(
                    f"Step '{step_id}' output_schema must be {{ file, schema }}.",
                    step_id=step_id,
                )
            schema_ref = SchemaRef(
                file=str(raw_schema["file"]), schema=str(raw_schema.get("schema", ""))
            )

        successor = raw.get("next")
        steps[step_id] = StepDefinition(
            id=step_id,
            kind=kind,
            domain=(str(domain[0]), str(domain[1]), str(domain[2])),
            allowed_intents=allowed,
            output_schema=schema_ref,
            next=str(successor) if successor else None,
            intent_field=str(raw.get("intent_field", "next_action.action")),
            target_field=str(raw.get("target_field", "next_action.details.target")),
            handoff_fields=tuple(str(item) for item in raw.get("handoff_fields", [])),
        )
    return steps


def _parse_tools(section: Any) -> ToolsConfig:
    values = _known(section, {"base", "boundary"}, "tools")
    return ToolsConfig(
        base=tuple(str(tool) for tool in values.get("base", BASE_TOOLS)),
        boundary=tuple(str(tool) for tool in values.get("boundary", BOUNDARY_TOOLS)),
    )


def _parse_retry(section: Any) -> RetryConfig:
    values = _known(
        section,
        {
            "preset",
            "max_retries",
            "initial_delay_seconds",
            "max_delay_seconds",
            "backoff_multiplier",
            "max_schema_failures",
            "timeout_seconds",
        },
        "retry",
    )
    preset = str(values.pop("preset", "default"))
    if preset not in {"default", "aggressive", "none"}:
        raise ConfigError(f"Unknown retry preset: {preset}")
    if values.get("max_schema_failures", 2) != 2:
        # One corrective re-prompt, then the second consecutive failure is terminal.
        raise ConfigError(
            f"retry.max_schema_failures must be 2, got {values['max_schema_failures']!r}"
        )
    return RetryConfig(preset=preset, **values)


def _parse_logging(section: Any) -> LoggingConfig:
    values = _known(section, {"directory", "max_files"}, "logging")
    max_files = _positive_int(values.get("max_files", 100), "logging.max_files")
    return LoggingConfig(directory=str(values.get("directory", "")), max_files=max_files)


def _parse_worktree(section: Any) -> WorktreeConfig:
    values = _known(section, {"enabled", "root", "base_ref", "merge_strategies"}, "worktree")
    strategies = tuple(str(item) for item in values.get("merge_strategies", MERGE_STRATEGIES))
    unknown = [item for item in strategies if item not in MERGE_STRATEGIES]
    if unknown or not strategies:
        raise ConfigError(f"Unsupported merge strategies: {', '.join(unknown) or '(empty)'}")
    return WorktreeConfig(
        enabled=bool(values.get("enabled", True)),
        root=str(values.get("root", ".stepflow/worktrees")),
        base_ref=str(values.get("base_ref", "")),
        merge_strategies=strategies,
    )


def validate_definition(definition: AgentDefinition) -> None:
    steps = definition.steps
    if definition.entry_step not in steps:
        raise ConfigError(f"entry_step '{definition.entry_step}' is not a defined step.")

    terminal: frozenset[str] = frozenset()
    if isinstance(definition.completion, StepMachineCriterion):
        terminal = definition.completion.terminal_steps

    for step in steps.values():
        permitted = KIND_ALLOWED_INTENTS[step.kind]
        illegal = sorted(step.allowed_intents - permitted)
        if illegal:
            raise ConfigError(
                f"Step '{step.id}' ({step.kind.value}) declares intents not permitted "
                f"for its kind: {', '.join(illegal)}",
                step_id=step.id,
            )
        if step.next is not None and step.next not in steps and step.next not in terminal:
            raise ConfigError(
                f"Step '{step.id}' default successor '{step.next}' is not a defined step.",
                step_id=step.id,
            )
        schemas_dir = definition.schemas_dir
        if step.output_schema and schemas_dir is not None:
            if not (schemas_dir / step.output_schema.file).exists():
                raise ConfigError(
                    f"Step '{step.id}' output schema not found: {step.output_schema.file}",
                    step_id=step.id,
                )


def with_overrides(
    definition: AgentDefinition,
    *,
    target_resource_id: str | None = None,
    iteration_max: int | None = None,
) -> AgentDefinition:
    completion = definition.completion
    max_iterations = definition.max_iterations
    if target_resource_id is not None:
        if not isinstance(completion, ExternalStateCriterion):
            raise ConfigError("--target is only valid for externalState completion.")
        completion = ExternalStateCriterion(
            resource_id=target_resource_id, predicate=completion.predicate
        )
    if iteration_max is not None:
        if iteration_max < 1:
            raise ConfigError("--iterations must be >= 1.")
        if isinstance(completion, IterationBudgetCriterion):
            completion = IterationBudgetCriterion(max_iterations=iteration_max)
        else:
            max_iterations = iteration_max
    if isinstance(completion, ExternalStateCriterion) and not completion.resource_id:
        raise ConfigError("externalState completion requires a resource id (--target).")

    return AgentDefinition(
        name=definition.name,
        description=definition.description,
        entry_step=definition.entry_step,
        permission_mode=definition.permission_mode,
        max_iterations=max_iterations,
        completion=completion,
        steps=definition.steps,
        tools=definition.tools,
        retry=definition.retry,
        logging=definition.logging,
        worktree=definition.worktree,
        engine=definition.engine,
        agent_dir=definition.agent_dir,
    )


def agent_dir_for(repo_root: Path, agent_name: str) -> Path:
    return repo_root / AGENT_ROOT / agent_name


def load_definition(repo_root: Path, agent_name: str) -> AgentDefinition:
    agent_dir = agent_dir_for(repo_root, agent_name)
    path = agent_dir / DEFINITION_FILE
    if not path.exists():
        raise ConfigError(f"Agent definition not found: {path}")
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    definition = AgentDefinition.from_dict(data, agent_dir=agent_dir)
    if definition.name != agent_name:
        raise ConfigError(
            f"Agent name mismatch: directory '{agent_name}' declares '{definition.name}'."
        )
    return definition


def _toml_key(key: str) -> str:
    if key.replace("_", "").replace("-", "").isalnum():
        return key
    return json.dumps(key)


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if isinstance(value, dict):
        inner = ", ".join(f"{_toml_key(k)} = {_toml_value(v)}" for k, v in value.items())
        return "{ " + inner + " }"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(definition: AgentDefinition) -> str:
    data = definition.to_dict()
    lines: list[str] = []
    for section in ["agent", "completion", "tools", "retry", "logging", "worktree", "engine"]:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{_toml_key(key)} = {_toml_value(value)}")
        lines.append("")
    for step in data["steps"]:
        lines.append("[[steps]]")
        for key, value in step.items():
            lines.append(f"{_toml_key(key)} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def save_definition(path: Path, definition: AgentDefinition) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(definition), encoding="utf-8")
