from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import click

from stepflow.completion import ExternalStateTracker, GitHubIssueTracker
from stepflow.config import (
    DEFINITION_FILE,
    AgentDefinition,
    ExternalStateCriterion,
    IterationBudgetCriterion,
    KeywordSignalCriterion,
    SchemaRef,
    StepDefinition,
    StepKind,
    StepMachineCriterion,
    agent_dir_for,
    load_definition,
    save_definition,
    with_overrides,
)
from stepflow.engines import ClaudeCodeEngine, ReasoningEngine
from stepflow.errors import ConfigError, HandoffMismatch
from stepflow.logger import LOG_EXTENSION, SessionLogger
from stepflow.orchestrator import CancellationToken, StepFlowOrchestrator, abort_flag_path
from stepflow.prompts import FilePromptRenderer
from stepflow.schema import SchemaRegistry
from stepflow.session import RunSession, TerminalOutcome
from stepflow.state import HandoffPayload, HandoffStore, WorktreeManager, restore_from_handoff

SCAFFOLD_SCHEMA_FILE = "step_outputs.json"
SCAFFOLD_PROMPT = """\
# {title}

Agent: {{uv-agent_name}}
Session: {{uv-session_id}} (iteration {{uv-iteration}})

{instructions}

Finish your reply with a JSON object:

```json
{{"next_action": {{"action": "{default_action}", "reason": "<why>"}}}}
```

Allowed actions: {actions}.
"""


class DefinitionError(click.ClickException):
    """Invalid agent definition; exits with status 2."""

    exit_code = 2


def _repo_root(repo_value: str) -> Path:
    return Path(repo_value).resolve()


def _build_engine(
    definition: AgentDefinition, repo_root: Path, logger: SessionLogger
) -> ReasoningEngine:
    return ClaudeCodeEngine(
        binary=definition.engine.binary,
        working_directory=repo_root,
        event_hook=logger.event_hook,
    )


def _build_tracker(definition: AgentDefinition) -> ExternalStateTracker | None:
    if isinstance(definition.completion, ExternalStateCriterion):
        return GitHubIssueTracker()
    return None


def _preflight(definition: AgentDefinition) -> None:
    """Reject schemas and targets that would only fail once the run is under way."""
    registry = SchemaRegistry(definition.schemas_dir)
    for step in definition.steps.values():
        if step.output_schema is not None:
            registry.validator(step.output_schema)
    if isinstance(definition.completion, ExternalStateCriterion):
        GitHubIssueTracker().check_reference(
            definition.completion.resource_id, definition.completion.predicate
        )


def _echo_entry(entry: dict[str, Any]) -> None:
    click.echo(json.dumps(entry, ensure_ascii=False, default=str), err=True)


async def _run_session(
    repo_root: Path,
    definition: AgentDefinition,
    session: RunSession,
    resume_from: HandoffPayload | None,
    *,
    verbose: bool,
) -> TerminalOutcome:
    log_dir = repo_root / definition.log_directory
    with SessionLogger(
        log_dir,
        session.session_id,
        max_files=definition.logging.max_files,
        echo=_echo_entry if verbose else None,
    ) as logger:
        cancel = CancellationToken(abort_flag_path(repo_root, definition.name))
        # A stop request left over from an earlier run must not abort this one.
        cancel.consume()
        orchestrator = StepFlowOrchestrator(
            definition,
            _build_engine(definition, repo_root, logger),
            FilePromptRenderer(definition),
            logger,
            worktrees=WorktreeManager(
                repo_root, definition.worktree, definition.name, event_hook=logger.event_hook
            ),
            handoffs=HandoffStore(repo_root),
            tracker=_build_tracker(definition),
            cancel=cancel,
        )
        return await orchestrator.run(session, resume_from=resume_from)


def _resume_session(
    repo_root: Path, agent_name: str, lineage: str | None
) -> tuple[RunSession, HandoffPayload]:
    store = HandoffStore(repo_root)
    payload = store.load(lineage) if lineage else store.latest(agent_name)
    if payload is None:
        raise HandoffMismatch(f"No hand-off to resume for agent '{agent_name}'.")
    return restore_from_handoff(payload, agent_name=agent_name, expected_lineage=lineage), payload


@click.group()
def cli() -> None:
    """Step-flow agent runner."""


@cli.command("run")
@click.option("--agent", "agent_name", required=True)
@click.option("--target", "target", default=None, help="Work item the run is bound to.")
@click.option("--iterations", "iterations", type=int, default=None)
@click.option("--resume", is_flag=True, default=False)
@click.option("--lineage", default=None, help="Lineage id to resume (default: latest).")
@click.option("--repo", "repo_value", default=".", show_default=True)
@click.option("--verbose", is_flag=True, default=False)
@click.pass_context
def run_command(
    ctx: click.Context,
    agent_name: str,
    target: str | None,
    iterations: int | None,
    resume: bool,
    lineage: str | None,
    repo_value: str,
    verbose: bool,
) -> None:
    repo_root = _repo_root(repo_value)
    try:
        definition = with_overrides(
            load_definition(repo_root, agent_name),
            target_resource_id=target,
            iteration_max=iterations,
        )
        _preflight(definition)
    except ConfigError as exc:
        raise DefinitionError(str(exc)) from exc

    resume_from: HandoffPayload | None = None
    if resume:
        try:
            session, resume_from = _resume_session(repo_root, agent_name, lineage)
        except HandoffMismatch as exc:
            raise click.ClickException(str(exc)) from exc
    elif lineage:
        raise click.UsageError("--lineage requires --resume.")
    else:
        session = RunSession.start(agent_name, definition.entry_step)

    try:
        outcome = asyncio.run(
            _run_session(repo_root, definition, session, resume_from, verbose=verbose)
        )
    except ConfigError as exc:
        raise DefinitionError(str(exc)) from exc

    click.echo(json.dumps(outcome.to_dict(), ensure_ascii=False, indent=2))
    ctx.exit(outcome.exit_code)


def _scaffold_steps() -> dict[str, StepDefinition]:
    schema = SCAFFOLD_SCHEMA_FILE
    return {
        "work": StepDefinition(
            id="work",
            kind=StepKind.WORK,
            domain=("steps", "work", "default"),
            allowed_intents=frozenset({"next", "repeat", "handoff", "escalate"}),
            output_schema=SchemaRef(schema, "work"),
            next="review",
            handoff_fields=("next_action.details.summary",),
        ),
        "review": StepDefinition(
            id="review",
            kind=StepKind.VERIFICATION,
            domain=("steps", "review", "default"),
            allowed_intents=frozenset({"next", "jump", "escalate"}),
            output_schema=SchemaRef(schema, "review"),
            next="close",
        ),
        "close": StepDefinition(
            id="close",
            kind=StepKind.CLOSURE,
            domain=("steps", "close", "default"),
            allowed_intents=frozenset({"closing", "repeat"}),
            output_schema=SchemaRef(schema, "close"),
        ),
    }


def _scaffold_schema(steps: dict[str, StepDefinition]) -> dict[str, Any]:
    document: dict[str, Any] = {}
    for step in steps.values():
        document[step.id] = {
            "type": "object",
            "required": ["next_action"],
            "properties": {
                "next_action": {
                    "type": "object",
                    "required": ["action"],
                    "properties": {
                        "action": {"type": "string"},
                        "reason": {"type": "string"},
                        "details": {"type": "object"},
                    },
                }
            },
        }
    return document


SCAFFOLD_INSTRUCTIONS = {
    "work": ("Do the work", "Make progress on the task in this working copy."),
    "review": ("Review the work", "Check the changes. Jump back to `work` if they fall short."),
    "close": ("Close out", "Finalise the task. Boundary tools are available in this step."),
}
SCAFFOLD_DEFAULT_ACTION = {"work": "next", "review": "next", "close": "closing"}


@cli.command("init")
@click.option("--agent", "agent_name", required=True)
@click.option(
    "--completion",
    "completion_type",
    type=click.Choice(["externalState", "iterationBudget", "keywordSignal", "stepMachine"]),
    default="iterationBudget",
    show_default=True,
)
@click.option("--force", is_flag=True, default=False)
@click.option("--repo", "repo_value", default=".", show_default=True)
def init_command(agent_name: str, completion_type: str, force: bool, repo_value: str) -> None:
    repo_root = _repo_root(repo_value)
    agent_dir = agent_dir_for(repo_root, agent_name)
    definition_path = agent_dir / DEFINITION_FILE
    if definition_path.exists() and not force:
        raise click.ClickException(f"{definition_path} already exists (use --force).")

    completion: Any
    if completion_type == "externalState":
        completion = ExternalStateCriterion(resource_id="")
    elif completion_type == "keywordSignal":
        completion = KeywordSignalCriterion(keyword="TASK COMPLETE")
    elif completion_type == "stepMachine":
        completion = StepMachineCriterion(terminal_steps=frozenset({"done"}))
    else:
        completion = IterationBudgetCriterion(max_iterations=10)

    steps = _scaffold_steps()
    definition = AgentDefinition(
        name=agent_name,
        description=f"{agent_name} agent",
        entry_step="work",
        completion=completion,
        steps=steps,
    )

    schemas_dir = agent_dir / "schemas"
    schemas_dir.mkdir(parents=True, exist_ok=True)
    (schemas_dir / SCAFFOLD_SCHEMA_FILE).write_text(
        json.dumps(_scaffold_schema(steps), indent=2) + "\n", encoding="utf-8"
    )
    renderer = FilePromptRenderer(
        AgentDefinition(
            name=agent_name,
            entry_step="work",
            completion=completion,
            steps=steps,
            agent_dir=agent_dir,
        )
    )
    for step in steps.values():
        prompt_path = renderer.path_for(step)
        assert prompt_path is not None
        prompt_path.parent.mkdir(parents=True, exist_ok=True)
        title, instructions = SCAFFOLD_INSTRUCTIONS[step.id]
        prompt_path.write_text(
            SCAFFOLD_PROMPT.format(
                title=title,
                instructions=instructions,
                default_action=SCAFFOLD_DEFAULT_ACTION[step.id],
                actions=", ".join(sorted(step.allowed_intents)),
            ),
            encoding="utf-8",
        )
    save_definition(definition_path, definition)

    click.echo(f"Initialized agent '{agent_name}' in {agent_dir}")
    click.echo(f"Definition: {definition_path}")
    click.echo(f"Completion: {completion_type}")


@cli.command("stop")
@click.option("--agent", "agent_name", required=True)
@click.option("--repo", "repo_value", default=".", show_default=True)
def stop_command(agent_name: str, repo_value: str) -> None:
    flag = abort_flag_path(_repo_root(repo_value), agent_name)
    flag.parent.mkdir(parents=True, exist_ok=True)
    flag.write_text("stop\n", encoding="utf-8")
    click.echo(f"Stop requested for '{agent_name}'; the run ends at the next step boundary.")


@cli.command("handoffs")
@click.option("--agent", "agent_name", default=None)
@click.option("--repo", "repo_value", default=".", show_default=True)
def handoffs_command(agent_name: str | None, repo_value: str) -> None:
    payloads = HandoffStore(_repo_root(repo_value)).list_handoffs(agent_name)
    if not payloads:
        click.echo("No hand-offs found.")
        return
    for payload in payloads:
        click.echo(
            f"{payload.lineage_session_id} {payload.agent_name} "
            f"resume_at={payload.resume_step_id} iterations={payload.iteration_count} "
            f"{payload.created_at}"
        )


def _latest_log(log_dir: Path) -> Path | None:
    if not log_dir.is_dir():
        return None
    logs = [entry for entry in log_dir.iterdir() if entry.name.endswith(LOG_EXTENSION)]
    if not logs:
        return None
    return max(logs, key=lambda entry: entry.stat().st_mtime)


@cli.command("status")
@click.option("--agent", "agent_name", required=True)
@click.option("--repo", "repo_value", default=".", show_default=True)
def status_command(agent_name: str, repo_value: str) -> None:
    repo_root = _repo_root(repo_value)
    try:
        definition = load_definition(repo_root, agent_name)
    except ConfigError as exc:
        raise DefinitionError(str(exc)) from exc
    latest = HandoffStore(repo_root).latest(agent_name)
    log_path = _latest_log(repo_root / definition.log_directory)
    payload = {
        "agent": definition.name,
        "entry_step": definition.entry_step,
        "completion": definition.completion.type,
        "steps": list(definition.steps),
        "latest_handoff": latest.to_dict() if latest else None,
        "latest_log": str(log_path) if log_path else None,
        "stop_requested": abort_flag_path(repo_root, agent_name).exists(),
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    cli()
