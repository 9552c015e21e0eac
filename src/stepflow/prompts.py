from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Protocol

from stepflow.config import AgentDefinition, StepDefinition
from stepflow.errors import ConfigError

_PLACEHOLDER = re.compile(r"\{(uv-)?([A-Za-z0-9_]+)\}")

FALLBACK_PROMPT = """
You are executing step "{step_id}" ({kind}) of the "{agent}" agent.
{description}
Iteration: {iteration}

Do the work this step calls for, then finish your reply with a single JSON
object. Put your decision at "{intent_field}"; allowed values: {intents}.
Give a short justification at "next_action.reason".
""".strip()


class PromptRenderer(Protocol):
    def render(self, step_id: str, variables: dict[str, Any]) -> str:
        ...


def substitute(template: str, variables: dict[str, Any]) -> str:
    """Fill ``{uv-name}`` and ``{name}`` placeholders; unknown ones stay verbatim."""

    def _replace(match: re.Match[str]) -> str:
        name = match.group(2)
        if name not in variables:
            return match.group(0)
        return str(variables[name])

    return _PLACEHOLDER.sub(_replace, template)


class FilePromptRenderer:
    """Reads ``prompts/<c1>/<c2>/<c3>.md`` for a step's domain path."""

    def __init__(self, definition: AgentDefinition) -> None:
        self.definition = definition
        self.prompts_dir = definition.prompts_dir

    def path_for(self, step: StepDefinition) -> Path | None:
        if self.prompts_dir is None:
            return None
        c1, c2, c3 = step.domain
        return self.prompts_dir / c1 / c2 / f"{c3}.md"

    def _fallback(self, step: StepDefinition, variables: dict[str, Any]) -> str:
        return FALLBACK_PROMPT.format(
            step_id=step.id,
            kind=step.kind.value,
            agent=self.definition.name,
            description=self.definition.description,
            iteration=variables.get("iteration", 0),
            intent_field=step.intent_field,
            intents=", ".join(sorted(step.allowed_intents)),
        )

    def render(self, step_id: str, variables: dict[str, Any]) -> str:
        step = self.definition.step(step_id)
        if step is None:
            raise ConfigError(f"Cannot render prompt for unknown step '{step_id}'.")
        path = self.path_for(step)
        if path is None or not path.exists():
            return self._fallback(step, variables)
        return substitute(path.read_text(encoding="utf-8"), variables).strip()
