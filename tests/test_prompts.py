from pathlib import Path

import pytest

from stepflow.config import (
    KIND_ALLOWED_INTENTS,
    AgentDefinition,
    IterationBudgetCriterion,
    StepDefinition,
    StepKind,
)
from stepflow.errors import ConfigError
from stepflow.prompts import FilePromptRenderer, substitute


def _definition(agent_dir: Path | None) -> AgentDefinition:
    step = StepDefinition(
        id="work",
        kind=StepKind.WORK,
        domain=("steps", "work", "default"),
        allowed_intents=KIND_ALLOWED_INTENTS[StepKind.WORK],
    )
    return AgentDefinition(
        name="iterator",
        description="Improve the parser.",
        entry_step="work",
        completion=IterationBudgetCriterion(max_iterations=3),
        steps={"work": step},
        agent_dir=agent_dir,
    )


def test_substitute_fills_both_placeholder_forms() -> None:
    rendered = substitute(
        "Issue {uv-issue} at iteration {iteration}; keep {unknown} and {{literal}}.",
        {"issue": "42", "iteration": 2},
    )

    assert rendered == "Issue 42 at iteration 2; keep {unknown} and {{literal}}."


def test_renderer_reads_prompt_file_for_domain(tmp_path: Path) -> None:
    prompt = tmp_path / "prompts" / "steps" / "work" / "default.md"
    prompt.parent.mkdir(parents=True)
    prompt.write_text("Work on {uv-target} (session {session_id}).\n", encoding="utf-8")
    renderer = FilePromptRenderer(_definition(tmp_path))

    rendered = renderer.render("work", {"target": "#42", "session_id": "abc"})

    assert renderer.path_for(_definition(tmp_path).steps["work"]) == prompt
    assert rendered == "Work on #42 (session abc)."


def test_renderer_falls_back_when_prompt_file_missing(tmp_path: Path) -> None:
    renderer = FilePromptRenderer(_definition(tmp_path))

    rendered = renderer.render("work", {"iteration": 4})

    assert 'step "work" (work)' in rendered
    assert "Improve the parser." in rendered
    assert "Iteration: 4" in rendered
    assert "escalate, handoff, jump, next, repeat" in rendered


def test_renderer_without_agent_dir_uses_fallback() -> None:
    renderer = FilePromptRenderer(_definition(None))

    assert renderer.path_for(_definition(None).steps["work"]) is None
    assert "next_action.action" in renderer.render("work", {})


def test_unknown_step_is_config_error(tmp_path: Path) -> None:
    renderer = FilePromptRenderer(_definition(tmp_path))

    with pytest.raises(ConfigError, match="unknown step 'ghost'"):
        renderer.render("ghost", {})
