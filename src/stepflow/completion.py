from __future__ import annotations

import asyncio
import json
import re
import subprocess
from enum import Enum
from typing import Protocol

from stepflow.config import (
    CompletionCriterion,
    ExternalStateCriterion,
    IterationBudgetCriterion,
    KeywordSignalCriterion,
    StepMachineCriterion,
)
from stepflow.errors import ConfigError, TransientError
from stepflow.session import RunSession

_ISSUE_REF = re.compile(r"^(?:(?P<repo>[\w.-]+/[\w.-]+)#)?#?(?P<number>\d+)$")


class CompletionVerdict(str, Enum):
    CONTINUE = "continue"
    COMPLETED = "completed"
    FAILED = "failed"


class ExternalStateTracker(Protocol):
    def fetch_state(self, resource_id: str, predicate: str) -> bool:
        """Return whether ``predicate`` currently holds for the tracked resource."""
        ...


class GitHubIssueTracker:
    """Reads issue state through the ``gh`` CLI. Never mutates the issue."""

    PREDICATES = {"closed": "CLOSED", "open": "OPEN"}

    def __init__(self, binary: str = "gh", default_repo: str | None = None) -> None:
        self.binary = binary
        self.default_repo = default_repo

    def _command(self, resource_id: str) -> list[str]:
        match = _ISSUE_REF.match(resource_id.strip())
        if not match:
            raise ConfigError(
                f"Unsupported issue reference: {resource_id!r}. Use N or owner/repo#N."
            )
        command = [self.binary, "issue", "view", match.group("number"), "--json", "number,state"]
        repo = match.group("repo") or self.default_repo
        if repo:
            command.extend(["--repo", repo])
        return command

    def check_reference(self, resource_id: str, predicate: str = "closed") -> None:
        """Raise ConfigError for a reference or predicate this tracker cannot read."""
        if predicate not in self.PREDICATES:
            raise ConfigError(f"Unsupported externalState predicate: {predicate}")
        self._command(resource_id)

    def fetch_state(self, resource_id: str, predicate: str) -> bool:
        expected = self.PREDICATES.get(predicate)
        if expected is None:
            raise ConfigError(f"Unsupported externalState predicate: {predicate}")
        command = self._command(resource_id)
        try:
            proc = subprocess.run(command, text=True, capture_output=True, timeout=60)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise TransientError(f"gh issue view failed: {exc}") from exc
        if proc.returncode != 0:
            raise TransientError(
                f"gh issue view failed: {proc.stderr.strip() or proc.stdout.strip()}"
            )
        try:
            payload = json.loads(proc.stdout)
        except json.JSONDecodeError as exc:
            raise TransientError(f"gh issue view returned invalid JSON: {exc}") from exc
        return str(payload.get("state", "")).upper() == expected


class CompletionManager:
    """Decides after each step whether the run stops.

    The configured criterion is checked first. ``max_iterations`` is a safety
    cap that fails the run when the criterion has not been met in time.
    """

    def __init__(
        self,
        criterion: CompletionCriterion,
        tracker: ExternalStateTracker | None = None,
        *,
        max_iterations: int = 100,
    ) -> None:
        if isinstance(criterion, ExternalStateCriterion) and tracker is None:
            raise ConfigError("externalState completion requires a work-item tracker.")
        self.criterion = criterion
        self.tracker = tracker
        self.max_iterations = max_iterations
        self.last_reason = ""

    async def _criterion_met(self, session: RunSession) -> bool:
        criterion = self.criterion
        if isinstance(criterion, ExternalStateCriterion):
            assert self.tracker is not None
            met = await asyncio.to_thread(
                self.tracker.fetch_state, criterion.resource_id, criterion.predicate
            )
            self.last_reason = (
                f"{criterion.resource_id} is {criterion.predicate}"
                if met
                else f"{criterion.resource_id} is not {criterion.predicate} yet"
            )
            return met
        if isinstance(criterion, IterationBudgetCriterion):
            self.last_reason = (
                f"iteration {session.iteration_count} of {criterion.max_iterations}"
            )
            return session.iteration_count >= criterion.max_iterations
        if isinstance(criterion, KeywordSignalCriterion):
            met = criterion.keyword.lower() in session.last_output.lower()
            self.last_reason = (
                f"keyword {criterion.keyword!r} found"
                if met
                else f"keyword {criterion.keyword!r} not found"
            )
            return met
        if isinstance(criterion, StepMachineCriterion):
            met = session.current_step_id in criterion.terminal_steps
            self.last_reason = f"current step {session.current_step_id}"
            return met
        raise ConfigError(f"Unknown completion criterion: {criterion!r}")

    async def evaluate(self, session: RunSession) -> CompletionVerdict:
        if await self._criterion_met(session):
            return CompletionVerdict.COMPLETED
        if session.iteration_count >= self.max_iterations:
            self.last_reason = f"iteration safety cap ({self.max_iterations}) reached"
            return CompletionVerdict.FAILED
        return CompletionVerdict.CONTINUE
