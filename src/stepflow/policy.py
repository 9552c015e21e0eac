from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from stepflow.config import StepKind, ToolsConfig
from stepflow.errors import BoundaryViolation

BOUNDARY_BASH_PATTERNS = (
    re.compile(r"\bgh\s+issue\s+close\b"),
    re.compile(r"\bgh\s+issue\s+delete\b"),
    re.compile(r"\bgh\s+issue\s+transfer\b"),
    re.compile(r"\bgh\s+issue\s+edit\s+.*--state\s+closed"),
    re.compile(r"\bgh\s+issue\s+reopen\b"),
    re.compile(r"\bgh\s+pr\s+close\b"),
    re.compile(r"\bgh\s+pr\s+merge\b"),
    re.compile(r"\bgh\s+pr\s+ready\b"),
    re.compile(r"\bgh\s+release\s+create\b"),
    re.compile(r"\bgh\s+release\s+edit\b"),
    # gh api can reach every endpoint the patterns above guard.
    re.compile(r"\bgh\s+api\b"),
)
# Claude Code permission rules that deny the same commands before they run.
BOUNDARY_BASH_RULES = (
    "Bash(gh issue close:*)",
    "Bash(gh issue delete:*)",
    "Bash(gh issue transfer:*)",
    "Bash(gh issue reopen:*)",
    "Bash(gh pr close:*)",
    "Bash(gh pr merge:*)",
    "Bash(gh pr ready:*)",
    "Bash(gh release create:*)",
    "Bash(gh release edit:*)",
    "Bash(gh api:*)",
)


@dataclass(frozen=True, slots=True)
class ToolDecision:
    allowed: bool
    tool: str
    reason: str = ""


class ToolPolicy:
    def __init__(self, tools: ToolsConfig) -> None:
        self.base = frozenset(tools.base)
        self.boundary = frozenset(tools.boundary)

    def allowed_tools(self, kind: StepKind) -> frozenset[str]:
        if kind is StepKind.CLOSURE:
            return self.base | self.boundary
        # A boundary tool listed in the base set is still withheld.
        return self.base - self.boundary

    def disallowed_tools(self, kind: StepKind) -> tuple[str, ...]:
        """Deny rules handed to the engine so boundary actions never dispatch."""
        if kind is StepKind.CLOSURE:
            return ()
        return (*sorted(self.boundary), *BOUNDARY_BASH_RULES)

    def pre_check(
        self,
        tool: str,
        kind: StepKind,
        tool_input: dict[str, Any] | None = None,
    ) -> ToolDecision:
        if tool in self.boundary and kind is not StepKind.CLOSURE:
            return ToolDecision(
                allowed=False,
                tool=tool,
                reason=(
                    f'Tool "{tool}" is a boundary tool and not allowed in {kind.value} steps. '
                    "Boundary actions are only permitted in closure steps."
                ),
            )
        if tool not in self.allowed_tools(kind):
            return ToolDecision(
                allowed=False,
                tool=tool,
                reason=f'Tool "{tool}" is not in the allowed list for {kind.value} steps.',
            )
        if tool == "Bash" and kind is not StepKind.CLOSURE:
            command = str((tool_input or {}).get("command", ""))
            for pattern in BOUNDARY_BASH_PATTERNS:
                match = pattern.search(command)
                if match:
                    return ToolDecision(
                        allowed=False,
                        tool=tool,
                        reason=(
                            f'Bash command contains boundary action "{match.group(0)}" '
                            f"which is not allowed in {kind.value} steps."
                        ),
                    )
        return ToolDecision(allowed=True, tool=tool)

    def enforce(
        self,
        tool: str,
        kind: StepKind,
        tool_input: dict[str, Any] | None = None,
        *,
        step_id: str | None = None,
    ) -> None:
        decision = self.pre_check(tool, kind, tool_input)
        if not decision.allowed:
            raise BoundaryViolation(
                decision.reason,
                step_id=step_id,
                context={"tool": tool, "step_kind": kind.value},
            )
