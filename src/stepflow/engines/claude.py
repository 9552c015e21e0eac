from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

from stepflow.engines.base import (
    EngineError,
    EngineMessage,
    EngineProcessError,
    EngineRequest,
    ReasoningEngine,
)


class ClaudeCodeEngine(ReasoningEngine):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(self, request: EngineRequest) -> list[str]:
        command = [
            self.binary,
            "-p",
            request.prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--permission-mode",
            request.permission_mode,
        ]
        if request.allowed_tools:
            command.extend(["--allowedTools", ",".join(sorted(request.allowed_tools))])
        if request.disallowed_tools:
            command.extend(["--disallowedTools", ",".join(request.disallowed_tools)])
        if request.model:
            command.extend(["--model", request.model])
        return command

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    @staticmethod
    def _content_blocks(event: dict[str, Any]) -> list[dict[str, Any]]:
        message = event.get("message")
        content = message.get("content") if isinstance(message, dict) else event.get("content")
        if isinstance(content, str):
            return [{"type": "text", "text": content}]
        if isinstance(content, list):
            return [item for item in content if isinstance(item, dict)]
        return []

    @staticmethod
    def _block_text(block: dict[str, Any]) -> str:
        content = block.get("text", block.get("content"))
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(
                str(item.get("text", "")) for item in content if isinstance(item, dict)
            )
        return ""

    def translate(self, event: dict[str, Any]) -> list[EngineMessage]:
        event_type = event.get("type")
        if event_type == "result":
            cost = event.get("total_cost_usd", event.get("cost_usd"))
            structured = event.get("structured_output")
            return [
                EngineMessage(
                    type="result",
                    content=str(event.get("result") or ""),
                    is_error=bool(event.get("is_error")) or event.get("subtype") not in (
                        None,
                        "success",
                    ),
                    cost_usd=float(cost) if isinstance(cost, (int, float)) else None,
                    structured_output=structured if isinstance(structured, dict) else None,
                )
            ]
        if event_type == "system":
            return [EngineMessage(type="system", content=str(event.get("subtype", "")))]

        messages: list[EngineMessage] = []
        for block in self._content_blocks(event):
            block_type = block.get("type")
            if block_type == "tool_use":
                tool_input = block.get("input")
                messages.append(
                    EngineMessage(
                        type="tool_use",
                        tool_name=str(block.get("name", "")),
                        tool_input=tool_input if isinstance(tool_input, dict) else {},
                    )
                )
            elif block_type == "tool_result":
                messages.append(
                    EngineMessage(
                        type="tool_result",
                        content=self._block_text(block),
                        is_error=bool(block.get("is_error")),
                    )
                )
            elif event_type == "assistant":
                text = self._block_text(block)
                if text:
                    messages.append(EngineMessage(type="assistant", content=text))
        return messages

    async def stream(self, request: EngineRequest) -> AsyncIterator[EngineMessage]:
        command = self.build_command(request)
        cwd = request.cwd or self.working_directory
        self._emit({"event": "engine_start", "engine": self.name, "cwd": str(cwd or "")})
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise EngineProcessError(
                f"Claude binary not found: {self.binary}",
                engine=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise EngineProcessError(
                "Claude engine did not expose stdout.", engine=self.name, retriable=False
            )

        saw_result = False
        drained = False
        parse_buffer = ""
        try:
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if self._appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    self._emit({"event": "engine_parse_fallback", "line": line[:200]})
                    continue
                if not isinstance(event, dict):
                    continue
                for message in self.translate(event):
                    saw_result = saw_result or message.type == "result"
                    yield message
            drained = True
        finally:
            if not drained and process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        self._emit({"event": "engine_exit", "engine": self.name, "exit_code": return_code})
        if return_code != 0:
            raise EngineError(
                f"Claude engine failed with exit code {return_code}: {stderr_output}",
                engine=self.name,
                exit_code=return_code,
                retriable=True,
            )
        if not saw_result:
            raise EngineError(
                "Claude engine stream ended without a result message.",
                engine=self.name,
                retriable=True,
            )
