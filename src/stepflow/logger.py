from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TextIO

LOG_LEVELS = {
    "debug",
    "info",
    "warn",
    "error",
    "assistant",
    "system",
    "result",
    "tool_use",
    "tool_result",
}
LOG_EXTENSION = ".jsonl"

_internal = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def rotate_log_files(log_dir: Path, max_files: int, extension: str = LOG_EXTENSION) -> list[Path]:
    """Delete the oldest log files so that one more file fits under ``max_files``."""
    if not log_dir.is_dir():
        return []
    candidates: list[tuple[float, Path]] = []
    for entry in log_dir.iterdir():
        if entry.is_file() and entry.name.endswith(extension):
            try:
                candidates.append((entry.stat().st_mtime, entry))
            except OSError:
                continue
    candidates.sort(key=lambda item: (item[0], item[1].name))

    excess = len(candidates) - max_files + 1
    removed: list[Path] = []
    for _, path in candidates[: max(0, excess)]:
        try:
            path.unlink()
            removed.append(path)
        except OSError as exc:
            _internal.warning("Failed to delete old log file %s: %s", path, exc)
    return removed


class SessionLogger:
    """Append-only JSONL event log owned by a single run session.

    Writes never raise. A failing disk degrades the logger to a no-op after
    the first reported error so that the run itself keeps going.
    """

    def __init__(
        self,
        log_dir: Path,
        session_id: str,
        *,
        max_files: int = 100,
        echo: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.log_dir = log_dir
        self.session_id = session_id
        self.max_files = max(1, int(max_files))
        self.path = log_dir / f"session-{session_id}{LOG_EXTENSION}"
        self.echo = echo
        self._handle: TextIO | None = None
        self._failed = False
        self._open()

    def _open(self) -> None:
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            rotate_log_files(self.log_dir, self.max_files)
            self._handle = self.path.open("a", encoding="utf-8")
        except OSError as exc:
            self._report_failure(exc)

    def _report_failure(self, exc: OSError) -> None:
        if not self._failed:
            _internal.warning("Session log %s disabled: %s", self.path, exc)
        self._failed = True
        self._handle = None

    def write(self, level: str, message: str, metadata: dict[str, Any] | None = None) -> None:
        entry: dict[str, Any] = {
            "timestamp": _utcnow_iso(),
            "level": level if level in LOG_LEVELS else "info",
            "message": message,
        }
        if metadata:
            entry["metadata"] = metadata
        if self.echo is not None:
            self.echo(entry)
        if self._handle is None:
            return
        try:
            self._handle.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
            self._handle.flush()
        except OSError as exc:
            self._report_failure(exc)

    def info(self, message: str, **metadata: Any) -> None:
        self.write("info", message, metadata)

    def error(self, message: str, **metadata: Any) -> None:
        self.write("error", message, metadata)

    def debug(self, message: str, **metadata: Any) -> None:
        self.write("debug", message, metadata)

    def event_hook(self, event: dict[str, Any]) -> None:
        """Adapter for components that report through ``event_hook`` callables."""
        payload = dict(event)
        name = str(payload.pop("event", "event"))
        self.write("system", name, payload)

    def close(self) -> None:
        if self._handle is None:
            return
        try:
            self._handle.close()
        except OSError as exc:
            self._report_failure(exc)
        self._handle = None

    def __enter__(self) -> SessionLogger:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()


def read_log(path: Path) -> list[dict[str, Any]]:
    entries: list[dict[str, Any]] = []
    if not path.exists():
        return entries
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line:
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            entries.append(parsed)
    return entries
