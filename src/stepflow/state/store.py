from __future__ import annotations

import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from stepflow.errors import StepFlowError
from stepflow.session import utcnow_iso


class StateStoreError(StepFlowError):
    """Raised when a local state document cannot be read or written."""


class JsonEnvelopeStore:
    """Directory of JSON documents wrapped in a revisioned envelope.

    Each document is ``{schema_version, revision, updated_at, data}``. Writes
    go through a lock file and an atomic rename so a concurrent reader never
    sees a half-written document.
    """

    SCHEMA_VERSION = 1

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self.lock_file = directory / ".lock"

    def path(self, key: str) -> Path:
        safe = key.replace("/", "-").replace("\\", "-")
        return self.directory / f"{safe}.json"

    @contextmanager
    def _lock(self, timeout_seconds: float = 3.0) -> Iterator[None]:
        self.directory.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateStoreError(f"Timed out waiting for {self.lock_file}.") from exc
                time.sleep(0.02)
        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def read_envelope(self, key: str) -> dict[str, Any] | None:
        path = self.path(key)
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateStoreError(f"Corrupt state document {path}: {exc}") from exc
        if not isinstance(raw, dict) or "data" not in raw:
            raise StateStoreError(f"State document {path} is missing its envelope.")
        return raw

    def read(self, key: str) -> Any:
        envelope = self.read_envelope(key)
        return None if envelope is None else envelope["data"]

    def write(self, key: str, data: Any) -> dict[str, Any]:
        with self._lock():
            current = self.read_envelope(key)
            revision = int(current.get("revision", 0)) if current else 0
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": revision + 1,
                "updated_at": utcnow_iso(),
                "data": data,
            }
            path = self.path(key)
            staging = path.with_suffix(".json.tmp")
            staging.write_text(
                json.dumps(envelope, ensure_ascii=False, indent=2) + "\n", encoding="utf-8"
            )
            os.replace(staging, path)
        return envelope

    def delete(self, key: str) -> bool:
        with self._lock():
            try:
                self.path(key).unlink()
            except FileNotFoundError:
                return False
        return True

    def keys(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        return sorted(entry.stem for entry in self.directory.glob("*.json"))
