"""
JSON-File Analysis State Store

Persists per-context window cursors to `analysis_state.json` so the
"no double-analysis" guarantee survives process restarts.

Writes go through a temp file + atomic replace under a FileLock, so several
processes sharing one knowledge base directory never interleave writes. A
saved cursor never moves backwards, even if another process raced ahead.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

from filelock import FileLock

from dialog_kg.storage.base import AnalysisStateStore
from dialog_kg.types import AnalysisState

logger = logging.getLogger(__name__)


class JsonAnalysisStateStore(AnalysisStateStore):
    """
    File-backed cursor store.

    Args:
        path: Directory holding analysis_state.json
        lock_timeout: Seconds to wait for the file lock
    """

    FILENAME = "analysis_state.json"

    def __init__(self, path: str | Path, lock_timeout: float = 30) -> None:
        self._dir = Path(path)
        self._file = self._dir / self.FILENAME
        self._lock = FileLock(self._dir / ".state.lock", timeout=lock_timeout)

    def _read(self) -> dict[str, dict]:
        if not self._file.exists():
            return {}
        try:
            return json.loads(self._file.read_text())
        except json.JSONDecodeError as e:
            logger.error(f"Corrupt analysis state file {self._file}: {e}")
            raise

    def _write(self, data: dict[str, dict]) -> None:
        temp_path = self._file.with_suffix(".json.tmp")
        temp_path.write_text(json.dumps(data, indent=2, sort_keys=True))
        temp_path.replace(self._file)  # Atomic on POSIX systems

    async def load(self, context_id: str) -> AnalysisState | None:
        def _load() -> AnalysisState | None:
            with self._lock:
                raw = self._read().get(context_id)
            return AnalysisState.model_validate(raw) if raw else None

        if not self._dir.exists():
            return None
        return await asyncio.to_thread(_load)

    async def save(self, state: AnalysisState) -> None:
        def _save() -> None:
            self._dir.mkdir(parents=True, exist_ok=True)
            with self._lock:
                data = self._read()
                existing = data.get(state.context_id)
                if existing and existing["last_analyzed_message_count"] > state.last_analyzed_message_count:
                    logger.warning(
                        f"Refusing to move cursor for {state.context_id} backwards "
                        f"({existing['last_analyzed_message_count']} -> "
                        f"{state.last_analyzed_message_count})"
                    )
                    return
                data[state.context_id] = state.model_dump(mode="json")
                self._write(data)

        await asyncio.to_thread(_save)

    async def clear(self, context_id: str | None = None) -> None:
        def _clear() -> None:
            if not self._dir.exists():
                return
            with self._lock:
                if context_id is None:
                    self._write({})
                    return
                data = self._read()
                if data.pop(context_id, None) is not None:
                    self._write(data)

        await asyncio.to_thread(_clear)
