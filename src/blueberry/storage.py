"""Path-keyed JSON key-value store.

Values live in a single JSON document on disk (``json-storage.json`` in the
config directory).  Keys are slash-separated paths into that document, so
``set("irrigation/valves", [...])`` and ``get("irrigation")`` address the same
tree.  Every mutation emits :attr:`StorageEvent.CHANGED` with the path.
"""

from __future__ import annotations

import asyncio
import copy
import enum
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from blueberry.core.events import EventBus

logger = logging.getLogger(__name__)


class StorageEvent(enum.StrEnum):
    CHANGED = "storage#changed"


def _split(path: str) -> list[str]:
    parts = [part for part in path.split("/") if part]
    if not parts:
        raise ValueError(f"Invalid storage path: {path!r}")
    return parts


class JsonStore:
    """Async get/set/delete over a JSON document persisted at *file_path*."""

    def __init__(self, file_path: Path | str, events: EventBus | None = None) -> None:
        self._path = Path(file_path)
        self._events = events
        self._lock = asyncio.Lock()
        self._data: dict[str, Any] = self._load()
        logger.info("Storage location is set to %s", self._path)

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8") or "{}")
        except json.JSONDecodeError:
            logger.warning("Storage file %s is not valid JSON; starting empty", self._path)
            return {}
        return data if isinstance(data, dict) else {}

    def _flush(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".json-storage-")
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(self._data, handle, indent=2, sort_keys=True)
        os.replace(tmp_name, self._path)

    async def get(self, path: str, default: Any = None) -> Any:
        """Return a deep copy of the value at *path*, or *default* when absent."""
        node: Any = self._data
        for part in _split(path):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return copy.deepcopy(node)

    async def set(self, path: str, value: Any) -> None:
        """Store *value* at *path*, creating intermediate objects."""
        parts = _split(path)
        async with self._lock:
            node = self._data
            for part in parts[:-1]:
                child = node.get(part)
                if not isinstance(child, dict):
                    child = node[part] = {}
                node = child
            node[parts[-1]] = copy.deepcopy(value)
            self._flush()
        self._changed(path)

    async def delete(self, path: str) -> None:
        """Remove *path* if present; missing paths are ignored."""
        parts = _split(path)
        async with self._lock:
            node: Any = self._data
            for part in parts[:-1]:
                if not isinstance(node, dict) or part not in node:
                    return
                node = node[part]
            if not isinstance(node, dict) or parts[-1] not in node:
                return
            del node[parts[-1]]
            self._flush()
        self._changed(path)

    def _changed(self, path: str) -> None:
        if self._events is not None:
            self._events.emit(StorageEvent.CHANGED, path)
