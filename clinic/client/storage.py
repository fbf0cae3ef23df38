"""Client-local persistent key/value storage for the session snapshot."""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from threading import Lock
from typing import Any, Protocol

LOGGER = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r"^[A-Za-z0-9_.-]+$")


class SessionStorage(Protocol):
    """Minimal storage interface (a ``localStorage`` equivalent)."""

    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> None: ...


class MemorySessionStorage:
    """Process-local storage, mostly for tests and short-lived tools."""

    def __init__(self) -> None:
        self._items: dict[str, str] = {}

    def get(self, key: str) -> Any | None:
        raw = self._items.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any) -> None:
        self._items[key] = json.dumps(value)

    def remove(self, key: str) -> None:
        self._items.pop(key, None)


class FileSessionStorage:
    """One JSON file per key inside ``directory``; unreadable files read as absent."""

    def __init__(self, directory: Path) -> None:
        self._directory = directory
        self._directory.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()

    def _path(self, key: str) -> Path:
        if not _SAFE_KEY.match(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self._directory / f"{key}.json"

    def get(self, key: str) -> Any | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            LOGGER.warning("session_storage_unreadable", extra={"path": str(path)})
            return None

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp_path = path.with_suffix(".json.tmp")
        with self._lock:
            tmp_path.write_text(json.dumps(value, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)

    def remove(self, key: str) -> None:
        with self._lock:
            self._path(key).unlink(missing_ok=True)
