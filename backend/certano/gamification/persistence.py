"""Persistence ports for the local gamification state.

A port stores plain JSON-compatible documents under named keys. Stores
read their document once at startup and write it back after every change.
"""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Optional, Protocol


class StatePort(Protocol):
    def load(self, key: str) -> Optional[dict]:
        ...

    def save(self, key: str, data: dict) -> None:
        ...


class InMemoryStatePort:
    """Dict-backed port, used by tests and throwaway stores."""

    def __init__(self):
        self._docs: dict[str, str] = {}

    def load(self, key: str) -> Optional[dict]:
        raw = self._docs.get(key)
        return json.loads(raw) if raw is not None else None

    def save(self, key: str, data: dict) -> None:
        # serialise so callers never share mutable structures with the port
        self._docs[key] = json.dumps(data)


class JsonFileStatePort:
    """Stores each key as `<root>/<key>.json`, replacing the file atomically."""

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        return self.root / f"{key}.json"

    def load(self, key: str) -> Optional[dict]:
        path = self._path(key)
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def save(self, key: str, data: dict) -> None:
        path = self._path(key)
        with self._lock:
            self.root.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".json.tmp")
            tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp, path)
