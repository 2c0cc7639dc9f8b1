from __future__ import annotations

import contextlib
from pathlib import Path
from threading import RLock
from typing import Any, Callable, TypeVar
from uuid import uuid4

import yaml

T = TypeVar("T")


class YamlDocument:
    """A single YAML mapping on disk, rewritten atomically on every update."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = RLock()

    def load(self) -> dict[str, Any]:
        with self._lock:
            if not self.path.exists():
                return {}
            with self.path.open("r", encoding="utf-8") as handle:
                payload = yaml.safe_load(handle)
            if not isinstance(payload, dict):
                return {}
            return payload

    def write(self, payload: dict[str, Any]) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = self.path.with_name(f".{self.path.name}.{uuid4().hex}.tmp")
            try:
                with temp_path.open("w", encoding="utf-8") as handle:
                    yaml.safe_dump(payload, handle, sort_keys=False)
                temp_path.replace(self.path)
            except Exception:
                with contextlib.suppress(Exception):
                    temp_path.unlink(missing_ok=True)
                raise

    def update(self, mutate: Callable[[dict[str, Any]], T]) -> T:
        """Apply ``mutate`` to the loaded document and persist the result."""
        with self._lock:
            payload = self.load()
            result = mutate(payload)
            self.write(payload)
            return result
