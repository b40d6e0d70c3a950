"""
Key-value stores backing the persistent cache and settings.

Only ``get``, ``set`` and ``delete`` are required from a store. Values must
be JSON-serializable.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Process-wide key-value store collaborator."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        pass

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass


class MemoryStore(KeyValueStore):
    """Dict-backed store, used in tests and in secure sessions."""

    def __init__(self, initial: Optional[dict[str, Any]] = None):
        self._data: dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore(KeyValueStore):
    """Store persisted as a single JSON document on disk.

    The file is read lazily on first access and rewritten on every change.
    A corrupt or unreadable file is logged and treated as empty.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._data: Optional[dict[str, Any]] = None
        self._lock = threading.Lock()

    def _load(self) -> dict[str, Any]:
        if self._data is None:
            self._data = {}
            if self.path.exists():
                try:
                    with open(self.path, "r", encoding="utf-8") as f:
                        loaded = json.load(f)
                    if isinstance(loaded, dict):
                        self._data = loaded
                except (OSError, json.JSONDecodeError) as e:
                    logger.warning("Could not read store %s: %s", self.path, e)
        return self._data

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(self._data, f, ensure_ascii=False, indent=2)
        tmp.replace(self.path)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._load()[key] = value
            self._save()

    def delete(self, key: str) -> None:
        with self._lock:
            if self._load().pop(key, None) is not None:
                self._save()
