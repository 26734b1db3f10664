"""Local durable key-value storage used for offline-first state."""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

PROGRESS_KEY = "progress"
APP_CONFIG_KEY = "appConfig"
MODULES_KEY = "courseModules"
MATERIALS_KEY = "materials"
STREAMS_KEY = "streams"
EVENTS_KEY = "events"
SCENARIOS_KEY = "scenarios"
ALL_USERS_KEY = "allUsers"
NOTIFICATIONS_KEY = "local_notifications"


class KeyValueStorage(Protocol):
    """Protocol describing the local storage contract."""

    def get(self, key: str, default: Any = None) -> Any:  # pragma: no cover - protocol definition
        ...

    def set(self, key: str, value: Any) -> None:  # pragma: no cover - protocol definition
        ...


class JsonFileStorage:
    """JSON-backed store; every ``set`` rewrites the file atomically."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._lock = threading.RLock()
        self._data: Optional[Dict[str, Any]] = None

    @property
    def path(self) -> Path:
        return self._path

    def _load_unlocked(self) -> Dict[str, Any]:
        if self._data is not None:
            return self._data
        if not self._path.exists():
            self._data = {}
            return self._data
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except (OSError, ValueError):
            logger.exception("Failed to read local storage at %s; starting empty", self._path)
            raw = {}
        self._data = raw if isinstance(raw, dict) else {}
        return self._data

    def _write_unlocked(self, data: Dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, ensure_ascii=False)
        os.replace(tmp_path, self._path)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            data = self._load_unlocked()
            if key not in data:
                return default
            return copy.deepcopy(data[key])

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._load_unlocked()
            data[key] = copy.deepcopy(value)
            self._write_unlocked(data)


__all__ = [
    "ALL_USERS_KEY",
    "APP_CONFIG_KEY",
    "EVENTS_KEY",
    "JsonFileStorage",
    "KeyValueStorage",
    "MATERIALS_KEY",
    "MODULES_KEY",
    "NOTIFICATIONS_KEY",
    "PROGRESS_KEY",
    "SCENARIOS_KEY",
    "STREAMS_KEY",
]
