"""Persisted key-value settings backing every piece of durable sync state.

Keys in use:
    sync.anchor.<stream>        per-stream watermark (checkpoint.py)
    sync.watermark.<path>       upload ledger fingerprints (dedup.py)
    sync.fullProgress           backfill progress grid (backfill.py)
    sync.lastSyncDate           last completed sync (scheduler.py)
    sync.lastOutcome            last sync outcome (scheduler.py)
    dataCollect.<category_id>   category toggles (scheduler.py)

Values must be JSON-serializable.  Every read or write failure is raised as
PersistenceError so callers can abort the pass without touching state.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from src.healthsync.errors import PersistenceError

logger = logging.getLogger("healthsync.sync.store")


class SettingsStore(ABC):
    """Abstract persisted key-value capability."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """Return the value stored under ``key``, or ``default``."""

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """Durably store ``value`` under ``key`` before returning."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key``; a missing key is not an error."""

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        """Remove every key starting with ``prefix``.  Returns the count removed."""

    @abstractmethod
    def keys(self, prefix: str = "") -> list[str]:
        """Return the stored keys starting with ``prefix``, sorted."""


class MemorySettingsStore(SettingsStore):
    """Process-local store for tests and ephemeral runs."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return copy.deepcopy(self._data.get(key, default))

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [k for k in self._data if k.startswith(prefix)]
            for key in doomed:
                del self._data[key]
            return len(doomed)

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))


class JsonFileSettingsStore(SettingsStore):
    """Settings persisted as one JSON object on disk.

    Every mutation rewrites the whole file through a temporary file and an
    atomic rename, so a crash leaves either the old or the new snapshot.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._data: dict[str, Any] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, Any]:
        if self._data is not None:
            return self._data
        if not self._path.exists():
            self._data = {}
            return self._data
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"Cannot read settings from {self._path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise PersistenceError(f"Settings file {self._path} does not hold a JSON object")
        self._data = raw
        return self._data

    def _flush(self, data: dict[str, Any]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(data, fh, sort_keys=True, indent=2)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp, self._path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Cannot write settings to {self._path}: {exc}") from exc

    def _mutate(self, apply) -> Any:
        with self._lock:
            current = self._load()
            updated = dict(current)
            result = apply(updated)
            self._flush(updated)
            self._data = updated
            return result

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return copy.deepcopy(self._load().get(key, default))

    def set(self, key: str, value: Any) -> None:
        def apply(data: dict[str, Any]) -> None:
            data[key] = copy.deepcopy(value)

        self._mutate(apply)

    def delete(self, key: str) -> None:
        with self._lock:
            if key not in self._load():
                return
        self._mutate(lambda data: data.pop(key, None))

    def delete_prefix(self, prefix: str) -> int:
        def apply(data: dict[str, Any]) -> int:
            doomed = [k for k in data if k.startswith(prefix)]
            for k in doomed:
                del data[k]
            return len(doomed)

        return self._mutate(apply)

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._load() if k.startswith(prefix))
