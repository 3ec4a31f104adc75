"""Durable key/blob storage for cache snapshots.

Each cache writes one namespaced key holding ``{"version": N, "state":
{...}}``.  A blob with a different schema version is discarded on load
instead of migrated; everything in it can be fetched again from the server.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class PersistenceAdapter(ABC):
    """Read/write contract a storage backend must satisfy."""

    @abstractmethod
    def read(self, key: str) -> Any | None:
        """Return the JSON-compatible value stored under *key*, or None."""
        ...

    @abstractmethod
    def write(self, key: str, value: Any) -> None:
        """Store *value* under *key*, replacing any previous value."""
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove *key*; no-op if absent."""
        ...


class MemoryPersistence(PersistenceAdapter):
    """In-process storage, mainly for tests and ephemeral sessions."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def read(self, key: str) -> Any | None:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    def write(self, key: str, value: Any) -> None:
        # Round-trip through JSON so callers see the same types a file
        # backend would give them.
        self._data[key] = json.dumps(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._data)


class JsonFilePersistence(PersistenceAdapter):
    """One JSON file per key inside *directory*."""

    def __init__(self, directory: str | os.PathLike[str]) -> None:
        self.directory = Path(directory).expanduser()

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def read(self, key: str) -> Any | None:
        path = self._path(key)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable persisted state %s: %s", path, exc)
            return None

    def write(self, key: str, value: Any) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        fd, tmp = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(value, f, ensure_ascii=False)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass


def save_versioned(
    adapter: PersistenceAdapter, key: str, version: int, state: dict[str, Any]
) -> None:
    """Write *state* under *key* wrapped with its schema *version*."""
    adapter.write(key, {"version": version, "state": state})


def load_versioned(
    adapter: PersistenceAdapter, key: str, version: int
) -> dict[str, Any] | None:
    """Return the state stored under *key* if its version matches.

    Mismatched or malformed blobs are deleted and ``None`` is returned.
    """
    blob = adapter.read(key)
    if blob is None:
        return None

    if not isinstance(blob, dict) or not isinstance(blob.get("state"), dict):
        logger.warning("Discarding malformed persisted blob %s", key)
        adapter.delete(key)
        return None

    stored = blob.get("version")
    if stored != version:
        logger.info(
            "Discarding persisted %s: schema version %s != %s", key, stored, version
        )
        adapter.delete(key)
        return None

    return blob["state"]
