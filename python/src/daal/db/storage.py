"""
Key-value storage port.

Holds small JSON documents keyed by name: the mock adapter's table snapshot
and session, and the HTTP adapter's bearer token. Two backends:

- InMemoryStorage: process-local dict, used in tests.
- FileStorage: one `<key>.json` file per key under a base directory.

Writes replace the whole value; there is no compare-and-swap, so two writers
sharing one key can lose each other's updates.
"""

from __future__ import annotations

import copy
import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from ..config.logfire_config import get_logger

logger = get_logger(__name__)


class StoragePort(ABC):
    """Abstract base class for persisted key-value state."""

    @abstractmethod
    def get(self, key: str) -> Any | None:
        """Return the stored JSON value, or None if the key is absent."""
        ...

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """Store a JSON-serializable value, replacing any previous one."""
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        """
        Remove a key.

        Returns:
            True if deleted, False if it didn't exist
        """
        ...

    @abstractmethod
    def list(self, prefix: str = "") -> list[str]:
        """List stored keys starting with `prefix`, sorted."""
        ...


class InMemoryStorage(StoragePort):
    """Dict-backed storage. Values are deep-copied in and out."""

    def __init__(self, initial: dict[str, Any] | None = None):
        self._data: dict[str, Any] = copy.deepcopy(initial) if initial else {}

    def get(self, key: str) -> Any | None:
        if key not in self._data:
            return None
        return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        # Round-trip through JSON so tests see the same coercions as FileStorage.
        self._data[key] = json.loads(json.dumps(value, default=str))

    def delete(self, key: str) -> bool:
        if key not in self._data:
            return False
        del self._data[key]
        return True

    def list(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))


class FileStorage(StoragePort):
    """
    Filesystem storage backend.

    Each key is stored as `<base_path>/<key>.json`. Writes go through a
    temporary file and an atomic rename.
    """

    SUFFIX = ".json"

    def __init__(self, base_path: str | Path = "./.daal"):
        self.base_path = Path(base_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)
        logger.info(f"File storage initialized | base_path={self.base_path}")

    def _resolve_path(self, key: str) -> Path:
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise ValueError(f"Invalid storage key: {key!r}")
        full_path = self.base_path / f"{key}{self.SUFFIX}"
        try:
            full_path.resolve().relative_to(self.base_path)
        except ValueError:
            raise ValueError(f"Invalid storage key: {key!r} (outside base directory)")
        return full_path

    def get(self, key: str) -> Any | None:
        path = self._resolve_path(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring unreadable storage entry | key={key} | error={e}")
            return None

    def set(self, key: str, value: Any) -> None:
        path = self._resolve_path(key)
        payload = json.dumps(value, default=str)
        fd, tmp_name = tempfile.mkstemp(dir=self.base_path, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
            os.replace(tmp_name, path)
        except Exception:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.debug(f"Storage entry written | key={key} | bytes={len(payload)}")

    def delete(self, key: str) -> bool:
        path = self._resolve_path(key)
        if not path.exists():
            return False
        path.unlink()
        return True

    def list(self, prefix: str = "") -> list[str]:
        keys = [
            p.name[: -len(self.SUFFIX)]
            for p in self.base_path.glob(f"*{self.SUFFIX}")
            if not p.name.startswith(".")
        ]
        return sorted(k for k in keys if k.startswith(prefix))
