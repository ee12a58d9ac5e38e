"""Key-value stores used for sync key sets and preferences.

Every install has a local store plus a remote mirror that other installs
also write to.  ``JsonFileKeyValueStore`` backs both in practice (the
mirror lives in a shared directory); ``MemoryKeyValueStore`` is used when
the mirror is disabled and in tests.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol

from ..errors import PersistenceFailed

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Protocol that local and mirror key-value stores satisfy."""

    def get(self, key: str) -> Any | None:
        ...  # pragma: no cover

    def set(self, key: str, value: Any) -> None:
        ...  # pragma: no cover

    def remove(self, key: str) -> None:
        ...  # pragma: no cover


class MemoryKeyValueStore:
    """Dict-backed key-value store."""

    def __init__(self, data: dict[str, Any] | None = None) -> None:
        self.data: dict[str, Any] = dict(data or {})

    def get(self, key: str) -> Any | None:
        return self.data.get(key)

    def set(self, key: str, value: Any) -> None:
        self.data[key] = value

    def remove(self, key: str) -> None:
        self.data.pop(key, None)


class JsonFileKeyValueStore:
    """Key-value store persisted as one JSON object on disk.

    Every read re-loads the file so values written by another install
    (or process) since the last call are picked up.  Writes go through a
    temp file and ``os.replace()``.

    Args:
        path: Path of the JSON file.  Created on first write.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def get(self, key: str) -> Any | None:
        return self._read().get(key)

    def set(self, key: str, value: Any) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            logger.warning(
                "Ignoring unreadable key-value file %s: %s", self.path, exc
            )
            return {}
        if not isinstance(data, dict):
            logger.warning(
                "Key-value file %s has non-object root, ignoring", self.path
            )
            return {}
        return data

    def _write(self, data: dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent), suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(data, fh, indent=2, sort_keys=True)
                os.replace(tmp_path, self.path)
            except BaseException:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                raise
        except OSError as exc:
            raise PersistenceFailed(
                f"Cannot write key-value file {self.path}: {exc}"
            ) from exc
