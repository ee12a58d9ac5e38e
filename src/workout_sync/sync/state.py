"""Sync state persistence layer.

Manages the key sets and preferences that survive between sync cycles.
Every value lives twice: in the install-local key-value store and in a
remote mirror shared with other installs.

Key design choices:

* **Additive union** -- ``TrackedKeySet.load()`` merges local and mirror
  so a tombstone written by any install is honoured everywhere.
* **Write both** -- ``persist()`` writes the same trimmed list to local
  and mirror; ``clear()`` removes the key from both.
* **Bounded size** -- each set has a cap; once exceeded it is trimmed to
  a lower watermark on persist.
* **Reload before trust** -- callers re-``load()`` at the start of every
  cycle rather than trusting what is already in memory.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from ..store.keyvalue import KeyValueStore, MemoryKeyValueStore
from ..store.models import normalize_external_id
from ..store.store import format_ts, parse_ts
from .models import ImportUnitPreference

logger = logging.getLogger(__name__)

SEEN_KEY = "seen_external_ids_v1"
DELETED_KEY = "deleted_external_ids_v1"
DELETED_ITEM_KEY = "deleted_item_ids_v1"
DELETED_HASH_KEY = "deleted_item_hashes_v1"
UNIT_PREFERENCE_KEY = "import_unit_preference_v1"
SYNC_ENABLED_KEY = "sync_enabled_v1"
LAST_SYNC_KEY = "last_sync_at"
TOAST_SHOWN_KEY = "background_toast_shown"


class SyncState:
    """Local + mirror key-value pair.

    Args:
        local: Install-local store.
        mirror: Remote mirror.  ``None`` uses a private in-memory store,
            i.e. mirroring is disabled.
    """

    def __init__(
        self,
        local: KeyValueStore,
        mirror: KeyValueStore | None = None,
    ) -> None:
        self.local = local
        self.mirror = mirror if mirror is not None else MemoryKeyValueStore()

    def read_list(self, key: str) -> set[str]:
        """Union of the string lists stored under *key* in both stores."""
        result: set[str] = set()
        for kv in (self.local, self.mirror):
            value = kv.get(key)
            if isinstance(value, list):
                result.update(str(v) for v in value)
        return result

    def read_value(self, key: str) -> Any | None:
        """Read *key*, mirror first then local."""
        value = self.mirror.get(key)
        if value is None:
            value = self.local.get(key)
        return value

    def write(self, key: str, value: Any) -> None:
        self.local.set(key, value)
        self.mirror.set(key, value)

    def remove(self, key: str) -> None:
        self.local.remove(key)
        self.mirror.remove(key)


# ---------------------------------------------------------------------------
# Key sets
# ---------------------------------------------------------------------------


class TrackedKeySet:
    """A bounded, mirrored set of string keys.

    Membership goes through ``fold()``, so two spellings that fold to the
    same key count as one.  The first spelling seen is the one persisted.

    Args:
        state: Backing local + mirror pair.
        key: Key-value key the set is stored under.
        cap: Size above which ``persist()`` trims.
        keep: Number of keys retained after trimming.
    """

    key = ""
    cap = 0
    keep = 0

    def __init__(self, state: SyncState) -> None:
        self._state = state
        self._keys: dict[str, str] = {}

    @staticmethod
    def fold(key: str) -> str:
        return key

    def load(self) -> set[str]:
        """Reload from local and mirror (additive union)."""
        self._keys = {}
        self.add(*sorted(self._state.read_list(self.key)))
        return self.snapshot()

    def persist(self) -> None:
        """Write the set to local and mirror, trimming if over the cap."""
        keys = sorted(self._keys.values())
        if len(keys) > self.cap:
            logger.debug(
                "Trimming %s from %d to %d keys", self.key, len(keys), self.keep
            )
            keys = keys[: self.keep]
            self._keys = {self.fold(k): k for k in keys}
        self._state.write(self.key, keys)

    def add(self, *keys: str) -> None:
        for k in keys:
            if k:
                self._keys.setdefault(self.fold(k), k)

    def discard(self, *keys: str) -> None:
        for k in keys:
            self._keys.pop(self.fold(k), None)

    def clear(self) -> None:
        """Forget every key, in memory and in both stores."""
        self._keys = {}
        self._state.remove(self.key)

    def snapshot(self) -> set[str]:
        return set(self._keys.values())

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.fold(key) in self._keys

    def __len__(self) -> int:
        return len(self._keys)


class SeenKeySet(TrackedKeySet):
    """External IDs already turned into local items."""

    key = SEEN_KEY
    cap = 5000
    keep = 4000
    fold = staticmethod(normalize_external_id)


class DeletedKeySet(TrackedKeySet):
    """Tombstoned external IDs: never re-import."""

    key = DELETED_KEY
    cap = 10000
    keep = 8000
    fold = staticmethod(normalize_external_id)


class DeletedItemKeySet(TrackedKeySet):
    """Tombstoned logical IDs of items without an external identity."""

    key = DELETED_ITEM_KEY
    cap = 10000
    keep = 8000


class DeletedItemHashSet(TrackedKeySet):
    """Content hashes of deleted items (see ``content_hash``).

    Only snapshot imports consult these.  Live sync cycles ignore them,
    since two genuinely separate workouts can share a hash.
    """

    key = DELETED_HASH_KEY
    cap = 10000
    keep = 8000


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------


class SyncPreferences:
    """User-facing sync settings persisted across sessions."""

    def __init__(self, state: SyncState) -> None:
        self._state = state

    @property
    def sync_enabled(self) -> bool:
        value = self._state.read_value(SYNC_ENABLED_KEY)
        return True if value is None else bool(value)

    @sync_enabled.setter
    def sync_enabled(self, value: bool) -> None:
        self._state.write(SYNC_ENABLED_KEY, bool(value))

    @property
    def import_unit_preference(self) -> ImportUnitPreference:
        raw = self._state.read_value(UNIT_PREFERENCE_KEY)
        try:
            return ImportUnitPreference(raw)
        except ValueError:
            return ImportUnitPreference.TIME

    @import_unit_preference.setter
    def import_unit_preference(self, value: ImportUnitPreference) -> None:
        self._state.write(UNIT_PREFERENCE_KEY, ImportUnitPreference(value).value)

    @property
    def last_sync_at(self) -> datetime | None:
        raw = self._state.read_value(LAST_SYNC_KEY)
        if not raw:
            return None
        try:
            return parse_ts(str(raw))
        except ValueError:
            logger.warning("Ignoring malformed %s value: %r", LAST_SYNC_KEY, raw)
            return None

    @last_sync_at.setter
    def last_sync_at(self, value: datetime | None) -> None:
        if value is None:
            self._state.remove(LAST_SYNC_KEY)
        else:
            self._state.write(LAST_SYNC_KEY, format_ts(value))

    @property
    def background_toast_shown(self) -> bool:
        return bool(self._state.read_value(TOAST_SHOWN_KEY))

    @background_toast_shown.setter
    def background_toast_shown(self, value: bool) -> None:
        self._state.write(TOAST_SHOWN_KEY, bool(value))
