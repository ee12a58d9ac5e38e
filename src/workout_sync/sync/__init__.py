"""Provider sync engine.

Merges workouts from an activity provider into the local store without
creating duplicates and without resurrecting workouts the user deleted.

Modules:

- ``engine``   -- ``SyncCoordinator``: background, manual, foreground,
  forced and exact-record cycles.
- ``guard``    -- ``DedupGuard``: in-flight gate plus local / global
  existence checks and relocation.
- ``mapper``   -- ``RecordMapper``: provider activity -> catalog exercise,
  unit and amount.
- ``state``    -- seen / deleted key sets and preferences (local + mirror).
- ``source``   -- ``StaticRecordSource``, ``HttpRecordSource`` and the
  coalescing ``ChangeChannel``.
- ``models``   -- ``ExternalRecord``, ``SyncResult`` and status enums.
- ``reporter`` -- human-readable and JSON status output.

Usage example
-------------
::

    from pathlib import Path
    from workout_sync.store import ActivityStore, JsonFileKeyValueStore
    from workout_sync.sync import HttpRecordSource, SyncCoordinator, SyncState

    store = ActivityStore.open(Path(".workout_sync"))
    state = SyncState(JsonFileKeyValueStore(Path(".workout_sync/state.json")))
    source = HttpRecordSource("https://health.example.com/api", token="...")

    coordinator = SyncCoordinator(source, store, state)
    inserted = await coordinator.sync_now(days=7)
"""

from .engine import SyncCoordinator
from .guard import DedupGuard, InsertOutcome
from .mapper import RecordMapper
from .models import (
    ExternalRecord,
    ImportUnitPreference,
    SetupState,
    SyncResult,
    SyncStatus,
)
from .reporter import (
    format_dedup_report,
    format_sync_result,
    format_sync_status,
    sync_status_to_json,
)
from .source import ChangeChannel, HttpRecordSource, StaticRecordSource
from .state import SyncPreferences, SyncState

__all__ = [
    "ChangeChannel",
    "DedupGuard",
    "ExternalRecord",
    "HttpRecordSource",
    "ImportUnitPreference",
    "InsertOutcome",
    "RecordMapper",
    "SetupState",
    "StaticRecordSource",
    "SyncCoordinator",
    "SyncPreferences",
    "SyncResult",
    "SyncState",
    "SyncStatus",
    "format_dedup_report",
    "format_sync_result",
    "format_sync_status",
    "sync_status_to_json",
]
