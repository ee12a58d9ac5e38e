"""Local activity store: entities, JSON persistence and entity dedup."""

from .dedup import DedupReport, run_entity_dedup
from .keyvalue import JsonFileKeyValueStore, KeyValueStore, MemoryKeyValueStore
from .models import (
    IMPORTED_NOTE,
    ActivityItem,
    DayBucket,
    ExerciseType,
    ImportUnitPreference,
    UnitType,
)
from .store import ActivityStore

__all__ = [
    "IMPORTED_NOTE",
    "ActivityItem",
    "ActivityStore",
    "DayBucket",
    "DedupReport",
    "ExerciseType",
    "ImportUnitPreference",
    "JsonFileKeyValueStore",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "UnitType",
    "run_entity_dedup",
]
