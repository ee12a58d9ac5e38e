"""Pydantic models for snapshot import / export.

Defines the data contracts shared across the transfer modules:

- ``Snapshot`` and its ``Snapshot*`` parts: the versioned export document.
- ``Plan`` with its entry types: what an import would do, per item.
- ``ImportDecisions``: the user's (or a strategy's) resolution per key.
- ``ApplyResult``: what an apply actually changed.

All models are frozen (immutable) for safety, except ``ImportDecisions``,
which review helpers build up incrementally.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, Field

from ..store.models import Timestamp

SNAPSHOT_VERSION = 1

# ---------------------------------------------------------------------------
# Snapshot document
# ---------------------------------------------------------------------------


class SnapshotUnit(BaseModel):
    name: str
    abbreviation: str = ""
    step_size: float = 1.0
    display_as_integer: bool = False
    created_at: Timestamp | None = None

    model_config = {"frozen": True}


class SnapshotExercise(BaseModel):
    name: str
    base_met: float = 4.0
    rep_weight: float = 0.15
    default_pace_min_per_mi: float = 10.0
    icon_system_name: str | None = None
    default_unit_name: str | None = None
    created_at: Timestamp | None = None

    model_config = {"frozen": True}


class SnapshotItem(BaseModel):
    """One exported activity item.

    ``logical_id`` is absent in legacy exports; ``external_id`` is set for
    provider-imported items.
    """

    logical_id: str | None = None
    exercise_name: str
    unit_name: str | None = None
    amount: float = 0.0
    note: str | None = None
    enjoyment: int = 3
    intensity: int = 3
    created_at: Timestamp
    modified_at: Timestamp
    external_id: str | None = None

    model_config = {"frozen": True}


class SnapshotDay(BaseModel):
    date: date
    notes: str | None = None
    items: list[SnapshotItem] = Field(default_factory=list)

    model_config = {"frozen": True}


class SnapshotTombstones(BaseModel):
    external_ids: list[str] = Field(default_factory=list)
    logical_ids: list[str] = Field(default_factory=list)
    item_hashes: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}


class Snapshot(BaseModel):
    """The full export document."""

    version: int = SNAPSHOT_VERSION
    exported_at: Timestamp
    units: list[SnapshotUnit] = Field(default_factory=list)
    exercises: list[SnapshotExercise] = Field(default_factory=list)
    days: list[SnapshotDay] = Field(default_factory=list)
    deleted: SnapshotTombstones = Field(default_factory=SnapshotTombstones)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


class NewerSide(str, Enum):
    """Which side was modified more recently."""

    LOCAL = "local"
    IMPORT_FILE = "import_file"
    EQUAL = "equal"


class ItemView(BaseModel):
    """Comparable rendering of one item, local or incoming."""

    identity: str | None = None
    exercise_name: str
    unit_name: str | None = None
    amount: float
    enjoyment: int
    intensity: int
    note: str | None = None
    created_at: datetime
    modified_at: datetime | None = None

    model_config = {"frozen": True}


class PlanEntry(BaseModel):
    """Base for every plan entry: the incoming item and where it goes."""

    key: str
    day: date
    incoming: SnapshotItem

    model_config = {"frozen": True}


class IdentityConflict(PlanEntry):
    """Same stable identity on both sides, different content."""

    local: ItemView
    newer: NewerSide
    local_modified_at: datetime
    import_modified_at: datetime


class TombstoneConflict(PlanEntry):
    """The incoming item was deleted locally (by identity or content hash)."""


class NearDuplicate(PlanEntry):
    """No identity match, but an existing local item looks the same."""

    local: ItemView


class PlannedInsert(PlanEntry):
    """No match at all."""


class AlreadyExists(PlanEntry):
    identity_matched: bool = False


class Plan(BaseModel):
    """Partition of a snapshot's items into conflict classes."""

    identity_conflicts: list[IdentityConflict] = Field(default_factory=list)
    tombstone_conflicts: list[TombstoneConflict] = Field(default_factory=list)
    near_duplicates: list[NearDuplicate] = Field(default_factory=list)
    planned_inserts: list[PlannedInsert] = Field(default_factory=list)
    already_exists: list[AlreadyExists] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def total(self) -> int:
        return (
            len(self.identity_conflicts)
            + len(self.tombstone_conflicts)
            + len(self.near_duplicates)
            + len(self.planned_inserts)
            + len(self.already_exists)
        )

    @property
    def has_conflicts(self) -> bool:
        return bool(
            self.identity_conflicts
            or self.tombstone_conflicts
            or self.near_duplicates
        )


# ---------------------------------------------------------------------------
# Decisions and results
# ---------------------------------------------------------------------------


class ImportDecisions(BaseModel):
    """Per-key resolutions.  Empty sets mean "favor local state".

    Attributes:
        keep_import: Identity conflicts to overwrite with the import side.
        restore_keys: Tombstone conflicts to restore.
        skip_insert_keys: Planned inserts to skip.
        insert_legacy_keys: Near-duplicates / already-exists to force-insert.
    """

    keep_import: set[str] = Field(default_factory=set)
    restore_keys: set[str] = Field(default_factory=set)
    skip_insert_keys: set[str] = Field(default_factory=set)
    insert_legacy_keys: set[str] = Field(default_factory=set)


class ApplyResult(BaseModel):
    inserted_units: int = 0
    inserted_exercises: int = 0
    inserted_days: int = 0
    inserted_items: int = 0
    updated_items: int = 0
    restored_items: int = 0
    skipped_items: int = 0
    merged_tombstones: int = 0

    model_config = {"frozen": True}
