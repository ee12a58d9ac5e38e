"""Pydantic models for the provider sync engine.

Defines the data contracts shared across the sync modules:

- ``ExternalRecord``: One workout as reported by the activity provider.
- ``ImportUnitPreference``: How imported workouts pick a unit and amount.
- ``SyncStatus``: Coordinator state machine (idle / syncing / error).
- ``SetupState``: Provider availability as seen by this install.
- ``SyncResult``: Outcome of the most recent cycle.

All models are frozen (immutable) for safety.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from ..store.models import ImportUnitPreference, Timestamp

__all__ = [
    "ExternalRecord",
    "ImportUnitPreference",
    "SetupState",
    "SyncResult",
    "SyncStatus",
]


class SyncStatus(str, Enum):
    """Coordinator states."""

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class SetupState(str, Enum):
    """Provider availability."""

    UNKNOWN = "unknown"
    UNSUPPORTED = "unsupported"
    NEEDS_PERMISSION = "needs_permission"
    READY = "ready"


class ExternalRecord(BaseModel):
    """A workout reported by the activity provider.

    Attributes:
        id: Provider-assigned identity (the external ID).
        activity_type: Provider activity type, e.g. ``"walking"``.
        start_time: Workout start.  Naive values are taken as UTC.
        end_time: Workout end, same rule.
        duration: Duration in seconds.
        distance_meters: Total distance, when the provider has one.
        energy_kcal: Active energy burned, when the provider has one.
    """

    id: str
    activity_type: str = "other"
    start_time: Timestamp
    end_time: Timestamp
    duration: float = Field(default=0.0, ge=0.0)
    distance_meters: float | None = None
    energy_kcal: float | None = None

    model_config = {"frozen": True}


class SyncResult(BaseModel):
    """Outcome of one sync cycle.

    Use ``SyncResult.success(count)`` or ``SyncResult.error(message)``.

    Attributes:
        ok: Whether the cycle completed.
        count: Number of items inserted (0 on error).
        message: Error message when ``ok`` is False.
        completed_at: When the cycle ended.
    """

    ok: bool
    count: int = 0
    message: str | None = None
    completed_at: datetime | None = None

    model_config = {"frozen": True}

    @classmethod
    def success(
        cls, count: int, completed_at: datetime | None = None
    ) -> SyncResult:
        return cls(ok=True, count=count, completed_at=completed_at)

    @classmethod
    def error(
        cls, message: str, completed_at: datetime | None = None
    ) -> SyncResult:
        return cls(ok=False, message=message, completed_at=completed_at)

    def summary(self) -> str:
        if self.ok:
            noun = "workout" if self.count == 1 else "workouts"
            return f"Imported {self.count} {noun}"
        return f"Sync failed: {self.message}"
