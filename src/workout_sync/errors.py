"""Error taxonomy for provider sync and snapshot import.

Only ``SnapshotMalformed`` and ``ApplyFailed`` are meant to reach callers
as exceptions.  The coordinator captures the others in a ``SyncResult``.
"""


class WorkoutSyncError(Exception):
    """Base exception for workout_sync errors."""


class ProviderUnavailable(WorkoutSyncError):
    """The activity provider is not supported or disabled on this install."""


class ProviderPermissionDenied(WorkoutSyncError):
    """The activity provider refused access (user must grant permission)."""


class FetchFailed(WorkoutSyncError):
    """Fetching records from the provider failed (transport or payload)."""


class PersistenceFailed(WorkoutSyncError):
    """Writing the local store or a key-value store failed."""


class SnapshotMalformed(WorkoutSyncError):
    """A snapshot document could not be decoded or has the wrong shape."""


class ApplyFailed(WorkoutSyncError):
    """Applying an import plan failed part-way.

    The store may be partially mutated; callers should re-run entity
    dedup to heal.
    """
