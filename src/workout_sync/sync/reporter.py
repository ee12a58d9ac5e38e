"""Sync status formatting functions.

Provides human-readable and machine-readable output for the coordinator:

- ``format_sync_result`` -- one-line outcome of the last cycle.
- ``format_sync_status`` -- multi-line status summary.
- ``format_dedup_report`` -- what an entity dedup pass changed.
- ``sync_status_to_json`` -- structured dict for ``--json`` output.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..store.dedup import DedupReport
    from .engine import SyncCoordinator
    from .models import SyncResult

# ------------------------------------------------------------------
# Human-readable output
# ------------------------------------------------------------------


def format_sync_result(result: SyncResult | None) -> str:
    if result is None:
        return "No sync has completed yet"
    return result.summary()


def format_sync_status(coordinator: SyncCoordinator) -> str:
    """Format the coordinator's current status as text.

    Args:
        coordinator: The coordinator to describe.

    Returns:
        Multi-line formatted string.
    """
    prefs = coordinator.preferences
    last_sync = prefs.last_sync_at
    lines = [
        f"Status: {coordinator.status.value}",
        f"Provider: {coordinator.setup_state.value}",
        f"Sync enabled: {'yes' if prefs.sync_enabled else 'no'}",
        f"Unit preference: {prefs.import_unit_preference.value}",
        f"Last sync: {last_sync.isoformat() if last_sync else 'never'}",
        f"Last result: {format_sync_result(coordinator.last_result)}",
        "",
        f"Seen workouts: {len(coordinator.seen)}",
        f"Deleted workouts: {len(coordinator.deleted)}",
        f"Deleted items: {len(coordinator.deleted_items)}",
        f"Deleted item hashes: {len(coordinator.deleted_hashes)}",
        f"Days: {len(coordinator.store.buckets)}",
        f"Items: {sum(1 for _ in coordinator.store.items())}",
    ]
    return "\n".join(lines)


def format_dedup_report(report: DedupReport) -> str:
    if not report.changed:
        return "No duplicates found"
    parts = []
    for label, count in (
        ("day buckets merged", report.buckets_merged),
        ("exercise types merged", report.exercises_merged),
        ("unit types merged", report.units_merged),
        ("duplicate items removed", report.items_removed),
        ("tombstoned items removed", report.tombstoned_removed),
        ("unit/amount repairs", report.invariant_repairs),
    ):
        if count:
            parts.append(f"{count} {label}")
    return "Dedup: " + ", ".join(parts)


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def sync_status_to_json(coordinator: SyncCoordinator) -> dict:
    """Convert the coordinator status to a JSON-serializable dict."""
    prefs = coordinator.preferences
    last_sync = prefs.last_sync_at
    result = coordinator.last_result
    return {
        "status": coordinator.status.value,
        "setup_state": coordinator.setup_state.value,
        "sync_enabled": prefs.sync_enabled,
        "import_unit_preference": prefs.import_unit_preference.value,
        "last_sync_at": last_sync.isoformat() if last_sync else None,
        "last_result": result.model_dump(mode="json") if result else None,
        "counts": {
            "seen": len(coordinator.seen),
            "deleted": len(coordinator.deleted),
            "deleted_items": len(coordinator.deleted_items),
            "deleted_hashes": len(coordinator.deleted_hashes),
            "days": len(coordinator.store.buckets),
            "items": sum(1 for _ in coordinator.store.items()),
        },
    }
