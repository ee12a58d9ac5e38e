"""Sync coordinator: merges provider workouts into the local store.

The ``SyncCoordinator`` ties together the record source, key sets,
catalog mapper, insertion guard and entity dedup.  A normal cycle:

1. Refuses to start while another cycle is running (returns 0).
2. Reloads the seen / deleted key sets (local + mirror union).
3. Purges seen keys that no longer have a local item.
4. Fetches records for the trailing window.
5. Drops tombstoned and seen-and-present records.
6. Groups the rest by calendar day and finds or creates each bucket.
7. Converts each record to an item and runs it through the guard.
8. Commits the store once.
9. Marks every record that now exists locally as seen, after the commit.
10. Records the result and the last-sync timestamp.
11. Runs post-cycle entity dedup and commits again if it changed anything.

Errors never escape a cycle: they end it with ``SyncResult.error`` and 0
imported, and the next trigger retries.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import date, datetime, timedelta, tzinfo
from typing import Callable, Iterable

from ..errors import (
    FetchFailed,
    PersistenceFailed,
    ProviderPermissionDenied,
    ProviderUnavailable,
)
from ..store.dedup import run_entity_dedup
from ..store.models import (
    ActivityItem,
    DayBucket,
    day_of,
    normalize_external_id,
    utc_now,
)
from ..store.store import ActivityStore
from .guard import DedupGuard, InsertOutcome
from .mapper import RecordMapper
from .models import ExternalRecord, SetupState, SyncResult, SyncStatus
from .source import ChangeChannel, RecordSource
from .state import (
    DeletedItemHashSet,
    DeletedItemKeySet,
    DeletedKeySet,
    SeenKeySet,
    SyncPreferences,
    SyncState,
)

logger = logging.getLogger(__name__)


class SyncCoordinator:
    """Drive sync cycles between a record source and the local store.

    Args:
        source: Provider adapter.
        store: Local activity store.
        state: Local + mirror key-value pair for key sets and preferences.
        guard: Insertion guard; share one instance between coordinators
            that write to the same store.
        region: Region code used by the mapper (miles vs kilometers).
        tz: Timezone for calendar days (system local zone if ``None``).
        clock: Returns the current aware time; tests inject a fixed one.
        background_window_days: Lookback for background cycles.
        manual_window_days: Default lookback for ``sync_now``.
        force_window_hours: Default lookback for forced imports.
        foreground_min_interval: Default throttle for foreground syncs.
    """

    def __init__(
        self,
        source: RecordSource,
        store: ActivityStore,
        state: SyncState,
        *,
        guard: DedupGuard | None = None,
        region: str | None = None,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] = utc_now,
        background_window_days: int = 30,
        manual_window_days: int = 7,
        force_window_hours: int = 24,
        foreground_min_interval: timedelta = timedelta(minutes=30),
    ) -> None:
        self.source = source
        self.store = store
        self.guard = guard or DedupGuard()
        self.region = region
        self.tz = tz
        self.clock = clock
        self.background_window_days = background_window_days
        self.manual_window_days = manual_window_days
        self.force_window_hours = force_window_hours
        self.foreground_min_interval = foreground_min_interval

        self.seen = SeenKeySet(state)
        self.deleted = DeletedKeySet(state)
        self.deleted_items = DeletedItemKeySet(state)
        self.deleted_hashes = DeletedItemHashSet(state)
        self.preferences = SyncPreferences(state)

        self.status = SyncStatus.IDLE
        self.syncing = False
        self.last_result: SyncResult | None = None
        self.setup_state = SetupState.UNKNOWN
        self.toast_message: str | None = None

        self._channel: ChangeChannel | None = None
        self._observer: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Subscribe to provider changes and start the observer task.

        Must be called from a running event loop.
        """
        if self._observer is not None and not self._observer.done():
            return
        self._channel = self.source.subscribe()
        self._observer = asyncio.get_running_loop().create_task(
            self._observe(self._channel)
        )
        logger.info("Sync observer started")

    async def stop(self) -> None:
        """Unsubscribe and cancel the observer.  Running cycles finish."""
        if self._channel is not None:
            self.source.unsubscribe(self._channel)
            self._channel = None
        if self._observer is not None:
            self._observer.cancel()
            try:
                await self._observer
            except asyncio.CancelledError:
                pass
            self._observer = None
            logger.info("Sync observer stopped")

    async def _observe(self, channel: ChangeChannel) -> None:
        while await channel.wait():
            try:
                await self.process_background_updates()
            except Exception as exc:
                logger.error("Background sync failed: %s", exc)

    # ------------------------------------------------------------------
    # Normal cycles
    # ------------------------------------------------------------------

    async def process_background_updates(self) -> int:
        """Run one background cycle over the background window."""
        window = timedelta(days=self.background_window_days)
        return await self._run_normal_cycle(window, background=True)

    async def sync_now(self, days: int | None = None) -> int:
        """Run one manual cycle over the last *days* days."""
        window = timedelta(
            days=self.manual_window_days if days is None else days
        )
        return await self._run_normal_cycle(window, background=False)

    async def foreground_sync_if_needed(
        self, min_interval: timedelta | None = None
    ) -> int:
        """Run a background cycle unless one ran recently.

        The throttle is bypassed when stale seen keys were purged, since
        that means something needs re-importing.
        """
        if not self.preferences.sync_enabled:
            return 0
        interval = (
            self.foreground_min_interval
            if min_interval is None
            else min_interval
        )
        self.seen.load()
        purged = self._purge_stale_seen()
        if not purged:
            last = self.preferences.last_sync_at
            if last is not None and self.clock() - last < interval:
                logger.debug("Foreground sync skipped: throttled (last=%s)", last)
                return 0
        logger.debug("Foreground sync running (purged=%d)", purged)
        return await self.process_background_updates()

    async def _run_normal_cycle(
        self, window: timedelta, background: bool
    ) -> int:
        if not self.preferences.sync_enabled:
            logger.debug("Sync skipped: disabled")
            return 0
        if self.syncing:
            logger.debug("Sync skipped: another sync in progress")
            return 0
        self._begin()
        try:
            return await self._normal_cycle(window, background)
        finally:
            self._finish()

    async def _normal_cycle(self, window: timedelta, background: bool) -> int:
        self.seen.load()
        self.deleted.load()
        self._purge_stale_seen()

        end = self.clock()
        start = end - window
        records = await self._fetch(start, end)
        if records is None:
            return 0
        logger.debug(
            "Fetched %d records between %s and %s", len(records), start, end
        )

        candidates = self._partition(records)
        logger.debug("Considered new records: %d", len(candidates))

        inserted = 0
        if candidates:
            inserted = self._insert_records(candidates, gated=True)
        try:
            if candidates:
                await self.store.commit_async()
                # Seen only after the store is durably written.
                for record in candidates:
                    if self.store.has_external_id(record.id):
                        self.seen.add(record.id)
                self.seen.persist()
            self.preferences.last_sync_at = end
        except PersistenceFailed as exc:
            logger.error("Sync failed to persist: %s", exc)
            self.last_result = SyncResult.error(str(exc), self.clock())
            return 0

        self.last_result = SyncResult.success(inserted, self.clock())
        logger.info(
            "Sync complete: %s",
            self.last_result.summary(),
            extra={
                "cycle": "background" if background else "manual",
                "window": str(window),
                "fetched": len(records),
                "inserted": inserted,
                "skipped": len(records) - len(candidates),
            },
        )

        if background and inserted > 0:
            self._maybe_show_toast(self.last_result)
        if candidates:
            await self._post_cycle_maintenance()
        return inserted

    # ------------------------------------------------------------------
    # Dedup-bypassing paths
    # ------------------------------------------------------------------

    async def force_import_ignoring_dedup(
        self, hours: int | None = None
    ) -> int:
        """Import every record from the last *hours* hours, unconditionally.

        Seen / deleted sets and the guard are not consulted.  Post-cycle
        dedup on the next normal cycle collapses anything this duplicates.
        """
        end = self.clock()
        start = end - timedelta(
            hours=self.force_window_hours if hours is None else hours
        )
        records = await self._fetch(start, end)
        if records is None:
            return 0
        logger.debug("Force import window fetched=%d", len(records))
        inserted = self._insert_records(records, gated=False)
        try:
            await self.store.commit_async()
        except PersistenceFailed as exc:
            logger.error("Force import failed: %s", exc)
            self.last_result = SyncResult.error(str(exc), self.clock())
            return 0
        self.last_result = SyncResult.success(inserted, self.clock())
        logger.info(
            "Force import complete: %s",
            self.last_result.summary(),
            extra={"cycle": "force", "fetched": len(records), "inserted": inserted},
        )
        return inserted

    async def import_specific_records_ignoring_dedup(
        self, records: Iterable[ExternalRecord]
    ) -> int:
        """Import exactly *records*, e.g. after the user approved them.

        The records are gated in the guard for the duration so background
        cycles skip them, and marked seen after a successful commit.
        Tombstones are left in place.
        """
        records = list(records)
        if not records:
            return 0
        was_syncing = self.syncing
        self.syncing = True
        self.status = SyncStatus.SYNCING
        self.last_result = None
        gated = self.guard.acquire_many(r.id for r in records)
        try:
            inserted = self._insert_records(records, gated=False)
            await self.store.commit_async()
            self.seen.load()
            for record in records:
                if self.store.has_external_id(record.id):
                    self.seen.add(record.id)
            self.seen.persist()
        except PersistenceFailed as exc:
            logger.error("Import failed: %s", exc)
            self.last_result = SyncResult.error(str(exc), self.clock())
            return 0
        finally:
            self.guard.release_many(gated)
            self.syncing = was_syncing
            if not was_syncing:
                self._finish()
        self.last_result = SyncResult.success(inserted, self.clock())
        return inserted

    # ------------------------------------------------------------------
    # Deletion and cache management
    # ------------------------------------------------------------------

    async def remove_imports(self, bucket: DayBucket) -> int:
        """Delete imported items from *bucket* and tombstone their IDs."""
        doomed = [i for i in bucket.items if i.is_imported]
        if not doomed:
            return 0
        external_ids = [i.external_id for i in doomed if i.external_id]
        if external_ids:
            self.deleted.load()
            self.deleted.add(*external_ids)
            self.deleted.persist()
        for item in doomed:
            self.store.delete_item(item)
        await self.store.commit_async()
        logger.info(
            "Removed %d imported items from %s", len(doomed), bucket.date
        )
        return len(doomed)

    async def delete_item(self, item: ActivityItem) -> None:
        """Delete *item* and tombstone it.

        The logical ID and content hash are always recorded, the external
        ID when present.  Sync cycles only honour the ID tombstones.
        """
        self.deleted_items.load()
        self.deleted_items.add(item.logical_id)
        self.deleted_items.persist()
        self.deleted_hashes.load()
        self.deleted_hashes.add(item.content_hash())
        self.deleted_hashes.persist()
        if item.external_id:
            self.deleted.load()
            self.deleted.add(item.external_id)
            self.deleted.persist()
        self.store.delete_item(item)
        await self.store.commit_async()

    def reset_sync_cache(self) -> None:
        """Forget seen and deleted keys (local + mirror) and the last sync."""
        self.seen.clear()
        self.deleted.clear()
        self.preferences.last_sync_at = None
        logger.info("Sync cache reset")

    async def reset_cache_and_rescan(self) -> int:
        self.reset_sync_cache()
        return await self.process_background_updates()

    async def check_setup_status(self) -> SetupState:
        """Check provider access and update ``setup_state``."""
        if not self.source.is_available():
            self.setup_state = SetupState.UNSUPPORTED
            return self.setup_state
        try:
            await self.source.check_access()
        except ProviderUnavailable:
            self.setup_state = SetupState.UNSUPPORTED
        except ProviderPermissionDenied:
            self.setup_state = SetupState.NEEDS_PERMISSION
        except FetchFailed as exc:
            logger.warning("Provider access check failed: %s", exc)
            self.setup_state = SetupState.UNKNOWN
        else:
            self.setup_state = SetupState.READY
        return self.setup_state

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _begin(self) -> None:
        self.syncing = True
        self.status = SyncStatus.SYNCING
        self.last_result = None

    def _finish(self) -> None:
        self.syncing = False
        if self.last_result is not None and not self.last_result.ok:
            self.status = SyncStatus.ERROR
        else:
            self.status = SyncStatus.IDLE

    async def _fetch(
        self, start: datetime, end: datetime
    ) -> list[ExternalRecord] | None:
        """Fetch records, converting provider errors into a result.

        Returns ``None`` when the cycle should end.
        """
        try:
            return await self.source.fetch(start, end)
        except ProviderUnavailable as exc:
            logger.debug("Provider unavailable: %s", exc)
            self.setup_state = SetupState.UNSUPPORTED
            return []
        except ProviderPermissionDenied as exc:
            logger.error("Fetch failed: %s", exc)
            self.setup_state = SetupState.NEEDS_PERMISSION
            self.last_result = SyncResult.error(str(exc), self.clock())
        except FetchFailed as exc:
            logger.error("Fetch failed: %s", exc)
            self.last_result = SyncResult.error(str(exc), self.clock())
        return None

    def _purge_stale_seen(self) -> int:
        """Drop seen keys whose item no longer exists; return how many."""
        present = {normalize_external_id(e) for e in self.store.external_ids()}
        stale = [
            k
            for k in self.seen.snapshot()
            if normalize_external_id(k) not in present
        ]
        if not stale:
            return 0
        self.seen.discard(*stale)
        try:
            self.seen.persist()
        except PersistenceFailed as exc:
            logger.warning("Could not persist purged seen keys: %s", exc)
        logger.debug("Purged %d stale seen keys", len(stale))
        return len(stale)

    def _partition(
        self, records: list[ExternalRecord]
    ) -> list[ExternalRecord]:
        """Return the records that need importing."""
        candidates = []
        for record in records:
            if record.id in self.deleted:
                continue
            if record.id in self.seen:
                if self.store.has_external_id(record.id):
                    continue
                logger.debug("Seen-but-missing record will re-import: %s", record.id)
            candidates.append(record)
        return candidates

    def _insert_records(
        self, records: list[ExternalRecord], gated: bool
    ) -> int:
        mapper = RecordMapper(
            self.store, self.preferences.import_unit_preference, self.region
        )
        by_day: dict[date, list[ExternalRecord]] = defaultdict(list)
        for record in records:
            by_day[day_of(record.start_time, self.tz)].append(record)

        inserted = 0
        for day in sorted(by_day):
            bucket = self.store.find_or_create_day(day)
            added = 0
            for record in by_day[day]:
                item = mapper.convert(record)
                if item is None:
                    continue
                if gated:
                    outcome = self.guard.insert(self.store, bucket, item)
                    if outcome == InsertOutcome.INSERTED:
                        added += 1
                else:
                    bucket.add(item)
                    added += 1
            logger.debug(
                "Imported day %s: added=%d of %d", day, added, len(by_day[day])
            )
            inserted += added
        return inserted

    async def _post_cycle_maintenance(self) -> None:
        try:
            report = run_entity_dedup(
                self.store,
                self.preferences.import_unit_preference,
                self.deleted_items.load(),
            )
            if report.changed:
                await self.store.commit_async()
        except PersistenceFailed as exc:
            logger.error("Post-sync cleanup failed: %s", exc)

    def _maybe_show_toast(self, result: SyncResult) -> None:
        if self.preferences.background_toast_shown:
            return
        self.toast_message = result.summary()
        self.preferences.background_toast_shown = True
