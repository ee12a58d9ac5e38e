"""Insertion guard for provider-imported items.

Every item produced by a normal sync cycle goes through
``DedupGuard.insert()``, which decides between:

* skipping (another insertion of the same external ID is in flight),
* skipping (an equivalent item already lives in the target bucket),
* relocating (the external ID exists elsewhere in the store), or
* inserting.

The guard never raises.  A failing local check is treated as "not
present" and a failing global query as "present", so errors lean towards
not creating duplicates.

External IDs are compared without case or surrounding whitespace.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable

from ..store.models import ActivityItem, DayBucket, normalize_external_id
from ..store.store import ActivityStore

logger = logging.getLogger(__name__)

SAME_TIME_TOLERANCE_SECONDS = 1.0
SAME_AMOUNT_TOLERANCE = 0.01


class InsertOutcome(str, Enum):
    INSERTED = "inserted"
    SKIPPED_INFLIGHT = "skipped_inflight"
    DUPLICATE_LOCAL = "duplicate_local"
    RELOCATED = "relocated"
    DUPLICATE_GLOBAL = "duplicate_global"


class DedupGuard:
    """In-flight gate plus local / global existence checks.

    One instance is shared by every path that inserts provider items, so
    the in-flight set is effectively process-wide.
    """

    def __init__(self) -> None:
        self._inflight: set[str] = set()

    # ------------------------------------------------------------------
    # In-flight gate
    # ------------------------------------------------------------------

    def is_inflight(self, external_id: str) -> bool:
        return normalize_external_id(external_id) in self._inflight

    def acquire(self, external_id: str) -> bool:
        """Gate *external_id*.  Returns False if it is already gated."""
        key = normalize_external_id(external_id)
        if key in self._inflight:
            return False
        self._inflight.add(key)
        return True

    def release(self, external_id: str) -> None:
        self._inflight.discard(normalize_external_id(external_id))

    def acquire_many(self, external_ids: Iterable[str]) -> list[str]:
        """Gate every ID not already gated; return the ones acquired."""
        return [eid for eid in external_ids if self.acquire(eid)]

    def release_many(self, external_ids: Iterable[str]) -> None:
        for eid in external_ids:
            self.release(eid)

    # ------------------------------------------------------------------
    # Insertion
    # ------------------------------------------------------------------

    def insert(
        self,
        store: ActivityStore,
        bucket: DayBucket,
        item: ActivityItem,
    ) -> InsertOutcome:
        """Insert *item* into *bucket* unless it already exists."""
        external_id = item.external_id
        if external_id is None:
            bucket.add(item)
            return InsertOutcome.INSERTED

        if not self.acquire(external_id):
            logger.debug("Skipping %s: insertion already in flight", external_id)
            return InsertOutcome.SKIPPED_INFLIGHT
        try:
            if self.exists_locally(bucket, item):
                logger.debug(
                    "Skipping %s: equivalent item already in %s",
                    external_id,
                    bucket.date,
                )
                return InsertOutcome.DUPLICATE_LOCAL

            if self.exists_globally(store, external_id):
                if self.relocate(store, bucket, external_id):
                    return InsertOutcome.RELOCATED
                return InsertOutcome.DUPLICATE_GLOBAL

            bucket.add(item)
            logger.debug("Inserted %s into %s", external_id, bucket.date)
            return InsertOutcome.INSERTED
        finally:
            self.release(external_id)

    def exists_locally(self, bucket: DayBucket, item: ActivityItem) -> bool:
        """True if *bucket* already holds an equivalent imported item."""
        try:
            for existing in bucket.items:
                if not existing.is_imported:
                    continue
                if (
                    item.external_id is not None
                    and existing.external_id is not None
                    and normalize_external_id(existing.external_id)
                    == normalize_external_id(item.external_id)
                ):
                    return True
                delta = abs(
                    (existing.created_at - item.created_at).total_seconds()
                )
                if (
                    delta < SAME_TIME_TOLERANCE_SECONDS
                    and existing.exercise_name == item.exercise_name
                    and existing.unit_name == item.unit_name
                    and abs(existing.amount - item.amount)
                    < SAME_AMOUNT_TOLERANCE
                ):
                    return True
        except Exception as exc:
            logger.warning("Local existence check failed: %s", exc)
            return False
        return False

    def exists_globally(self, store: ActivityStore, external_id: str) -> bool:
        """True if any item in *store* carries *external_id*."""
        try:
            return store.has_external_id(external_id)
        except Exception as exc:
            logger.warning("Global existence query failed: %s", exc)
            return True

    def relocate(
        self, store: ActivityStore, bucket: DayBucket, external_id: str
    ) -> bool:
        """Move the item holding *external_id* into *bucket*.

        Any further items holding the same external ID in other buckets are
        removed.  Returns False when no item could be found to move.
        """
        try:
            matches = store.find_items_by_external_id(external_id)
        except Exception as exc:
            logger.warning("Relocation lookup failed for %s: %s", external_id, exc)
            return False
        if not matches:
            return False
        keeper = next((m for m in matches if m.bucket is bucket), matches[0])
        if keeper.bucket is not bucket:
            logger.debug(
                "Relocating %s from %s to %s",
                external_id,
                keeper.bucket.date if keeper.bucket else None,
                bucket.date,
            )
            bucket.add(keeper)
        for other in matches:
            if other is not keeper:
                store.delete_item(other)
        return True
