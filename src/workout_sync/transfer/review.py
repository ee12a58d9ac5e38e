"""Import review: turn a plan into decisions.

Provides two ways to build ``ImportDecisions``:

- ``ImportReview``: incremental, per-conflict choices (what a review
  screen drives), plus ``predicted_summary()`` of what apply would do.
- Decision strategies for unattended imports:

  - ``KeepLocalStrategy``: defaults only; nothing local is overwritten.
  - ``RecommendedStrategy``: keep the import side where it is newer.
  - ``KeepImportStrategy``: keep the import side for every conflict.
  - ``RestoreAllStrategy``: recommended, plus restore every tombstone.

The ``create_decision_strategy()`` factory maps strategy names to
strategy instances.
"""

from __future__ import annotations

import logging
from typing import Protocol

from pydantic import BaseModel

from .models import (
    IdentityConflict,
    ImportDecisions,
    NewerSide,
    Plan,
    PlanEntry,
    TombstoneConflict,
)

logger = logging.getLogger(__name__)


class PredictedSummary(BaseModel):
    """What ``apply()`` would do with the current decisions."""

    will_update: int = 0
    will_restore: int = 0
    will_insert: int = 0
    will_skip: int = 0

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Incremental review
# ---------------------------------------------------------------------------


class ImportReview:
    """Accumulate decisions for one plan.

    Args:
        plan: The plan under review.
        restore_mode: Whether apply will run in restore mode.
    """

    def __init__(self, plan: Plan, restore_mode: bool = False) -> None:
        self.plan = plan
        self.restore_mode = restore_mode
        self.keep_import: set[str] = set()
        self.restore_keys: set[str] = set()
        self.insert_legacy_keys: set[str] = set()
        self.skip_insert_keys: set[str] = set()

    # -- identity conflicts --------------------------------------------

    def choose_keep_import(self, conflict: IdentityConflict | str) -> None:
        self.keep_import.add(_key(conflict))

    def choose_keep_local(self, conflict: IdentityConflict | str) -> None:
        self.keep_import.discard(_key(conflict))

    def choose_keep_import_for_all(self) -> None:
        self.keep_import.update(c.key for c in self.plan.identity_conflicts)

    def choose_keep_local_for_all(self) -> None:
        self.keep_import.difference_update(
            c.key for c in self.plan.identity_conflicts
        )

    def choose_recommended_for_all_conflicts(self) -> None:
        """Keep the import side exactly where it is strictly newer."""
        for conflict in self.plan.identity_conflicts:
            if conflict.newer == NewerSide.IMPORT_FILE:
                self.keep_import.add(conflict.key)
            else:
                self.keep_import.discard(conflict.key)

    # -- tombstones ----------------------------------------------------

    def allow_restore(self, conflict: TombstoneConflict | str) -> None:
        self.restore_keys.add(_key(conflict))

    def disallow_restore(self, conflict: TombstoneConflict | str) -> None:
        self.restore_keys.discard(_key(conflict))

    def allow_restore_for_all(self) -> None:
        self.restore_keys.update(c.key for c in self.plan.tombstone_conflicts)

    # -- near-duplicates and inserts -----------------------------------

    def force_insert_legacy(self, entry: PlanEntry | str) -> None:
        self.insert_legacy_keys.add(_key(entry))

    def toggle_insert_legacy(self, entry: PlanEntry | str) -> None:
        _toggle(self.insert_legacy_keys, _key(entry))

    def force_insert_all_near_duplicates(self) -> None:
        self.insert_legacy_keys.update(e.key for e in self.plan.near_duplicates)

    def toggle_skip_insert(self, entry: PlanEntry | str) -> None:
        _toggle(self.skip_insert_keys, _key(entry))

    def clear(self) -> None:
        self.keep_import.clear()
        self.restore_keys.clear()
        self.insert_legacy_keys.clear()
        self.skip_insert_keys.clear()

    # -- output --------------------------------------------------------

    def decisions(self) -> ImportDecisions:
        return ImportDecisions(
            keep_import=set(self.keep_import),
            restore_keys=set(self.restore_keys),
            skip_insert_keys=set(self.skip_insert_keys),
            insert_legacy_keys=set(self.insert_legacy_keys),
        )

    def predicted_summary(self) -> PredictedSummary:
        update = restore = insert = skip = 0
        for conflict in self.plan.identity_conflicts:
            if conflict.key in self.keep_import:
                update += 1
            else:
                skip += 1
        for conflict in self.plan.tombstone_conflicts:
            if (
                self.restore_mode or conflict.key in self.restore_keys
            ) and conflict.key not in self.skip_insert_keys:
                restore += 1
            else:
                skip += 1
        for entry in self.plan.planned_inserts:
            if entry.key in self.skip_insert_keys:
                skip += 1
            else:
                insert += 1
        for entry in [*self.plan.near_duplicates, *self.plan.already_exists]:
            if (
                entry.key in self.insert_legacy_keys
                and entry.key not in self.skip_insert_keys
            ):
                insert += 1
            else:
                skip += 1
        return PredictedSummary(
            will_update=update,
            will_restore=restore,
            will_insert=insert,
            will_skip=skip,
        )


def _key(entry: PlanEntry | str) -> str:
    return entry if isinstance(entry, str) else entry.key


def _toggle(keys: set[str], key: str) -> None:
    if key in keys:
        keys.remove(key)
    else:
        keys.add(key)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class DecisionStrategy(Protocol):
    """Protocol that all decision strategies must satisfy."""

    restore_mode: bool

    def decide(self, plan: Plan) -> ImportDecisions:
        """Build decisions for every entry of *plan*."""
        ...  # pragma: no cover


class KeepLocalStrategy:
    """Leave every conflict on the local side."""

    restore_mode = False

    def decide(self, plan: Plan) -> ImportDecisions:
        return ImportReview(plan).decisions()


class RecommendedStrategy:
    """Take the import side only where it is newer."""

    restore_mode = False

    def decide(self, plan: Plan) -> ImportDecisions:
        review = ImportReview(plan)
        review.choose_recommended_for_all_conflicts()
        return review.decisions()


class KeepImportStrategy:
    """Take the import side for every identity conflict."""

    restore_mode = False

    def decide(self, plan: Plan) -> ImportDecisions:
        review = ImportReview(plan)
        review.choose_keep_import_for_all()
        return review.decisions()


class RestoreAllStrategy:
    """Full restore from a backup: recommended choices, no tombstones."""

    restore_mode = True

    def decide(self, plan: Plan) -> ImportDecisions:
        review = ImportReview(plan, restore_mode=True)
        review.choose_recommended_for_all_conflicts()
        review.allow_restore_for_all()
        return review.decisions()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_STRATEGY_MAP: dict[str, type] = {
    "keep-local": KeepLocalStrategy,
    "recommended": RecommendedStrategy,
    "keep-import": KeepImportStrategy,
    "restore-all": RestoreAllStrategy,
}


def create_decision_strategy(strategy: str) -> DecisionStrategy:
    """Create a decision strategy for the given name.

    Args:
        strategy: One of ``"keep-local"``, ``"recommended"``,
            ``"keep-import"``, ``"restore-all"``.

    Returns:
        A ``DecisionStrategy`` implementation instance.

    Raises:
        ValueError: If the strategy name is not recognised.
    """
    cls = _STRATEGY_MAP.get(strategy)
    if cls is None:
        raise ValueError(
            f"Unknown decision strategy: '{strategy}'. Valid strategies: {sorted(_STRATEGY_MAP.keys())}"
        )
    return cls()  # type: ignore[return-value]
