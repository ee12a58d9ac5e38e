"""Snapshot export and reconciling import.

Modules:

- ``codec``    -- build, encode and parse the versioned JSON snapshot.
- ``planner``  -- ``plan_import()``: pure classification of snapshot items.
- ``review``   -- ``ImportReview`` and decision strategies.
- ``applier``  -- ``ImportApplier``: execute a plan under decisions.
- ``models``   -- snapshot, plan, decision and result contracts.
- ``reporter`` -- human-readable and JSON output.
"""

from .applier import ImportApplier
from .codec import build_snapshot, encode_snapshot, export_snapshot, parse_snapshot
from .models import (
    ApplyResult,
    ImportDecisions,
    NewerSide,
    Plan,
    Snapshot,
)
from .planner import decision_key, legacy_key, plan_import
from .reporter import format_apply_result, format_plan, plan_to_json
from .review import ImportReview, create_decision_strategy

__all__ = [
    "ApplyResult",
    "ImportApplier",
    "ImportDecisions",
    "ImportReview",
    "NewerSide",
    "Plan",
    "Snapshot",
    "build_snapshot",
    "create_decision_strategy",
    "decision_key",
    "encode_snapshot",
    "export_snapshot",
    "format_apply_result",
    "format_plan",
    "legacy_key",
    "parse_snapshot",
    "plan_import",
    "plan_to_json",
]
