"""Import plan and apply formatting functions.

Provides human-readable and machine-readable output for snapshot imports:

- ``format_plan`` -- plan grouped by conflict class.
- ``format_apply_result`` -- one-paragraph summary of an apply.
- ``plan_to_json`` -- structured dict for ``--json`` output.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import ApplyResult, Plan, PlanEntry
    from .review import PredictedSummary

# ------------------------------------------------------------------
# Human-readable output
# ------------------------------------------------------------------


def _describe(entry: PlanEntry) -> str:
    item = entry.incoming
    unit = f" {item.unit_name}" if item.unit_name else ""
    return (
        f"{entry.day.isoformat()} {item.exercise_name} "
        f"{item.amount:g}{unit} [{entry.key}]"
    )


def format_plan(plan: Plan, summary: PredictedSummary | None = None) -> str:
    """Format an import plan as human-readable text.

    Sections are only included when they contain at least one entry.
    Already-present items are summarised by count only.

    Args:
        plan: The import plan.
        summary: Optional predicted outcome to append.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []
    lines.append(
        f"Import plan: {len(plan.planned_inserts)} new, "
        f"{len(plan.identity_conflicts)} conflicts, "
        f"{len(plan.tombstone_conflicts)} deleted locally, "
        f"{len(plan.near_duplicates)} near-duplicates, "
        f"{len(plan.already_exists)} already present"
    )
    lines.append("")

    if plan.identity_conflicts:
        lines.append("Conflicts:")
        for c in plan.identity_conflicts:
            lines.append(
                f"  {_describe(c)} local={c.local.amount:g} "
                f"newer={c.newer.value}"
            )
        lines.append("")

    if plan.tombstone_conflicts:
        lines.append("Deleted locally:")
        for c in plan.tombstone_conflicts:
            lines.append(f"  {_describe(c)}")
        lines.append("")

    if plan.near_duplicates:
        lines.append("Near-duplicates:")
        for e in plan.near_duplicates:
            lines.append(f"  {_describe(e)}")
        lines.append("")

    if plan.planned_inserts:
        lines.append("New:")
        for e in plan.planned_inserts:
            lines.append(f"  {_describe(e)}")
        lines.append("")

    if summary is not None:
        lines.append(
            f"Apply would update {summary.will_update}, "
            f"restore {summary.will_restore}, "
            f"insert {summary.will_insert}, skip {summary.will_skip}"
        )

    return "\n".join(lines).rstrip()


def format_apply_result(result: ApplyResult) -> str:
    return (
        f"Imported {result.inserted_items} items, "
        f"updated {result.updated_items}, "
        f"restored {result.restored_items}, "
        f"skipped {result.skipped_items} "
        f"({result.inserted_days} new days, "
        f"{result.inserted_exercises} new exercises, "
        f"{result.inserted_units} new units, "
        f"{result.merged_tombstones} tombstones merged)"
    )


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def plan_to_json(plan: Plan, summary: PredictedSummary | None = None) -> dict:
    """Convert a plan to a JSON-serializable dict.

    Args:
        plan: The import plan.
        summary: Optional predicted outcome.

    Returns:
        Dict with counts and per-class entries.
    """
    data = {
        "counts": {
            "identity_conflicts": len(plan.identity_conflicts),
            "tombstone_conflicts": len(plan.tombstone_conflicts),
            "near_duplicates": len(plan.near_duplicates),
            "planned_inserts": len(plan.planned_inserts),
            "already_exists": len(plan.already_exists),
        },
        **plan.model_dump(mode="json"),
    }
    if summary is not None:
        data["predicted"] = summary.model_dump()
    return data
