"""Command-line entry point: ``workout-sync``.

Wires configuration, the local store, the key-value state and a record
source into a ``SyncCoordinator`` and exposes its operations and the
snapshot export / import flow as subcommands.
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import timedelta
from typing import Any

from dotenv import load_dotenv

from . import __version__
from .config import Config, load_config
from .config_loader import (
    discover_config_files,
    ensure_config,
    load_hierarchical_config,
)
from .config_schema import UnifiedConfig, build_config, to_fallbacks
from .errors import WorkoutSyncError
from .file_handler import read_file_async, write_file_async
from .logger import setup_logging
from .store import (
    ActivityStore,
    JsonFileKeyValueStore,
    run_entity_dedup,
)
from .sync import (
    HttpRecordSource,
    StaticRecordSource,
    SyncCoordinator,
    SyncState,
    format_dedup_report,
    format_sync_status,
    sync_status_to_json,
)
from .transfer import (
    ImportApplier,
    ImportReview,
    create_decision_strategy,
    export_snapshot,
    format_apply_result,
    format_plan,
    parse_snapshot,
    plan_to_json,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def load_runtime_config(args: argparse.Namespace) -> tuple[Config, UnifiedConfig]:
    """Resolve configuration: CLI > env (.env loaded first) > YAML > defaults.

    Raises:
        ValueError: If a configured value is invalid.
    """
    # .env first so ${VAR} interpolation in YAML can see its values
    load_dotenv()

    unified = UnifiedConfig()
    if discover_config_files():
        unified = build_config(load_hierarchical_config())

    config = load_config(
        store_dir=args.store_dir,
        mirror_dir=args.mirror_dir,
        provider_url=args.provider_url,
        days=getattr(args, "days", None),
        hours=getattr(args, "hours", None),
        debug=args.debug,
        yaml_fallbacks=to_fallbacks(unified),
    )
    return config, unified


def build_coordinator(config: Config) -> SyncCoordinator:
    """Open the store and state described by *config*."""
    store = ActivityStore.open(config.store_dir)
    mirror = (
        JsonFileKeyValueStore(config.mirror_path)
        if config.mirror_path is not None
        else None
    )
    state = SyncState(JsonFileKeyValueStore(config.state_path), mirror)

    if config.provider_url:
        source: Any = HttpRecordSource(
            config.provider_url,
            token=config.provider_token,
            timeout=config.provider_timeout,
            poll_interval=config.poll_interval,
        )
    else:
        logger.debug("No provider URL configured; provider is unavailable")
        source = StaticRecordSource(available=False)

    return SyncCoordinator(
        source,
        store,
        state,
        region=config.region,
        tz=config.tz(),
        background_window_days=config.background_window_days,
        manual_window_days=config.manual_window_days,
        force_window_hours=config.force_window_hours,
        foreground_min_interval=timedelta(
            minutes=config.foreground_min_interval_minutes
        ),
    )


def _print_json(data: dict) -> None:
    print(json.dumps(data, indent=2, default=str))


def _cycle_exit_code(coordinator: SyncCoordinator) -> int:
    result = coordinator.last_result
    if result is not None and not result.ok:
        print(f"Error: {result.message}", file=sys.stderr)
        return 1
    return 0


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _cmd_sync(coordinator: SyncCoordinator, args: argparse.Namespace) -> int:
    inserted = await coordinator.sync_now(args.days)
    print(f"Imported {inserted} workouts")
    return _cycle_exit_code(coordinator)


async def _cmd_background(
    coordinator: SyncCoordinator, args: argparse.Namespace
) -> int:
    inserted = await coordinator.process_background_updates()
    print(f"Imported {inserted} workouts")
    if coordinator.toast_message:
        print(coordinator.toast_message, file=sys.stderr)
    return _cycle_exit_code(coordinator)


async def _cmd_foreground(
    coordinator: SyncCoordinator, args: argparse.Namespace
) -> int:
    interval = (
        timedelta(minutes=args.min_interval)
        if args.min_interval is not None
        else None
    )
    inserted = await coordinator.foreground_sync_if_needed(interval)
    print(f"Imported {inserted} workouts")
    return _cycle_exit_code(coordinator)


async def _cmd_force_import(
    coordinator: SyncCoordinator, args: argparse.Namespace
) -> int:
    inserted = await coordinator.force_import_ignoring_dedup(args.hours)
    print(f"Force-imported {inserted} workouts")
    return _cycle_exit_code(coordinator)


async def _cmd_watch(coordinator: SyncCoordinator, args: argparse.Namespace) -> int:
    state = await coordinator.check_setup_status()
    print(f"Provider: {state.value}. Watching for changes (Ctrl+C to stop)...",
          file=sys.stderr)
    await coordinator.foreground_sync_if_needed()
    coordinator.start()
    try:
        await asyncio.Event().wait()
    finally:
        await coordinator.stop()
    return 0


async def _cmd_export(coordinator: SyncCoordinator, args: argparse.Namespace) -> int:
    text = export_snapshot(
        coordinator.store,
        coordinator.deleted.load(),
        coordinator.deleted_items.load(),
        coordinator.deleted_hashes.load(),
    )
    if args.output:
        path, count = await write_file_async(args.output, text + "\n")
        print(f"Exported {count} bytes to {path}", file=sys.stderr)
    else:
        print(text)
    return 0


async def _load_snapshot(path: str):
    content, encoding, resolved = await read_file_async(path)
    logger.debug("Read snapshot %s (%s)", resolved, encoding)
    return parse_snapshot(content)


def _applier(coordinator: SyncCoordinator) -> ImportApplier:
    return ImportApplier(
        coordinator.store,
        coordinator.deleted,
        coordinator.deleted_items,
        coordinator.preferences.import_unit_preference,
        coordinator.deleted_hashes,
    )


def _build_review(args: argparse.Namespace, plan) -> ImportReview:
    """Strategy defaults first, then explicit per-key choices."""
    strategy = create_decision_strategy(args.strategy)
    restore_mode = args.restore or strategy.restore_mode
    defaults = strategy.decide(plan)

    review = ImportReview(plan, restore_mode=restore_mode)
    review.keep_import |= defaults.keep_import
    review.restore_keys |= defaults.restore_keys
    review.insert_legacy_keys |= defaults.insert_legacy_keys
    review.skip_insert_keys |= defaults.skip_insert_keys
    for key in args.keep_import or []:
        review.choose_keep_import(key)
    for key in args.restore_key or []:
        review.allow_restore(key)
    for key in args.insert_legacy or []:
        review.force_insert_legacy(key)
    for key in args.skip_insert or []:
        review.skip_insert_keys.add(key)
    return review


async def _cmd_plan(coordinator: SyncCoordinator, args: argparse.Namespace) -> int:
    snapshot = await _load_snapshot(args.file)
    plan = _applier(coordinator).plan(snapshot)
    summary = _build_review(args, plan).predicted_summary()
    if args.json:
        _print_json(plan_to_json(plan, summary))
    else:
        print(format_plan(plan, summary))
    return 0


async def _cmd_apply(coordinator: SyncCoordinator, args: argparse.Namespace) -> int:
    snapshot = await _load_snapshot(args.file)
    applier = _applier(coordinator)
    review = _build_review(args, applier.plan(snapshot))
    result = applier.apply(
        snapshot, review.decisions(), restore_mode=review.restore_mode
    )
    print(format_apply_result(result))
    return 0


async def _cmd_dedup(coordinator: SyncCoordinator, args: argparse.Namespace) -> int:
    report = run_entity_dedup(
        coordinator.store,
        coordinator.preferences.import_unit_preference,
        coordinator.deleted_items.load(),
    )
    if report.changed:
        await coordinator.store.commit_async()
    print(format_dedup_report(report))
    return 0


async def _cmd_reset_cache(
    coordinator: SyncCoordinator, args: argparse.Namespace
) -> int:
    if args.rescan:
        inserted = await coordinator.reset_cache_and_rescan()
        print(f"Sync cache reset; imported {inserted} workouts")
        return _cycle_exit_code(coordinator)
    coordinator.reset_sync_cache()
    print("Sync cache reset")
    return 0


async def _cmd_status(coordinator: SyncCoordinator, args: argparse.Namespace) -> int:
    coordinator.seen.load()
    coordinator.deleted.load()
    coordinator.deleted_items.load()
    coordinator.deleted_hashes.load()
    await coordinator.check_setup_status()
    if args.json:
        _print_json(sync_status_to_json(coordinator))
    else:
        print(format_sync_status(coordinator))
    return 0


_COMMANDS = {
    "sync": _cmd_sync,
    "background": _cmd_background,
    "foreground": _cmd_foreground,
    "force-import": _cmd_force_import,
    "watch": _cmd_watch,
    "export": _cmd_export,
    "plan": _cmd_plan,
    "apply": _cmd_apply,
    "dedup": _cmd_dedup,
    "reset-cache": _cmd_reset_cache,
    "status": _cmd_status,
}


async def main(args: argparse.Namespace) -> int:
    """Run one subcommand and return the process exit code."""
    if args.command == "init-config":
        path = ensure_config()
        print(f"Config file: {path}")
        return 0

    config, unified = load_runtime_config(args)
    setup_logging(
        debug=config.debug,
        log_file=args.log_file or unified.logging.file,
        debug_format=args.log_format or unified.logging.format,
        level=unified.logging.level,
    )
    logger.debug("Store directory: %s", config.store_dir)

    coordinator = build_coordinator(config)
    return await _COMMANDS[args.command](coordinator, args)


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def _add_decision_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("file", help="Snapshot file to import")
    parser.add_argument(
        "--strategy",
        default="keep-local",
        help="Default conflict resolution: keep-local (default), "
        "recommended, keep-import, restore-all",
    )
    parser.add_argument(
        "--restore",
        action="store_true",
        help="Restore mode: restore every deleted item and ignore the "
        "snapshot's deletions",
    )
    parser.add_argument(
        "--keep-import",
        action="append",
        metavar="KEY",
        help="Take the snapshot side for this conflict (repeatable)",
    )
    parser.add_argument(
        "--restore-key",
        action="append",
        metavar="KEY",
        help="Restore this locally deleted item (repeatable)",
    )
    parser.add_argument(
        "--insert-legacy",
        action="append",
        metavar="KEY",
        help="Insert this near-duplicate anyway (repeatable)",
    )
    parser.add_argument(
        "--skip-insert",
        action="append",
        metavar="KEY",
        help="Do not insert this item (repeatable)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="workout-sync",
        description="Merge provider workouts and snapshot files into a local "
        "activity store without duplicates",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Import the last 7 days from the configured provider
  workout-sync sync

  # Keep running and import whenever the provider reports changes
  workout-sync watch

  # Back up and restore
  workout-sync export -o backup.json
  workout-sync plan backup.json
  workout-sync apply backup.json --strategy recommended
        """,
    )
    parser.add_argument("--store-dir", help="Store directory (default: .workout_sync)")
    parser.add_argument("--mirror-dir", help="Mirror key-value directory")
    parser.add_argument("--provider-url", help="Activity provider base URL")
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging"
    )
    parser.add_argument("--log-file", help="Also append logs to this file")
    parser.add_argument(
        "--log-format",
        choices=["text", "json"],
        help="Log record format (default: text)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"workout-sync version {__version__}",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("sync", help="Run a manual sync")
    p.add_argument("--days", type=int, help="Lookback in days (default: 7)")

    sub.add_parser("background", help="Run one background sync cycle")

    p = sub.add_parser(
        "foreground", help="Sync unless a sync ran recently"
    )
    p.add_argument(
        "--min-interval",
        type=int,
        metavar="MINUTES",
        help="Skip if the last sync is newer than this (default: 30)",
    )

    p = sub.add_parser(
        "force-import", help="Import recent workouts ignoring dedup state"
    )
    p.add_argument("--hours", type=int, help="Lookback in hours (default: 24)")

    sub.add_parser("watch", help="Sync whenever the provider reports changes")

    p = sub.add_parser("export", help="Write a snapshot of the store")
    p.add_argument("-o", "--output", help="Output file (default: stdout)")

    p = sub.add_parser("plan", help="Show what importing a snapshot would do")
    _add_decision_args(p)
    p.add_argument("--json", action="store_true", help="Output as JSON")

    p = sub.add_parser("apply", help="Import a snapshot")
    _add_decision_args(p)

    sub.add_parser("dedup", help="Merge duplicate days, types and items")

    p = sub.add_parser("reset-cache", help="Forget seen and deleted workouts")
    p.add_argument(
        "--rescan", action="store_true", help="Run a background sync afterwards"
    )

    p = sub.add_parser("status", help="Show sync status")
    p.add_argument("--json", action="store_true", help="Output as JSON")

    sub.add_parser("init-config", help="Create a starter config file")

    return parser


def run(argv: list[str] | None = None) -> None:
    """Entry point that handles errors gracefully and parses CLI arguments."""
    args = build_parser().parse_args(argv)
    try:
        code = asyncio.run(main(args))
    except (WorkoutSyncError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(0)
    sys.exit(code)


if __name__ == "__main__":
    run()
