"""Tests for cli.py -- argument parsing and end-to-end subcommands.

Each test runs in an empty working directory with no WORKOUT_SYNC_*
environment, so the store lands in ``./.workout_sync`` and the provider
is unconfigured (unavailable).
"""

import json
import os
from pathlib import Path

import pytest

from workout_sync import __version__
from workout_sync.cli import build_parser, run
from workout_sync.transfer.codec import encode_snapshot


@pytest.fixture
def workdir(tmp_path: Path, monkeypatch) -> Path:
    for key in list(os.environ):
        if key.startswith("WORKOUT_SYNC_"):
            monkeypatch.delenv(key)
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.chdir(tmp_path)
    return tmp_path


def _run(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as exc_info:
        run(argv)
    return exc_info.value.code


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class TestParser:
    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_global_flags(self):
        args = build_parser().parse_args(
            ["--store-dir", "/data", "--debug", "--log-format", "json", "status"]
        )
        assert args.store_dir == "/data"
        assert args.debug is True
        assert args.log_format == "json"
        assert args.command == "status"
        assert args.json is False

    def test_sync_days(self):
        args = build_parser().parse_args(["sync", "--days", "3"])
        assert args.days == 3

    def test_decision_flags_repeatable(self):
        args = build_parser().parse_args(
            [
                "apply",
                "backup.json",
                "--strategy",
                "recommended",
                "--keep-import",
                "hk:a",
                "--keep-import",
                "id:b",
                "--restore-key",
                "hk:c",
            ]
        )
        assert args.file == "backup.json"
        assert args.strategy == "recommended"
        assert args.keep_import == ["hk:a", "id:b"]
        assert args.restore_key == ["hk:c"]
        assert args.restore is False
        assert args.insert_legacy is None

    def test_version(self, capsys):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--version"])
        assert __version__ in capsys.readouterr().out


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class TestInitConfig:
    def test_creates_starter_file(self, workdir: Path, capsys):
        assert _run(["init-config"]) == 0
        path = workdir / ".workout_sync" / "config.yml"
        assert path.exists()
        assert "Config file:" in capsys.readouterr().out

    def test_starter_file_loads(self, workdir: Path, capsys):
        _run(["init-config"])
        assert _run(["status"]) == 0
        assert "Status: idle" in capsys.readouterr().out


class TestSyncCommands:
    def test_sync_without_provider(self, workdir: Path, capsys):
        assert _run(["sync"]) == 0
        assert "Imported 0 workouts" in capsys.readouterr().out

    def test_status_json(self, workdir: Path, capsys):
        assert _run(["status", "--json"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["status"] == "idle"
        assert data["setup_state"] == "unsupported"
        assert data["counts"]["items"] == 0

    def test_reset_cache(self, workdir: Path, capsys):
        assert _run(["reset-cache"]) == 0
        assert "Sync cache reset" in capsys.readouterr().out

    def test_invalid_provider_url(self, workdir: Path, capsys):
        assert _run(["--provider-url", "ftp://fit.example.com", "sync"]) == 1
        assert "Error:" in capsys.readouterr().err


class TestSnapshotCommands:
    @pytest.fixture
    def snapshot_file(self, workdir: Path, make_snapshot, snapshot_item) -> Path:
        snapshot = make_snapshot(
            [
                snapshot_item(logical_id="RUN-1", exercise_name="Run",
                              unit_name="Miles", amount=3.1),
                snapshot_item(logical_id="WALK-1"),
            ]
        )
        path = workdir / "backup.json"
        path.write_text(encode_snapshot(snapshot), encoding="utf-8")
        return path

    def test_export_empty_store(self, workdir: Path, capsys):
        assert _run(["export"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["days"] == []

    def test_plan_json(self, snapshot_file: Path, capsys):
        assert _run(["plan", str(snapshot_file), "--json"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["counts"]["planned_inserts"] == 2
        assert data["counts"]["identity_conflicts"] == 0
        assert "predicted" in data

    def test_plan_text(self, snapshot_file: Path, capsys):
        assert _run(["plan", str(snapshot_file)]) == 0
        assert "Import plan: 2 new" in capsys.readouterr().out

    def test_apply_then_export(self, workdir: Path, snapshot_file: Path, capsys):
        assert _run(["apply", str(snapshot_file)]) == 0
        assert "Imported 2 items" in capsys.readouterr().out
        assert (workdir / ".workout_sync" / "store.json").exists()

        out = workdir / "export.json"
        assert _run(["export", "-o", str(out)]) == 0
        exported = json.loads(out.read_text(encoding="utf-8"))
        names = [i["exercise_name"] for d in exported["days"] for i in d["items"]]
        assert sorted(names) == ["Run", "Walk"]

    def test_apply_twice_is_idempotent(self, snapshot_file: Path, capsys):
        _run(["apply", str(snapshot_file)])
        capsys.readouterr()
        assert _run(["plan", str(snapshot_file), "--json"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["counts"]["planned_inserts"] == 0

    def test_unknown_strategy(self, snapshot_file: Path, capsys):
        assert _run(["plan", str(snapshot_file), "--strategy", "coin-flip"]) == 1
        assert "Unknown decision strategy" in capsys.readouterr().err

    def test_missing_snapshot_file(self, workdir: Path, capsys):
        assert _run(["plan", "nope.json"]) == 1
        assert "File not found" in capsys.readouterr().err

    def test_dedup_empty_store(self, workdir: Path, capsys):
        assert _run(["dedup"]) == 0
        assert "No duplicates found" in capsys.readouterr().out
