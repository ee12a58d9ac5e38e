"""Tests for config.py -- runtime configuration resolution.

Covers:
- Built-in defaults
- CLI > env > YAML precedence for string, numeric and boolean fields
- Range and format validation
- Region derivation from the locale
"""

import logging
import os
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

from workout_sync.config import (
    Config,
    load_config,
    region_from_locale,
    validate_config,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Remove every WORKOUT_SYNC_* variable and the locale."""
    for key in list(os.environ):
        if key.startswith("WORKOUT_SYNC_"):
            monkeypatch.delenv(key)
    monkeypatch.delenv("LC_ALL", raising=False)
    monkeypatch.delenv("LANG", raising=False)


# ---------------------------------------------------------------------------
# Defaults and precedence
# ---------------------------------------------------------------------------


class TestDefaults:
    def test_zero_config(self):
        config = load_config()
        assert config.store_dir == Path(".workout_sync")
        assert config.state_path == Path(".workout_sync/state.json")
        assert config.mirror_dir is None
        assert config.mirror_path is None
        assert config.provider_url is None
        assert config.provider_timeout == 30
        assert config.poll_interval == 300
        assert config.manual_window_days == 7
        assert config.background_window_days == 30
        assert config.force_window_hours == 24
        assert config.foreground_min_interval_minutes == 30
        assert config.region is None
        assert config.tz() is None
        assert config.debug is False


class TestPrecedence:
    """CLI > env > YAML > default."""

    def test_cli_beats_env_beats_yaml(self, monkeypatch):
        fb = {"provider_url": "https://yaml.example.com", "store_dir": "/yaml"}
        monkeypatch.setenv("WORKOUT_SYNC_PROVIDER_URL", "https://env.example.com")
        assert load_config(yaml_fallbacks=fb).provider_url == "https://env.example.com"
        assert (
            load_config(provider_url="https://cli.example.com", yaml_fallbacks=fb).provider_url
            == "https://cli.example.com"
        )
        assert load_config(yaml_fallbacks=fb).store_dir == Path("/yaml")

    def test_mirror_dir_paths(self, tmp_path):
        config = load_config(mirror_dir=str(tmp_path / "mirror"))
        assert config.mirror_path == tmp_path / "mirror" / "state.json"

    def test_numeric_precedence(self, monkeypatch):
        fb = {"manual_window_days": 14, "force_window_hours": 48}
        assert load_config(yaml_fallbacks=fb).manual_window_days == 14
        monkeypatch.setenv("WORKOUT_SYNC_MANUAL_DAYS", "21")
        assert load_config(yaml_fallbacks=fb).manual_window_days == 21
        assert load_config(days=3, yaml_fallbacks=fb).manual_window_days == 3
        assert load_config(hours=6, yaml_fallbacks=fb).force_window_hours == 6

    def test_numeric_env_fields(self, monkeypatch):
        monkeypatch.setenv("WORKOUT_SYNC_PROVIDER_TIMEOUT", "5")
        monkeypatch.setenv("WORKOUT_SYNC_POLL_INTERVAL", "60")
        monkeypatch.setenv("WORKOUT_SYNC_BACKGROUND_DAYS", "90")
        monkeypatch.setenv("WORKOUT_SYNC_FOREGROUND_MINUTES", "0")
        config = load_config()
        assert config.provider_timeout == 5
        assert config.poll_interval == 60
        assert config.background_window_days == 90
        assert config.foreground_min_interval_minutes == 0

    def test_debug_flag_and_env(self, monkeypatch):
        assert load_config(debug=True).debug is True
        monkeypatch.setenv("WORKOUT_SYNC_DEBUG", "yes")
        assert load_config().debug is True
        monkeypatch.setenv("WORKOUT_SYNC_DEBUG", "off")
        assert load_config(yaml_fallbacks={"debug": True}).debug is False

    def test_timezone_from_yaml(self):
        config = load_config(yaml_fallbacks={"timezone": "Europe/Berlin"})
        assert config.tz() == ZoneInfo("Europe/Berlin")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidation:
    @pytest.mark.parametrize(
        "url,message",
        [
            ("ftp://fit.example.com", "must start with http"),
            ("https://", "must include a hostname"),
        ],
    )
    def test_bad_provider_url(self, url, message):
        with pytest.raises(ValueError, match=message):
            load_config(provider_url=url)

    def test_trailing_slash_stripped(self):
        config = load_config(provider_url=" https://fit.example.com/api/ ", provider_token="t")
        assert config.provider_url == "https://fit.example.com/api"

    def test_missing_token_warns(self, caplog):
        with caplog.at_level(logging.WARNING, logger="workout_sync.config"):
            load_config(provider_url="https://fit.example.com")
        assert "No provider token configured" in caplog.text

    def test_bad_timezone(self):
        with pytest.raises(ValueError, match="Invalid timezone 'Mars/Olympus'"):
            load_config(timezone="Mars/Olympus")

    def test_region_uppercased(self):
        assert load_config(region=" gb ").region == "GB"

    def test_non_numeric_env(self, monkeypatch):
        monkeypatch.setenv("WORKOUT_SYNC_MANUAL_DAYS", "week")
        with pytest.raises(
            ValueError, match="Invalid WORKOUT_SYNC_MANUAL_DAYS 'week'"
        ):
            load_config()

    def test_env_out_of_range(self, monkeypatch):
        monkeypatch.setenv("WORKOUT_SYNC_PROVIDER_TIMEOUT", "0")
        with pytest.raises(ValueError, match="between 1 and 600"):
            load_config()

    def test_cli_out_of_range(self):
        with pytest.raises(ValueError, match="Invalid argument '0'"):
            load_config(days=0)

    def test_yaml_out_of_range(self):
        with pytest.raises(ValueError, match="config 'force_window_hours'"):
            load_config(yaml_fallbacks={"force_window_hours": 100000})

    def test_validate_config_directly(self):
        config = Config(provider_url="http://localhost:8080/", provider_token="t")
        validate_config(config)
        assert config.provider_url == "http://localhost:8080"


# ---------------------------------------------------------------------------
# Region
# ---------------------------------------------------------------------------


class TestRegionFromLocale:
    def test_lang(self, monkeypatch):
        monkeypatch.setenv("LANG", "en_US.UTF-8")
        assert region_from_locale() == "US"
        assert load_config().region == "US"

    def test_lc_all_wins(self, monkeypatch):
        monkeypatch.setenv("LANG", "en_US.UTF-8")
        monkeypatch.setenv("LC_ALL", "de_DE.UTF-8")
        assert region_from_locale() == "DE"

    @pytest.mark.parametrize("value", ["C", "POSIX", "C.UTF-8", ""])
    def test_no_region(self, monkeypatch, value):
        monkeypatch.setenv("LANG", value)
        assert region_from_locale() is None

    def test_explicit_region_beats_locale(self, monkeypatch):
        monkeypatch.setenv("LANG", "en_US.UTF-8")
        assert load_config(yaml_fallbacks={"region": "FR"}).region == "FR"
