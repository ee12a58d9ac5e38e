"""Runtime configuration for the workout-sync tool.

Reads store, provider and sync settings from CLI args, environment
variables, .env files, and YAML config file fallbacks.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    WORKOUT_SYNC_STORE_DIR: Store directory (default: .workout_sync)
    WORKOUT_SYNC_MIRROR_DIR: Mirror key-value directory (optional)
    WORKOUT_SYNC_PROVIDER_URL: Activity provider base URL (optional)
    WORKOUT_SYNC_PROVIDER_TOKEN: Bearer token for the provider (optional)
    WORKOUT_SYNC_PROVIDER_TIMEOUT: HTTP timeout in seconds (default: 30)
    WORKOUT_SYNC_POLL_INTERVAL: Change poll interval in seconds (default: 300)
    WORKOUT_SYNC_REGION: Region code, e.g. US (default: derived from LANG)
    WORKOUT_SYNC_TIMEZONE: IANA zone for day bucketing (default: local time)
    WORKOUT_SYNC_BACKGROUND_DAYS: Background fetch window (default: 30)
    WORKOUT_SYNC_MANUAL_DAYS: Manual sync window (default: 7)
    WORKOUT_SYNC_FORCE_HOURS: Force-import window (default: 24)
    WORKOUT_SYNC_FOREGROUND_MINUTES: Foreground throttle (default: 30)
    WORKOUT_SYNC_DEBUG: Enable debug logging (default: false)
"""

import logging
import os
from dataclasses import dataclass
from datetime import tzinfo
from pathlib import Path
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_STORE_DIR = ".workout_sync"
STATE_FILENAME = "state.json"


@dataclass
class Config:
    store_dir: Path = Path(DEFAULT_STORE_DIR)
    mirror_dir: Path | None = None
    provider_url: str | None = None
    provider_token: str | None = None
    provider_timeout: int = 30
    poll_interval: int = 300
    region: str | None = None
    timezone: str | None = None
    background_window_days: int = 30
    manual_window_days: int = 7
    force_window_hours: int = 24
    foreground_min_interval_minutes: int = 30
    debug: bool = False

    @property
    def state_path(self) -> Path:
        return self.store_dir / STATE_FILENAME

    @property
    def mirror_path(self) -> Path | None:
        if self.mirror_dir is None:
            return None
        return self.mirror_dir / STATE_FILENAME

    def tz(self) -> tzinfo | None:
        """Zone used to bucket records by calendar day (None = local)."""
        return ZoneInfo(self.timezone) if self.timezone else None


def region_from_locale() -> str | None:
    """Derive a region code from ``LC_ALL`` / ``LANG`` (``en_US.UTF-8`` -> ``US``)."""
    raw = os.getenv("LC_ALL") or os.getenv("LANG") or ""
    lang = raw.split(".", 1)[0]
    if "_" not in lang:
        return None
    region = lang.split("_", 1)[1]
    return region.upper() or None


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If the provider URL or timezone is invalid.
    """
    if config.provider_url:
        config.provider_url = config.provider_url.strip()
        if not config.provider_url.startswith(("http://", "https://")):
            raise ValueError(
                f"Invalid provider URL '{config.provider_url}': must start with http:// or https://"
            )
        parsed = urlparse(config.provider_url)
        if not parsed.hostname:
            raise ValueError(
                f"Invalid provider URL '{config.provider_url}': URL must include a hostname"
            )
        config.provider_url = config.provider_url.removesuffix("/")

    if config.timezone:
        try:
            ZoneInfo(config.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(
                f"Invalid timezone '{config.timezone}': not a known IANA zone"
            ) from None

    if config.region:
        config.region = config.region.strip().upper()

    if config.provider_url and not config.provider_token:
        logger.warning(
            "No provider token configured; requests to %s are unauthenticated",
            config.provider_url,
        )


def _get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def _resolve_int(
    cli_value: int | None,
    env_key: str,
    fb: dict,
    fb_key: str,
    default: int,
    low: int,
    high: int,
) -> int:
    """Resolve one numeric field: CLI > env > YAML > default."""
    if cli_value is not None:
        value = cli_value
        source = "argument"
    elif os.getenv(env_key) is not None:
        raw = os.getenv(env_key)
        try:
            value = int(raw)
        except ValueError:
            raise ValueError(
                f"Invalid {env_key} '{raw}': must be a number between {low} and {high}"
            ) from None
        source = env_key
    elif fb_key in fb:
        value = int(fb[fb_key])
        source = f"config '{fb_key}'"
    else:
        return default

    if not (low <= value <= high):
        raise ValueError(
            f"Invalid {source} '{value}': must be a number between {low} and {high}"
        )
    return value


def load_config(
    store_dir: str | None = None,
    mirror_dir: str | None = None,
    provider_url: str | None = None,
    provider_token: str | None = None,
    region: str | None = None,
    timezone: str | None = None,
    days: int | None = None,
    hours: int | None = None,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        store_dir: Override store directory.
        mirror_dir: Override mirror key-value directory.
        provider_url: Override provider base URL.
        provider_token: Override provider token.
        region: Override region code.
        timezone: Override day-bucketing zone.
        days: Override the manual sync window (days).
        hours: Override the force-import window (hours).
        debug: Enable debug logging (CLI flag).
        yaml_fallbacks: Flat dict from ``config_schema.to_fallbacks()``.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If a numeric value is out of range or a value is
            malformed.
    """
    fb = yaml_fallbacks or {}

    # --- String fields: CLI > env > YAML > default ---

    final_store_dir = (
        store_dir
        or os.getenv("WORKOUT_SYNC_STORE_DIR")
        or fb.get("store_dir")
        or DEFAULT_STORE_DIR
    )
    final_mirror_dir = (
        mirror_dir or os.getenv("WORKOUT_SYNC_MIRROR_DIR") or fb.get("mirror_dir")
    )
    final_url = (
        provider_url
        or os.getenv("WORKOUT_SYNC_PROVIDER_URL")
        or fb.get("provider_url")
    )
    final_token = (
        provider_token
        or os.getenv("WORKOUT_SYNC_PROVIDER_TOKEN")
        or fb.get("provider_token")
    )
    final_region = (
        region
        or os.getenv("WORKOUT_SYNC_REGION")
        or fb.get("region")
        or region_from_locale()
    )
    final_timezone = (
        timezone or os.getenv("WORKOUT_SYNC_TIMEZONE") or fb.get("timezone")
    )

    # --- Boolean fields: CLI > env > YAML > default ---

    if debug:
        final_debug = True
    else:
        env_debug = _get_bool_env("WORKOUT_SYNC_DEBUG")
        if env_debug is not None:
            final_debug = env_debug
        else:
            final_debug = bool(fb.get("debug", False))

    # --- Numeric fields ---

    config = Config(
        store_dir=Path(final_store_dir).expanduser(),
        mirror_dir=Path(final_mirror_dir).expanduser()
        if final_mirror_dir
        else None,
        provider_url=final_url,
        provider_token=final_token,
        provider_timeout=_resolve_int(
            None, "WORKOUT_SYNC_PROVIDER_TIMEOUT", fb, "provider_timeout",
            30, 1, 600,
        ),
        poll_interval=_resolve_int(
            None, "WORKOUT_SYNC_POLL_INTERVAL", fb, "poll_interval",
            300, 5, 86400,
        ),
        region=final_region,
        timezone=final_timezone,
        background_window_days=_resolve_int(
            None, "WORKOUT_SYNC_BACKGROUND_DAYS", fb, "background_window_days",
            30, 1, 3650,
        ),
        manual_window_days=_resolve_int(
            days, "WORKOUT_SYNC_MANUAL_DAYS", fb, "manual_window_days",
            7, 1, 3650,
        ),
        force_window_hours=_resolve_int(
            hours, "WORKOUT_SYNC_FORCE_HOURS", fb, "force_window_hours",
            24, 1, 8760,
        ),
        foreground_min_interval_minutes=_resolve_int(
            None, "WORKOUT_SYNC_FOREGROUND_MINUTES", fb,
            "foreground_min_interval_minutes", 30, 0, 10080,
        ),
        debug=final_debug,
    )

    validate_config(config)

    return config
