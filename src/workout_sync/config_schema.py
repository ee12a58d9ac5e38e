"""Unified configuration schema for workout_sync.

Defines Pydantic models for the YAML config structure with dedicated
sections for the store, the activity provider, sync windows and logging.
Includes an adapter that flattens the file values into the fallback dict
consumed by ``config.load_config()``.

Usage:
    from workout_sync.config_schema import build_config, to_fallbacks

    raw = load_hierarchical_config()
    unified = build_config(raw)
    config = load_config(yaml_fallbacks=to_fallbacks(unified))
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class StoreConfig(BaseModel):
    """Where the activity store and its key-value state live.

    ``mirror_dir`` holds the second key-value store that key sets are
    unioned with (a synced folder, for example).
    """

    dir: str | None = Field(default=None, description="Store directory")
    mirror_dir: str | None = Field(
        default=None, description="Mirror key-value directory"
    )

    model_config = {"frozen": True}


class ProviderConfig(BaseModel):
    """Activity provider settings.

    All fields are optional to support zero-config: env vars and CLI args
    can supply them at runtime instead.
    """

    url: str | None = Field(default=None, description="Provider base URL")
    token: str | None = Field(default=None, description="Bearer token")
    timeout: int = Field(
        default=30, ge=1, le=600, description="HTTP timeout in seconds"
    )
    poll_interval: int = Field(
        default=300,
        ge=5,
        le=86400,
        description="Seconds between change polls in watch mode",
    )
    region: str | None = Field(
        default=None, description="Region code used for unit choice"
    )

    model_config = {"frozen": True}


class SyncSection(BaseModel):
    """Fetch windows and throttling."""

    background_window_days: int = Field(default=30, ge=1, le=3650)
    manual_window_days: int = Field(default=7, ge=1, le=3650)
    force_window_hours: int = Field(default=24, ge=1, le=8760)
    foreground_min_interval_minutes: int = Field(default=30, ge=0, le=10080)
    timezone: str | None = Field(
        default=None, description="IANA zone used to bucket records by day"
    )

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
        format: "text" or "json".
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")
    format: str = Field(default="text", description="text or json")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Every section has sensible defaults, so ``UnifiedConfig()``
    (zero-config) is always valid.
    """

    store: StoreConfig = Field(default_factory=StoreConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    sync: SyncSection = Field(default_factory=SyncSection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Missing sections get defaults.

    Args:
        raw_data: Merged configuration dictionary.

    Returns:
        Validated ``UnifiedConfig`` instance.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)


# ---------------------------------------------------------------------------
# Adapter: UnifiedConfig -> load_config() fallbacks
# ---------------------------------------------------------------------------


def to_fallbacks(unified: UnifiedConfig) -> dict:
    """Flatten the file sections into ``load_config()`` fallback keys.

    Only values that are not ``None`` are included, so unset file values
    never shadow built-in defaults.

    Args:
        unified: The unified config produced by ``build_config()``.

    Returns:
        Dict keyed by ``Config`` field name.
    """
    flat = {
        "store_dir": unified.store.dir,
        "mirror_dir": unified.store.mirror_dir,
        "provider_url": unified.provider.url,
        "provider_token": unified.provider.token,
        "provider_timeout": unified.provider.timeout,
        "poll_interval": unified.provider.poll_interval,
        "region": unified.provider.region,
        "timezone": unified.sync.timezone,
        "background_window_days": unified.sync.background_window_days,
        "manual_window_days": unified.sync.manual_window_days,
        "force_window_hours": unified.sync.force_window_hours,
        "foreground_min_interval_minutes": (
            unified.sync.foreground_min_interval_minutes
        ),
    }
    return {k: v for k, v in flat.items() if v is not None}
