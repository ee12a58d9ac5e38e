"""Core helpers shared between the CLI and the sync services."""

from .async_utils import run_sync

__all__ = ["run_sync"]
