"""Activity provider adapters.

A record source answers two questions for the sync coordinator: "which
workouts happened between *start* and *end*?" (``fetch``) and "tell me
when something changed" (``subscribe``).

Change notifications are delivered through a ``ChangeChannel``: a
single-slot queue, so any number of notifications that arrive while the
coordinator is busy collapse into one pending wake-up.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime
from typing import Any, Protocol

import requests
from pydantic import ValidationError

from ..core.async_utils import run_sync
from ..errors import (
    FetchFailed,
    ProviderPermissionDenied,
    ProviderUnavailable,
)
from .models import ExternalRecord

logger = logging.getLogger(__name__)


class ChangeChannel:
    """Coalescing change notification channel."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bool] = asyncio.Queue(maxsize=1)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def notify(self) -> None:
        """Signal a change.  A no-op if a signal is already pending."""
        if self._closed:
            return
        try:
            self._queue.put_nowait(True)
        except asyncio.QueueFull:
            pass

    async def wait(self) -> bool:
        """Wait for the next signal.  Returns False once the channel closes."""
        if self._closed and self._queue.empty():
            return False
        value = await self._queue.get()
        return value and not self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Wake any waiter so it can observe the closed flag.
        try:
            self._queue.put_nowait(False)
        except asyncio.QueueFull:
            pass


class RecordSource(Protocol):
    """Protocol every provider adapter satisfies."""

    async def fetch(
        self, start: datetime, end: datetime
    ) -> list[ExternalRecord]:
        ...  # pragma: no cover

    def subscribe(self) -> ChangeChannel:
        ...  # pragma: no cover

    def unsubscribe(self, channel: ChangeChannel) -> None:
        ...  # pragma: no cover

    def is_available(self) -> bool:
        ...  # pragma: no cover

    async def check_access(self) -> None:
        ...  # pragma: no cover


class _ChannelHub:
    """Fan-out of change notifications to every subscriber."""

    def __init__(self) -> None:
        self.channels: list[ChangeChannel] = []

    def subscribe(self) -> ChangeChannel:
        channel = ChangeChannel()
        self.channels.append(channel)
        return channel

    def unsubscribe(self, channel: ChangeChannel) -> None:
        channel.close()
        self.channels = [c for c in self.channels if c is not channel]

    def notify_all(self) -> None:
        for channel in self.channels:
            channel.notify()


# ---------------------------------------------------------------------------
# In-memory source
# ---------------------------------------------------------------------------


class StaticRecordSource(_ChannelHub):
    """Fixed set of records, used by tests and offline runs.

    Args:
        records: Records returned by ``fetch`` (filtered by window).
        available: Value of ``is_available()``.
        permission_denied: When True, ``fetch`` and ``check_access`` raise
            ``ProviderPermissionDenied``.
    """

    def __init__(
        self,
        records: list[ExternalRecord] | None = None,
        available: bool = True,
        permission_denied: bool = False,
    ) -> None:
        super().__init__()
        self.records = list(records or [])
        self.available = available
        self.permission_denied = permission_denied
        self.fetch_calls: list[tuple[datetime, datetime]] = []
        self.fail_with: Exception | None = None

    async def fetch(
        self, start: datetime, end: datetime
    ) -> list[ExternalRecord]:
        self.fetch_calls.append((start, end))
        if not self.available:
            raise ProviderUnavailable("Provider is not available")
        if self.permission_denied:
            raise ProviderPermissionDenied("Access to workouts was denied")
        if self.fail_with is not None:
            raise self.fail_with
        return [r for r in self.records if start <= r.start_time <= end]

    def is_available(self) -> bool:
        return self.available

    async def check_access(self) -> None:
        if not self.available:
            raise ProviderUnavailable("Provider is not available")
        if self.permission_denied:
            raise ProviderPermissionDenied("Access to workouts was denied")

    def set_records(self, records: list[ExternalRecord]) -> None:
        self.records = list(records)

    def notify_change(self) -> None:
        self.notify_all()


# ---------------------------------------------------------------------------
# HTTP provider
# ---------------------------------------------------------------------------


class HttpRecordSource(_ChannelHub):
    """Provider adapter talking to a JSON HTTP endpoint.

    Endpoints (relative to *base_url*):

    - ``GET /workouts?start=<iso>&end=<iso>`` -- list of workout objects,
      either a bare array or ``{"workouts": [...]}``.
    - ``GET /workouts/anchor`` -- ``{"anchor": "<opaque>"}``; a changed
      anchor means new data is available.

    Blocking ``requests`` calls run in worker threads via ``run_sync``;
    each thread has its own ``requests.Session``.

    Args:
        base_url: Provider root URL.  Empty means the provider is not
            configured and therefore unavailable.
        token: Bearer token, if the provider needs one.
        timeout: Per-request read timeout in seconds.
        poll_interval: Seconds between anchor polls while subscribed.
    """

    def __init__(
        self,
        base_url: str | None,
        token: str | None = None,
        timeout: int = 30,
        poll_interval: int = 300,
    ) -> None:
        super().__init__()
        self.base_url = (base_url or "").rstrip("/")
        self.token = token
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._thread_local = threading.local()
        self._poll_task: asyncio.Task | None = None
        self._last_anchor: Any = None

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            session = requests.Session()
            session.headers["Accept"] = "application/json"
            if self.token:
                session.headers["Authorization"] = f"Bearer {self.token}"
            self._thread_local.session = session
        return self._thread_local.session

    def is_available(self) -> bool:
        return bool(self.base_url)

    # ------------------------------------------------------------------
    # Blocking helpers (run in worker threads)
    # ------------------------------------------------------------------

    def _get_json(self, path: str, params: dict | None = None) -> Any:
        if not self.base_url:
            raise ProviderUnavailable("No provider URL configured")
        url = f"{self.base_url}{path}"
        try:
            response = self._get_session().get(
                url, params=params, timeout=(10, self.timeout)
            )
        except requests.RequestException as exc:
            raise FetchFailed(f"Request to {url} failed: {exc}") from exc
        if response.status_code in (401, 403):
            raise ProviderPermissionDenied(
                f"Provider refused access ({response.status_code})"
            )
        try:
            response.raise_for_status()
            return response.json()
        except requests.HTTPError as exc:
            raise FetchFailed(f"Request to {url} failed: {exc}") from exc
        except ValueError as exc:
            raise FetchFailed(f"Invalid JSON from {url}: {exc}") from exc

    def fetch_blocking(
        self, start: datetime, end: datetime
    ) -> list[ExternalRecord]:
        payload = self._get_json(
            "/workouts",
            {"start": start.isoformat(), "end": end.isoformat()},
        )
        if isinstance(payload, dict):
            payload = payload.get("workouts")
        if not isinstance(payload, list):
            raise FetchFailed("Workout payload is not a list")
        try:
            records = [ExternalRecord.model_validate(raw) for raw in payload]
        except ValidationError as exc:
            raise FetchFailed(f"Malformed workout in payload: {exc}") from exc
        logger.debug(
            "Fetched %d records for %s .. %s", len(records), start, end
        )
        return records

    def anchor_blocking(self) -> Any:
        payload = self._get_json("/workouts/anchor")
        if isinstance(payload, dict):
            return payload.get("anchor")
        return payload

    # ------------------------------------------------------------------
    # Async API
    # ------------------------------------------------------------------

    async def fetch(
        self, start: datetime, end: datetime
    ) -> list[ExternalRecord]:
        return await run_sync(self.fetch_blocking, start, end)

    async def check_access(self) -> None:
        """Request the anchor endpoint.

        Raises:
            ProviderUnavailable: No provider URL configured.
            ProviderPermissionDenied: Provider answered 401/403.
        """
        await run_sync(self.anchor_blocking)

    def subscribe(self) -> ChangeChannel:
        """Subscribe to changes; starts anchor polling on first subscriber.

        Must be called from a running event loop.
        """
        channel = super().subscribe()
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.get_running_loop().create_task(
                self._poll_loop()
            )
        return channel

    def unsubscribe(self, channel: ChangeChannel) -> None:
        super().unsubscribe(channel)
        if not self.channels and self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    async def _poll_loop(self) -> None:
        while True:
            try:
                anchor = await run_sync(self.anchor_blocking)
            except (FetchFailed, ProviderPermissionDenied, ProviderUnavailable) as exc:
                logger.warning("Anchor poll failed: %s", exc)
            else:
                if anchor != self._last_anchor:
                    logger.debug(
                        "Provider anchor changed: %r -> %r",
                        self._last_anchor,
                        anchor,
                    )
                    self._last_anchor = anchor
                    self.notify_all()
            await asyncio.sleep(self.poll_interval)
