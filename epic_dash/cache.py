"""Time-bounded cache of the normalized dataset with single-flight refresh."""

import asyncio
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from cachetools import TLRUCache

from .adapters import TransportAdapter
from .rollup import Dataset, process
from .transport import TransportError

logger = logging.getLogger(__name__)

DEFAULT_TTL = 3600.0

_SNAPSHOT_KEY = "snapshot"


class NoDataError(Exception):
    """Raised when ingestion failed and there is no earlier snapshot to serve."""

    pass


@dataclass(frozen=True)
class Snapshot:
    """One successful refresh. Never mutated; replaced wholesale by the next one."""

    data: Dataset
    refreshed_at: float  # cache clock value
    fetched_at: datetime

    @property
    def issues(self):
        return self.data.issues

    @property
    def epics(self):
        return self.data.epics


class DataCache:
    """Owns the current snapshot and the one refresh allowed in flight.

    Args:
        adapter: Transport used to ingest raw data.
        ttl: Seconds a snapshot stays fresh; also the background refresh period.
        clock: Monotonic clock driving expiry (injectable for tests).
        now: Wall clock used for derived date fields.
        refresh_timeout: Upper bound in seconds for one ingestion, or None.
    """

    def __init__(
        self,
        adapter: TransportAdapter,
        ttl: float = DEFAULT_TTL,
        *,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] | None = None,
        refresh_timeout: float | None = None,
    ):
        self.adapter = adapter
        self.ttl = ttl
        self.refresh_timeout = refresh_timeout
        self._clock = clock
        self._now = now or (lambda: datetime.now(UTC))
        self._fresh: TLRUCache[str, Snapshot] = TLRUCache(
            maxsize=1, ttu=self._expires_at, timer=clock
        )
        self._snapshot: Snapshot | None = None
        self._inflight: asyncio.Task[Snapshot] | None = None
        self._timer_task: asyncio.Task[None] | None = None
        self.ingest_count = 0

    def _expires_at(self, key: str, value: Snapshot, now: float) -> float:
        # TLRUCache drops an entry once timer() >= expiry; a snapshot stays
        # fresh up to and including exactly ttl seconds of age.
        return math.nextafter(now + self.ttl, math.inf)

    @property
    def snapshot(self) -> Snapshot | None:
        """Last good snapshot, fresh or stale."""
        return self._snapshot

    @property
    def is_fresh(self) -> bool:
        return _SNAPSHOT_KEY in self._fresh

    @property
    def refreshing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def invalidate(self) -> None:
        """Mark the current snapshot stale; the next fetch_data refreshes."""
        self._fresh.clear()

    async def fetch_data(self, *, allow_stale: bool = True) -> Snapshot:
        """Return a fresh snapshot, refreshing first if it has expired.

        Concurrent callers during a refresh all await the same refresh.
        When a refresh fails and an older snapshot exists, that snapshot is
        returned if ``allow_stale``; otherwise the error propagates.

        Raises:
            NoDataError: The refresh failed and nothing was ever cached.
            TransportError: The refresh failed and stale data was not allowed.
        """
        fresh = self._fresh.get(_SNAPSHOT_KEY)
        if fresh is not None:
            return fresh

        try:
            return await self._join_refresh()
        except Exception as e:
            if self._snapshot is None:
                raise NoDataError(f"No data available: {e}") from e
            if not allow_stale:
                raise
            logger.warning(
                "Refresh failed, serving snapshot from "
                f"{self._snapshot.fetched_at:%Y-%m-%d %H:%M:%S}: {e}"
            )
            return self._snapshot

    async def refresh(self) -> Snapshot:
        """Force a refresh (or join the one in flight) and return its snapshot."""
        return await self._join_refresh()

    async def _join_refresh(self) -> Snapshot:
        # No await between the check and the assignment, so racing callers
        # cannot both start a refresh.
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.create_task(self._do_refresh())
            self._inflight.add_done_callback(self._on_refresh_done)
        # shield: one caller being cancelled must not cancel the shared refresh
        return await asyncio.shield(self._inflight)

    def _on_refresh_done(self, task: asyncio.Task[Snapshot]) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Refresh via {self.adapter.name} failed: {task.exception()}")

    async def _do_refresh(self) -> Snapshot:
        started = self._clock()
        self.ingest_count += 1
        logger.info(f"Refreshing GitLab data via {self.adapter.name} transport")
        try:
            async with asyncio.timeout(self.refresh_timeout):
                raw = await self.adapter.ingest()
        except TimeoutError as e:
            raise TransportError(
                f"Ingestion via {self.adapter.name} timed out "
                f"after {self.refresh_timeout}s"
            ) from e

        data = process(raw, self._now())
        snapshot = Snapshot(
            data=data, refreshed_at=self._clock(), fetched_at=self._now()
        )
        self._snapshot = snapshot
        self._fresh[_SNAPSHOT_KEY] = snapshot
        logger.info(
            f"Cached {len(data.issues)} issues and {len(data.epics)} epics "
            f"in {self._clock() - started:.1f}s"
        )
        return snapshot

    def start(self) -> None:
        """Start the background task that refreshes every ``ttl`` seconds."""
        if self._timer_task is None or self._timer_task.done():
            self._timer_task = asyncio.create_task(self._refresh_periodically())

    async def _refresh_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.ttl)
            try:
                await self.refresh()
            except Exception:
                logger.exception("Scheduled refresh failed; keeping previous snapshot")

    async def stop(self) -> None:
        """Stop the background refresh and any refresh still running."""
        tasks = [t for t in (self._timer_task, self._inflight) if t and not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._timer_task = None
