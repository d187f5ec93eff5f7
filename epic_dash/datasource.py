"""Datasource facade: settings -> adapter -> cache -> query engine."""

import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

from cachetools import TTLCache

from .adapters import TransportAdapter, create_adapter
from .cache import DataCache
from .config import ConfigurationError, Settings
from .query import QueryError, QueryRequest, QueryResult, run_query
from .transport import TransportError

logger = logging.getLogger(__name__)

PROBE_TTL = 60.0
RECORD_TYPES = ("issue", "epic")


class Datasource:
    """One configured GitLab group, queried through a shared cache.

    The adapter and cache are built lazily so that incomplete settings only
    fail when data is actually needed.
    """

    def __init__(
        self,
        settings: Settings,
        adapter: TransportAdapter | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] | None = None,
    ):
        self.settings = settings
        self._adapter = adapter
        self._clock = clock
        self._now = now
        self._cache: DataCache | None = None
        self._probes: TTLCache[str, dict[str, str]] = TTLCache(
            maxsize=1, ttl=PROBE_TTL, timer=clock
        )

    @property
    def cache(self) -> DataCache:
        """The data cache, creating the adapter on first use.

        Raises:
            ConfigurationError: Settings incomplete for the selected transport.
        """
        if self._cache is None:
            if self._adapter is None:
                self._adapter = create_adapter(self.settings)
            self._cache = DataCache(
                self._adapter,
                ttl=self.settings.ttl_seconds,
                clock=self._clock,
                now=self._now,
                refresh_timeout=self.settings.refresh_timeout,
            )
        return self._cache

    @property
    def cache_state(self) -> str:
        """``empty``, ``fresh`` or ``stale``."""
        if self._cache is None or self._cache.snapshot is None:
            return "empty"
        return "fresh" if self._cache.is_fresh else "stale"

    async def query(self, request: QueryRequest | dict[str, Any]) -> QueryResult:
        if not isinstance(request, QueryRequest):
            request = QueryRequest.model_validate(request)
        snapshot = await self.cache.fetch_data()
        return run_query(request, snapshot.data)

    async def test_connection(self) -> dict[str, str]:
        """Probe the transport; a success is remembered for ``PROBE_TTL`` seconds."""
        cached = self._probes.get("probe")
        if cached is not None:
            return cached

        try:
            message = await self.cache.adapter.probe()
        except ConfigurationError as e:
            return {"status": "error", "message": f"Configuration error: {e}"}
        except TransportError as e:
            logger.warning(f"Connection test failed: {e}")
            return {"status": "error", "message": str(e)}

        result = {"status": "success", "message": message}
        self._probes["probe"] = result
        return result

    async def field_values(self, record_type: str) -> dict[str, list[Any]]:
        """Distinct values per field for one record type, for filter pickers."""
        kind = record_type.lower()
        if kind not in RECORD_TYPES:
            raise QueryError(
                f"Unknown record type '{record_type}'. "
                f"Expected one of: {', '.join(RECORD_TYPES)}"
            )
        snapshot = await self.cache.fetch_data()
        if kind == "issue":
            index = snapshot.data.issue_field_index
        else:
            index = snapshot.data.epic_field_index
        return {name: list(values) for name, values in index.items()}

    def start(self) -> None:
        """Start periodic background refreshes (needs a running event loop)."""
        self.cache.start()
        logger.info(
            f"Background refresh every {self.settings.ttl_seconds:.0f}s "
            f"via {self.cache.adapter.name}"
        )

    async def close(self) -> None:
        if self._cache is not None:
            await self._cache.stop()
        if self._adapter is not None:
            await self._adapter.aclose()
