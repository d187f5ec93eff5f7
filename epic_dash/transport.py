"""GitLab HTTP plumbing: errors, rate limiting and page walking."""

import asyncio
import contextlib
import logging
import os
import time
from collections.abc import Callable
from typing import Any

import httpx

logger = logging.getLogger(__name__)

# Pagination limits
MAX_PAGES = 500
PER_PAGE = 100

# GitLab allows roughly 300 calls per minute per token
MAX_CONCURRENT_REQUESTS = 10
MIN_REQUEST_INTERVAL = 0.2


class TransportError(Exception):
    """Raised when a call to the tracking API (or a proxy in front of it) fails."""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status


class RateLimiter:
    """Bounds in-flight requests and spaces out request starts.

    Use as ``async with limiter: ...`` around each request. Callers beyond
    ``max_concurrent`` suspend until a slot frees; consecutive starts are
    at least ``min_interval`` seconds apart.
    """

    def __init__(
        self,
        max_concurrent: int = MAX_CONCURRENT_REQUESTS,
        min_interval: float = MIN_REQUEST_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_concurrent = max_concurrent
        self.min_interval = min_interval
        self._clock = clock
        self._slots = asyncio.Semaphore(max_concurrent)
        self._spacing = asyncio.Lock()
        self._last_start: float | None = None
        self.in_flight = 0

    async def __aenter__(self) -> "RateLimiter":
        await self._slots.acquire()
        try:
            async with self._spacing:
                if self._last_start is not None:
                    wait = self._last_start + self.min_interval - self._clock()
                    if wait > 0:
                        await asyncio.sleep(wait)
                self._last_start = self._clock()
        except BaseException:
            self._slots.release()
            raise
        self.in_flight += 1
        return self

    async def __aexit__(self, *args: object) -> None:
        self.in_flight -= 1
        self._slots.release()


def get_ssl_verify() -> bool | str:
    """Get SSL verification setting.

    Environment variables (checked in order):
    - GITLAB_CA_BUNDLE: Path to custom CA certificate bundle
    - GITLAB_INSECURE=1: Disable SSL verification (not recommended)
    """
    ca_bundle = os.environ.get("GITLAB_CA_BUNDLE", "").strip()
    if ca_bundle:
        return ca_bundle
    if os.environ.get("GITLAB_INSECURE", "").lower() in ("1", "true", "yes"):
        logger.warning(
            "SSL verification disabled (GITLAB_INSECURE=1). "
            "This is insecure and should not be used in production."
        )
        return False
    return True


def instance_url(url: str) -> str:
    """Strip any API suffix, leaving the bare instance URL."""
    url = url.strip().rstrip("/")
    for suffix in ("/api/v4", "/api/graphql", "/api"):
        if url.endswith(suffix):
            return url[: -len(suffix)]
    return url


def gitlab_api_url(url: str) -> str:
    """Normalize an instance URL to the REST API root (``.../api/v4``)."""
    return instance_url(url) + "/api/v4"


def gitlab_graphql_url(url: str) -> str:
    """Normalize an instance URL to the GraphQL endpoint."""
    return instance_url(url) + "/api/graphql"


def make_client(
    base_url: str = "",
    *,
    headers: dict[str, str] | None = None,
    timeout: float = 30.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create the shared AsyncClient used by an adapter."""
    kwargs: dict[str, Any] = {}
    if transport is not None:
        kwargs["transport"] = transport
    else:
        kwargs["verify"] = get_ssl_verify()
    return httpx.AsyncClient(
        base_url=base_url,
        headers={"Accept": "application/json", **(headers or {})},
        timeout=timeout,
        **kwargs,
    )


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    limiter: RateLimiter | None = None,
    **kwargs: Any,
) -> Any:
    """Make a request through the limiter and decode its JSON body.

    Raises:
        TransportError: Network failure, non-2xx status or malformed JSON.
    """
    gate = limiter if limiter is not None else contextlib.nullcontext()
    async with gate:
        try:
            resp = await client.request(method, url, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"GitLab API error: {e.response.status_code} for {e.request.url}",
                status=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            raise TransportError(f"Network error: {e}") from e
    try:
        return resp.json()
    except ValueError as e:
        raise TransportError(
            f"Malformed JSON body from {url}", status=resp.status_code
        ) from e


async def fetch_all_pages(
    client: httpx.AsyncClient,
    url: str,
    limiter: RateLimiter | None = None,
    *,
    params: dict[str, Any] | None = None,
    per_page: int = PER_PAGE,
    max_pages: int = MAX_PAGES,
) -> list[dict]:
    """Walk a page-numbered endpoint until it returns an empty page.

    Any failure aborts the whole walk; pages collected so far are dropped.

    Args:
        client: Client carrying the auth header.
        url: Endpoint (absolute, or relative to the client's base_url).
        limiter: Shared limiter every page request goes through.
        params: Extra query parameters sent with every page.
        per_page: Page size requested from the API.
        max_pages: Ceiling that prevents runaway pagination.

    Returns:
        All records from all pages, in page order.
    """
    results: list[dict] = []
    page = 1

    while page <= max_pages:
        query = {**(params or {}), "per_page": per_page, "page": page}
        data = await request_json(client, "GET", url, limiter, params=query)

        if not isinstance(data, list):
            raise TransportError(
                f"Expected a JSON list from {url}, got {type(data).__name__}"
            )
        if not data:
            break

        results.extend(data)
        page += 1
    else:
        logger.warning(
            f"Pagination of {url} truncated at {max_pages} pages "
            f"({len(results)} items). Results may be incomplete."
        )

    logger.debug(f"Fetched {len(results)} records from {url} in {page - 1} pages")
    return results
