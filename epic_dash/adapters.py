"""Transport adapters: four ways of getting raw issues and epics out of GitLab.

Every adapter returns the same ``RawData`` shape, so the normalizer never
sees transport differences (flat REST label arrays, GraphQL node wrappers,
client-library objects, base64 proxy payloads).
"""

import asyncio
import base64
import json
import logging
from typing import Any
from urllib.parse import quote

import gitlab
import httpx

from .config import Settings
from .models import RawData, RawEpic, RawIssue, graphql_nodes
from .transport import (
    MAX_PAGES,
    PER_PAGE,
    RateLimiter,
    TransportError,
    fetch_all_pages,
    get_ssl_verify,
    gitlab_api_url,
    gitlab_graphql_url,
    instance_url,
    make_client,
    request_json,
)

logger = logging.getLogger(__name__)

_ISSUE_FIELDS = """
          iid
          title
          state
          createdAt
          updatedAt
          closedAt
          dueDate
          description
          webUrl
          projectId
          timeEstimate
          totalTimeSpent
          milestone { title }
          author { username }
          assignees { nodes { username } }
          labels { nodes { title } }
          epic { iid title webUrl dueDate }
"""

_EPIC_FIELDS = """
          iid
          title
          state
          createdAt
          updatedAt
          closedAt
          startDate
          dueDate
          description
          webUrl
          group { id }
          author { username }
          labels { nodes { title } }
"""

# A connection that has run out of pages is skipped with @include so its
# first page is not fetched again while the other one keeps paging.
ISSUES_AND_EPICS_QUERY = f"""
query($fullPath: ID!, $issuesCursor: String, $epicsCursor: String,
      $withIssues: Boolean!, $withEpics: Boolean!, $first: Int!) {{
  group(fullPath: $fullPath) {{
    issues(after: $issuesCursor, first: $first, includeSubgroups: true)
        @include(if: $withIssues) {{
      pageInfo {{ endCursor hasNextPage }}
      nodes {{{_ISSUE_FIELDS}      }}
    }}
    epics(after: $epicsCursor, first: $first) @include(if: $withEpics) {{
      pageInfo {{ endCursor hasNextPage }}
      nodes {{{_EPIC_FIELDS}      }}
    }}
  }}
}}
"""

GROUP_PROBE_QUERY = """
query($fullPath: ID!) {
  group(fullPath: $fullPath) { id fullName }
}
"""


class TransportAdapter:
    """Common contract for all transports."""

    name = ""

    async def ingest(self) -> RawData:
        """Fetch every issue and epic of the configured group."""
        raise NotImplementedError

    async def probe(self) -> str:
        """Lightweight connectivity check; returns a human-readable message."""
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release network resources."""


class RestAdapter(TransportAdapter):
    """REST v4: group -> projects -> paginated issues, plus group epics."""

    name = "rest"

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        limiter: RateLimiter | None = None,
    ):
        self.group_id = settings.group_id
        self._limiter = limiter or RateLimiter()
        self._client = make_client(
            gitlab_api_url(settings.api_url),
            headers={"PRIVATE-TOKEN": settings.access_token},
            timeout=settings.request_timeout,
            transport=transport,
        )

    @property
    def _group_path(self) -> str:
        return f"/groups/{quote(str(self.group_id), safe='')}"

    async def _get_group(self) -> dict:
        group = await request_json(self._client, "GET", self._group_path, self._limiter)
        if not isinstance(group, dict):
            raise TransportError(f"Unexpected group payload for {self.group_id}")
        return group

    @staticmethod
    def _issues_url(project: dict) -> str:
        links = project.get("_links") or {}
        return links.get("issues") or f"/projects/{project['id']}/issues"

    async def ingest(self) -> RawData:
        group = await self._get_group()
        projects = group.get("projects") or []
        logger.info(
            f"Fetching issues for {len(projects)} projects in group {self.group_id}"
        )

        tasks = [
            asyncio.ensure_future(
                fetch_all_pages(self._client, self._issues_url(p), self._limiter)
            )
            for p in projects
        ]
        try:
            pages = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

        epics = await fetch_all_pages(
            self._client, f"{self._group_path}/epics", self._limiter
        )
        return RawData(
            issues=[RawIssue.from_rest(item) for page in pages for item in page],
            epics=[RawEpic.from_rest(item) for item in epics],
        )

    async def probe(self) -> str:
        group = await self._get_group()
        return f"Connected to GitLab group: {group.get('full_name') or self.group_id}"

    async def aclose(self) -> None:
        await self._client.aclose()


class GraphQLAdapter(TransportAdapter):
    """GraphQL via the CORS-relaxing proxy, with independent issue/epic cursors."""

    name = "graphql"

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        limiter: RateLimiter | None = None,
        max_pages: int = MAX_PAGES,
    ):
        self.group_name = settings.group_name
        self.proxy_url = settings.graphql_proxy_url
        self.max_pages = max_pages
        self._limiter = limiter or RateLimiter()
        self._client = make_client(
            headers={
                "x-api-url": gitlab_graphql_url(settings.api_url),
                "Authorization": f"Bearer {settings.access_token}",
                "Content-Type": "application/json",
            },
            timeout=settings.request_timeout,
            transport=transport,
        )

    async def _execute(self, query: str, variables: dict[str, Any]) -> dict:
        body = await request_json(
            self._client,
            "POST",
            self.proxy_url,
            self._limiter,
            json={"query": query, "variables": variables},
        )
        if not isinstance(body, dict):
            raise TransportError("Unexpected GraphQL response body")
        if body.get("errors"):
            messages = "; ".join(
                str(e.get("message", e)) if isinstance(e, dict) else str(e)
                for e in body["errors"]
            )
            raise TransportError(f"GraphQL error: {messages}")
        group = (body.get("data") or {}).get("group")
        if not isinstance(group, dict):
            raise TransportError(f"GitLab group '{self.group_name}' not found")
        return group

    async def ingest(self) -> RawData:
        issues: list[RawIssue] = []
        epics: list[RawEpic] = []
        issues_cursor: str | None = None
        epics_cursor: str | None = None
        more_issues = more_epics = True
        page = 0

        while more_issues or more_epics:
            page += 1
            if page > self.max_pages:
                logger.warning(
                    f"GraphQL pagination truncated at {self.max_pages} pages "
                    f"({len(issues)} issues, {len(epics)} epics)"
                )
                break

            group = await self._execute(
                ISSUES_AND_EPICS_QUERY,
                {
                    "fullPath": self.group_name,
                    "issuesCursor": issues_cursor,
                    "epicsCursor": epics_cursor,
                    "withIssues": more_issues,
                    "withEpics": more_epics,
                    "first": PER_PAGE,
                },
            )

            if more_issues:
                connection = group.get("issues") or {}
                nodes = graphql_nodes(connection)
                issues.extend(RawIssue.from_graphql(n) for n in nodes)
                info = connection.get("pageInfo") or {}
                more_issues = bool(info.get("hasNextPage"))
                issues_cursor = info.get("endCursor")

            if more_epics:
                connection = group.get("epics") or {}
                epics.extend(RawEpic.from_graphql(n) for n in graphql_nodes(connection))
                info = connection.get("pageInfo") or {}
                more_epics = bool(info.get("hasNextPage"))
                epics_cursor = info.get("endCursor")

        logger.debug(f"GraphQL ingest: {len(issues)} issues, {len(epics)} epics")
        return RawData(issues=issues, epics=epics)

    async def probe(self) -> str:
        group = await self._execute(GROUP_PROBE_QUERY, {"fullPath": self.group_name})
        return f"Connected to GitLab group: {group.get('fullName') or self.group_name}"

    async def aclose(self) -> None:
        await self._client.aclose()


class ClientLibraryAdapter(TransportAdapter):
    """python-gitlab client; the library handles pagination internally."""

    name = "gitbreaker"

    def __init__(self, settings: Settings, *, gl: gitlab.Gitlab | None = None):
        self.group_id = settings.group_id
        self._gl = gl or gitlab.Gitlab(
            url=instance_url(settings.api_url),
            private_token=settings.access_token,
            timeout=settings.request_timeout,
            ssl_verify=get_ssl_verify(),
        )

    def _fetch(self) -> tuple[list[dict], list[dict]]:
        group = self._gl.groups.get(self.group_id)
        epics = group.epics.list(get_all=True)
        issues = group.issues.list(get_all=True)
        return [i.attributes for i in issues], [e.attributes for e in epics]

    async def _call(self, fn):
        try:
            return await asyncio.to_thread(fn)
        except gitlab.exceptions.GitlabError as e:
            raise TransportError(
                f"GitLab client error: {e}", status=e.response_code or 0
            ) from e
        except OSError as e:
            # requests' connection errors are OSError subclasses
            raise TransportError(f"Network error: {e}") from e

    async def ingest(self) -> RawData:
        issues, epics = await self._call(self._fetch)
        return RawData(
            issues=[RawIssue.from_rest(item) for item in issues],
            epics=[RawEpic.from_rest(item) for item in epics],
        )

    async def probe(self) -> str:
        group = await self._call(lambda: self._gl.groups.get(self.group_id, lazy=False))
        name = group.attributes.get("full_name") or self.group_id
        return f"Connected to GitLab group: {name}"

    async def aclose(self) -> None:
        session = getattr(self._gl, "session", None)
        if session is not None:
            session.close()


class ProxyAdapter(TransportAdapter):
    """Caching collaborator that serves a base64-encoded ``{issues, epics}`` payload."""

    name = "express"

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        limiter: RateLimiter | None = None,
    ):
        self.group_id = settings.group_id
        self._limiter = limiter or RateLimiter()
        self._client = make_client(
            settings.api_url.rstrip("/"),
            timeout=settings.request_timeout,
            transport=transport,
        )

    @staticmethod
    def decode_payload(body: Any) -> dict:
        """Base64-decode and JSON-parse the proxy's ``data`` field."""
        payload = body.get("data") if isinstance(body, dict) else None
        if not isinstance(payload, str):
            raise TransportError("Proxy response has no 'data' payload")
        try:
            raw = base64.b64decode(payload, validate=True)
            decoded = json.loads(raw.decode("utf-8"))
        except ValueError as e:
            raise TransportError(f"Malformed proxy payload: {e}") from e
        if not isinstance(decoded, dict):
            raise TransportError("Proxy payload is not a JSON object")
        return decoded

    async def ingest(self) -> RawData:
        logger.info(f"Fetching cached GitLab data for group {self.group_id} from proxy")
        body = await request_json(
            self._client,
            "GET",
            "/gitlab",
            self._limiter,
            params={"group": self.group_id},
        )
        decoded = self.decode_payload(body)
        return RawData(
            issues=[RawIssue.from_rest(i) for i in decoded.get("issues") or []],
            epics=[RawEpic.from_rest(e) for e in decoded.get("epics") or []],
        )

    async def probe(self) -> str:
        await request_json(self._client, "GET", "/health", self._limiter)
        return f"Connected to caching proxy at {self._client.base_url}"

    async def aclose(self) -> None:
        await self._client.aclose()


ADAPTERS: dict[str, type[TransportAdapter]] = {
    "rest": RestAdapter,
    "graphql": GraphQLAdapter,
    "gitbreaker": ClientLibraryAdapter,
    "express": ProxyAdapter,
}


def create_adapter(
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    limiter: RateLimiter | None = None,
) -> TransportAdapter:
    """Build the adapter selected by ``settings.api_call_type``.

    Raises:
        ConfigurationError: Settings incomplete for that transport.
    """
    settings.validate()
    adapter_cls = ADAPTERS[settings.api_call_type]
    if adapter_cls is ClientLibraryAdapter:
        return ClientLibraryAdapter(settings)
    return adapter_cls(settings, transport=transport, limiter=limiter)
