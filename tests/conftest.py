"""Shared fixtures: a fixed clock and an in-memory transport adapter."""

import asyncio
from datetime import UTC, datetime

import pytest

from epic_dash.adapters import TransportAdapter
from epic_dash.models import RawData, RawEpic, RawIssue

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=UTC)


class FakeAdapter(TransportAdapter):
    """Serves a fixed RawData, optionally slowly or with an error."""

    name = "fake"

    def __init__(self, raw: RawData | None = None, delay: float = 0.0):
        self.raw = raw or RawData()
        self.delay = delay
        self.fail: Exception | None = None
        self.calls = 0
        self.probe_calls = 0
        self.closed = False

    async def ingest(self) -> RawData:
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.fail is not None:
            raise self.fail
        return self.raw

    async def probe(self) -> str:
        self.probe_calls += 1
        if self.fail is not None:
            raise self.fail
        return "Connected to fake"

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture()
def now():
    return NOW


@pytest.fixture()
def sample_raw():
    """Two epics and four issues; one issue points at an unknown epic."""
    return RawData(
        issues=[
            RawIssue(
                id="1",
                title="Fix login redirect",
                state="closed",
                labels=("Workflow::Done", "IssueType::Bug"),
                assignees=("jane.doe",),
                created_at="2024-01-05T10:00:00Z",
                closed_at="2024-01-25T10:00:00Z",
                epic_title="Checkout",
            ),
            RawIssue(
                id="2",
                title="Add payment form",
                state="opened",
                labels=("Workflow::In Progress",),
                assignees=("jane.doe", "bob"),
                created_at="2024-01-20T10:00:00Z",
                epic_title="Checkout",
            ),
            RawIssue(
                id="3",
                title="Fix typo in footer",
                state="opened",
                created_at="2024-02-03T10:00:00Z",
            ),
            RawIssue(
                id="4",
                title="Orphan",
                state="opened",
                created_at="2024-02-10T10:00:00Z",
                epic_title="Deleted epic",
            ),
        ],
        epics=[
            RawEpic(
                id="10",
                title="Checkout",
                state="opened",
                labels=("Channel::Enterprise", "Epic Stage::Build"),
                created_at="2023-12-01T00:00:00Z",
                due_date="2024-04-01",
            ),
            RawEpic(id="11", title="Search", state="opened"),
        ],
    )


@pytest.fixture()
def fake_adapter(sample_raw):
    return FakeAdapter(sample_raw)


@pytest.fixture()
def make_adapter():
    """Factory for FakeAdapter instances with custom data or delay."""
    return FakeAdapter
