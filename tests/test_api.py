"""Tests for the JSON API and health endpoints."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from epic_dash import api
from epic_dash.api import get_datasource
from epic_dash.config import Settings
from epic_dash.datasource import Datasource
from epic_dash.main import app
from epic_dash.transport import TransportError

SETTINGS = Settings(api_url="https://gitlab.example.com", access_token="t", group_id="42")


@pytest.fixture()
def datasource(fake_adapter, now):
    return Datasource(SETTINGS, fake_adapter, now=lambda: now)


@pytest.fixture()
def client(datasource):
    """TestClient with the datasource dependency overridden."""
    app.dependency_overrides[get_datasource] = lambda: datasource
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestQuery:
    def test_group_and_count(self, client):
        resp = client.post(
            "/api/query",
            json={"typeFilter": "issue", "groupBy": ["state"], "aggregateFunction": "count"},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["refId"] == "A"
        assert body["columns"] == [
            {"name": "state", "type": "string"},
            {"name": "Value", "type": "number"},
        ]
        assert body["rows"] == [
            {"state": "closed", "Value": 1},
            {"state": "opened", "Value": 3},
        ]

    def test_raw_rows_are_json(self, client):
        resp = client.post(
            "/api/query",
            json={
                "aggregateFunction": None,
                "filters": [{"field": "id", "value": "1"}],
            },
        )
        assert resp.status_code == 200
        row = resp.json()["rows"][0]
        assert row["title"] == "Fix login redirect"
        assert row["created_at"].startswith("2024-01-05T10:00:00")
        assert row["assignees"] == ["Jane D"]

    def test_epic_rollups(self, client):
        resp = client.post(
            "/api/query",
            json={
                "typeFilter": "epic",
                "aggregateFunction": None,
                "filters": [{"field": "title", "value": "Checkout"}],
            },
        )
        epic = resp.json()["rows"][0]
        assert epic["totalissues"] == 2
        assert epic["pctcomplete"] == 50.0
        assert epic["epic_channel"] == "Enterprise Project"

    def test_unsupported_aggregate(self, client):
        resp = client.post("/api/query", json={"aggregateFunction": "median"})
        assert resp.status_code == 400
        assert resp.json()["code"] == "query_error"
        assert "median" in resp.json()["error"]

    def test_invalid_regex(self, client):
        resp = client.post(
            "/api/query", json={"regexFilters": [{"field": "title", "value": "["}]}
        )
        assert resp.status_code == 400

    def test_invalid_body(self, client):
        resp = client.post("/api/query", json={"createdAfter": "someday"})
        assert resp.status_code == 422

    def test_no_data(self, client, fake_adapter):
        fake_adapter.fail = TransportError("GitLab API error: 502", status=502)
        resp = client.post("/api/query", json={})
        assert resp.status_code == 503
        assert resp.json()["code"] == "no_data"

    def test_misconfigured(self):
        app.dependency_overrides[get_datasource] = lambda: Datasource(Settings())
        try:
            resp = TestClient(app).post("/api/query", json={})
        finally:
            app.dependency_overrides.clear()
        assert resp.status_code == 500
        assert resp.json()["code"] == "configuration_error"


class TestTestConnection:
    def test_success_is_memoized(self, client, fake_adapter):
        first = client.get("/api/test-connection").json()
        second = client.get("/api/test-connection").json()
        assert first == {"status": "success", "message": "Connected to fake"}
        assert second == first
        assert fake_adapter.probe_calls == 1

    def test_transport_failure(self, client, fake_adapter):
        fake_adapter.fail = TransportError("GitLab API error: 401", status=401)
        body = client.get("/api/test-connection").json()
        assert body["status"] == "error"
        assert "401" in body["message"]

    def test_failure_not_memoized(self, client, fake_adapter):
        fake_adapter.fail = TransportError("down")
        client.get("/api/test-connection")
        fake_adapter.fail = None
        assert client.get("/api/test-connection").json()["status"] == "success"
        assert fake_adapter.probe_calls == 2

    def test_configuration_error(self):
        app.dependency_overrides[get_datasource] = lambda: Datasource(
            Settings(api_call_type="graphql")
        )
        try:
            body = TestClient(app).get("/api/test-connection").json()
        finally:
            app.dependency_overrides.clear()
        assert body["status"] == "error"
        assert body["message"].startswith("Configuration error")

    def test_malformed_setting_reported(self, monkeypatch, tmp_path):
        monkeypatch.setenv("EPIC_DASH_CONFIG", str(tmp_path / "absent.yml"))
        monkeypatch.setenv("GITLAB_URL", "https://gitlab.example.com")
        monkeypatch.setenv("GITLAB_TOKEN", "t")
        monkeypatch.setenv("GITLAB_GROUP_ID", "42")
        monkeypatch.setenv("EPIC_DASH_REFRESH_INTERVAL", "one-hour")
        monkeypatch.delenv("GITLAB_API_CALL_TYPE", raising=False)
        monkeypatch.setattr(api, "_datasource", None)

        resp = TestClient(app).get("/api/test-connection")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "error"
        assert "refresh_interval" in body["message"]


class TestFields:
    def test_issue_fields(self, client):
        resp = client.get("/api/fields/issue")
        assert resp.status_code == 200
        body = resp.json()
        assert body["state"] == ["closed", "opened"]
        assert body["workflow_state"] == ["Done", "In Progress", "Unassigned State"]

    def test_epic_fields(self, client):
        body = client.get("/api/fields/epic").json()
        assert body["title"] == ["Checkout", "Search"]

    def test_unknown_record_type(self, client):
        resp = client.get("/api/fields/pipeline")
        assert resp.status_code == 400
        assert resp.json()["code"] == "query_error"

    def test_returns_a_copy_of_the_index(self, datasource):
        async def scenario():
            first = await datasource.field_values("issue")
            first["state"].append("bogus")
            return await datasource.field_values("issue")

        second = asyncio.run(scenario())
        assert second["state"] == ["closed", "opened"]


class TestHealth:
    def test_reports_cache_state(self, client):
        before = client.get("/health").json()
        assert before["status"] == "ok"
        assert before["cache"] == "empty"
        assert before["transport"] == "rest"

        client.post("/api/query", json={})
        assert client.get("/health").json()["cache"] == "fresh"
