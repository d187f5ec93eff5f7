"""Tests for the query engine."""

import pytest
from pydantic import ValidationError

from epic_dash.models import RawData, RawIssue
from epic_dash.query import (
    Column,
    Filter,
    InvalidFilterError,
    QueryRequest,
    UnsupportedAggregateError,
    aggregate,
    filter_rows,
    run_query,
)
from epic_dash.rollup import process


@pytest.fixture()
def monthly(now):
    """Three issues: two created in January, one in February."""
    return process(
        RawData(
            issues=[
                RawIssue(id="1", state="opened", created_at="2024-01-05"),
                RawIssue(id="2", state="closed", created_at="2024-01-20",
                         closed_at="2024-02-01"),
                RawIssue(id="3", state="locked", created_at="2024-02-03"),
            ]
        ),
        now,
    )


@pytest.fixture()
def dataset(now, sample_raw):
    return process(sample_raw, now)


class TestQueryRequest:
    def test_camel_case_aliases(self):
        req = QueryRequest.model_validate(
            {
                "typeFilter": "epic",
                "createdAfter": "2024-01-10",
                "groupBy": ["epic_channel"],
                "aggregateFunction": "sum",
                "regexFilters": [{"field": "title", "value": "^C"}],
            }
        )
        assert req.type_filter == "epic"
        assert req.created_after.year == 2024
        assert req.created_after.tzinfo is not None
        assert req.group_by == ["epic_channel"]
        assert req.aggregate_function == "sum"
        assert req.regex_filters[0].field == "title"

    def test_snake_case_names(self):
        req = QueryRequest(group_by=["state"], aggregate_function=None)
        assert req.group_by == ["state"]
        assert req.aggregate_function is None

    def test_defaults(self):
        req = QueryRequest()
        assert req.type_filter == "issue"
        assert req.aggregate_function == "count"
        assert req.filters == []

    def test_invalid_date(self):
        with pytest.raises(ValidationError):
            QueryRequest.model_validate({"createdAfter": "last tuesday"})


class TestGrouping:
    def test_count_by_created_month(self, monthly):
        result = run_query(QueryRequest(group_by=["created_month"]), monthly)
        assert result.rows == [
            {"created_month": "January", "Value": 2},
            {"created_month": "February", "Value": 1},
        ]
        assert result.columns == [
            Column("created_month", "string"),
            Column("Value", "number"),
        ]

    def test_count_by_month_two_issues(self, now):
        data = process(
            RawData(
                issues=[
                    RawIssue(id="1", created_at="2024-01-05"),
                    RawIssue(id="2", created_at="2024-02-05"),
                ]
            ),
            now,
        )
        req = QueryRequest.model_validate(
            {
                "typeFilter": "issue",
                "groupBy": ["created_month"],
                "aggregateFunction": "count",
            }
        )
        assert run_query(req, data).rows == [
            {"created_month": "January", "Value": 1},
            {"created_month": "February", "Value": 1},
        ]

    def test_no_group_by_is_single_total(self, monthly):
        result = run_query(QueryRequest(), monthly)
        assert result.rows == [{"Value": 3}]

    def test_missing_group_value(self, monthly):
        result = run_query(QueryRequest(group_by=["no_such_field"]), monthly)
        assert result.rows == [{"no_such_field": "N/A", "Value": 3}]

    def test_numeric_group_column(self, dataset):
        result = run_query(QueryRequest(group_by=["c3score"]), dataset)
        assert {"c3score": 6, "Value": 2} in result.rows
        assert result.columns[0] == Column("c3score", "number")

    def test_multi_field_group(self, monthly):
        result = run_query(
            QueryRequest(group_by=["created_month", "state"]), monthly
        )
        assert len(result.rows) == 3
        assert {"created_month": "January", "state": "closed", "Value": 1} in result.rows

    def test_assignee_expansion(self, dataset):
        result = run_query(QueryRequest(group_by=["assignee"]), dataset)
        counts = {r["assignee"]: r["Value"] for r in result.rows}
        assert counts == {"Jane D": 2, "bob": 1, "": 2}


class TestFilters:
    def test_comma_list_is_or(self, monthly):
        req = QueryRequest(filters=[Filter(field="state", value="opened,closed")])
        assert run_query(req, monthly).rows == [{"Value": 2}]

    def test_list_value_is_or(self, monthly):
        req = QueryRequest(filters=[Filter(field="state", value=["opened", "locked"])])
        assert run_query(req, monthly).rows == [{"Value": 2}]

    def test_exact_match(self, monthly):
        req = QueryRequest(filters=[Filter(field="state", value="closed")])
        assert run_query(req, monthly).rows == [{"Value": 1}]

    def test_null_literal(self, monthly):
        req = QueryRequest(filters=[Filter(field="closed_at", value="null")])
        assert run_query(req, monthly).rows == [{"Value": 2}]

    def test_null_filter_on_missing_field(self, monthly):
        req = QueryRequest(filters=[Filter(field="no_such_field", value="null")])
        assert run_query(req, monthly).rows == [{"Value": 3}]

    def test_numeric_value_compared_as_text(self, dataset):
        req = QueryRequest.model_validate(
            {"filters": [{"field": "c3score", "value": 6}]}
        )
        assert req.filters[0].value == "6"
        assert run_query(req, dataset).rows == [{"Value": 2}]

    def test_numeric_list_value(self, dataset):
        flt = Filter.model_validate({"field": "c3score", "value": [6.0, 99]})
        assert flt.value == ["6", "99"]
        assert run_query(QueryRequest(filters=[flt]), dataset).rows == [{"Value": 2}]

    def test_sequence_field_matches_any_element(self, dataset):
        req = QueryRequest(filters=[Filter(field="assignees", value="bob")])
        assert run_query(req, dataset).rows == [{"Value": 1}]

    def test_regex(self, dataset):
        req = QueryRequest(regex_filters=[Filter(field="title", value="^Fix")])
        assert run_query(req, dataset).rows == [{"Value": 2}]

    def test_regex_search_not_fullmatch(self, dataset):
        req = QueryRequest(regex_filters=[Filter(field="title", value="payment")])
        assert run_query(req, dataset).rows == [{"Value": 1}]

    def test_invalid_regex(self, dataset):
        req = QueryRequest(regex_filters=[Filter(field="title", value="(")])
        with pytest.raises(InvalidFilterError):
            run_query(req, dataset)

    def test_filters_combine_with_and(self, dataset):
        req = QueryRequest(
            filters=[Filter(field="state", value="opened")],
            regex_filters=[Filter(field="title", value="^Fix")],
        )
        assert run_query(req, dataset).rows == [{"Value": 1}]


class TestDateFilters:
    def test_created_range_inclusive(self, monthly):
        req = QueryRequest.model_validate(
            {"createdAfter": "2024-01-05", "createdBefore": "2024-01-20"}
        )
        assert run_query(req, monthly).rows == [{"Value": 2}]

    def test_created_after(self, monthly):
        req = QueryRequest.model_validate({"createdAfter": "2024-01-10"})
        assert run_query(req, monthly).rows == [{"Value": 2}]

    def test_bound_excludes_records_without_date(self, monthly):
        req = QueryRequest.model_validate({"closedAfter": "2024-01-01"})
        assert run_query(req, monthly).rows == [{"Value": 1}]


class TestTypeFilter:
    def test_epics(self, dataset):
        result = run_query(QueryRequest(type_filter="epic", group_by=["title"]), dataset)
        assert result.rows == [
            {"title": "Checkout", "Value": 1},
            {"title": "Search", "Value": 1},
        ]

    def test_case_insensitive(self, dataset):
        result = run_query(QueryRequest(type_filter="EPIC"), dataset)
        assert result.rows == [{"Value": 2}]

    def test_no_type_filter_returns_both(self, dataset):
        result = run_query(QueryRequest(type_filter=None, group_by=["type"]), dataset)
        assert result.rows == [
            {"type": "issue", "Value": 4},
            {"type": "epic", "Value": 2},
        ]

    def test_unknown_type_is_empty(self, dataset):
        assert run_query(QueryRequest(type_filter="merge_request"), dataset).rows == []


class TestAggregate:
    rows = [
        {"id": "1", "type": "issue", "state": "opened", "Value": 3},
        {"id": "2", "type": "issue", "state": "opened", "Value": 4},
        {"id": "3", "type": "issue", "state": "closed", "Value": 5},
    ]

    def test_sum(self):
        assert aggregate(self.rows, ["state"], "sum") == [
            {"state": "opened", "Value": 7},
            {"state": "closed", "Value": 5},
        ]

    def test_sum_via_query(self, monthly):
        req = QueryRequest(group_by=["created_month"], aggregate_function="sum")
        assert run_query(req, monthly).rows == [
            {"created_month": "January", "Value": 2},
            {"created_month": "February", "Value": 1},
        ]

    def test_duplicates_counted_once(self):
        once = aggregate(self.rows, ["state"], "count")
        twice = aggregate(self.rows + self.rows, ["state"], "count")
        assert once == twice == [
            {"state": "opened", "Value": 2},
            {"state": "closed", "Value": 1},
        ]

    def test_reaggregating_output_is_stable(self):
        output = aggregate(self.rows, ["state"], "count")
        assert aggregate(output, ["state"], "sum") == output

    def test_same_id_different_type_counted_separately(self):
        rows = [
            {"id": "1", "type": "issue", "state": "opened", "Value": 1},
            {"id": "1", "type": "epic", "state": "opened", "Value": 1},
        ]
        assert aggregate(rows, ["state"], "count") == [{"state": "opened", "Value": 2}]

    @pytest.mark.parametrize("function", ["avg", "max", "COUNT", ""])
    def test_unsupported(self, function):
        with pytest.raises(UnsupportedAggregateError):
            aggregate(self.rows, ["state"], function)

    def test_unsupported_via_query_even_without_rows(self, now):
        with pytest.raises(UnsupportedAggregateError):
            run_query(QueryRequest(aggregate_function="avg"), process(RawData(), now))


class TestRawRows:
    def test_no_aggregate_returns_records(self, monthly):
        req = QueryRequest(
            aggregate_function=None, filters=[Filter(field="state", value="opened")]
        )
        result = run_query(req, monthly)
        assert len(result.rows) == 1
        assert result.rows[0]["id"] == "1"
        columns = {c.name: c.type for c in result.columns}
        assert columns["created_at"] == "time"
        assert columns["Value"] == "number"
        assert columns["title"] == "string"

    def test_filter_rows_is_pure(self, monthly):
        rows = [i.as_row() for i in monthly.issues]
        req = QueryRequest(filters=[Filter(field="state", value="opened")])
        assert len(filter_rows(rows, req)) == 1
        assert len(rows) == 3


class TestToDict:
    def test_shape(self, monthly):
        result = run_query(QueryRequest(ref_id="B", group_by=["state"]), monthly)
        body = result.to_dict()
        assert body["refId"] == "B"
        assert body["columns"][0] == {"name": "state", "type": "string"}
        assert len(body["rows"]) == 3
