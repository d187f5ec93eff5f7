"""Query engine: filter, group and aggregate cached records into table rows.

Pure and synchronous; it only reads the snapshot it is given.
"""

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .dates import parse_timestamp
from .models import Issue
from .rollup import Dataset

AGGREGATES: tuple[str, ...] = ("count", "sum")
NULL_LITERAL = "null"
MISSING_GROUP_VALUE = "N/A"

# record field -> (request "after" attribute, request "before" attribute)
DATE_RANGES: dict[str, tuple[str, str]] = {
    "created_at": ("created_after", "created_before"),
    "updated_at": ("updated_after", "updated_before"),
    "closed_at": ("closed_after", "closed_before"),
    "due_date": ("due_date_after", "due_date_before"),
}


class QueryError(Exception):
    """Raised when a query cannot be executed as written."""

    pass


class UnsupportedAggregateError(QueryError):
    pass


class InvalidFilterError(QueryError):
    pass


# --- Request models ---


def _number_text(v: Any) -> Any:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return v
    if isinstance(v, float) and v.is_integer():
        v = int(v)
    return str(v)


class Filter(BaseModel):
    field: str
    value: str | list[str]

    @field_validator("value", mode="before")
    @classmethod
    def numbers_as_text(cls, v: Any) -> Any:
        """Accept JSON numbers; filters compare values as text."""
        if isinstance(v, list):
            return [_number_text(item) for item in v]
        return _number_text(v)


class QueryRequest(BaseModel):
    """A declarative query; accepts snake_case or the UI's camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    ref_id: str = "A"
    type_filter: str | None = "issue"
    created_after: datetime | None = None
    created_before: datetime | None = None
    updated_after: datetime | None = None
    updated_before: datetime | None = None
    closed_after: datetime | None = None
    closed_before: datetime | None = None
    due_date_after: datetime | None = None
    due_date_before: datetime | None = None
    filters: list[Filter] = Field(default_factory=list)
    regex_filters: list[Filter] = Field(default_factory=list)
    group_by: list[str] = Field(default_factory=list)
    aggregate_function: str | None = "count"

    @field_validator(
        "created_after",
        "created_before",
        "updated_after",
        "updated_before",
        "closed_after",
        "closed_before",
        "due_date_after",
        "due_date_before",
        mode="before",
    )
    @classmethod
    def parse_bound(cls, v: Any) -> Any:
        if isinstance(v, str):
            if not v.strip():
                return None
            parsed = parse_timestamp(v.strip())
            if parsed is None:
                msg = f"Invalid date: '{v}'"
                raise ValueError(msg)
            return parsed
        return v

    @field_validator(
        "created_after",
        "created_before",
        "updated_after",
        "updated_before",
        "closed_after",
        "closed_before",
        "due_date_after",
        "due_date_before",
    )
    @classmethod
    def make_aware(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v


# --- Results ---


@dataclass(frozen=True)
class Column:
    name: str
    type: str  # "string", "number" or "time"


@dataclass
class QueryResult:
    ref_id: str
    columns: list[Column]
    rows: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "refId": self.ref_id,
            "columns": [{"name": c.name, "type": c.type} for c in self.columns],
            "rows": self.rows,
        }


# --- Helpers ---


def as_text(value: Any) -> str:
    """Stringify a field value the way filters compare it."""
    if value is None:
        return ""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return ", ".join(as_text(v) for v in value)
    return str(value)


def column_type(values: Iterable[Any]) -> str:
    for value in values:
        if value is None or value == MISSING_GROUP_VALUE:
            continue
        if isinstance(value, (datetime, date)):
            return "time"
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return "number"
        return "string"
    return "string"


def _scalar_matches(actual: Any, value: str | list[str]) -> bool:
    if isinstance(value, list):
        return as_text(actual) in value
    if "," in value:
        return as_text(actual) in {v.strip() for v in value.split(",")}
    return as_text(actual) == value


def matches_filter(row: dict[str, Any], flt: Filter) -> bool:
    """Equality filter: ``"null"`` literal, comma-list OR, or exact match.

    Sequence fields (``assignees``) match when any element matches.
    """
    actual = row.get(flt.field)
    if flt.value == NULL_LITERAL:
        return actual is None
    if actual is None:
        return False
    if isinstance(actual, (list, tuple)):
        return any(_scalar_matches(a, flt.value) for a in actual)
    return _scalar_matches(actual, flt.value)


def compile_regex_filters(
    filters: Sequence[Filter],
) -> list[tuple[Filter, re.Pattern[str] | None]]:
    """Compile regex filters up front; ``None`` marks the null literal."""
    compiled = []
    for flt in filters:
        if flt.value == NULL_LITERAL:
            compiled.append((flt, None))
            continue
        pattern = flt.value if isinstance(flt.value, str) else "|".join(flt.value)
        try:
            compiled.append((flt, re.compile(pattern)))
        except re.error as e:
            raise InvalidFilterError(
                f"Invalid regex for field '{flt.field}': {pattern!r} ({e})"
            ) from e
    return compiled


def matches_regex(
    row: dict[str, Any], flt: Filter, pattern: re.Pattern[str] | None
) -> bool:
    actual = row.get(flt.field)
    if pattern is None:
        return actual is None
    return pattern.search(as_text(actual)) is not None


def in_date_ranges(row: dict[str, Any], request: QueryRequest) -> bool:
    """Inclusive range check; a bound on a field the record lacks excludes it."""
    for field_name, (after_attr, before_attr) in DATE_RANGES.items():
        after = getattr(request, after_attr)
        before = getattr(request, before_attr)
        if after is None and before is None:
            continue
        value = row.get(field_name)
        if not isinstance(value, datetime):
            return False
        if after is not None and value < after:
            return False
        if before is not None and value > before:
            return False
    return True


def matches_type(row: dict[str, Any], type_filter: str | None) -> bool:
    if not type_filter:
        return True
    return as_text(row.get("type")).lower() == type_filter.lower()


def select_rows(request: QueryRequest, data: Dataset) -> list[dict[str, Any]]:
    """Rows for the requested record type.

    Grouping by ``assignee`` expands each issue into one row per assignee.
    """
    kind = (request.type_filter or "").lower()
    records: list[Any] = []
    if kind != "epic":
        records.extend(data.issues)
    if kind != "issue":
        records.extend(data.epics)

    expand = "assignee" in request.group_by
    rows = []
    for record in records:
        if expand and isinstance(record, Issue) and len(record.assignees) > 1:
            rows.extend(replace(record, assignee=a).as_row() for a in record.assignees)
        else:
            rows.append(record.as_row())
    return rows


def filter_rows(
    rows: Iterable[dict[str, Any]], request: QueryRequest
) -> list[dict[str, Any]]:
    """Apply the type, date, equality and regex filters (all must pass)."""
    regexes = compile_regex_filters(request.regex_filters)
    return [
        row
        for row in rows
        if matches_type(row, request.type_filter)
        and in_date_ranges(row, request)
        and all(matches_filter(row, f) for f in request.filters)
        and all(matches_regex(row, f, p) for f, p in regexes)
    ]


def aggregate(
    rows: Iterable[dict[str, Any]], group_by: Sequence[str], function: str
) -> list[dict[str, Any]]:
    """Bucket rows by their group-by values and aggregate each bucket.

    A given ``(id, type)`` pair is counted once per bucket however often it
    appears. ``count`` counts distinct pairs; ``sum`` adds their ``Value``.

    Raises:
        UnsupportedAggregateError: ``function`` is not count or sum.
    """
    if function not in AGGREGATES:
        raise UnsupportedAggregateError(f"Unsupported aggregate function: {function}")

    buckets: dict[tuple[str, ...], dict[tuple[Any, Any], dict[str, Any]]] = {}
    for row in rows:
        key = tuple(
            MISSING_GROUP_VALUE if row.get(f) is None else as_text(row[f])
            for f in group_by
        )
        buckets.setdefault(key, {}).setdefault((row.get("id"), row.get("type")), row)

    results = []
    for members in buckets.values():
        first = next(iter(members.values()))
        out = {
            f: MISSING_GROUP_VALUE if first.get(f) is None else first[f]
            for f in group_by
        }
        if function == "count":
            out["Value"] = len(members)
        else:
            out["Value"] = sum(m.get("Value") or 0 for m in members.values())
        results.append(out)
    return results


def run_query(request: QueryRequest, data: Dataset) -> QueryResult:
    """Execute one query against a dataset snapshot.

    With no aggregate function the filtered records are returned as-is;
    otherwise one row per group-by bucket with a numeric ``Value`` column.
    """
    function = request.aggregate_function
    if function is not None and function not in AGGREGATES:
        raise UnsupportedAggregateError(f"Unsupported aggregate function: {function}")

    rows = filter_rows(select_rows(request, data), request)

    if function is None:
        names = list(rows[0].keys()) if rows else []
        columns = [Column(n, column_type(r.get(n) for r in rows)) for n in names]
        return QueryResult(ref_id=request.ref_id, columns=columns, rows=rows)

    grouped = aggregate(rows, request.group_by, function)
    columns = [
        Column(f, column_type(r.get(f) for r in grouped)) for f in request.group_by
    ]
    columns.append(Column("Value", "number"))
    return QueryResult(ref_id=request.ref_id, columns=columns, rows=grouped)
