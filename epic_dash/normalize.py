"""Raw records to canonical Issue/Epic records.

Normalization is a pure function of the raw record and ``now``: missing
upstream data resolves to sentinels and never raises.
"""

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from .dates import (
    date_info,
    days_between,
    days_left,
    parse_sprint_window,
    parse_timestamp,
)
from .labels import EPIC_RULES, ISSUE_RULES, classify, classify_ci, format_name
from .models import NO_EPIC, Epic, Issue, RawEpic, RawIssue


def _aware(now: datetime | None) -> datetime:
    if now is None:
        return datetime.now(UTC)
    return now if now.tzinfo else now.replace(tzinfo=UTC)


def _day(value: str | None) -> str:
    """Date part of an ISO timestamp (``2024-03-01T00:00:00Z`` -> ``2024-03-01``)."""
    return value.split("T")[0] if value else ""


def _unique(names: Iterable[str]) -> tuple[str, ...]:
    """Drop blanks and duplicates, keeping first-seen order."""
    return tuple(dict.fromkeys(n for n in names if n))


def _temporal(prefix: str, ts: datetime | None, now: datetime) -> dict[str, Any]:
    if ts is None:
        return {
            f"{prefix}_month": "",
            f"{prefix}_month_number": "",
            f"{prefix}_year": "",
        }
    info = date_info(ts, now)
    return {
        f"{prefix}_month": info.month_name,
        f"{prefix}_month_number": info.month_number,
        f"{prefix}_year": info.year,
    }


def _timeline(raw: RawIssue | RawEpic, now: datetime) -> dict[str, Any]:
    """Timestamps plus their month/year breakdowns, age and staleness."""
    created = parse_timestamp(raw.created_at)
    updated = parse_timestamp(raw.updated_at)
    closed = parse_timestamp(raw.closed_at)
    due = parse_timestamp(raw.due_date)

    fields: dict[str, Any] = {
        "created_at": created,
        "updated_at": updated,
        "closed_at": closed,
        "due_date": due,
        "due_date_threshold": date_info(due, now).threshold if due else "",
        "ticket_age": days_between(created, closed or now) if created else 0,
        "updated_days": days_between(updated, now) if updated else 0,
    }
    for prefix, ts in (
        ("created", created),
        ("updated", updated),
        ("closed", closed),
        ("due_date", due),
    ):
        fields.update(_temporal(prefix, ts, now))
    return fields


def normalize_issue(raw: RawIssue, now: datetime | None = None) -> Issue:
    """Build the canonical Issue for one raw issue."""
    now = _aware(now)
    ci_type, ci = classify_ci(raw.labels)

    assignee = format_name(raw.assignee)
    assignees = _unique(format_name(a) for a in raw.assignees)
    if assignee and not assignees:
        assignees = (assignee,)
    if not assignee and assignees:
        assignee = assignees[0]

    window = parse_sprint_window(raw.milestone, now)
    sprint_start, sprint_end = window if window else (None, None)

    return Issue(
        id=raw.id or "",
        title=raw.title or "",
        state=raw.state or "",
        **classify(raw.labels, ISSUE_RULES),
        story_ci=ci,
        story_ci_type=ci_type,
        author=format_name(raw.author),
        assignee=assignee,
        assignees=assignees,
        closed_by=format_name(raw.closed_by),
        **_timeline(raw, now),
        epic_id=raw.epic_id or "",
        epic_title=raw.epic_title or NO_EPIC,
        epic_url=raw.epic_url or "",
        epic_due_date=_day(raw.epic_due_date),
        milestone=raw.milestone or "",
        sprint_start_date=sprint_start,
        sprint_end_date=sprint_end,
        days_left_in_sprint=days_left(sprint_end, now) if sprint_end else 0,
        project_id=raw.project_id or "",
        description=raw.description or "",
        time_estimate=raw.time_estimate or "",
        total_time_spent=raw.total_time_spent or "",
        web_url=raw.web_url or "",
    )


def normalize_epic(raw: RawEpic, now: datetime | None = None) -> Epic:
    """Build the canonical Epic for one raw epic (rollups left at zero)."""
    now = _aware(now)
    return Epic(
        id=raw.id or "",
        title=raw.title or "",
        state=raw.state or "",
        **classify(raw.labels, EPIC_RULES),
        author=format_name(raw.author),
        closed_by=format_name(raw.closed_by),
        **_timeline(raw, now),
        start_date=_day(raw.start_date),
        end_date=_day(raw.end_date),
        group_id=raw.group_id or "",
        description=raw.description or "",
        web_url=raw.web_url or "",
    )
