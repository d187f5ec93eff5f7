"""Date helpers for derived temporal fields."""

import calendar
import math
import re
from dataclasses import dataclass
from datetime import UTC, date, datetime

SECONDS_PER_DAY = 86400

# Milestone titles like "3.4 - 3.17" (start month.day - end month.day)
SPRINT_WINDOW_PATTERN = re.compile(r"(\d{1,2})\.(\d{1,2}) - (\d{1,2})\.(\d{1,2})")


@dataclass(frozen=True)
class DateInfo:
    month_name: str
    month_number: str
    year: str
    threshold: str


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO date or timestamp from the API into an aware datetime.

    Date-only values and naive timestamps are taken as UTC. Unparseable
    values yield None rather than raising.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def date_info(ts: datetime, now: datetime) -> DateInfo:
    """Month name/number, year, and a past/current-or-future tag.

    The tag is ``"1:<Month>"`` when ``ts`` falls in a month before the
    current one and ``"0:<Month>"`` otherwise.
    """
    month_name = calendar.month_name[ts.month]
    past = (ts.year, ts.month) < (now.year, now.month)
    return DateInfo(
        month_name=month_name,
        month_number=str(ts.month),
        year=str(ts.year),
        threshold=f"{1 if past else 0}:{month_name}",
    )


def days_between(start: datetime, end: datetime) -> int:
    """Whole days between two instants, rounded up."""
    return math.ceil(abs((end - start).total_seconds()) / SECONDS_PER_DAY)


def parse_sprint_window(title: str | None, now: datetime) -> tuple[date, date] | None:
    """Extract ``(start, end)`` from a milestone title in the current year."""
    if not title:
        return None
    match = SPRINT_WINDOW_PATTERN.search(title)
    if not match:
        return None
    start_month, start_day, end_month, end_day = (int(g) for g in match.groups())
    try:
        return (
            date(now.year, start_month, start_day),
            date(now.year, end_month, end_day),
        )
    except ValueError:
        return None


def days_left(end: date, now: datetime) -> int:
    """Days remaining until ``end`` (midnight UTC), rounded up; 0 once passed."""
    end_at = datetime(end.year, end.month, end.day, tzinfo=UTC)
    if now >= end_at:
        return 0
    return math.ceil((end_at - now).total_seconds() / SECONDS_PER_DAY)
