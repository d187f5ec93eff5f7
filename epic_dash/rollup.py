"""Issue/epic cross-referencing, epic rollups, and field value indexes."""

import logging
from collections.abc import Hashable, Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from datetime import datetime
from types import MappingProxyType
from typing import Any

from .labels import c3_score
from .models import NO_EPIC, Epic, Issue, RawData
from .normalize import normalize_epic, normalize_issue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Dataset:
    issues: tuple[Issue, ...]
    epics: tuple[Epic, ...]
    issue_field_index: Mapping[str, tuple[Any, ...]]
    epic_field_index: Mapping[str, tuple[Any, ...]]


def most_common(items: Iterable[Hashable]) -> Any | None:
    """Most frequent element; ties go to the element counted first."""
    counts: dict[Hashable, int] = {}
    for item in items:
        counts[item] = counts.get(item, 0) + 1

    best = None
    highest = 0
    for item, count in counts.items():
        if count > highest:
            best, highest = item, count
    return best


def find_child_issues(epic: Epic, issues: Sequence[Issue]) -> list[Issue]:
    return [i for i in issues if i.epic_title == epic.title]


def _index_epics(epics: Sequence[Epic]) -> dict[str, Epic]:
    by_title: dict[str, Epic] = {}
    for epic in epics:
        if epic.title in by_title:
            # Linkage is by title, so later epics with the same title get no children
            logger.warning(
                f"Duplicate epic title {epic.title!r} (ids {by_title[epic.title].id}, "
                f"{epic.id}); issues link to the first"
            )
            continue
        by_title[epic.title] = epic
    return by_title


def link_issues(issues: Sequence[Issue], epics: Sequence[Epic]) -> list[Issue]:
    """Attach each issue to its parent epic by title.

    Linked issues take the epic's channel and score; issues naming an epic
    that is not in the epic set fall back to the no-epic sentinel.
    """
    by_title = _index_epics(epics)
    linked = []
    for issue in issues:
        epic = by_title.get(issue.epic_title)
        if epic is None:
            if issue.epic_title != NO_EPIC:
                logger.debug(
                    f"Issue {issue.id} references unknown epic {issue.epic_title!r}"
                )
            linked.append(
                replace(issue, epic_title=NO_EPIC, parent_channel="", c3score=0)
            )
            continue
        epic_due = issue.epic_due_date
        if not epic_due and epic.due_date:
            epic_due = epic.due_date.date().isoformat()
        linked.append(
            replace(
                issue,
                parent_channel=epic.epic_channel,
                c3score=c3_score(epic.epic_channel),
                epic_due_date=epic_due,
            )
        )
    return linked


def compute_rollup(epic: Epic, issues: Sequence[Issue]) -> Epic:
    """Recompute an epic's rollup fields from its child issues."""
    children = find_child_issues(epic, issues)
    open_count = sum(1 for i in children if i.state == "opened")
    closed_count = sum(1 for i in children if i.state == "closed")
    total = len(children)

    all_assignees = [name for child in children for name in child.assignees]
    unique_assignees = list(dict.fromkeys(all_assignees))

    return replace(
        epic,
        openissues=open_count,
        closedissues=closed_count,
        totalissues=total,
        pctcomplete=closed_count / total * 100 if total else 0.0,
        num_assignees=len(unique_assignees),
        epic_assignees=", ".join(unique_assignees),
        most_common_epic_assignee_filter=most_common(all_assignees) or "",
    )


def cross_reference(
    issues: Sequence[Issue], epics: Sequence[Epic]
) -> tuple[list[Issue], list[Epic]]:
    """Link issues to epics, then roll child issues up into each epic."""
    linked = link_issues(issues, epics)
    return linked, [compute_rollup(epic, linked) for epic in epics]


def build_field_index(
    rows: Iterable[dict[str, Any]],
) -> Mapping[str, tuple[Any, ...]]:
    """Distinct truthy values per field, in first-seen order.

    Sequence values (e.g. ``assignees``) contribute their elements. The
    result is read-only so it can be shared from a cached snapshot.
    """
    seen: dict[str, dict[Any, None]] = {}
    for row in rows:
        for key, value in row.items():
            bucket = seen.setdefault(key, {})
            values = value if isinstance(value, (list, tuple)) else (value,)
            for v in values:
                if v:
                    bucket.setdefault(v, None)
    return MappingProxyType({key: tuple(values) for key, values in seen.items()})


def process(raw: RawData, now: datetime | None = None) -> Dataset:
    """Normalize, cross-reference and index one ingestion result."""
    issues = [normalize_issue(r, now) for r in raw.issues]
    epics = [normalize_epic(r, now) for r in raw.epics]
    issues, epics = cross_reference(issues, epics)
    logger.info(f"Processed {len(issues)} issues and {len(epics)} epics")
    return Dataset(
        issues=tuple(issues),
        epics=tuple(epics),
        issue_field_index=build_field_index(i.as_row() for i in issues),
        epic_field_index=build_field_index(e.as_row() for e in epics),
    )
