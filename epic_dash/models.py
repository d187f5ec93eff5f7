"""Raw and canonical issue/epic records."""

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any

NO_EPIC = "No Epic Assigned"

# Canonical column spellings that differ from the attribute names
_COLUMN_NAMES: dict[str, str] = {
    "value": "Value",
    "sprint_start_date": "sprintStartDate",
    "sprint_end_date": "sprintEndDate",
    "days_left_in_sprint": "daysLeftInSprint",
    "num_assignees": "numAssignees",
}


def _text(value: Any) -> str | None:
    """Coerce an upstream scalar to a string, keeping absence as None."""
    if value is None or value == "":
        return None
    return str(value)


def _username(obj: Any) -> str | None:
    if isinstance(obj, dict):
        return _text(obj.get("username"))
    return _text(obj)


def _rest_labels(labels: Any) -> tuple[str, ...]:
    """Flat label array; entries are names, or dicts when label details are expanded."""
    if not labels:
        return ()
    names = []
    for label in labels:
        name = label.get("name") if isinstance(label, dict) else label
        if name:
            names.append(str(name))
    return tuple(names)


def graphql_nodes(connection: Any) -> list[dict]:
    """Unwrap a GraphQL connection (``{nodes: [...]}`` or ``{edges: [{node}]}``)."""
    if not isinstance(connection, dict):
        return []
    if connection.get("nodes") is not None:
        return [n for n in connection["nodes"] if isinstance(n, dict)]
    edges = connection.get("edges") or []
    return [e["node"] for e in edges if isinstance(e, dict) and e.get("node")]


def _rest_id(item: dict) -> str | None:
    """Project-scoped iid when present, else the global id."""
    if item.get("iid") is not None:
        return str(item["iid"])
    return _text(item.get("id"))


def _graphql_id(node: dict) -> str | None:
    """Prefer the project-scoped iid; fall back to the tail of the global id."""
    if node.get("iid") is not None:
        return str(node["iid"])
    gid = _text(node.get("id"))
    return gid.rsplit("/", 1)[-1] if gid else None


@dataclass(frozen=True)
class RawIssue:
    """An upstream issue with every field optional, in one shape for all transports."""

    id: str | None = None
    title: str | None = None
    state: str | None = None
    labels: tuple[str, ...] = ()
    author: str | None = None
    assignee: str | None = None
    assignees: tuple[str, ...] = ()
    closed_by: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    closed_at: str | None = None
    due_date: str | None = None
    milestone: str | None = None
    description: str | None = None
    project_id: str | None = None
    time_estimate: str | None = None
    total_time_spent: str | None = None
    web_url: str | None = None
    epic_id: str | None = None
    epic_title: str | None = None
    epic_url: str | None = None
    epic_due_date: str | None = None

    @classmethod
    def from_rest(cls, item: dict) -> "RawIssue":
        """Build from a REST (or python-gitlab / cached proxy) issue payload."""
        milestone = item.get("milestone")
        epic = item.get("epic") if isinstance(item.get("epic"), dict) else {}
        time_stats = item.get("time_stats") or {}
        assignees = tuple(
            name
            for name in (_username(a) for a in item.get("assignees") or [])
            if name
        )
        return cls(
            id=_rest_id(item),
            title=_text(item.get("title")),
            state=_text(item.get("state")),
            labels=_rest_labels(item.get("labels")),
            author=_username(item.get("author")),
            assignee=_username(item.get("assignee")),
            assignees=assignees,
            closed_by=_username(item.get("closed_by")),
            created_at=_text(item.get("created_at")),
            updated_at=_text(item.get("updated_at")),
            closed_at=_text(item.get("closed_at")),
            due_date=_text(item.get("due_date")),
            milestone=_text(
                milestone.get("title") if isinstance(milestone, dict) else milestone
            ),
            description=_text(item.get("description")),
            project_id=_text(item.get("project_id")),
            time_estimate=_text(time_stats.get("time_estimate")),
            total_time_spent=_text(time_stats.get("total_time_spent")),
            web_url=_text(item.get("web_url")),
            epic_id=_text(epic.get("iid")),
            epic_title=_text(epic.get("title")),
            epic_url=_text(epic.get("url") or epic.get("web_url")),
            epic_due_date=_text(
                epic.get("human_readable_end_date") or epic.get("due_date")
            ),
        )

    @classmethod
    def from_graphql(cls, node: dict) -> "RawIssue":
        """Build from a GraphQL ``group.issues.nodes[]`` entry."""
        milestone = node.get("milestone") or {}
        epic = node.get("epic") or {}
        assignees = tuple(
            name
            for name in (_username(a) for a in graphql_nodes(node.get("assignees")))
            if name
        )
        return cls(
            id=_graphql_id(node),
            title=_text(node.get("title")),
            state=_text(node.get("state")),
            labels=tuple(
                str(label["title"])
                for label in graphql_nodes(node.get("labels"))
                if label.get("title")
            ),
            author=_username(node.get("author")),
            assignee=assignees[0] if assignees else None,
            assignees=assignees,
            closed_by=_username(node.get("closedBy")),
            created_at=_text(node.get("createdAt")),
            updated_at=_text(node.get("updatedAt")),
            closed_at=_text(node.get("closedAt")),
            due_date=_text(node.get("dueDate")),
            milestone=_text(milestone.get("title")),
            description=_text(node.get("description")),
            project_id=_text(node.get("projectId")),
            time_estimate=_text(node.get("timeEstimate")),
            total_time_spent=_text(node.get("totalTimeSpent")),
            web_url=_text(node.get("webUrl")),
            epic_id=_graphql_id(epic) if epic else None,
            epic_title=_text(epic.get("title")),
            epic_url=_text(epic.get("webUrl")),
            epic_due_date=_text(epic.get("dueDate")),
        )


@dataclass(frozen=True)
class RawEpic:
    """An upstream epic with every field optional."""

    id: str | None = None
    title: str | None = None
    state: str | None = None
    labels: tuple[str, ...] = ()
    author: str | None = None
    closed_by: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    closed_at: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    due_date: str | None = None
    group_id: str | None = None
    description: str | None = None
    web_url: str | None = None

    @classmethod
    def from_rest(cls, item: dict) -> "RawEpic":
        return cls(
            id=_rest_id(item),
            title=_text(item.get("title")),
            state=_text(item.get("state")),
            labels=_rest_labels(item.get("labels")),
            author=_username(item.get("author")),
            closed_by=_username(item.get("closed_by")),
            created_at=_text(item.get("created_at")),
            updated_at=_text(item.get("updated_at")),
            closed_at=_text(item.get("closed_at")),
            start_date=_text(item.get("start_date")),
            end_date=_text(item.get("end_date")),
            due_date=_text(item.get("due_date")),
            group_id=_text(item.get("group_id")),
            description=_text(item.get("description")),
            web_url=_text(item.get("web_url")),
        )

    @classmethod
    def from_graphql(cls, node: dict) -> "RawEpic":
        group = node.get("group") or {}
        return cls(
            id=_graphql_id(node),
            title=_text(node.get("title")),
            state=_text(node.get("state")),
            labels=tuple(
                str(label["title"])
                for label in graphql_nodes(node.get("labels"))
                if label.get("title")
            ),
            author=_username(node.get("author")),
            closed_by=None,
            created_at=_text(node.get("createdAt")),
            updated_at=_text(node.get("updatedAt")),
            closed_at=_text(node.get("closedAt")),
            start_date=_text(node.get("startDate")),
            end_date=_text(node.get("dueDate")),
            due_date=_text(node.get("dueDate")),
            group_id=_graphql_id(group) if group else None,
            description=_text(node.get("description")),
            web_url=_text(node.get("webUrl")),
        )


@dataclass(frozen=True)
class RawData:
    """What every transport adapter hands to the normalizer."""

    issues: list[RawIssue] = field(default_factory=list)
    epics: list[RawEpic] = field(default_factory=list)


def _as_row(record: Any) -> dict[str, Any]:
    row = asdict(record)
    for attr, column in _COLUMN_NAMES.items():
        if attr in row:
            row[column] = row.pop(attr)
    row["Time"] = row.get("created_at")
    return row


@dataclass(frozen=True)
class Issue:
    """Canonical issue record."""

    id: str
    title: str
    state: str
    type: str = "issue"
    workflow_state: str = ""
    workflow_issue_type: str = ""
    story_ci: str = ""
    story_ci_type: str = ""
    author: str = ""
    assignee: str = ""
    assignees: tuple[str, ...] = ()
    closed_by: str = ""
    created_at: datetime | None = None
    created_month: str = ""
    created_month_number: str = ""
    created_year: str = ""
    updated_at: datetime | None = None
    updated_month: str = ""
    updated_month_number: str = ""
    updated_year: str = ""
    closed_at: datetime | None = None
    closed_month: str = ""
    closed_month_number: str = ""
    closed_year: str = ""
    due_date: datetime | None = None
    due_date_month: str = ""
    due_date_month_number: str = ""
    due_date_year: str = ""
    due_date_threshold: str = ""
    ticket_age: int = 0
    updated_days: int = 0
    epic_id: str = ""
    epic_title: str = NO_EPIC
    epic_url: str = ""
    epic_due_date: str = ""
    milestone: str = ""
    sprint_start_date: date | None = None
    sprint_end_date: date | None = None
    days_left_in_sprint: int = 0
    parent_channel: str = ""
    c3score: int = 0
    project_id: str = ""
    description: str = ""
    time_estimate: str = ""
    total_time_spent: str = ""
    web_url: str = ""
    value: int = 1

    def as_row(self) -> dict[str, Any]:
        """Column dict using the canonical column names."""
        return _as_row(self)


@dataclass(frozen=True)
class Epic:
    """Canonical epic record, including rollups over its child issues."""

    id: str
    title: str
    state: str
    type: str = "epic"
    epic_state: str = ""
    epic_c3: str = ""
    epic_channel: str = ""
    epic_rank: str = ""
    epic_category: str = ""
    epic_priority: str = ""
    epic_pillar: str = ""
    author: str = ""
    closed_by: str = ""
    created_at: datetime | None = None
    created_month: str = ""
    created_month_number: str = ""
    created_year: str = ""
    updated_at: datetime | None = None
    updated_month: str = ""
    updated_month_number: str = ""
    updated_year: str = ""
    closed_at: datetime | None = None
    closed_month: str = ""
    closed_month_number: str = ""
    closed_year: str = ""
    due_date: datetime | None = None
    due_date_month: str = ""
    due_date_month_number: str = ""
    due_date_year: str = ""
    due_date_threshold: str = ""
    start_date: str = ""
    end_date: str = ""
    ticket_age: int = 0
    updated_days: int = 0
    group_id: str = ""
    description: str = ""
    web_url: str = ""
    openissues: int = 0
    closedissues: int = 0
    totalissues: int = 0
    pctcomplete: float = 0.0
    num_assignees: int = 0
    epic_assignees: str = ""
    most_common_epic_assignee_filter: str = ""
    value: int = 1

    def as_row(self) -> dict[str, Any]:
        """Column dict using the canonical column names."""
        return _as_row(self)
