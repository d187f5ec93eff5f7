"""Label taxonomy: ``Namespace::Value`` labels to structured fields."""

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field


@dataclass(frozen=True)
class LabelRule:
    """One taxonomy namespace.

    The first label (in label-array order) starting with ``prefix`` supplies
    the field value; ``aliases`` rename captured values for display.
    """

    field: str
    prefix: str
    default: str
    aliases: dict[str, str] = field(default_factory=dict)

    @property
    def pattern(self) -> re.Pattern[str]:
        return re.compile(rf"^{re.escape(self.prefix)}(.+)$")


ISSUE_RULES: tuple[LabelRule, ...] = (
    LabelRule(
        "workflow_state",
        "Workflow::",
        "Unassigned State",
        aliases={"CF Backlog": "Backlog"},
    ),
    LabelRule("workflow_issue_type", "IssueType::", "Unassigned IssueType"),
)

EPIC_RULES: tuple[LabelRule, ...] = (
    LabelRule("epic_state", "Epic Stage::", "Unassigned Epic State"),
    LabelRule("epic_c3", "C³ - ", "No C3"),
    LabelRule(
        "epic_channel",
        "Channel::",
        "No Channel Listed",
        aliases={"Enterprise": "Enterprise Project", "CF": "Internal CF Project"},
    ),
    LabelRule("epic_rank", "Epic Rank::", "Not Ranked"),
    LabelRule("epic_category", "Category::", "No Category"),
    LabelRule("epic_priority", "Priority::", "No Priority"),
    LabelRule("epic_pillar", "Pillar::", "No Pillar"),
)

# CI::<type>::<value>
CI_PATTERN = re.compile(r"^CI::([^:]+)::(.+)$")
CI_DEFAULT = "Unassigned CI"
CI_TYPE_DEFAULT = "Unassigned CI Type"

# Channel -> rollup score for linked issues
C3_SCORES: dict[str, int] = {
    "Enterprise Project": 6,
    "Internal CF Project": 3,
    "Non-Project Related": 1,
}


def match_label(labels: Iterable[str], rule: LabelRule) -> str:
    """Value of the first label in ``rule``'s namespace, or its default."""
    pattern = rule.pattern
    for label in labels:
        if match := pattern.match(label.strip()):
            value = match.group(1).strip()
            return rule.aliases.get(value, value)
    return rule.default


def classify(labels: Sequence[str], rules: Iterable[LabelRule]) -> dict[str, str]:
    """Apply every rule to one label set."""
    return {rule.field: match_label(labels, rule) for rule in rules}


def classify_ci(labels: Sequence[str]) -> tuple[str, str]:
    """Return ``(story_ci_type, story_ci)`` from the first ``CI::`` label."""
    for label in labels:
        if match := CI_PATTERN.match(label.strip()):
            return match.group(1).strip(), match.group(2).strip()
    return CI_TYPE_DEFAULT, CI_DEFAULT


def c3_score(channel: str) -> int:
    return C3_SCORES.get(channel, 0)


def format_name(name: str | None) -> str:
    """Turn a ``first.last`` username into ``First L``.

    Anything else (no dot, several dots, empty parts) is returned unchanged.
    """
    if not name:
        return ""
    parts = name.split(".")
    if len(parts) != 2 or not all(parts):
        return name
    first, last = parts
    return f"{first[0].upper()}{first[1:]} {last[0].upper()}"
