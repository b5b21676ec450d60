"""Data mapper: converts Jira sprints and issues to the local sprint/ticket shape."""

from __future__ import annotations

import logging
import math
import re
from datetime import datetime, timezone
from typing import Any

from .models import JiraField, JiraIssue, JiraSprint, NormalizedIssue, NormalizedSprint

logger = logging.getLogger(__name__)

# Sprint state mapping: Jira state -> local status
SPRINT_STATUS: dict[str, str] = {
    "ACTIVE": "ACTIVE",
    "CLOSED": "CLOSED",
    "COMPLETE": "CLOSED",
    "COMPLETED": "CLOSED",
    "FUTURE": "FUTURE",
}

UNKNOWN_SPRINT_STATUS = "UNKNOWN"
DEFAULT_ISSUE_STATUS = "TODO"
DEFAULT_TEAM_KEY = "TEAM"

CLOSED_STATUSES = ("closed", "done", "resolved")

_TEAM_PREFIX_RE = re.compile(r"^[A-Za-z0-9]+")

_SECONDS_PER_DAY = 24 * 60 * 60


def parse_jira_datetime(value: str | None) -> datetime | None:
    """Parse Jira timestamps into aware UTC datetimes.

    Handles ISO-8601 with ``Z``, with ``+0000``-style offsets (the core API
    format) and bare dates.
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # 2024-05-01T10:00:00.000+0000 -> +00:00
    text = re.sub(r"([+-]\d{2})(\d{2})$", r"\1:\2", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Unparseable Jira timestamp: %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def team_key(name: str | None) -> str:
    """Derive the reporting team from a sprint name.

    ``"ABC Sprint 5"`` -> ``"ABC"``; a name without a leading alphanumeric
    run is uppercased whole; blank names group under ``TEAM``.
    """
    trimmed = (name or "").strip()
    if not trimmed:
        return DEFAULT_TEAM_KEY
    match = _TEAM_PREFIX_RE.match(trimmed)
    return match.group(0).upper() if match else trimmed.upper()


def compute_gross_time(sprint_start: datetime, now: datetime) -> int:
    """Whole calendar days elapsed since the sprint started, never negative."""
    if sprint_start.tzinfo is None:
        sprint_start = sprint_start.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    days = math.ceil((now - sprint_start).total_seconds() / _SECONDS_PER_DAY)
    return max(0, days)


def is_closed_status(status: str | None) -> bool:
    value = (status or "").lower()
    return any(closed in value for closed in CLOSED_STATUSES)


def _flatten_rich_text(node: Any) -> str:
    """Collect the text nodes of an Atlassian Document Format body."""
    if isinstance(node, str):
        return node
    if isinstance(node, list):
        return "".join(_flatten_rich_text(child) for child in node)
    if not isinstance(node, dict):
        return ""
    if node.get("type") == "text":
        return node.get("text", "")
    text = _flatten_rich_text(node.get("content", []))
    if node.get("type") in ("paragraph", "heading", "listItem", "codeBlock"):
        text += "\n"
    return text


def _to_points(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        points = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(points) else points


def _name_of(value: Any, key: str = "name") -> str | None:
    if isinstance(value, dict):
        return value.get(key) or None
    return None


def normalize_sprint(sprint: JiraSprint, now: datetime) -> NormalizedSprint:
    """Convert a Jira sprint into the local sprint shape.

    Missing start/end dates fall back to ``now``; an unrecognized or absent
    state maps to ``UNKNOWN``.
    """
    state = (sprint.state or "").upper()
    return NormalizedSprint(
        external_id=str(sprint.id),
        name=sprint.name or f"Sprint {sprint.id}",
        start_date=parse_jira_datetime(sprint.startDate) or now,
        end_date=parse_jira_datetime(sprint.endDate) or now,
        completed_at=parse_jira_datetime(sprint.completeDate),
        status=SPRINT_STATUS.get(state, UNKNOWN_SPRINT_STATUS),
        board_id=sprint.originBoardId or sprint.boardId,
    )


def normalize_issue(
    issue: JiraIssue,
    story_points_field_id: str | None = None,
) -> NormalizedIssue:
    """Convert a Jira issue into the local ticket shape.

    Args:
        issue: The Jira issue.
        story_points_field_id: Custom field holding story points, if known.

    Returns:
        NormalizedIssue; a missing status maps to ``TODO``.
    """
    fields = issue.fields or {}

    description = fields.get("description")
    if not isinstance(description, str):
        description = _flatten_rich_text(description).strip() if description else ""

    story_points = None
    if story_points_field_id:
        story_points = _to_points(fields.get(story_points_field_id))

    return NormalizedIssue(
        external_id=issue.key,
        summary=fields.get("summary") or issue.key,
        description=description,
        status=_name_of(fields.get("status")) or DEFAULT_ISSUE_STATUS,
        assignee=_name_of(fields.get("assignee"), "displayName"),
        priority=_name_of(fields.get("priority")),
        issue_type=_name_of(fields.get("issuetype")) or "",
        story_points=story_points,
        created_at=parse_jira_datetime(fields.get("created")),
    )


def find_story_points_field(fields: list[JiraField]) -> str | None:
    """Pick the story points custom field from a field listing."""
    normalized = [
        (f.id, f.name.lower(), [c.lower() for c in f.clauseNames])
        for f in fields
    ]
    for field_id, name, _ in normalized:
        if "story point" in name:
            return field_id
    for field_id, name, clause_names in normalized:
        if name == "estimate" or "story points" in clause_names:
            return field_id
    return None
