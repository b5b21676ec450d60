"""Tests for the Jira to local sprint/ticket mapper."""

from datetime import datetime, timedelta, timezone

import pytest

from jira_sync.mapper import (
    compute_gross_time,
    find_story_points_field,
    is_closed_status,
    normalize_issue,
    normalize_sprint,
    parse_jira_datetime,
    team_key,
)
from jira_sync.models import JiraField, JiraIssue, JiraSprint

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


class TestParseJiraDatetime:

    @pytest.mark.parametrize(
        "value, expected",
        [
            ("2024-05-01T10:00:00.000Z", datetime(2024, 5, 1, 10, tzinfo=timezone.utc)),
            ("2024-05-01T10:00:00.000+0000", datetime(2024, 5, 1, 10, tzinfo=timezone.utc)),
            ("2024-05-01T12:00:00.000+0200", datetime(2024, 5, 1, 10, tzinfo=timezone.utc)),
            ("2024-05-01", datetime(2024, 5, 1, tzinfo=timezone.utc)),
        ],
    )
    def test_parses_to_utc(self, value, expected):
        assert parse_jira_datetime(value) == expected

    @pytest.mark.parametrize("value", [None, "", "next tuesday"])
    def test_unparseable(self, value):
        assert parse_jira_datetime(value) is None


class TestTeamKey:

    @pytest.mark.parametrize(
        "name, expected",
        [
            ("ABC Sprint 5", "ABC"),
            ("abc-12", "ABC"),
            ("  Xyz2 Sprint", "XYZ2"),
            ("#1 sprint", "#1 SPRINT"),
            ("", "TEAM"),
            (None, "TEAM"),
        ],
    )
    def test_team_key(self, name, expected):
        assert team_key(name) == expected


class TestGrossTime:

    def test_partial_days_round_up(self):
        assert compute_gross_time(NOW - timedelta(days=2, hours=12), NOW) == 3

    def test_whole_days(self):
        assert compute_gross_time(NOW - timedelta(days=4), NOW) == 4

    def test_never_negative(self):
        assert compute_gross_time(NOW + timedelta(days=3), NOW) == 0

    def test_naive_values_treated_as_utc(self):
        start = (NOW - timedelta(days=1)).replace(tzinfo=None)
        assert compute_gross_time(start, NOW) == 1


class TestIsClosedStatus:

    @pytest.mark.parametrize("status", ["Done", "Closed", "RESOLVED", "Done (verified)"])
    def test_closed(self, status):
        assert is_closed_status(status)

    @pytest.mark.parametrize("status", ["To Do", "In Progress", "", None])
    def test_open(self, status):
        assert not is_closed_status(status)


class TestNormalizeSprint:

    def test_maps_fields(self):
        sprint = JiraSprint(
            id=101,
            name="ABC Sprint 5",
            state="complete",
            startDate="2026-03-01T09:00:00.000Z",
            endDate="2026-03-14T17:00:00.000Z",
            originBoardId=12,
        )
        normalized = normalize_sprint(sprint, NOW)
        assert normalized.external_id == "101"
        assert normalized.status == "CLOSED"
        assert normalized.start_date == datetime(2026, 3, 1, 9, tzinfo=timezone.utc)
        assert normalized.board_id == 12

    def test_missing_values_fall_back(self):
        normalized = normalize_sprint(JiraSprint(id=7), NOW)
        assert normalized.name == "Sprint 7"
        assert normalized.start_date == NOW
        assert normalized.end_date == NOW
        assert normalized.status == "UNKNOWN"


class TestNormalizeIssue:

    def test_maps_fields(self):
        issue = JiraIssue(
            id="1001",
            key="ABC-1",
            fields={
                "summary": "Build the thing",
                "description": {
                    "type": "doc",
                    "content": [
                        {"type": "paragraph", "content": [
                            {"type": "text", "text": "Hello "},
                            {"type": "text", "text": "world"},
                        ]},
                    ],
                },
                "status": {"name": "In Progress"},
                "assignee": {"displayName": "Jane Doe"},
                "priority": {"name": "High"},
                "issuetype": {"name": "Story"},
                "customfield_10016": "5",
                "created": "2026-03-02T08:00:00.000+0000",
            },
        )
        normalized = normalize_issue(issue, "customfield_10016")
        assert normalized.external_id == "ABC-1"
        assert normalized.description == "Hello world"
        assert normalized.status == "In Progress"
        assert normalized.assignee == "Jane Doe"
        assert normalized.priority == "High"
        assert normalized.issue_type == "Story"
        assert normalized.story_points == 5.0
        assert normalized.created_at == datetime(2026, 3, 2, 8, tzinfo=timezone.utc)

    def test_sparse_issue(self):
        normalized = normalize_issue(JiraIssue(id="1", key="ABC-2", fields={"customfield_10016": "n/a"}), "customfield_10016")
        assert normalized.summary == "ABC-2"
        assert normalized.description == ""
        assert normalized.status == "TODO"
        assert normalized.assignee is None
        assert normalized.story_points is None

    def test_points_ignored_without_field(self):
        issue = JiraIssue(id="1", key="ABC-3", fields={"customfield_10016": 3})
        assert normalize_issue(issue).story_points is None


def test_find_story_points_field():
    fields = [
        JiraField(id="summary", name="Summary"),
        JiraField(id="customfield_10002", name="Estimate", custom=True),
        JiraField(id="customfield_10016", name="Story Points", custom=True),
    ]
    assert find_story_points_field(fields) == "customfield_10016"
    assert find_story_points_field(fields[:2]) == "customfield_10002"
    assert find_story_points_field(fields[:1]) is None
