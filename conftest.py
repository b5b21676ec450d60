"""Shared fixtures: a temporary sprint store and an in-memory Jira stand-in."""

from datetime import datetime, timezone

import pytest

from api.database import UserIntegration, atomic_transaction, create_database, dispose_engine
from jira_sync.client import ExternalServiceError
from jira_sync.models import JiraBoard, JiraField, JiraIssue, JiraSprint, JiraSprintReport
from jira_sync.settings import SyncSettings

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)

STORY_POINTS_FIELD = "customfield_10016"


def make_sprint(sprint_id, name, state, start, end):
    return {"id": sprint_id, "name": name, "state": state, "startDate": start, "endDate": end}


def make_issue(key, status="To Do", assignee=None, points=None, summary=None):
    fields = {
        "summary": summary or f"Work on {key}",
        "status": {"name": status},
        "priority": {"name": "Medium"},
        "issuetype": {"name": "Story"},
        "created": "2026-03-01T09:00:00.000+0000",
    }
    if assignee:
        fields["assignee"] = {"displayName": assignee}
    if points is not None:
        fields[STORY_POINTS_FIELD] = points
    return {"id": key.rsplit("-", 1)[-1], "key": key, "fields": fields}


class FakeJiraClient:
    """Stands in for JiraApiClient; serves boards, sprints and issues from dicts.

    ``fail`` maps a method name (or ``"list_board_sprints:<state>"``) to the
    exception that call should raise.

    ``reports`` maps a sprint id to sprint report contents, ``by_key`` an
    issue key to the issue ``get_issue`` returns (404 otherwise) and
    ``search`` a sprint id to its JQL search results.
    """

    def __init__(
        self, boards=(1,), sprints=None, issues=None, legacy=None, fields=None, fail=None,
        reports=None, by_key=None, search=None,
    ):
        self.boards = list(boards)
        self.sprints = sprints or {}
        self.issues = issues or {}
        self.legacy = legacy or {}
        self.fields = fields or []
        self.fail = fail or {}
        self.reports = reports or {}
        self.by_key = by_key or {}
        self.search = search or {}
        self.calls = []
        self.closed = False

    def _call(self, name, *args):
        self.calls.append((name, *args))
        if name in self.fail:
            raise self.fail[name]

    def get_myself(self):
        self._call("get_myself")
        return {"displayName": "Jane Doe", "emailAddress": "jane@example.com", "accountId": "acc-1"}

    def list_boards(self, board_type="scrum"):
        self._call("list_boards", board_type)
        return [JiraBoard(id=board_id, name=f"Board {board_id}") for board_id in self.boards]

    def list_board_sprints(self, board_id, state=None):
        self._call("list_board_sprints", board_id, state)
        self._call(f"list_board_sprints:{state}")
        sprints = [JiraSprint(**s) for s in self.sprints.get(board_id, [])]
        if state:
            sprints = [s for s in sprints if (s.state or "").lower() == state]
        for sprint in sprints:
            sprint.boardId = board_id
        return sprints

    def list_legacy_closed_sprints(self, board_id):
        self._call("list_legacy_closed_sprints", board_id)
        return [JiraSprint(**s, boardId=board_id) for s in self.legacy.get(board_id, [])]

    def list_sprint_issues(self, sprint_id, extra_fields=()):
        self._call("list_sprint_issues", sprint_id)
        return [JiraIssue(**i) for i in self.issues.get(sprint_id, [])]

    def get_issue(self, key, extra_fields=()):
        self._call("get_issue", key)
        if key not in self.by_key:
            raise ExternalServiceError(404, "Issue does not exist")
        return JiraIssue(**self.by_key[key])

    def search_sprint_issues(self, sprint_id, extra_fields=()):
        self._call("search_sprint_issues", sprint_id)
        return [JiraIssue(**i) for i in self.search.get(sprint_id, [])]

    def get_sprint_report(self, board_id, sprint_id):
        self._call("get_sprint_report", board_id, sprint_id)
        return JiraSprintReport(**self.reports.get(sprint_id, {}))

    def list_fields(self):
        self._call("list_fields")
        return [JiraField(**f) for f in self.fields]

    def close(self):
        self.closed = True


class FakeClientFactory:
    """Client factory that hands out one shared FakeJiraClient."""

    def __init__(self, client):
        self.client = client
        self.credentials = []

    def __call__(self, credentials):
        self.credentials.append(credentials)
        return self.client


@pytest.fixture
def session_maker(tmp_path):
    db_path = tmp_path / "sprints.db"
    _, SessionLocal = create_database(db_path)
    yield SessionLocal
    dispose_engine(db_path)


@pytest.fixture
def settings(tmp_path):
    return SyncSettings(
        story_points_field_id=STORY_POINTS_FIELD,
        sync_workers=2,
        db_path=tmp_path / "sprints.db",
    )


@pytest.fixture
def user_id(session_maker):
    """A user with complete basic-auth settings."""
    with atomic_transaction(session_maker) as session:
        user = UserIntegration(
            email="jane@example.com",
            jira_base_url="https://jira.example.com",
            jira_user="jane@example.com",
            jira_api_token="secret-token",
        )
        session.add(user)
        session.flush()
        return user.id
