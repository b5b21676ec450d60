"""Pydantic models for Jira API entities and sync results."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


# --- Jira API Response Models ---


class JiraBoard(BaseModel):
    """An agile board (scrum or kanban)."""

    id: int
    name: str = ""
    type: str | None = None

    class Config:
        extra = "allow"


class JiraSprint(BaseModel):
    """A sprint as returned by the agile or greenhopper APIs."""

    id: int
    name: str = ""
    state: str | None = None  # FUTURE, ACTIVE, CLOSED
    startDate: str | None = None
    endDate: str | None = None
    completeDate: str | None = None
    originBoardId: int | None = None
    boardId: int | None = None
    goal: str | None = None

    class Config:
        extra = "allow"


class JiraIssue(BaseModel):
    """An issue from an agile or search listing.

    ``fields`` stays a plain dict: custom fields (story points, sprint)
    have instance-specific ids.
    """

    id: str
    key: str
    fields: dict[str, Any] = Field(default_factory=dict)

    class Config:
        extra = "allow"


class JiraSprintReportIssue(BaseModel):
    """An entry of the greenhopper sprint report."""

    key: str | None = None
    summary: str | None = None
    statusName: str | None = None
    estimateStatistic: dict[str, Any] | None = None
    currentEstimateStatistic: dict[str, Any] | None = None

    class Config:
        extra = "allow"

    @property
    def story_points(self) -> float:
        for statistic in (self.estimateStatistic, self.currentEstimateStatistic):
            value = ((statistic or {}).get("statFieldValue") or {}).get("value")
            if value is None:
                continue
            try:
                return float(value)
            except (TypeError, ValueError):
                return 0.0
        return 0.0


class SprintTotals(BaseModel):
    """Ticket aggregates of one sprint."""

    total_tickets: int
    closed_tickets: int
    story_points_total: float


class JiraSprintReport(BaseModel):
    """``contents`` of ``/rapid/charts/sprintreport``.

    Lists issues completed in the sprint and issues still open when it
    closed, including ones the agile sprint listing no longer returns.
    """

    completedIssues: list[JiraSprintReportIssue] = Field(default_factory=list)
    issuesNotCompletedInCurrentSprint: list[JiraSprintReportIssue] = Field(default_factory=list)

    class Config:
        extra = "allow"

    @property
    def issues(self) -> list[JiraSprintReportIssue]:
        return [*self.completedIssues, *self.issuesNotCompletedInCurrentSprint]

    def totals(self) -> SprintTotals | None:
        """Aggregates from the report itself; None for an empty report."""
        if not self.issues:
            return None
        return SprintTotals(
            total_tickets=len(self.issues),
            closed_tickets=len(self.completedIssues),
            story_points_total=sum(issue.story_points for issue in self.issues),
        )


class JiraSprintWithIssues(JiraSprint):
    """A sprint together with the issues fetched for it.

    ``report_totals`` is set for a closed sprint whose issue listing came
    back empty; the sprint report's aggregates are stored instead.
    """

    issues: list[JiraIssue] = Field(default_factory=list)
    report_totals: SprintTotals | None = None


class JiraField(BaseModel):
    """A field definition from ``/rest/api/2/field``."""

    id: str
    name: str = ""
    custom: bool = False
    clauseNames: list[str] = Field(default_factory=list)

    class Config:
        extra = "allow"


# --- Normalized (local) shapes ---


class NormalizedSprint(BaseModel):
    """Canonical sprint record ready for upsert."""

    external_id: str
    name: str
    start_date: datetime
    end_date: datetime
    completed_at: datetime | None = None
    status: str  # ACTIVE, CLOSED, FUTURE, UNKNOWN
    board_id: int | None = None


class NormalizedIssue(BaseModel):
    """Canonical issue record ready for upsert."""

    external_id: str
    summary: str
    description: str = ""
    status: str = "TODO"
    assignee: str | None = None
    priority: str | None = None
    issue_type: str = ""
    story_points: float | None = None
    created_at: datetime | None = None


# --- Sync API Models ---


SyncType = Literal["active", "closed", "closed_all", "all"]


class SyncRequest(BaseModel):
    """Trigger for a sprint sync.

    ``board_url`` overrides ``board_ids`` for this call only when it yields
    a board id.
    """

    type: SyncType = "all"
    force: bool = False
    board_ids: str | None = Field(default=None, alias="boardIds")
    board_url: str | None = Field(default=None, alias="boardUrl")

    class Config:
        populate_by_name = True


class BranchResult(BaseModel):
    """Outcome of one sync branch."""

    success: bool
    count: int = 0
    skipped: bool = False
    error: str | None = None
    error_kind: str | None = None


class CombinedSyncResult(BaseModel):
    """Outcome of ``sync_all``: each branch reported on its own."""

    active: BranchResult
    closed: BranchResult

    @property
    def success(self) -> bool:
        return self.active.success and self.closed.success


class SyncResponse(BaseModel):
    """Body returned by the sync trigger endpoint."""

    message: str = "Sprint sync completed"
    type: SyncType
    result: BranchResult | CombinedSyncResult


class SyncRunSummary(BaseModel):
    """Latest recorded run of a sync branch."""

    branch: str
    user_id: int | None = None
    scope: str | None = None
    started_at: str | None = None
    finished_at: str | None = None
    success: bool = False
    count: int = 0
    error: str | None = None


class SyncStatus(BaseModel):
    """Latest run per branch."""

    runs: list[SyncRunSummary] = Field(default_factory=list)


class ConnectionTestResult(BaseModel):
    """Result of a Jira connection test."""

    ok: bool
    display_name: str | None = None
    email: str | None = None
    account_id: str | None = None
    error: str | None = None


class SprintReportItem(BaseModel):
    """One sprint snapshot in the team-bounded report."""

    id: int
    sprint_id: int
    external_id: str
    name: str
    team_key: str
    start_date: str | None = None
    end_date: str | None = None
    status: str
    totals: dict[str, Any] = Field(default_factory=dict)
    assignees: list[dict[str, Any]] = Field(default_factory=list)


class SprintReport(BaseModel):
    """Team-bounded list of recent sprint snapshots."""

    per_team: int
    snapshots: list[SprintReportItem] = Field(default_factory=list)
