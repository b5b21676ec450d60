"""Sync service: mirrors Jira sprints and their issues into the local store.

Four operations are exposed: active sprints, recently closed sprints, all
closed sprints (historical backfill) and ``all`` (active + recently closed,
run side by side). Every write is an upsert keyed by the Jira id, so running
the same sync twice leaves the store unchanged.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Callable, Literal

from sqlalchemy.orm import sessionmaker

from api.database import (
    Sprint,
    UserIntegration,
    atomic_transaction,
    get_admin_base_url,
    last_successful_run_at,
    latest_sync_runs,
    reassign_ticket,
    record_connection_status,
    record_sync_run,
    update_sprint_totals,
    upsert_sprint,
    upsert_ticket,
)

from .board_ids import parse_board_id_list, parse_board_ids
from .client import ExternalServiceError, JiraApiClient
from .credentials import Credentials, IntegrationSettings, resolve_credentials, with_board_ids
from .mapper import (
    compute_gross_time,
    find_story_points_field,
    is_closed_status,
    normalize_issue,
    normalize_sprint,
    parse_jira_datetime,
)
from .models import (
    BranchResult,
    CombinedSyncResult,
    ConnectionTestResult,
    JiraIssue,
    JiraSprint,
    JiraSprintReport,
    JiraSprintWithIssues,
    SprintTotals,
    SyncRequest,
    SyncRunSummary,
    SyncStatus,
)
from .selector import select_recent_per_team
from .settings import SyncSettings
from .snapshot import ensure_sprint_snapshot

logger = logging.getLogger(__name__)

Branch = Literal["active", "closed", "closed_all"]

# Status stored for every sprint a branch writes
BRANCH_STATUS: dict[str, str] = {
    "active": "ACTIVE",
    "closed": "CLOSED",
    "closed_all": "CLOSED",
}

ClientFactory = Callable[[Credentials], JiraApiClient]


class UserNotFoundError(LookupError):
    """Raised when sync is requested for a user that does not exist."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _end_date(sprint: JiraSprint) -> datetime | None:
    return parse_jira_datetime(sprint.endDate)


def sync_scope(credentials: Credentials) -> str:
    """Base URL and board ids a sync covers; freshness is tracked per scope."""
    boards = ",".join(str(b) for b in sorted(credentials.board_ids or [])) or "*"
    return f"{credentials.base_url.rstrip('/')} boards={boards}"


class SyncOrchestrator:
    """Runs sprint sync operations for one store.

    Args:
        session_maker: SQLAlchemy session maker for the store.
        settings: Shared sync configuration.
        client_factory: Builds a Jira client from resolved credentials. Each
            branch gets its own client, closed when the branch finishes.
        clock: Returns the current aware UTC time.
    """

    def __init__(
        self,
        session_maker: sessionmaker,
        settings: SyncSettings,
        client_factory: ClientFactory | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._session_maker = session_maker
        self.settings = settings
        self._client_factory = client_factory or self._default_client
        self._clock = clock or _utc_now

    def _default_client(self, credentials: Credentials) -> JiraApiClient:
        return JiraApiClient(
            credentials,
            page_size=self.settings.page_size,
            max_pages=self.settings.max_pages,
        )

    # --- Credentials ---

    def resolve_credentials(
        self,
        user_id: int,
        board_ids: str | None = None,
        board_url: str | None = None,
    ) -> Credentials:
        """Resolve a user's credentials, applying a per-call board override.

        Raises:
            UserNotFoundError: no such user.
            ConfigurationError: the stored settings are incomplete.
        """
        with atomic_transaction(self._session_maker) as session:
            user = session.get(UserIntegration, user_id)
            if user is None:
                raise UserNotFoundError(f"User {user_id} not found")
            stored = IntegrationSettings.model_validate(user)
            admin_base_url = get_admin_base_url(session)

        if not stored.jira_request_timeout:
            stored = stored.model_copy(
                update={"jira_request_timeout": self.settings.request_timeout_ms}
            )
        credentials = resolve_credentials(
            stored,
            base_url_override=admin_base_url,
            default_base_url=self.settings.default_base_url,
        )
        return with_board_ids(credentials, parse_board_ids(board_ids, board_url))

    # --- Operations ---

    def sync_active(
        self,
        user_id: int,
        board_ids: str | None = None,
        board_url: str | None = None,
    ) -> BranchResult:
        """Sync active sprints and their issues."""
        credentials = self.resolve_credentials(user_id, board_ids, board_url)
        return self._run_branch("active", user_id, credentials)

    def sync_recent_closed(
        self,
        user_id: int,
        board_ids: str | None = None,
        board_url: str | None = None,
    ) -> BranchResult:
        """Sync sprints closed within the configured history window."""
        credentials = self.resolve_credentials(user_id, board_ids, board_url)
        return self._run_branch("closed", user_id, credentials)

    def sync_all_closed(
        self,
        user_id: int,
        board_ids: str | None = None,
        board_url: str | None = None,
    ) -> BranchResult:
        """Sync every closed sprint since the cutoff (historical backfill)."""
        credentials = self.resolve_credentials(user_id, board_ids, board_url)
        return self._run_branch("closed_all", user_id, credentials)

    def sync_all(
        self,
        user_id: int,
        force: bool = False,
        board_ids: str | None = None,
        board_url: str | None = None,
    ) -> CombinedSyncResult:
        """Sync active and recently closed sprints side by side.

        A failing branch never aborts the other; both outcomes are reported.
        Without ``force`` a branch that succeeded for the same user and
        scope (see ``sync_scope``) within ``settings.freshness_seconds`` is
        skipped.

        Raises:
            ConfigurationError: credentials cannot be resolved (no branch runs).
        """
        credentials = self.resolve_credentials(user_id, board_ids, board_url)
        logger.info("Starting full sprint sync for user %s (force=%s)", user_id, force)

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="sprint-sync") as pool:
            active = pool.submit(self._run_branch_isolated, "active", user_id, credentials, force)
            closed = pool.submit(self._run_branch_isolated, "closed", user_id, credentials, force)
            result = CombinedSyncResult(active=active.result(), closed=closed.result())

        logger.info(
            "Full sprint sync finished: active=%s (%d), closed=%s (%d)",
            result.active.success, result.active.count,
            result.closed.success, result.closed.count,
        )
        return result

    def run(self, user_id: int, request: SyncRequest) -> BranchResult | CombinedSyncResult:
        """Dispatch a sync trigger."""
        if request.type == "active":
            return self.sync_active(user_id, request.board_ids, request.board_url)
        if request.type == "closed":
            return self.sync_recent_closed(user_id, request.board_ids, request.board_url)
        if request.type == "closed_all":
            return self.sync_all_closed(user_id, request.board_ids, request.board_url)
        return self.sync_all(user_id, request.force, request.board_ids, request.board_url)

    def reassign_issue(self, issue_key: str, sprint_external_id: str) -> bool:
        """Move a stored issue to another stored sprint.

        Sync never changes an issue's sprint; this is the only way to.

        Raises:
            LookupError: the target sprint is not stored.
        """
        with atomic_transaction(self._session_maker) as session:
            sprint = session.query(Sprint).filter(Sprint.external_id == sprint_external_id).first()
            if sprint is None:
                raise LookupError(f"Sprint {sprint_external_id} not found")
            return reassign_ticket(session, issue_key, sprint.id)

    def sync_status(self) -> SyncStatus:
        """Latest recorded run of each branch."""
        with atomic_transaction(self._session_maker) as session:
            runs = [SyncRunSummary(**run.to_dict()) for run in latest_sync_runs(session)]
        return SyncStatus(runs=runs)

    def test_connection(self, user_id: int) -> ConnectionTestResult:
        """Call ``/myself`` with the user's credentials and record the outcome."""
        credentials = self.resolve_credentials(user_id)
        client = self._client_factory(credentials)
        try:
            me = client.get_myself()
        except ExternalServiceError as e:
            self._record_connection(user_id, "error")
            logger.warning("Jira connection test failed for user %s: %s", user_id, e)
            return ConnectionTestResult(ok=False, error=e.message)
        finally:
            client.close()

        self._record_connection(user_id, "connected")
        return ConnectionTestResult(
            ok=True,
            display_name=me.get("displayName"),
            email=me.get("emailAddress"),
            account_id=me.get("accountId"),
        )

    # --- Branch execution ---

    def _is_fresh(self, branch: str, user_id: int, credentials: Credentials) -> bool:
        window = self.settings.freshness_seconds
        if window <= 0:
            return False
        with atomic_transaction(self._session_maker) as session:
            last = last_successful_run_at(session, branch, user_id, sync_scope(credentials))
        return last is not None and (self._clock() - last).total_seconds() < window

    def _run_branch_isolated(
        self,
        branch: Branch,
        user_id: int,
        credentials: Credentials,
        force: bool,
    ) -> BranchResult:
        """Run a branch for ``sync_all``; failures become a failed result."""
        try:
            if not force and self._is_fresh(branch, user_id, credentials):
                logger.info("Skipping %s sprint sync: last run is still fresh", branch)
                return BranchResult(success=True, skipped=True)
            return self._run_branch(branch, user_id, credentials)
        except ExternalServiceError as e:
            return BranchResult(success=False, error=e.message, error_kind=e.kind)
        except Exception as e:
            logger.error("%s sprint sync failed: %s", branch, e, exc_info=True)
            return BranchResult(success=False, error=str(e), error_kind="internal")

    def _run_branch(self, branch: Branch, user_id: int, credentials: Credentials) -> BranchResult:
        started = self._clock()
        logger.info("Starting %s sprint sync", branch)
        client = self._client_factory(credentials)
        try:
            sprints = self._fetch(branch, client, credentials)
            count = self._store(branch, sprints)
        except ExternalServiceError as e:
            logger.warning("%s sprint sync failed: %s", branch, e)
            self._record_run(branch, started, user_id, credentials, success=False, error=e.message)
            self._record_connection(user_id, "error")
            raise
        except Exception as e:
            self._record_run(branch, started, user_id, credentials, success=False, error=str(e))
            raise
        finally:
            client.close()

        self._record_run(branch, started, user_id, credentials, success=True, count=count)
        self._record_connection(user_id, "connected")
        logger.info("%s sprint sync completed: %d sprints", branch, count)
        return BranchResult(success=True, count=count)

    def _record_run(
        self,
        branch: str,
        started: datetime,
        user_id: int,
        credentials: Credentials,
        *,
        success: bool,
        count: int = 0,
        error: str | None = None,
    ) -> None:
        with atomic_transaction(self._session_maker) as session:
            record_sync_run(
                session,
                branch=branch,
                started_at=started,
                finished_at=self._clock(),
                success=success,
                count=count,
                error=error,
                user_id=user_id,
                scope=sync_scope(credentials),
            )

    def _record_connection(self, user_id: int, status: str) -> None:
        with atomic_transaction(self._session_maker) as session:
            record_connection_status(session, user_id, status, self._clock())

    # --- Fetching ---

    def _target_board_ids(self, client: JiraApiClient, credentials: Credentials) -> list[int]:
        if credentials.board_ids:
            return list(credentials.board_ids)
        configured = parse_board_id_list(self.settings.default_board_ids)
        if configured:
            return configured
        return [board.id for board in client.list_boards()]

    def _story_points_field(self, client: JiraApiClient) -> str | None:
        if self.settings.story_points_field_id:
            return self.settings.story_points_field_id
        try:
            return find_story_points_field(client.list_fields())
        except ExternalServiceError as e:
            logger.warning("Could not resolve the story points field: %s", e)
            return None

    def _list_sprints(self, branch: Branch, client: JiraApiClient, board_ids: list[int]) -> list[JiraSprint]:
        now = self._clock()
        history_start = now - timedelta(days=self.settings.sprint_history_days)
        seen: set[int] = set()
        sprints: list[JiraSprint] = []

        for board_id in board_ids:
            if branch == "active":
                found = client.list_board_sprints(board_id, state="active")
            elif branch == "closed":
                found = [
                    s for s in client.list_board_sprints(board_id, state="closed")
                    if (s.state or "").upper() == "CLOSED"
                    and (end := _end_date(s)) is not None
                    and history_start <= end <= now
                ]
            else:
                found = client.list_board_sprints(board_id, state="closed")
                if not found:
                    found = client.list_legacy_closed_sprints(board_id)

            for sprint in found:
                if sprint.id not in seen:
                    seen.add(sprint.id)
                    sprints.append(sprint)

        if branch != "active":
            cutoff = self.settings.closed_cutoff
            recent = [s for s in sprints if (end := _end_date(s)) is not None and end >= cutoff]
            sprints = select_recent_per_team(
                recent,
                self.settings.closed_per_team_limit,
                name=lambda s: s.name,
                end_date=_end_date,
            )
        return sprints

    def _fetch(
        self,
        branch: Branch,
        client: JiraApiClient,
        credentials: Credentials,
    ) -> list[tuple[JiraSprintWithIssues, str | None]]:
        board_ids = self._target_board_ids(client, credentials)
        sprints = self._list_sprints(branch, client, board_ids)
        logger.debug("%s sync: %d sprints across boards %s", branch, len(sprints), board_ids)
        if not sprints:
            return []

        points_field = self._story_points_field(client)
        extra_fields = [points_field] if points_field else []
        return [
            (self._sprint_with_issues(branch, client, sprint, extra_fields), points_field)
            for sprint in sprints
        ]

    def _sprint_with_issues(
        self,
        branch: Branch,
        client: JiraApiClient,
        sprint: JiraSprint,
        extra_fields: list[str],
    ) -> JiraSprintWithIssues:
        listed = client.list_sprint_issues(sprint.id, extra_fields)
        report = self._sprint_report(client, sprint)
        issues = listed
        report_totals = None
        if report is not None:
            issues = self._merge_report_issues(client, sprint.id, listed, report, extra_fields)
            if branch != "active" and not listed:
                report_totals = report.totals()
        return JiraSprintWithIssues(**sprint.model_dump(), issues=issues, report_totals=report_totals)

    def _sprint_report(self, client: JiraApiClient, sprint: JiraSprint) -> JiraSprintReport | None:
        if not sprint.boardId:
            return None
        try:
            return client.get_sprint_report(sprint.boardId, sprint.id)
        except ExternalServiceError as e:
            logger.warning("Could not load the sprint report of sprint %s: %s", sprint.id, e)
            return None

    def _merge_report_issues(
        self,
        client: JiraApiClient,
        sprint_id: int,
        listed: list[JiraIssue],
        report: JiraSprintReport,
        extra_fields: list[str],
    ) -> list[JiraIssue]:
        """Add report issues the sprint listing left out.

        Missing keys are fetched one by one, then through a sprint JQL
        search; whatever is still missing is built from the report entry.
        """
        issues = list(listed)
        seen = {issue.key for issue in issues}
        entries = {entry.key: entry for entry in report.issues if entry.key}

        def add(issue: JiraIssue) -> None:
            if issue.key not in seen:
                seen.add(issue.key)
                issues.append(issue)

        for key in entries:
            if key in seen:
                continue
            try:
                add(client.get_issue(key, extra_fields))
            except ExternalServiceError as e:
                logger.warning("Could not fetch issue %s from the sprint report: %s", key, e)

        if any(key not in seen for key in entries):
            try:
                for issue in client.search_sprint_issues(sprint_id, extra_fields):
                    add(issue)
            except ExternalServiceError as e:
                logger.warning("Sprint %s JQL search failed: %s", sprint_id, e)

        for key, entry in entries.items():
            if key not in seen:
                add(JiraIssue(
                    id=key,
                    key=key,
                    fields={
                        "summary": entry.summary or key,
                        "status": {"name": entry.statusName or "Unknown"},
                    },
                ))

        if len(issues) > len(listed):
            logger.debug(
                "Sprint %s: %d issues added from the sprint report",
                sprint_id, len(issues) - len(listed),
            )
        return issues

    # --- Storing ---

    def _store(self, branch: Branch, fetched: list[tuple[JiraSprintWithIssues, str | None]]) -> int:
        now = self._clock()
        status = BRANCH_STATUS[branch]
        snapshot = branch != "active"

        def store_one(item: tuple[JiraSprintWithIssues, str | None]) -> None:
            sprint, points_field = item
            self._store_sprint(sprint, points_field, status, now, snapshot)

        workers = min(self.settings.sync_workers, max(1, len(fetched)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"{branch}-upsert") as pool:
            # list() surfaces the first worker exception
            list(pool.map(store_one, fetched))
        return len(fetched)

    def _store_sprint(
        self,
        sprint: JiraSprintWithIssues,
        points_field: str | None,
        status: str,
        now: datetime,
        snapshot: bool,
    ) -> None:
        normalized = normalize_sprint(sprint, now)
        issues = [normalize_issue(issue, points_field) for issue in sprint.issues]
        gross_time = compute_gross_time(normalized.start_date, now)
        totals = sprint.report_totals
        if totals is None and issues:
            totals = SprintTotals(
                total_tickets=len(issues),
                closed_tickets=sum(1 for i in issues if is_closed_status(i.status)),
                story_points_total=sum(i.story_points or 0 for i in issues),
            )

        with atomic_transaction(self._session_maker) as session:
            sprint_id = upsert_sprint(
                session,
                external_id=normalized.external_id,
                name=normalized.name,
                start_date=normalized.start_date,
                end_date=normalized.end_date,
                status=status,
            )
            for issue in issues:
                upsert_ticket(
                    session,
                    sprint_id=sprint_id,
                    external_id=issue.external_id,
                    summary=issue.summary,
                    description=issue.description,
                    status=issue.status,
                    assignee=issue.assignee,
                    priority=issue.priority,
                    issue_type=issue.issue_type,
                    story_points=issue.story_points,
                    gross_time=gross_time,
                    jira_created_at=issue.created_at,
                )
            if totals is not None:
                update_sprint_totals(session, sprint_id, **totals.model_dump())
            if snapshot:
                ensure_sprint_snapshot(session, sprint_id)

        logger.debug(
            "Sprint synced: %s (%s, %d issues)", normalized.name, normalized.external_id, len(issues)
        )
