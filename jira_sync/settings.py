"""Environment-driven settings for the sprint sync."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# Jira's agile endpoints reject maxResults above 50 for sprint listings
MAX_PAGE_SIZE = 50

DEFAULT_REQUEST_TIMEOUT_MS = 30000


def _default_db_path() -> Path:
    return Path.home() / ".jira-sprint-sync" / "sprints.db"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", name, raw, default)
        return default


def _env_date(name: str, default: datetime) -> datetime:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        logger.warning("Ignoring invalid date %s=%r", name, raw)
        return default
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SyncSettings(BaseModel):
    """Process-wide sync configuration.

    Per-user connection details live in the database; these are the
    defaults and tuning knobs shared by every sync call.
    """

    default_base_url: str | None = None
    default_board_ids: str | None = None
    request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS
    story_points_field_id: str | None = None
    sprint_history_days: int = 7
    closed_cutoff: datetime = datetime(2025, 1, 1, tzinfo=timezone.utc)
    closed_per_team_limit: int = 10
    report_cutoff: datetime = datetime(2025, 12, 1, tzinfo=timezone.utc)
    page_size: int = Field(default=MAX_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE)
    max_pages: int = Field(default=5, ge=1)
    sync_workers: int = Field(default=4, ge=1)
    freshness_seconds: int = Field(default=0, ge=0)
    db_path: Path = Field(default_factory=_default_db_path)

    @classmethod
    def from_env(cls) -> "SyncSettings":
        """Build settings from environment variables (call after load_dotenv)."""
        defaults = cls()
        db_path = os.environ.get("SPRINT_SYNC_DB", "").strip()
        return cls(
            default_base_url=os.environ.get("JIRA_BASE_URL") or None,
            default_board_ids=os.environ.get("JIRA_BOARD_IDS") or None,
            request_timeout_ms=_env_int("JIRA_REQUEST_TIMEOUT", defaults.request_timeout_ms),
            story_points_field_id=os.environ.get("JIRA_STORY_POINTS_FIELD_ID") or None,
            sprint_history_days=_env_int("SPRINT_HISTORY_DAYS", defaults.sprint_history_days),
            closed_cutoff=_env_date("CLOSED_SPRINT_CUTOFF", defaults.closed_cutoff),
            closed_per_team_limit=_env_int(
                "CLOSED_SPRINTS_PER_TEAM_LIMIT", defaults.closed_per_team_limit
            ),
            report_cutoff=_env_date("SPRINT_REPORT_CUTOFF", defaults.report_cutoff),
            page_size=max(1, min(_env_int("JIRA_PAGE_SIZE", defaults.page_size), MAX_PAGE_SIZE)),
            max_pages=max(1, _env_int("JIRA_MAX_PAGES", defaults.max_pages)),
            sync_workers=max(1, _env_int("JIRA_SYNC_WORKERS", defaults.sync_workers)),
            freshness_seconds=max(
                0, _env_int("JIRA_SYNC_FRESHNESS_SECONDS", defaults.freshness_seconds)
            ),
            db_path=Path(db_path).expanduser() if db_path else defaults.db_path,
        )
