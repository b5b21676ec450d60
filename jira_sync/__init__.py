"""Jira sprint sync: mirrors Jira sprints and issues into a local store."""

from .client import ExternalServiceError, JiraApiClient
from .credentials import ConfigurationError, Credentials, resolve_credentials
from .selector import select_recent_per_team
from .settings import SyncSettings
from .snapshot import build_sprint_report
from .sync_service import SyncOrchestrator, UserNotFoundError
