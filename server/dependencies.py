"""Shared FastAPI dependencies."""

from fastapi import Depends, Header, Request

from api.database import get_session_maker
from jira_sync.settings import SyncSettings
from jira_sync.sync_service import SyncOrchestrator


def get_settings(request: Request) -> SyncSettings:
    """Settings loaded at startup."""
    return request.app.state.settings


def get_orchestrator(settings: SyncSettings = Depends(get_settings)) -> SyncOrchestrator:
    return SyncOrchestrator(get_session_maker(), settings)


def get_user_id(x_user_id: int = Header(..., alias="X-User-Id")) -> int:
    """Caller identity; authentication happens in front of this service."""
    return x_user_id
