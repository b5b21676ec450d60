"""Jira integration API router."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from jira_sync.credentials import ConfigurationError
from jira_sync.models import ConnectionTestResult
from jira_sync.sync_service import SyncOrchestrator, UserNotFoundError

from ..dependencies import get_orchestrator, get_user_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/integrations/jira", tags=["jira"])


@router.post("/test", response_model=ConnectionTestResult)
def test_connection(
    user_id: int = Depends(get_user_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Test the calling user's Jira connection."""
    try:
        return orchestrator.test_connection(user_id)
    except UserNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConfigurationError as e:
        return ConnectionTestResult(ok=False, error=str(e))
