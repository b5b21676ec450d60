"""Sprint sync and reporting API router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from api.database import get_db
from jira_sync.client import ExternalServiceError
from jira_sync.credentials import ConfigurationError
from jira_sync.models import SprintReport, SyncRequest, SyncResponse, SyncStatus
from jira_sync.settings import SyncSettings
from jira_sync.snapshot import build_sprint_report
from jira_sync.sync_service import SyncOrchestrator, UserNotFoundError

from ..dependencies import get_orchestrator, get_settings, get_user_id

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sprints"])


# --- Sync ---


@router.post("/api/admin/sprints/sync", response_model=SyncResponse)
def trigger_sync(
    request: SyncRequest,
    user_id: int = Depends(get_user_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Run a sprint sync for the calling user.

    Single-branch syncs surface Jira failures as 502; ``all`` always
    answers 200 with each branch's outcome.
    """
    try:
        result = orchestrator.run(user_id, request)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except UserNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ExternalServiceError as e:
        raise HTTPException(
            status_code=502,
            detail={"message": e.message, "kind": e.kind, "status_code": e.status_code},
        )

    message = "Sprint sync completed" if result.success else "Sprint sync completed with errors"
    return SyncResponse(message=message, type=request.type, result=result)


@router.get("/api/admin/sprints/sync-status", response_model=SyncStatus)
def sync_status(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Latest recorded run of each sync branch."""
    return orchestrator.sync_status()


# --- Reports ---


@router.get("/api/reports/sprints", response_model=SprintReport)
def sprint_report(
    per_team: Optional[int] = Query(None, alias="perTeam"),
    db: Session = Depends(get_db),
    settings: SyncSettings = Depends(get_settings),
):
    """Recent sprint snapshots, at most ``perTeam`` per team (1-50, default 10)."""
    return build_sprint_report(db, per_team, settings.report_cutoff)
