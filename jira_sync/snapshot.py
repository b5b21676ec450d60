"""Sprint snapshots: frozen reporting views of closed sprints."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from api.database import Sprint, SprintSnapshot

from .mapper import is_closed_status, team_key
from .models import SprintReport, SprintReportItem
from .selector import clamp_per_team, select_recent_per_team

logger = logging.getLogger(__name__)

UNASSIGNED = "Unassigned"

# Newest snapshots considered by the report before the per-team cap
REPORT_SCAN_LIMIT = 200


def build_snapshot_payload(sprint: Sprint) -> dict:
    """Compute totals, per-assignee breakdown and ticket list for a sprint.

    Stored aggregates win when the sync recorded them; otherwise they are
    derived from the sprint's tickets.
    """
    tickets = list(sprint.tickets)

    total_tickets = sprint.total_tickets if sprint.total_tickets else len(tickets)
    closed_tickets = (
        sprint.closed_tickets
        if sprint.closed_tickets is not None
        else sum(1 for t in tickets if is_closed_status(t.status))
    )
    story_points_total = sprint.story_points_total or sum(t.story_points or 0 for t in tickets)
    story_points_closed = sum(
        t.story_points or 0 for t in tickets if is_closed_status(t.status)
    )
    success_percent = round(closed_tickets / total_tickets * 100, 1) if total_tickets else 0

    by_assignee: dict[str, dict] = {}
    for ticket in tickets:
        name = (ticket.assignee or "").strip() or UNASSIGNED
        entry = by_assignee.setdefault(
            name, {"name": name, "tickets": 0, "closed": 0, "story_points": 0.0, "closed_points": 0.0}
        )
        entry["tickets"] += 1
        entry["story_points"] += ticket.story_points or 0
        if is_closed_status(ticket.status):
            entry["closed"] += 1
            entry["closed_points"] += ticket.story_points or 0

    assignees = sorted(by_assignee.values(), key=lambda e: (-e["story_points"], e["name"]))

    return {
        "totals": {
            "total_tickets": total_tickets,
            "closed_tickets": closed_tickets,
            "story_points_total": story_points_total,
            "story_points_closed": story_points_closed,
            "success_percent": success_percent,
        },
        "assignees": assignees,
        "tickets": [t.to_dict() for t in tickets],
    }


def ensure_sprint_snapshot(session: Session, sprint_id: int) -> SprintSnapshot | None:
    """Create the snapshot for a sprint unless one already exists.

    Existing snapshots are returned untouched.
    """
    existing = session.query(SprintSnapshot).filter(SprintSnapshot.sprint_id == sprint_id).first()
    if existing:
        return existing

    sprint = session.get(Sprint, sprint_id)
    if sprint is None:
        return None

    payload = build_snapshot_payload(sprint)
    snapshot = SprintSnapshot(
        sprint_id=sprint.id,
        external_id=sprint.external_id,
        name=sprint.name,
        start_date=sprint.start_date,
        end_date=sprint.end_date,
        status=sprint.status,
        totals=payload["totals"],
        assignees=payload["assignees"],
        tickets=payload["tickets"],
    )
    session.add(snapshot)
    session.flush()
    logger.debug("Created snapshot for sprint %s (%s)", sprint.external_id, sprint.name)
    return snapshot


def build_sprint_report(
    session: Session,
    per_team: int | None,
    cutoff: datetime,
    limit: int = REPORT_SCAN_LIMIT,
) -> SprintReport:
    """Team-bounded list of recent snapshots, newest end date first.

    Only the newest ``limit`` snapshots ending on/after ``cutoff`` are
    considered; each team then keeps at most ``per_team`` of them.
    """
    cap = clamp_per_team(per_team)
    cutoff = cutoff.astimezone(timezone.utc).replace(tzinfo=None) if cutoff.tzinfo else cutoff
    snapshots = (
        session.query(SprintSnapshot)
        .filter(SprintSnapshot.end_date >= cutoff)
        .order_by(SprintSnapshot.end_date.desc(), SprintSnapshot.id)
        .limit(limit)
        .all()
    )
    selected = select_recent_per_team(
        snapshots,
        cap,
        name=lambda s: s.name,
        end_date=lambda s: s.end_date,
    )
    return SprintReport(
        per_team=cap,
        snapshots=[
            SprintReportItem(
                id=s.id,
                sprint_id=s.sprint_id,
                external_id=s.external_id,
                name=s.name,
                team_key=team_key(s.name),
                start_date=s.start_date.isoformat() if s.start_date else None,
                end_date=s.end_date.isoformat() if s.end_date else None,
                status=s.status,
                totals=s.totals or {},
                assignees=s.assignees or [],
            )
            for s in selected
        ],
    )
