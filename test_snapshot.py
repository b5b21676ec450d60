"""Tests for sprint snapshots and the team-bounded sprint report."""

from datetime import datetime, timezone

from api.database import Sprint, atomic_transaction, update_sprint_totals, upsert_sprint, upsert_ticket
from jira_sync.snapshot import build_snapshot_payload, build_sprint_report, ensure_sprint_snapshot

CUTOFF = datetime(2025, 12, 1, tzinfo=timezone.utc)


def _closed_sprint(session_maker, external_id, name, end, tickets=()):
    with atomic_transaction(session_maker) as session:
        sprint_id = upsert_sprint(
            session,
            external_id=external_id,
            name=name,
            start_date=end.replace(day=1),
            end_date=end,
            status="CLOSED",
        )
        for key, status, assignee, points in tickets:
            upsert_ticket(
                session,
                sprint_id=sprint_id,
                external_id=key,
                summary=f"Work on {key}",
                description="",
                status=status,
                assignee=assignee,
                priority=None,
                issue_type="Story",
                story_points=points,
                gross_time=10,
            )
        ensure_sprint_snapshot(session, sprint_id)
        return sprint_id


def _names(report):
    return [item.name for item in report.snapshots]


class TestSnapshotPayload:

    def test_derives_totals_from_tickets(self, session_maker):
        sprint_id = _closed_sprint(
            session_maker, "1", "ABC Sprint 1", datetime(2026, 1, 14, tzinfo=timezone.utc),
            tickets=[
                ("ABC-1", "Done", "Jane Doe", 3),
                ("ABC-2", "In Progress", "Jane Doe", 2),
                ("ABC-3", "Closed", " ", None),
            ],
        )
        with session_maker() as session:
            payload = build_snapshot_payload(session.get(Sprint, sprint_id))

        assert payload["totals"] == {
            "total_tickets": 3,
            "closed_tickets": 2,
            "story_points_total": 5,
            "story_points_closed": 3,
            "success_percent": 66.7,
        }
        jane, unassigned = payload["assignees"]
        assert (jane["name"], jane["tickets"], jane["closed"]) == ("Jane Doe", 2, 1)
        assert unassigned["name"] == "Unassigned"

    def test_stored_totals_win(self, session_maker):
        sprint_id = _closed_sprint(session_maker, "2", "ABC Sprint 2", datetime(2026, 1, 28, tzinfo=timezone.utc))
        with atomic_transaction(session_maker) as session:
            update_sprint_totals(session, sprint_id, total_tickets=4, closed_tickets=3, story_points_total=13)
            payload = build_snapshot_payload(session.get(Sprint, sprint_id))
        assert payload["totals"]["total_tickets"] == 4
        assert payload["totals"]["success_percent"] == 75.0

    def test_existing_snapshot_untouched(self, session_maker):
        sprint_id = _closed_sprint(session_maker, "3", "ABC Sprint 3", datetime(2026, 2, 11, tzinfo=timezone.utc))
        with atomic_transaction(session_maker) as session:
            first = ensure_sprint_snapshot(session, sprint_id)
            again = ensure_sprint_snapshot(session, sprint_id)
            assert first.id == again.id

    def test_unknown_sprint(self, session_maker):
        with atomic_transaction(session_maker) as session:
            assert ensure_sprint_snapshot(session, 999) is None


class TestSprintReport:

    def _seed(self, session_maker):
        _closed_sprint(session_maker, "1", "ABC Sprint 5", datetime(2026, 1, 1, tzinfo=timezone.utc))
        _closed_sprint(session_maker, "2", "ABC Sprint 6", datetime(2026, 1, 15, tzinfo=timezone.utc))
        _closed_sprint(session_maker, "3", "XYZ Sprint 1", datetime(2026, 1, 10, tzinfo=timezone.utc))
        _closed_sprint(session_maker, "4", "XYZ Sprint 0", datetime(2025, 11, 20, tzinfo=timezone.utc))

    def test_per_team_cap(self, session_maker):
        self._seed(session_maker)
        with session_maker() as session:
            report = build_sprint_report(session, 1, CUTOFF)
        assert report.per_team == 1
        assert _names(report) == ["ABC Sprint 6", "XYZ Sprint 1"]
        assert [item.team_key for item in report.snapshots] == ["ABC", "XYZ"]

    def test_default_cap_and_cutoff(self, session_maker):
        self._seed(session_maker)
        with session_maker() as session:
            report = build_sprint_report(session, None, CUTOFF)
        assert report.per_team == 10
        assert _names(report) == ["ABC Sprint 6", "XYZ Sprint 1", "ABC Sprint 5"]

    def test_cap_clamped(self, session_maker):
        self._seed(session_maker)
        with session_maker() as session:
            assert build_sprint_report(session, 0, CUTOFF).per_team == 1
            assert build_sprint_report(session, 500, CUTOFF).per_team == 50

    def test_scan_limit(self, session_maker):
        self._seed(session_maker)
        with session_maker() as session:
            report = build_sprint_report(session, 10, CUTOFF, limit=1)
        assert _names(report) == ["ABC Sprint 6"]

    def test_dates_serialized(self, session_maker):
        self._seed(session_maker)
        with session_maker() as session:
            item = build_sprint_report(session, 1, CUTOFF).snapshots[0]
        assert item.end_date == "2026-01-15T00:00:00"
        assert item.status == "CLOSED"
