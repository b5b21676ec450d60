"""
Database Models and Connection
==============================

SQLite schema for synced sprints, tickets and integration settings using
SQLAlchemy, plus the atomic upsert primitives the sync relies on.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import DeclarativeBase, Session, relationship, sessionmaker
from sqlalchemy.types import JSON


def _utc_now() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)


def _as_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite keeps no offset; store every timestamp as naive UTC."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Base(DeclarativeBase):
    """SQLAlchemy 2.0 style declarative base."""
    pass


class UserIntegration(Base):
    """A user's persisted Jira settings and last connection check."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), nullable=False, unique=True)
    jira_base_url = Column(String(500), nullable=True)
    jira_user = Column(String(255), nullable=True)
    jira_api_token = Column(String(500), nullable=True)
    jira_auth_type = Column(String(20), nullable=True)  # basic, bearer
    jira_deployment = Column(String(20), nullable=True)  # cloud, datacenter
    jira_board_ids = Column(String(500), nullable=True)  # "12, 13"
    jira_sprint_field_id = Column(String(100), nullable=True)
    jira_request_timeout = Column(Integer, nullable=True)  # milliseconds
    jira_access_token = Column(Text, nullable=True)  # OAuth 2.0 (3LO)
    jira_cloud_id = Column(String(100), nullable=True)
    jira_connection_status = Column(String(20), nullable=True)  # connected, error
    jira_connection_checked_at = Column(DateTime, nullable=True)


class AdminSettings(Base):
    """Instance-wide settings; a single row."""

    __tablename__ = "admin_settings"

    id = Column(Integer, primary_key=True)
    jira_base_url = Column(String(500), nullable=True)


class Sprint(Base):
    """A sprint mirrored from Jira, keyed by its Jira id."""

    __tablename__ = "sprints"

    id = Column(Integer, primary_key=True, index=True)
    external_id = Column(String(50), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False, index=True)
    status = Column(String(20), nullable=False, index=True)  # ACTIVE, CLOSED
    total_tickets = Column(Integer, nullable=True)
    closed_tickets = Column(Integer, nullable=True)
    success_percent = Column(Float, nullable=False, default=0)
    story_points_total = Column(Float, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=_utc_now)
    updated_at = Column(DateTime, nullable=False, default=_utc_now)

    tickets = relationship("Ticket", back_populates="sprint")
    snapshot = relationship("SprintSnapshot", back_populates="sprint", uselist=False)

    def to_dict(self) -> dict:
        """Convert sprint to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "external_id": self.external_id,
            "name": self.name,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "status": self.status,
            "total_tickets": self.total_tickets,
            "closed_tickets": self.closed_tickets,
            "success_percent": self.success_percent,
            "story_points_total": self.story_points_total,
        }


class Ticket(Base):
    """A Jira issue; belongs to the sprint it was first seen in."""

    __tablename__ = "tickets"

    id = Column(Integer, primary_key=True, index=True)
    sprint_id = Column(Integer, ForeignKey("sprints.id"), nullable=False, index=True)
    external_id = Column(String(50), nullable=False, unique=True, index=True)
    summary = Column(String(500), nullable=False)
    description = Column(Text, nullable=False, default="")
    status = Column(String(100), nullable=False)
    assignee = Column(String(255), nullable=True)
    priority = Column(String(50), nullable=True)
    issue_type = Column(String(100), nullable=False, default="")
    story_points = Column(Float, nullable=True)
    gross_time = Column(Integer, nullable=False, default=0)  # days since sprint start
    jira_created_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utc_now)
    updated_at = Column(DateTime, nullable=False, default=_utc_now)

    sprint = relationship("Sprint", back_populates="tickets")

    def to_dict(self) -> dict:
        """Convert ticket to dictionary for JSON serialization."""
        return {
            "external_id": self.external_id,
            "summary": self.summary,
            "status": self.status,
            "assignee": self.assignee,
            "priority": self.priority,
            "story_points": self.story_points,
            "gross_time": self.gross_time,
            "updated_at": _iso(self.updated_at),
        }


class SprintSnapshot(Base):
    """Frozen reporting view of a closed sprint."""

    __tablename__ = "sprint_snapshots"

    __table_args__ = (
        Index("ix_snapshot_end_date", "end_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    sprint_id = Column(Integer, ForeignKey("sprints.id"), nullable=False, unique=True)
    external_id = Column(String(50), nullable=False)
    name = Column(String(255), nullable=False)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False)
    totals = Column(JSON, nullable=False, default=dict)
    assignees = Column(JSON, nullable=False, default=list)
    tickets = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False, default=_utc_now)

    sprint = relationship("Sprint", back_populates="snapshot")


class SyncRun(Base):
    """One executed sync branch."""

    __tablename__ = "sync_runs"

    __table_args__ = (
        Index("ix_sync_run_branch_finished", "branch", "finished_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    branch = Column(String(20), nullable=False)  # active, closed, closed_all
    user_id = Column(Integer, nullable=True)
    scope = Column(String(1000), nullable=True)  # base URL and board ids the run covered
    started_at = Column(DateTime, nullable=False)
    finished_at = Column(DateTime, nullable=False)
    success = Column(Boolean, nullable=False, default=False)
    count = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "branch": self.branch,
            "user_id": self.user_id,
            "scope": self.scope,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "success": self.success,
            "count": self.count,
            "error": self.error,
        }


# =============================================================================
# Engine and Sessions
# =============================================================================


def get_database_url(db_path: Path) -> str:
    """Return the SQLAlchemy database URL for a database file."""
    return f"sqlite:///{Path(db_path).as_posix()}"


def _configure_sqlite_immediate_transactions(engine) -> None:
    """Configure engine for IMMEDIATE transactions via event hooks.

    Acquiring the write lock at BEGIN keeps concurrent sync workers from
    reading rows another worker is about to upsert.
    """
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        # Disable pysqlite's implicit transaction handling
        dbapi_connection.isolation_level = None

        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA busy_timeout=30000")
        finally:
            cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def _migrate_add_sync_run_scope_columns(engine) -> None:
    """Add user_id and scope to sync_runs tables created before they existed."""
    with engine.connect() as conn:
        result = conn.execute(text("PRAGMA table_info(sync_runs)"))
        columns = [row[1] for row in result.fetchall()]

        if "user_id" not in columns:
            conn.execute(text("ALTER TABLE sync_runs ADD COLUMN user_id INTEGER DEFAULT NULL"))
        if "scope" not in columns:
            conn.execute(text("ALTER TABLE sync_runs ADD COLUMN scope VARCHAR(1000) DEFAULT NULL"))
        conn.commit()


# Engine cache. Key: database path (posix), Value: (engine, SessionLocal)
_engine_cache: dict[str, tuple] = {}


def create_database(db_path: Path) -> tuple:
    """
    Create the database (if needed) and return engine + session maker.

    Engines are cached per path so repeated calls reuse connections.

    Args:
        db_path: Path of the SQLite file

    Returns:
        Tuple of (engine, SessionLocal)
    """
    db_path = Path(db_path)
    cache_key = db_path.as_posix()

    if cache_key in _engine_cache:
        return _engine_cache[cache_key]

    db_path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(get_database_url(db_path), connect_args={
        "check_same_thread": False,
        "timeout": 30  # Wait up to 30s for locks
    })

    # PRAGMA journal_mode must run outside of a transaction, so set it before
    # the BEGIN IMMEDIATE hooks are installed
    with engine.connect() as conn:
        raw_conn = conn.connection.dbapi_connection
        if raw_conn is None:
            raise RuntimeError("Failed to get raw DBAPI connection")
        cursor = raw_conn.cursor()
        try:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=30000")
        finally:
            cursor.close()

    _configure_sqlite_immediate_transactions(engine)

    Base.metadata.create_all(bind=engine)
    _migrate_add_sync_run_scope_columns(engine)

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    _engine_cache[cache_key] = (engine, SessionLocal)

    return engine, SessionLocal


def dispose_engine(db_path: Path) -> bool:
    """Dispose of and remove the cached engine for a database file.

    Returns:
        True if an engine was disposed, False if no engine was cached.
    """
    cache_key = Path(db_path).as_posix()

    if cache_key in _engine_cache:
        engine, _ = _engine_cache.pop(cache_key)
        engine.dispose()
        return True

    return False


# Global session maker - set when the server starts
_session_maker: Optional[sessionmaker] = None


def set_session_maker(session_maker: Optional[sessionmaker]) -> None:
    """Set the global session maker."""
    global _session_maker
    _session_maker = session_maker


def get_session_maker() -> sessionmaker:
    if _session_maker is None:
        raise RuntimeError("Database not initialized. Call set_session_maker first.")
    return _session_maker


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for FastAPI to get database session.

    Yields a database session and ensures it's closed after use.
    """
    db = get_session_maker()()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def atomic_transaction(session_maker):
    """Context manager for atomic SQLite transactions.

    The write lock is taken at BEGIN (see the engine event hooks), so every
    read-modify-write inside the block is serialized against other workers.

    Example:
        with atomic_transaction(session_maker) as session:
            sprint_id = upsert_sprint(session, normalized, "ACTIVE")
    """
    session = session_maker()
    try:
        yield session
        session.commit()
    except Exception:
        try:
            session.rollback()
        except Exception:
            pass  # Don't let rollback failure mask original error
        raise
    finally:
        session.close()


# =============================================================================
# Upserts
# =============================================================================
# Each upsert is a single INSERT ... ON CONFLICT(external_id) DO UPDATE, so
# the row is written atomically even when two workers race on the same id.
# external_id never appears in the update set: it is write-once.


def upsert_sprint(
    session: Session,
    *,
    external_id: str,
    name: str,
    start_date: datetime,
    end_date: datetime,
    status: str,
) -> int:
    """Insert or update a sprint by external id and return its local id.

    Updates touch only name, start date, end date and status.
    """
    now = _as_utc_naive(_utc_now())
    stmt = sqlite_insert(Sprint).values(
        external_id=external_id,
        name=name,
        start_date=_as_utc_naive(start_date),
        end_date=_as_utc_naive(end_date),
        status=status,
        success_percent=0,
        story_points_total=0,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["external_id"],
        set_={
            "name": stmt.excluded.name,
            "start_date": stmt.excluded.start_date,
            "end_date": stmt.excluded.end_date,
            "status": stmt.excluded.status,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    session.execute(stmt)
    return session.execute(
        select(Sprint.id).where(Sprint.external_id == external_id)
    ).scalar_one()


def upsert_ticket(
    session: Session,
    *,
    sprint_id: int,
    external_id: str,
    summary: str,
    description: str,
    status: str,
    assignee: Optional[str],
    priority: Optional[str],
    issue_type: str,
    story_points: Optional[float],
    gross_time: int,
    jira_created_at: Optional[datetime] = None,
) -> None:
    """Insert or update a ticket by external id.

    ``sprint_id`` is only written on insert: a sync never moves a ticket to
    another sprint.
    """
    now = _as_utc_naive(_utc_now())
    stmt = sqlite_insert(Ticket).values(
        sprint_id=sprint_id,
        external_id=external_id,
        summary=summary,
        description=description,
        status=status,
        assignee=assignee,
        priority=priority,
        issue_type=issue_type,
        story_points=story_points,
        gross_time=max(0, gross_time),
        jira_created_at=_as_utc_naive(jira_created_at),
        created_at=now,
        updated_at=now,
    )
    updatable = (
        "summary", "description", "status", "assignee", "priority",
        "issue_type", "story_points", "gross_time", "jira_created_at", "updated_at",
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["external_id"],
        set_={column: stmt.excluded[column] for column in updatable},
    )
    session.execute(stmt)


def reassign_ticket(session: Session, external_id: str, sprint_id: int) -> bool:
    """Move a ticket to another sprint explicitly.

    Returns:
        True if the ticket exists and was moved.
    """
    ticket = session.query(Ticket).filter(Ticket.external_id == external_id).first()
    if ticket is None:
        return False
    ticket.sprint_id = sprint_id
    ticket.updated_at = _as_utc_naive(_utc_now())
    return True


def update_sprint_totals(
    session: Session,
    sprint_id: int,
    *,
    total_tickets: int,
    closed_tickets: int,
    story_points_total: float,
) -> None:
    """Store ticket aggregates; success percent is rounded to one decimal."""
    success_percent = (
        round(closed_tickets / total_tickets * 100, 1) if total_tickets else 0
    )
    sprint = session.get(Sprint, sprint_id)
    if sprint is None:
        return
    sprint.total_tickets = total_tickets
    sprint.closed_tickets = closed_tickets
    sprint.success_percent = success_percent
    sprint.story_points_total = story_points_total


# =============================================================================
# Sync bookkeeping
# =============================================================================


def record_sync_run(
    session: Session,
    *,
    branch: str,
    started_at: datetime,
    finished_at: datetime,
    success: bool,
    count: int,
    error: Optional[str] = None,
    user_id: Optional[int] = None,
    scope: Optional[str] = None,
) -> None:
    session.add(SyncRun(
        branch=branch,
        user_id=user_id,
        scope=scope,
        started_at=_as_utc_naive(started_at),
        finished_at=_as_utc_naive(finished_at),
        success=success,
        count=count,
        error=error,
    ))


def last_successful_run_at(
    session: Session,
    branch: str,
    user_id: int,
    scope: str,
) -> Optional[datetime]:
    """Finish time (aware UTC) of the newest successful run of a branch.

    Only runs by the same user over the same scope count.
    """
    finished = session.execute(
        select(func.max(SyncRun.finished_at)).where(
            SyncRun.branch == branch,
            SyncRun.success.is_(True),
            SyncRun.user_id == user_id,
            SyncRun.scope == scope,
        )
    ).scalar_one_or_none()
    if finished is None:
        return None
    return finished.replace(tzinfo=timezone.utc)


def latest_sync_runs(session: Session) -> list[SyncRun]:
    """Newest run of each branch, ordered by branch name."""
    newest = (
        select(SyncRun.branch, func.max(SyncRun.id).label("max_id"))
        .group_by(SyncRun.branch)
        .subquery()
    )
    return list(
        session.execute(
            select(SyncRun)
            .join(newest, SyncRun.id == newest.c.max_id)
            .order_by(SyncRun.branch)
        ).scalars()
    )


def record_connection_status(
    session: Session,
    user_id: int,
    status: str,
    checked_at: Optional[datetime] = None,
) -> None:
    """Store the outcome of the latest Jira call made with a user's settings."""
    user = session.get(UserIntegration, user_id)
    if user is None:
        return
    user.jira_connection_status = status
    user.jira_connection_checked_at = _as_utc_naive(checked_at or _utc_now())


def get_admin_base_url(session: Session) -> Optional[str]:
    settings = session.query(AdminSettings).order_by(AdminSettings.id).first()
    return settings.jira_base_url if settings else None
