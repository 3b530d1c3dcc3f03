"""
Database connection and models for the JobTrackr background core
Uses SQLAlchemy; SQLite by default, PostgreSQL in production
"""
from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from jobtrackr.errors import FatalError
from jobtrackr.log import get_logger

log = get_logger(__name__)

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo so everything is stored naive."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


# ============================================
# MODELS
# ============================================

class User(Base):
    __tablename__ = 'users'

    id = Column(String(32), primary_key=True, default=new_id)
    email = Column(String(255), unique=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    applications = relationship("Application", back_populates="user", cascade="all, delete-orphan")


class Application(Base):
    __tablename__ = 'applications'

    id = Column(String(32), primary_key=True, default=new_id)
    user_id = Column(String(32), ForeignKey('users.id', ondelete='CASCADE'), nullable=False)

    company_name = Column(String(255), nullable=False)
    position = Column(String(255), nullable=False)
    status = Column(String(50), default="Applied")
    job_description = Column(Text)
    reminder_date = Column(Date)

    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="applications")
    reminder_sent = relationship("ReminderSent", back_populates="application",
                                 cascade="all, delete-orphan", uselist=False)

    __table_args__ = (Index('ix_applications_reminder_date', 'reminder_date'),)


class ReminderSent(Base):
    __tablename__ = 'reminder_sent'

    id = Column(String(32), primary_key=True, default=new_id)
    application_id = Column(String(32), ForeignKey('applications.id', ondelete='CASCADE'),
                            nullable=False, unique=True)
    sent_at = Column(DateTime, nullable=False, default=utcnow)

    application = relationship("Application", back_populates="reminder_sent")


class CVFile(Base):
    __tablename__ = 'cv_files'

    id = Column(String(32), primary_key=True, default=new_id)
    user_id = Column(String(32), ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    file_name = Column(String(255), nullable=False)
    storage_path = Column(Text, nullable=False)
    mime_type = Column(String(100), nullable=False)
    created_at = Column(DateTime, default=utcnow)


class CVAnalysis(Base):
    __tablename__ = 'cv_analyses'

    id = Column(String(32), primary_key=True, default=new_id)
    user_id = Column(String(32), ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    cv_file_id = Column(String(32), ForeignKey('cv_files.id', ondelete='CASCADE'), nullable=False, index=True)
    # Set when written by a queued task; one row per task however often it is delivered
    task_id = Column(String(32), unique=True)

    job_description = Column(Text, nullable=False)
    job_url = Column(Text)
    match_score = Column(Integer, nullable=False)
    missing_skills = Column(JSON, nullable=False, default=list)
    recommendations = Column(JSON, nullable=False, default=list)
    ai_response = Column(JSON)

    created_at = Column(DateTime, default=utcnow, index=True)

    __table_args__ = (CheckConstraint('match_score >= 0 AND match_score <= 100', name='ck_cv_analyses_score'),)


class ApplicationAnalysis(Base):
    __tablename__ = 'application_analyses'

    id = Column(String(32), primary_key=True, default=new_id)
    application_id = Column(String(32), ForeignKey('applications.id', ondelete='CASCADE'), nullable=False)
    cv_file_id = Column(String(32), ForeignKey('cv_files.id', ondelete='CASCADE'), nullable=False)

    # SHA-256 of the normalized job description
    job_description_hash = Column(String(64), nullable=False)
    fit_score = Column(Integer, nullable=False)
    strengths = Column(JSON, nullable=False, default=list)
    gaps = Column(JSON, nullable=False, default=list)
    suggestions = Column(JSON, nullable=False, default=list)
    ai_raw_response = Column(JSON)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint('application_id', 'job_description_hash', name='unique_application_job_hash'),
        CheckConstraint('fit_score >= 0 AND fit_score <= 100', name='ck_application_analyses_score'),
    )


class SweepLock(Base):
    """Named lease so only one process runs a given sweep at a time."""
    __tablename__ = 'sweep_locks'

    name = Column(String(64), primary_key=True)
    holder = Column(String(64))
    expires_at = Column(DateTime)


class TaskRow(Base):
    __tablename__ = 'tasks'

    id = Column(String(32), primary_key=True)
    kind = Column(String(32), nullable=False)
    payload = Column(JSON, nullable=False)

    state = Column(String(16), nullable=False, default="queued")
    progress = Column(Integer, nullable=False, default=0)
    result = Column(JSON)
    failure_reason = Column(Text)

    attempts = Column(Integer, nullable=False, default=0)
    claimed_by = Column(String(64))
    lease_expires_at = Column(DateTime)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    finished_at = Column(DateTime)

    __table_args__ = (
        Index('ix_tasks_claim', 'kind', 'state', 'created_at'),
        CheckConstraint("state IN ('queued', 'active', 'completed', 'failed')", name='ck_tasks_state'),
    )


# ============================================
# CONNECTION
# ============================================

def _enable_sqlite_foreign_keys(dbapi_connection, _record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False, "timeout": 30}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, **kwargs)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine
    return create_engine(url, pool_pre_ping=True)


class Database:
    """Explicitly constructed handle; pass it to the queue and repositories."""

    def __init__(self, url: str, engine: Engine | None = None):
        self.url = url
        self.engine = engine or create_db_engine(url)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Transactional scope: commit on success, roll back on error.

        Connection-level failures surface as FatalError so callers can tell
        an unreachable store from a bad query.
        """
        session = self._sessions()
        try:
            yield session
            session.commit()
        except OperationalError as exc:
            session.rollback()
            raise FatalError(f"Database unavailable: {exc.orig or exc}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def insert_ignore(self, session: Session, model, values: dict, conflict_cols: list[str]) -> bool:
        """INSERT ... ON CONFLICT DO NOTHING. Returns True if a row was written."""
        table = model.__table__
        if self.dialect in ("sqlite", "postgresql"):
            if self.dialect == "sqlite":
                from sqlalchemy.dialects.sqlite import insert
            else:
                from sqlalchemy.dialects.postgresql import insert
            stmt = insert(table).values(**values).on_conflict_do_nothing(index_elements=conflict_cols)
            return session.execute(stmt).rowcount == 1
        try:
            with session.begin_nested():
                session.execute(table.insert().values(**values))
            return True
        except IntegrityError:
            return False

    def dispose(self) -> None:
        self.engine.dispose()
