"""
Shared fixtures for JobTrackr tests.

Every test gets its own SQLite file under tmp_path, so worker threads see
the same database through separate connections just like in production.
"""
import json
import os
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

os.environ.setdefault("LOG_TO_FILE", "false")

from jobtrackr.db import Application, CVFile, Database, User, new_id
from jobtrackr.repository import Repository
from jobtrackr.task_queue import TaskQueue

JOB_DESCRIPTION = (
    "Senior Python developer to build data pipelines with SQLAlchemy, "
    "PostgreSQL and Docker. Experience with AWS is a plus."
)

CV_TEXT = "Jane Doe. Python developer, 6 years. Built ETL pipelines with SQLAlchemy and PostgreSQL."


class FakeClock:
    """Mutable naive-UTC clock for the task queue."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'jobtrackr_test.db'}")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def repo(db):
    return Repository(db)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(db, clock):
    return TaskQueue(db, visibility_timeout=60, clock=clock)


@pytest.fixture
def make_user(db):
    def _make(email=None):
        user_id = new_id()
        with db.session_scope() as s:
            s.add(User(id=user_id, email=email or f"{user_id[:8]}@example.com"))
        return user_id

    return _make


@pytest.fixture
def make_application(db):
    def _make(user_id, reminder_date=None, company_name="Acme", position="Backend Engineer",
              job_description=JOB_DESCRIPTION):
        app_id = new_id()
        with db.session_scope() as s:
            s.add(Application(
                id=app_id,
                user_id=user_id,
                company_name=company_name,
                position=position,
                job_description=job_description,
                reminder_date=reminder_date,
            ))
        return app_id

    return _make


@pytest.fixture
def make_cv(db):
    def _make(user_id, storage_path="cv.pdf", mime_type="application/pdf"):
        cv_id = new_id()
        with db.session_scope() as s:
            s.add(CVFile(id=cv_id, user_id=user_id, file_name="cv.pdf",
                         storage_path=storage_path, mime_type=mime_type))
        return cv_id

    return _make


@pytest.fixture
def fake_ai():
    ai = MagicMock()
    ai.complete_json.return_value = json.dumps({
        "match_score": 78,
        "missing_skills": ["AWS"],
        "recommendations": ["Mention cloud deployments", "Quantify pipeline throughput"],
    })
    return ai


@pytest.fixture
def cv_loader():
    return MagicMock(return_value=CV_TEXT)


@pytest.fixture
def notifier():
    n = MagicMock()
    n.send.return_value = True
    return n
