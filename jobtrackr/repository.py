"""Persistence gateway: reads applications and CV files, writes analyses and reminder markers."""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from jobtrackr.db import (
    Application,
    ApplicationAnalysis,
    CVAnalysis,
    CVFile,
    Database,
    ReminderSent,
    SweepLock,
    User,
    new_id,
    utcnow,
)
from jobtrackr.log import get_logger
from jobtrackr.models import AnalysisResult, FitScoreResult, ReminderRecord

log = get_logger(__name__)


def hash_job_description(job_description: str) -> str:
    return hashlib.sha256(job_description.strip().lower().encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CVFileInfo:
    id: str
    user_id: str
    file_name: str
    storage_path: str
    mime_type: str


@dataclass(frozen=True)
class ApplicationInfo:
    id: str
    user_id: str
    company_name: str
    position: str
    job_description: str | None
    reminder_date: date | None


class Repository:
    def __init__(self, db: Database):
        self.db = db

    # ── Reminders ────────────────────────────────────────────────────────

    def due_reminders(self, reminder_date: date) -> list[ReminderRecord]:
        """Applications due on *reminder_date* that have no sent marker yet."""
        with self.db.session_scope() as s:
            rows = (
                s.query(Application, User.email)
                .join(User, Application.user_id == User.id)
                .outerjoin(ReminderSent, ReminderSent.application_id == Application.id)
                .filter(Application.reminder_date.isnot(None))
                .filter(Application.reminder_date == reminder_date)
                .filter(ReminderSent.id.is_(None))
                .order_by(Application.reminder_date.asc())
                .all()
            )
            return [
                ReminderRecord(
                    application_id=app.id,
                    user_id=app.user_id,
                    owner_email=email,
                    company_name=app.company_name,
                    position=app.position,
                    reminder_date=app.reminder_date,
                )
                for app, email in rows
            ]

    def mark_reminder_sent(self, application_id: str, sent_at: datetime | None = None) -> bool:
        """Insert-if-absent. Returns False when a marker already existed."""
        with self.db.session_scope() as s:
            written = self.db.insert_ignore(
                s,
                ReminderSent,
                {"id": new_id(), "application_id": application_id, "sent_at": sent_at or utcnow()},
                ["application_id"],
            )
        if not written:
            log.debug("Reminder marker for %s already present", application_id)
        return written

    def reminder_status(self, application_id: str) -> dict[str, Any]:
        with self.db.session_scope() as s:
            marker = s.query(ReminderSent).filter_by(application_id=application_id).first()
            if marker is None:
                return {"sent": False}
            return {"sent": True, "sent_at": marker.sent_at}

    def acquire_sweep_lock(
        self, name: str, holder: str, ttl_seconds: float, now: datetime | None = None
    ) -> bool:
        """Take the named lease if it is free or expired. Shared by every process on the database."""
        now = now or utcnow()
        with self.db.session_scope() as s:
            self.db.insert_ignore(s, SweepLock, {"name": name, "holder": None, "expires_at": None}, ["name"])
            taken = (
                s.query(SweepLock)
                .filter(SweepLock.name == name)
                .filter(or_(SweepLock.holder.is_(None), SweepLock.expires_at < now))
                .update(
                    {SweepLock.holder: holder, SweepLock.expires_at: now + timedelta(seconds=ttl_seconds)},
                    synchronize_session=False,
                )
            )
        return taken == 1

    def release_sweep_lock(self, name: str, holder: str) -> None:
        with self.db.session_scope() as s:
            s.query(SweepLock).filter_by(name=name, holder=holder).update(
                {SweepLock.holder: None, SweepLock.expires_at: None}, synchronize_session=False
            )

    # ── CV files and applications ────────────────────────────────────────

    def get_cv_file(self, cv_file_id: str) -> CVFileInfo | None:
        with self.db.session_scope() as s:
            row = s.get(CVFile, cv_file_id)
            if row is None:
                return None
            return CVFileInfo(row.id, row.user_id, row.file_name, row.storage_path, row.mime_type)

    def get_application(self, application_id: str, user_id: str) -> ApplicationInfo | None:
        with self.db.session_scope() as s:
            row = s.query(Application).filter_by(id=application_id, user_id=user_id).first()
            if row is None:
                return None
            return ApplicationInfo(
                row.id, row.user_id, row.company_name, row.position,
                row.job_description, row.reminder_date,
            )

    # ── Analyses ─────────────────────────────────────────────────────────

    def save_cv_analysis(
        self,
        *,
        user_id: str,
        cv_file_id: str,
        job_description: str,
        job_url: str | None,
        result: AnalysisResult,
        ai_response: dict[str, Any] | None = None,
        task_id: str | None = None,
    ) -> AnalysisResult:
        """Insert a history row. With *task_id*, a repeat returns the row already written."""
        values = dict(
            id=new_id(),
            user_id=user_id,
            cv_file_id=cv_file_id,
            task_id=task_id,
            job_description=job_description.strip(),
            job_url=(job_url or "").strip() or None,
            match_score=result.match_score,
            missing_skills=list(result.missing_skills),
            recommendations=list(result.recommendations),
            ai_response=ai_response,
            created_at=utcnow(),
        )
        with self.db.session_scope() as s:
            if task_id is None:
                s.add(CVAnalysis(**values))
                return _analysis_from_values(values)
            if self.db.insert_ignore(s, CVAnalysis, values, ["task_id"]):
                return _analysis_from_values(values)
            row = s.query(CVAnalysis).filter_by(task_id=task_id).one()
            log.info("Task %s already recorded analysis %s — keeping it", task_id, row.id)
            return AnalysisResult(row.match_score, list(row.missing_skills), list(row.recommendations), row.id)

    def list_cv_analyses(self, user_id: str, limit: int = 50) -> list[AnalysisResult]:
        with self.db.session_scope() as s:
            rows = (
                s.query(CVAnalysis)
                .filter_by(user_id=user_id)
                .order_by(CVAnalysis.created_at.desc())
                .limit(limit)
                .all()
            )
            return [
                AnalysisResult(r.match_score, list(r.missing_skills), list(r.recommendations), r.id)
                for r in rows
            ]

    def find_fit_analysis(self, application_id: str, job_description: str) -> FitScoreResult | None:
        digest = hash_job_description(job_description)
        with self.db.session_scope() as s:
            row = (
                s.query(ApplicationAnalysis)
                .filter_by(application_id=application_id, job_description_hash=digest)
                .first()
            )
            return _fit_from_row(row, cached=True) if row is not None else None

    def save_fit_analysis(
        self,
        *,
        application_id: str,
        cv_file_id: str,
        job_description: str,
        fit_score: int,
        strengths: list[dict[str, str]],
        gaps: list[dict[str, str]],
        suggestions: list[str],
        ai_raw_response: dict[str, Any] | None = None,
    ) -> FitScoreResult:
        """Upsert on (application_id, job_description_hash)."""
        fields = dict(
            application_id=application_id,
            cv_file_id=cv_file_id,
            digest=hash_job_description(job_description),
            fit_score=fit_score,
            strengths=strengths,
            gaps=gaps,
            suggestions=suggestions,
            ai_raw_response=ai_raw_response,
        )
        try:
            return self._upsert_fit_analysis(**fields)
        except IntegrityError:
            # Lost an insert race with another worker; the row exists now.
            log.debug("Fit analysis for %s inserted concurrently — updating", application_id)
            return self._upsert_fit_analysis(**fields)

    def _upsert_fit_analysis(
        self,
        *,
        application_id: str,
        cv_file_id: str,
        digest: str,
        fit_score: int,
        strengths: list[dict[str, str]],
        gaps: list[dict[str, str]],
        suggestions: list[str],
        ai_raw_response: dict[str, Any] | None,
    ) -> FitScoreResult:
        with self.db.session_scope() as s:
            row = (
                s.query(ApplicationAnalysis)
                .filter_by(application_id=application_id, job_description_hash=digest)
                .with_for_update()
                .first()
            )
            if row is None:
                row = ApplicationAnalysis(
                    id=new_id(),
                    application_id=application_id,
                    job_description_hash=digest,
                )
                s.add(row)
            row.cv_file_id = cv_file_id
            row.fit_score = fit_score
            row.strengths = strengths
            row.gaps = gaps
            row.suggestions = suggestions
            row.ai_raw_response = ai_raw_response
            row.updated_at = utcnow()
            s.flush()
            return _fit_from_row(row, cached=False)


def _analysis_from_values(values: dict[str, Any]) -> AnalysisResult:
    return AnalysisResult(
        match_score=values["match_score"],
        missing_skills=list(values["missing_skills"]),
        recommendations=list(values["recommendations"]),
        analysis_id=values["id"],
    )


def _fit_from_row(row: ApplicationAnalysis, cached: bool) -> FitScoreResult:
    return FitScoreResult(
        application_id=row.application_id,
        fit_score=row.fit_score,
        strengths=list(row.strengths or []),
        gaps=list(row.gaps or []),
        suggestions=list(row.suggestions or []),
        job_description_hash=row.job_description_hash,
        analysis_id=row.id,
        cached=cached,
    )
