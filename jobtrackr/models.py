"""Data models for tasks, analysis results and reminders."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any


class TaskState(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (TaskState.COMPLETED, TaskState.FAILED)


class TaskKind(str, Enum):
    ANALYSIS = "analysis"
    FIT_SCORE = "fit_score"
    EMAIL = "email"


@dataclass
class Task:
    id: str
    kind: str
    payload: dict[str, Any]
    state: TaskState
    progress: int = 0
    result: dict[str, Any] | None = None
    failure_reason: str | None = None
    attempts: int = 0
    claimed_by: str | None = None
    created_at: datetime | None = None


@dataclass
class TaskStatus:
    task_id: str
    kind: str
    state: TaskState
    progress: int
    result: dict[str, Any] | None = None
    failure_reason: str | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "kind": self.kind,
            "state": self.state.value,
            "progress": self.progress,
            "result": self.result if self.state is TaskState.COMPLETED else None,
            "failure_reason": self.failure_reason if self.state is TaskState.FAILED else None,
        }


@dataclass(frozen=True)
class AnalysisResult:
    match_score: int
    missing_skills: list[str]
    recommendations: list[str]
    analysis_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AnalysisResult":
        return cls(
            match_score=int(data["match_score"]),
            missing_skills=list(data.get("missing_skills", [])),
            recommendations=list(data.get("recommendations", [])),
            analysis_id=data.get("analysis_id"),
        )


@dataclass(frozen=True)
class FitScoreResult:
    application_id: str
    fit_score: int
    strengths: list[dict[str, str]]
    gaps: list[dict[str, str]]
    suggestions: list[str]
    job_description_hash: str
    analysis_id: str | None = None
    cached: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AnalysisRequest:
    cv_file_id: str
    job_description: str
    user_id: str
    job_url: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload = {
            "cv_file_id": self.cv_file_id,
            "job_description": self.job_description.strip(),
            "user_id": self.user_id,
        }
        if self.job_url and self.job_url.strip():
            payload["job_url"] = self.job_url.strip()
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AnalysisRequest":
        return cls(
            cv_file_id=str(payload["cv_file_id"]),
            job_description=str(payload["job_description"]),
            user_id=str(payload["user_id"]),
            job_url=payload.get("job_url"),
        )


@dataclass(frozen=True)
class Submission:
    """Outcome of submitting an analysis: queued task or inline result."""

    queued: bool
    task_id: str | None = None
    result: AnalysisResult | None = None


@dataclass(frozen=True)
class ReminderRecord:
    application_id: str
    user_id: str
    owner_email: str
    company_name: str
    position: str
    reminder_date: date


@dataclass
class SweepReport:
    """Per-run counters for the reminder sweep."""

    due: int = 0
    notified: int = 0
    failed: list[str] = field(default_factory=list)
