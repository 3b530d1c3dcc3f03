"""AI CV analysis and application fit-score analysis.

Both analyzers validate input before touching the CV store or the AI
service, make exactly one AI call, and validate the JSON they get back
strictly: a wrong type or an out-of-range score is a ValidationError, never
silently coerced. Transport problems surface as TransientError from the AI
client.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, List

from pydantic import BaseModel, Field, StrictInt, StrictStr
from pydantic import ValidationError as SchemaError

from jobtrackr.ai_client import AIClient
from jobtrackr.config import UPLOAD_DIR
from jobtrackr.cv_text import extract_text
from jobtrackr.errors import AccessDeniedError, NotFoundError, ValidationError
from jobtrackr.log import get_logger
from jobtrackr.models import AnalysisRequest, AnalysisResult, FitScoreResult, Task
from jobtrackr.repository import CVFileInfo, Repository

log = get_logger(__name__)

MIN_JOB_DESCRIPTION_CHARS = 50

ProgressFn = Callable[[int], None]


# ── Response schemas ─────────────────────────────────────────────────────

class CVMatchResponse(BaseModel):
    match_score: StrictInt = Field(ge=0, le=100)
    missing_skills: List[StrictStr]
    recommendations: List[StrictStr]


class Strength(BaseModel):
    point: StrictStr = Field(min_length=1)
    cv_evidence: StrictStr = Field(min_length=1)


class Gap(BaseModel):
    point: StrictStr = Field(min_length=1)
    impact: StrictStr = Field(min_length=1)


class FitScoreResponse(BaseModel):
    fit_score: StrictInt = Field(ge=0, le=100)
    strengths: List[Strength]
    gaps: List[Gap]
    suggestions: List[StrictStr]


def parse_response(raw: str, schema: type[BaseModel]) -> tuple[BaseModel, dict[str, Any]]:
    """Decode and validate an AI JSON reply. Returns (model, raw dict)."""
    try:
        data = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as exc:
        raise ValidationError("AI returned invalid response format: not JSON") from exc
    if not isinstance(data, dict):
        raise ValidationError("AI returned invalid response format: expected a JSON object")
    try:
        return schema.model_validate(data), data
    except SchemaError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        log.warning("AI response failed validation: %s", fields)
        raise ValidationError(f"AI returned invalid response format ({fields})") from exc


def validate_job_description(job_description: str | None) -> str:
    text = (job_description or "").strip()
    if len(text) < MIN_JOB_DESCRIPTION_CHARS:
        raise ValidationError(f"Job description must be at least {MIN_JOB_DESCRIPTION_CHARS} characters")
    return text


def load_cv_text(cv: CVFileInfo) -> str:
    path = Path(cv.storage_path)
    if not path.is_absolute():
        path = UPLOAD_DIR / path
    return extract_text(path, cv.mime_type)


# ── Prompts ──────────────────────────────────────────────────────────────

CV_SYSTEM_PROMPT = (
    "You are an expert HR recruiter and career advisor. Analyze CVs and job descriptions "
    "to provide accurate matching scores and actionable recommendations."
)

CV_PROMPT_TEMPLATE = """Analyze the following CV against the job description and provide a detailed matching analysis.

CV:
{cv_text}

Job Description:
{job_description}

Provide a JSON response with the following structure:
{{
  "match_score": <integer 0-100>,
  "missing_skills": [<array of skills mentioned in job but not clearly present in CV>],
  "recommendations": [<array of specific, actionable improvement suggestions>]
}}

Guidelines:
- match_score: Calculate based on skills match, experience relevance, and overall fit (0-100)
- missing_skills: List only significant skills/technologies from job description that are clearly absent in CV
- recommendations: Provide 3-5 specific, actionable suggestions to improve the CV for this role

Be objective and constructive. Focus on technical skills, experience, and qualifications."""

FIT_SYSTEM_PROMPT = """You are an expert HR recruiter and career advisor. Analyze CVs against job descriptions to provide accurate fit scores.

RULES:
1. ALWAYS provide cv_evidence with EXACT quotes from the CV (minimum 5 words)
2. If you cannot find evidence in the CV, do not include it in strengths
3. Be honest about gaps
4. Suggestions must be specific and actionable"""

FIT_PROMPT_TEMPLATE = """Analyze this CV against the job description and calculate a fit score.

{language_instruction}

CV:
{cv_text}

---

JOB DESCRIPTION:
{job_description}

---

Provide a JSON response with this EXACT structure:

{{
  "fit_score": <integer 0-100>,
  "strengths": [{{"point": "<specific strength>", "cv_evidence": "<EXACT quote from CV>"}}],
  "gaps": [{{"point": "<missing skill or requirement>", "impact": "<why this matters for the role>"}}],
  "suggestions": ["<specific actionable suggestion to improve CV>"]
}}

SCORING GUIDE:
- 90-100: Exceptional match, all key requirements met with strong evidence
- 75-89: Strong match, most requirements met
- 60-74: Good match, core requirements met but some gaps
- 40-59: Moderate match, significant gaps in key areas
- 0-39: Poor match, major requirements missing

Include 3-5 strengths, 2-4 gaps and 3-5 suggestions. {language_instruction}"""

_LANGUAGE_INSTRUCTIONS: dict[str, str] = {
    "en": "Respond in English.",
    "tr": "Türkçe cevap ver.",
}


# ── Analyzers ────────────────────────────────────────────────────────────

class _CVAccess:
    def __init__(self, repo: Repository, cv_loader: Callable[[CVFileInfo], str]):
        self.repo = repo
        self.cv_loader = cv_loader

    def owned_cv_text(self, cv_file_id: str, user_id: str) -> str:
        cv = self.repo.get_cv_file(cv_file_id)
        if cv is None:
            raise NotFoundError("CV file not found")
        if cv.user_id != user_id:
            raise AccessDeniedError("Unauthorized access to CV file")
        return self.cv_loader(cv)


class CVAnalyzer(_CVAccess):
    """Scores a stored CV against a job description and records the result."""

    def __init__(self, repo: Repository, ai: AIClient,
                 cv_loader: Callable[[CVFileInfo], str] = load_cv_text):
        super().__init__(repo, cv_loader)
        self.ai = ai

    def analyze(
        self,
        cv_file_id: str,
        job_description: str,
        user_id: str,
        job_url: str | None = None,
        progress: ProgressFn | None = None,
        task_id: str | None = None,
    ) -> AnalysisResult:
        job_description = validate_job_description(job_description)
        report = progress or (lambda _pct: None)

        cv_text = self.owned_cv_text(cv_file_id, user_id)
        report(30)

        prompt = CV_PROMPT_TEMPLATE.format(cv_text=cv_text, job_description=job_description)
        raw = self.ai.complete_json(CV_SYSTEM_PROMPT, prompt, temperature=0.3, max_tokens=2000)
        report(80)

        parsed, data = parse_response(raw, CVMatchResponse)
        result = self.repo.save_cv_analysis(
            user_id=user_id,
            cv_file_id=cv_file_id,
            job_description=job_description,
            job_url=job_url,
            result=AnalysisResult(parsed.match_score, list(parsed.missing_skills),
                                  list(parsed.recommendations)),
            ai_response=data,
            task_id=task_id,
        )
        log.info("CV %s scored %d for user %s (analysis %s)",
                 cv_file_id, result.match_score, user_id, result.analysis_id)
        return result

    def analyze_request(self, request: AnalysisRequest, progress: ProgressFn | None = None,
                        task_id: str | None = None) -> AnalysisResult:
        return self.analyze(request.cv_file_id, request.job_description, request.user_id,
                            request.job_url, progress, task_id)

    def run_task(self, task: Task, progress: ProgressFn) -> dict[str, Any]:
        return self.analyze_request(AnalysisRequest.from_payload(task.payload), progress, task.id).to_dict()


class FitScoreAnalyzer(_CVAccess):
    """Fit score for a tracked application, cached per job-description hash."""

    def __init__(self, repo: Repository, ai: AIClient,
                 cv_loader: Callable[[CVFileInfo], str] = load_cv_text):
        super().__init__(repo, cv_loader)
        self.ai = ai

    def analyze(
        self,
        application_id: str,
        cv_file_id: str,
        user_id: str,
        language: str = "en",
        progress: ProgressFn | None = None,
    ) -> FitScoreResult:
        report = progress or (lambda _pct: None)
        application = self.repo.get_application(application_id, user_id)
        if application is None:
            raise NotFoundError("Application not found")
        try:
            job_description = validate_job_description(application.job_description)
        except ValidationError:
            raise ValidationError(
                f"Job description is required and must be at least {MIN_JOB_DESCRIPTION_CHARS} "
                "characters for analysis"
            ) from None

        cached = self.repo.find_fit_analysis(application_id, job_description)
        if cached is not None:
            log.info("Fit score cache hit for application %s", application_id)
            return cached

        cv_text = self.owned_cv_text(cv_file_id, user_id)
        report(30)

        prompt = FIT_PROMPT_TEMPLATE.format(
            language_instruction=_LANGUAGE_INSTRUCTIONS.get(language, _LANGUAGE_INSTRUCTIONS["en"]),
            cv_text=cv_text,
            job_description=job_description,
        )
        raw = self.ai.complete_json(FIT_SYSTEM_PROMPT, prompt, temperature=0.2, max_tokens=3000)
        report(80)

        parsed, data = parse_response(raw, FitScoreResponse)
        result = self.repo.save_fit_analysis(
            application_id=application_id,
            cv_file_id=cv_file_id,
            job_description=job_description,
            fit_score=parsed.fit_score,
            strengths=[s.model_dump() for s in parsed.strengths],
            gaps=[g.model_dump() for g in parsed.gaps],
            suggestions=list(parsed.suggestions),
            ai_raw_response=data,
        )
        log.info("Application %s fit score %d", application_id, result.fit_score)
        return result

    def run_task(self, task: Task, progress: ProgressFn) -> dict[str, Any]:
        p = task.payload
        return self.analyze(
            str(p["application_id"]), str(p["cv_file_id"]), str(p["user_id"]),
            language=p.get("language", "en"), progress=progress,
        ).to_dict()
