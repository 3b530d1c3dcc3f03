"""Load worker and reminder settings from YAML and the environment."""
from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from jobtrackr.log import get_logger

log = get_logger(__name__)

load_dotenv()

PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent
CONFIG_DIR: Path = PROJECT_ROOT / "config"
SETTINGS_PATH: Path = CONFIG_DIR / "settings.yaml"
DATA_DIR: Path = PROJECT_ROOT / "data"
UPLOAD_DIR: Path = DATA_DIR / "uploads"

GROQ_BASE_URL = "https://api.groq.com/openai/v1"


@dataclass(frozen=True)
class Settings:
    database_url: str = f"sqlite:///{DATA_DIR / 'jobtrackr.db'}"
    queue_enabled: bool = True

    # Worker pool
    analysis_concurrency: int = 2
    email_concurrency: int = 5
    poll_interval: float = 1.0
    visibility_timeout: float = 300.0
    drain_timeout: float = 30.0
    completed_retention_hours: float = 24.0
    failed_retention_hours: float = 24.0 * 7

    # AI service (OpenAI-compatible)
    groq_api_key: str = ""
    ai_base_url: str = GROQ_BASE_URL
    ai_model: str = "llama-3.3-70b-versatile"
    ai_timeout: float = 60.0

    # E-mail
    resend_api_key: str = ""
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    email_from: str = "JobTrackr <onboarding@resend.dev>"
    email_timeout: float = 15.0
    frontend_url: str = "http://localhost:5173"

    # Reminder sweep
    reminder_timezone: str = "Europe/Istanbul"
    reminder_hour: int = 18
    reminder_workers: int = 1

    @property
    def ai_configured(self) -> bool:
        return bool(self.groq_api_key)


# Environment variable -> Settings field
_ENV_KEYS: dict[str, str] = {
    "DATABASE_URL": "database_url",
    "QUEUE_ENABLED": "queue_enabled",
    "ANALYSIS_CONCURRENCY": "analysis_concurrency",
    "EMAIL_CONCURRENCY": "email_concurrency",
    "QUEUE_POLL_INTERVAL": "poll_interval",
    "QUEUE_VISIBILITY_TIMEOUT": "visibility_timeout",
    "WORKER_DRAIN_TIMEOUT": "drain_timeout",
    "COMPLETED_RETENTION_HOURS": "completed_retention_hours",
    "FAILED_RETENTION_HOURS": "failed_retention_hours",
    "GROQ_API_KEY": "groq_api_key",
    "AI_BASE_URL": "ai_base_url",
    "GROQ_LLM_MODEL": "ai_model",
    "AI_TIMEOUT_SECONDS": "ai_timeout",
    "RESEND_API_KEY": "resend_api_key",
    "SMTP_HOST": "smtp_host",
    "SMTP_PORT": "smtp_port",
    "SMTP_USER": "smtp_user",
    "SMTP_PASSWORD": "smtp_password",
    "FROM_EMAIL": "email_from",
    "EMAIL_TIMEOUT_SECONDS": "email_timeout",
    "FRONTEND_URL": "frontend_url",
    "REMINDER_TIMEZONE": "reminder_timezone",
    "REMINDER_HOUR": "reminder_hour",
    "REMINDER_WORKERS": "reminder_workers",
}


def ensure_dirs() -> None:
    for d in (DATA_DIR, UPLOAD_DIR, CONFIG_DIR):
        d.mkdir(parents=True, exist_ok=True)


def _coerce(name: str, raw: Any) -> Any:
    """Convert a YAML or env value to the type of the Settings field."""
    default = getattr(Settings, name)
    if isinstance(default, bool):
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return str(raw).strip()


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        log.warning("Ignoring %s: expected a mapping at top level", path.name)
        return {}
    return data


def load_settings(path: Path | None = None, environ: dict[str, str] | None = None) -> Settings:
    """Build Settings from defaults, then the YAML file, then the environment."""
    env = os.environ if environ is None else environ
    known = {f.name for f in fields(Settings)}
    values: dict[str, Any] = {}

    for key, raw in _read_yaml(path or SETTINGS_PATH).items():
        if key not in known:
            log.warning("Unknown setting %r in YAML — ignored", key)
            continue
        values[key] = _coerce(key, raw)

    for env_key, name in _ENV_KEYS.items():
        raw = env.get(env_key, "").strip()
        if not raw:
            continue
        try:
            values[name] = _coerce(name, raw)
        except ValueError:
            log.warning("Invalid value for %s=%r — keeping %r", env_key, raw, values.get(name, getattr(Settings, name)))

    # Backward compat: SMTP_USER doubles as the sender when FROM_EMAIL is unset
    if "email_from" not in values and values.get("smtp_user") and not values.get("resend_api_key"):
        values["email_from"] = values["smtp_user"]

    settings = Settings(**values)
    if not 0 <= settings.reminder_hour <= 23:
        log.warning("REMINDER_HOUR=%d out of range — using 18", settings.reminder_hour)
        settings = Settings(**{**values, "reminder_hour": 18})
    return settings
