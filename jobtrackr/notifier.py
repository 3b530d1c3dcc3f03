"""Notification gateway: templated e-mail over SMTP or the Resend HTTP API.

``send`` never raises. Delivery problems are logged and reported as False so
the reminder sweep can skip the item and carry on.
"""
from __future__ import annotations

import html
import re
import smtplib
from datetime import date, datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import parseaddr
from typing import Any, Protocol

import requests

from jobtrackr.config import Settings
from jobtrackr.errors import TransientError, ValidationError
from jobtrackr.log import get_logger
from jobtrackr.retry import retry

log = get_logger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


class Notifier(Protocol):
    def send(self, to_email: str, subject: str, body_template: str,
             template_data: dict[str, Any]) -> bool:
        ...


# ── Templates ────────────────────────────────────────────────────────────

REMINDER_SUBJECT = "Reminder: follow up on your {company_name} application tomorrow"

REMINDER_TEMPLATE = """# Application reminder

Hi,

It's time to follow up on your **{position}** application at **{company_name}**.

**Don't forget to follow up tomorrow!**
Reminder date: {reminder_date_long}

You can contact the company or check the status of your application.
Good luck!

[View my applications]({frontend_url}/applications)

---
_This e-mail was sent automatically by JobTrackr. Reminders are checked every day at {reminder_hour}:00._"""


class _SafeDict(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render(template: str, data: dict[str, Any]) -> str:
    """Fill ``{name}`` placeholders; unknown placeholders are left as-is."""
    return template.format_map(_SafeDict(data))


def render_html(template: str, data: dict[str, Any]) -> str:
    """HTML body: values are escaped before the template markup is converted."""
    return to_html(render(template, {k: html.escape(str(v)) for k, v in data.items()}))


def _inline(text: str) -> str:
    text = re.sub(r"\*\*(.+?)\*\*", r"<strong>\1</strong>", text)
    text = re.sub(r"_(.+?)_", r"<em>\1</em>", text)
    text = re.sub(r"\[([^\]]+)\]\(([^)]+)\)", r'<a href="\2" style="color:#2563eb">\1</a>', text)
    return text


def to_html(body: str) -> str:
    """Small markdown subset (headings, rules, bold/italic, links) to HTML."""
    parts: list[str] = []
    for line in body.split("\n"):
        stripped = line.strip()
        if not stripped:
            continue
        if stripped.startswith("# "):
            parts.append(f'<h1 style="color:#1f2937;margin:0 0 16px">{_inline(stripped[2:])}</h1>')
        elif stripped == "---":
            parts.append('<hr style="border:none;border-top:1px solid #e5e7eb;margin:24px 0">')
        else:
            parts.append(f'<p style="color:#4b5563;font-size:15px;line-height:1.5;margin:6px 0">{_inline(stripped)}</p>')
    return (
        '<div style="font-family:Arial,sans-serif;max-width:600px;margin:0 auto;padding:20px">\n'
        + "\n".join(parts)
        + "\n</div>"
    )


def reminder_message(company_name: str, position: str, reminder_date: date,
                     frontend_url: str, reminder_hour: int) -> tuple[str, str, dict[str, Any]]:
    """Subject, body template and template data for a follow-up reminder."""
    data = {
        "company_name": company_name,
        "position": position,
        "reminder_date": reminder_date.isoformat(),
        "reminder_date_long": reminder_date.strftime("%A, %d %B %Y"),
        "frontend_url": frontend_url.rstrip("/"),
        "reminder_hour": f"{reminder_hour:02d}",
    }
    return render(REMINDER_SUBJECT, data), REMINDER_TEMPLATE, data


# ── Transports ───────────────────────────────────────────────────────────

class NullNotifier:
    """Used when no transport is configured; nothing is delivered."""

    def send(self, to_email: str, subject: str, body_template: str,
             template_data: dict[str, Any]) -> bool:
        log.warning("E-mail not configured (set RESEND_API_KEY or SMTP_*) — not sending %r to %s",
                    subject, to_email)
        return False


class SmtpNotifier:
    def __init__(self, host: str, port: int, user: str, password: str, from_addr: str,
                 timeout: float = 15.0):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_addr = from_addr
        self.timeout = timeout

    @retry(max_attempts=3, base_delay=3.0, retryable=(smtplib.SMTPException, OSError),
           give_up=lambda exc: isinstance(exc, smtplib.SMTPAuthenticationError))
    def _smtp_send(self, to_addr: str, msg: MIMEMultipart) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            server.starttls()
            server.login(self.user, self.password)
            server.sendmail(parseaddr(self.from_addr)[1] or self.from_addr, [to_addr], msg.as_string())

    def send(self, to_email: str, subject: str, body_template: str,
             template_data: dict[str, Any]) -> bool:
        body = render(body_template, template_data)
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.from_addr
        msg["To"] = to_email
        msg.attach(MIMEText(body, "plain", "utf-8"))
        msg.attach(MIMEText(render_html(body_template, template_data), "html", "utf-8"))
        try:
            self._smtp_send(to_email, msg)
        except Exception as exc:
            log.error("E-mail to %s failed: %s", to_email, exc)
            return False
        log.info("E-mail sent to %s: %s", to_email, subject)
        return True


def _is_client_error(exc: BaseException) -> bool:
    response = getattr(exc, "response", None)
    return response is not None and 400 <= response.status_code < 500 and response.status_code != 429


class ResendNotifier:
    def __init__(self, api_key: str, from_addr: str, timeout: float = 15.0,
                 session: requests.Session | None = None):
        self.from_addr = from_addr
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({"Authorization": f"Bearer {api_key}"})

    @retry(max_attempts=3, base_delay=2.0, retryable=(requests.RequestException,),
           give_up=_is_client_error)
    def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        r = self._session.post(RESEND_API_URL, json=payload, timeout=self.timeout)
        r.raise_for_status()
        return r.json() if r.content else {}

    def send(self, to_email: str, subject: str, body_template: str,
             template_data: dict[str, Any]) -> bool:
        body = render(body_template, template_data)
        payload = {
            "from": self.from_addr,
            "to": [to_email],
            "subject": subject,
            "html": render_html(body_template, template_data),
            "text": body,
        }
        try:
            data = self._post(payload)
        except Exception as exc:
            log.error("E-mail to %s failed: %s", to_email, exc)
            return False
        log.info("E-mail sent to %s: %s (id=%s)", to_email, subject, data.get("id", "?"))
        return True


def build_notifier(settings: Settings) -> Notifier:
    if settings.resend_api_key:
        log.info("E-mail transport: Resend")
        return ResendNotifier(settings.resend_api_key, settings.email_from, settings.email_timeout)
    if settings.smtp_host and settings.smtp_user and settings.smtp_password:
        log.info("E-mail transport: SMTP %s:%d", settings.smtp_host, settings.smtp_port)
        return SmtpNotifier(
            settings.smtp_host, settings.smtp_port, settings.smtp_user,
            settings.smtp_password, settings.email_from, settings.email_timeout,
        )
    return NullNotifier()


def make_email_handler(notifier: Notifier):
    """Worker handler for queued ``email`` tasks.

    Payload: ``{to, subject, body_template, template_data?, type?}``.
    """

    def handle(task, progress) -> dict[str, Any]:
        p = task.payload
        to = (p.get("to") or "").strip()
        if not to or "@" not in to:
            raise ValidationError(f"Invalid recipient: {to!r}")
        progress(50)
        subject = render(p.get("subject", ""), p.get("template_data") or {})
        if not notifier.send(to, subject, p.get("body_template", ""), p.get("template_data") or {}):
            raise TransientError(f"E-mail delivery to {to} failed")
        return {
            "sent": True,
            "to": to,
            "subject": subject,
            "type": p.get("type", "notification"),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return handle
