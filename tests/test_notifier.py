"""Tests for jobtrackr/notifier.py — templates, transports, e-mail tasks."""
import email
import smtplib
from datetime import date
from unittest.mock import MagicMock, patch

import pytest
import requests

from jobtrackr.config import Settings
from jobtrackr.errors import TransientError, ValidationError
from jobtrackr.models import Task, TaskState
from jobtrackr.notifier import (
    RESEND_API_URL,
    NullNotifier,
    ResendNotifier,
    SmtpNotifier,
    build_notifier,
    make_email_handler,
    reminder_message,
    render,
    render_html,
    to_html,
)


def _response(status=200, body=b'{"id": "email_123"}'):
    resp = MagicMock()
    resp.status_code = status
    resp.content = body
    resp.json.return_value = {"id": "email_123"}
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status} error", response=resp)
    return resp


# =========================================================================
# Templates
# =========================================================================

class TestTemplates:
    def test_render_keeps_unknown_placeholders(self):
        assert render("Hi {name}, see {link}", {"name": "Ada"}) == "Hi Ada, see {link}"

    def test_reminder_message(self):
        subject, template, data = reminder_message(
            "Globex", "Data Engineer", date(2026, 3, 11), "https://app.example.com/", 18,
        )
        assert subject == "Reminder: follow up on your Globex application tomorrow"
        body = render(template, data)
        assert "**Data Engineer**" in body
        assert "Wednesday, 11 March 2026" in body
        assert "https://app.example.com/applications" in body
        assert "18:00" in body

    def test_to_html(self):
        html = to_html("# Title\n\n**bold** and [link](https://x.example)\n---")
        assert "<h1" in html and "Title</h1>" in html
        assert "<strong>bold</strong>" in html
        assert 'href="https://x.example"' in html
        assert "<hr" in html

    def test_render_html_escapes_values(self):
        out = render_html("**{company_name}** [open]({url})",
                          {"company_name": "<script>alert(1)</script>", "url": "https://x.example/?a=1&b=\"2\""})
        assert "<script>" not in out
        assert "<strong>&lt;script&gt;alert(1)&lt;/script&gt;</strong>" in out
        assert 'href="https://x.example/?a=1&amp;b=&quot;2&quot;"' in out


# =========================================================================
# Transports
# =========================================================================

class TestNullNotifier:
    def test_never_delivers(self):
        assert NullNotifier().send("a@example.com", "s", "b", {}) is False


class TestResendNotifier:
    def test_success(self):
        session = MagicMock()
        session.headers = {}
        session.post.return_value = _response()
        n = ResendNotifier("re_key", "JobTrackr <noreply@example.com>", session=session)

        assert n.send("a@example.com", "Hello", "Hi **{name}**", {"name": "Ada"}) is True
        assert session.headers["Authorization"] == "Bearer re_key"
        url = session.post.call_args.args[0]
        payload = session.post.call_args.kwargs["json"]
        assert url == RESEND_API_URL
        assert payload["to"] == ["a@example.com"]
        assert payload["text"] == "Hi **Ada**"
        assert "<strong>Ada</strong>" in payload["html"]

    def test_html_part_escapes_template_values(self):
        session = MagicMock()
        session.headers = {}
        session.post.return_value = _response()
        n = ResendNotifier("re_key", "noreply@example.com", session=session)

        assert n.send("a@example.com", "Hello", "Apply at **{company_name}**",
                      {"company_name": "<img src=x onerror=alert(1)>"}) is True
        payload = session.post.call_args.kwargs["json"]
        assert "<img" not in payload["html"]
        assert "&lt;img src=x onerror=alert(1)&gt;" in payload["html"]
        assert payload["text"] == "Apply at **<img src=x onerror=alert(1)>**"

    def test_client_error_not_retried(self):
        session = MagicMock()
        session.headers = {}
        session.post.return_value = _response(422, b"{}")
        n = ResendNotifier("re_key", "noreply@example.com", session=session)

        assert n.send("a@example.com", "Hello", "body", {}) is False
        assert session.post.call_count == 1


class TestSmtpNotifier:
    def test_success(self):
        with patch("jobtrackr.notifier.smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value.__enter__.return_value
            n = SmtpNotifier("smtp.example.com", 587, "user", "pw", "JobTrackr <bot@example.com>")
            assert n.send("a@example.com", "Subject", "Hello {name}", {"name": "Ada"}) is True

        smtp_cls.assert_called_once_with("smtp.example.com", 587, timeout=15.0)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("user", "pw")
        from_addr, to_addrs, message = server.sendmail.call_args.args
        assert from_addr == "bot@example.com"
        assert to_addrs == ["a@example.com"]
        assert "Subject: Subject" in message

    def test_html_part_escapes_template_values(self):
        with patch("jobtrackr.notifier.smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value.__enter__.return_value
            n = SmtpNotifier("smtp.example.com", 587, "user", "pw", "bot@example.com")
            assert n.send("a@example.com", "Subject", "Role: {position}", {"position": "<b>Lead</b>"}) is True

        message = email.message_from_string(server.sendmail.call_args.args[2])
        parts = {p.get_content_type(): p.get_payload(decode=True).decode("utf-8")
                 for p in message.walk() if not p.is_multipart()}
        assert parts["text/plain"] == "Role: <b>Lead</b>"
        assert "&lt;b&gt;Lead&lt;/b&gt;" in parts["text/html"]
        assert "<b>Lead" not in parts["text/html"]

    def test_auth_failure_gives_up(self):
        with patch("jobtrackr.notifier.smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value.__enter__.return_value
            server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
            n = SmtpNotifier("smtp.example.com", 587, "user", "pw", "bot@example.com")
            assert n.send("a@example.com", "Subject", "body", {}) is False
        assert smtp_cls.call_count == 1


class TestBuildNotifier:
    def test_prefers_resend(self):
        s = Settings(resend_api_key="re_key", smtp_host="smtp.example.com", smtp_user="u", smtp_password="p")
        assert isinstance(build_notifier(s), ResendNotifier)

    def test_smtp(self):
        s = Settings(smtp_host="smtp.example.com", smtp_user="u", smtp_password="p")
        assert isinstance(build_notifier(s), SmtpNotifier)

    def test_unconfigured(self):
        assert isinstance(build_notifier(Settings()), NullNotifier)


# =========================================================================
# E-mail tasks
# =========================================================================

def _email_task(**payload):
    return Task(id="t1", kind="email", payload=payload, state=TaskState.ACTIVE)


class TestEmailHandler:
    def test_sends_and_reports(self, notifier):
        progress = MagicMock()
        handler = make_email_handler(notifier)
        out = handler(
            _email_task(to="a@example.com", subject="Hi {name}", body_template="b",
                        template_data={"name": "Ada"}, type="welcome"),
            progress,
        )
        assert out["sent"] is True
        assert out["subject"] == "Hi Ada"
        assert out["type"] == "welcome"
        progress.assert_called_once_with(50)
        notifier.send.assert_called_once_with("a@example.com", "Hi Ada", "b", {"name": "Ada"})

    def test_invalid_recipient(self, notifier):
        with pytest.raises(ValidationError):
            make_email_handler(notifier)(_email_task(to="nobody", subject="s"), MagicMock())
        notifier.send.assert_not_called()

    def test_delivery_failure_is_transient(self, notifier):
        notifier.send.return_value = False
        with pytest.raises(TransientError):
            make_email_handler(notifier)(_email_task(to="a@example.com", subject="s"), MagicMock())
