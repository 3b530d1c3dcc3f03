"""Error taxonomy for the background core.

Every error carries a stable ``code`` (mirrors the API's error envelope) and a
``retryable`` flag. Workers record ``failure_reason(exc)`` on failed tasks, so
the wording here is what clients see when they poll.
"""
from __future__ import annotations


class JobTrackrError(Exception):
    code = "SERVER_ERROR"
    retryable = False


class ValidationError(JobTrackrError):
    """Bad input or a malformed AI response. Never retried."""

    code = "VALIDATION_ERROR"


class AccessDeniedError(JobTrackrError):
    code = "FORBIDDEN"


class NotFoundError(JobTrackrError):
    code = "NOT_FOUND"


class TaskStateError(JobTrackrError):
    """Operation not allowed in the task's current state."""

    code = "INVALID_STATE"


class ConfigurationError(JobTrackrError):
    """A collaborator (AI key, e-mail transport) is not configured."""

    code = "NOT_CONFIGURED"


class TransientError(JobTrackrError):
    """Network failure, timeout or rate limit. Safe to resubmit later."""

    code = "TRANSIENT"
    retryable = True


class FatalError(JobTrackrError):
    """The persistence layer is unreachable."""

    code = "PERSISTENCE_ERROR"


class QueueUnavailableError(FatalError):
    """Task was not queued; the caller may fall back to running it inline."""

    code = "SERVICE_UNAVAILABLE"


def failure_reason(exc: BaseException) -> str:
    """Human-readable reason stored on a failed task."""
    message = str(exc).strip() or exc.__class__.__name__
    if isinstance(exc, TransientError):
        return f"{message} (temporary failure, please try again later)"
    if isinstance(exc, JobTrackrError):
        return message
    return f"Unexpected error: {exc.__class__.__name__}: {message}"[:500]
