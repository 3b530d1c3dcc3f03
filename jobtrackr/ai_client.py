"""Chat-completion clients for the analysis tasks.

The analyzers only see ``AIClient.complete_json``; which implementation they
get is decided once at wiring time (``build_ai_client``).
"""
from __future__ import annotations

from typing import Protocol

from jobtrackr.config import Settings
from jobtrackr.errors import ConfigurationError, TransientError, ValidationError
from jobtrackr.log import get_logger

log = get_logger(__name__)


class AIClient(Protocol):
    def complete_json(self, system: str, prompt: str, *, temperature: float = 0.3,
                      max_tokens: int = 2000) -> str:
        """Return the raw JSON text of a single completion."""
        ...


class UnconfiguredAIClient:
    """Stand-in used when no API key is set; fails like a real call would."""

    def complete_json(self, system: str, prompt: str, *, temperature: float = 0.3,
                      max_tokens: int = 2000) -> str:
        raise ConfigurationError("AI service is not configured. Please set GROQ_API_KEY in environment variables.")


class GroqClient:
    """Groq through its OpenAI-compatible endpoint."""

    def __init__(self, api_key: str, model: str, *, base_url: str, timeout: float = 60.0):
        from openai import OpenAI

        self.model = model
        # Retries are the caller's decision; a failed task is resubmitted, not replayed here.
        self._client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)

    def complete_json(self, system: str, prompt: str, *, temperature: float = 0.3,
                      max_tokens: int = 2000) -> str:
        import openai

        try:
            r = self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                temperature=temperature,
                max_tokens=max_tokens,
                response_format={"type": "json_object"},
            )
        except openai.AuthenticationError as exc:
            raise ConfigurationError("Invalid Groq API key") from exc
        except openai.RateLimitError as exc:
            raise TransientError("AI service rate limit exceeded") from exc
        except (openai.APITimeoutError, openai.APIConnectionError) as exc:
            raise TransientError(f"AI service unreachable: {exc.__class__.__name__}") from exc
        except openai.APIStatusError as exc:
            if exc.status_code >= 500:
                raise TransientError(f"AI service error (HTTP {exc.status_code})") from exc
            raise ValidationError(f"AI service rejected the request (HTTP {exc.status_code})") from exc

        content = (r.choices[0].message.content or "").strip() if r.choices else ""
        if not content:
            raise ValidationError("Empty response from AI")
        return content


def build_ai_client(settings: Settings) -> AIClient:
    if not settings.ai_configured:
        log.warning("GROQ_API_KEY not set — AI analysis tasks will fail until it is configured")
        return UnconfiguredAIClient()
    log.info("AI client: %s via %s", settings.ai_model, settings.ai_base_url)
    return GroqClient(
        settings.groq_api_key,
        settings.ai_model,
        base_url=settings.ai_base_url,
        timeout=settings.ai_timeout,
    )
