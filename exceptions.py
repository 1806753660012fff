"""
Domain exceptions for the Scribe service layer.

The service layer raises these; main.py maps them to HTTP status codes.

    - Service raises domain exceptions
    - API catches and maps to HTTP status codes
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from models import RateLimitDecision


class ScribeError(Exception):
    """Base exception for all Scribe domain errors."""
    pass


class ActionValidationError(ScribeError):
    """
    AI action request is malformed.

    Covers wrong content type, unparsable JSON, empty content, unknown
    action, and `ask` without a question.

    Maps to: 400 Bad Request (plain text body)
    Never retried, never cached.
    """
    pass


class ThrottledError(ScribeError):
    """
    Client exceeded its request quota.

    Maps to: 429 Too Many Requests
    Carries the decision so the API layer can expose limit/remaining/reset.
    """

    def __init__(self, decision: "RateLimitDecision", message: str = "Rate limit exceeded"):
        super().__init__(message)
        self.decision = decision
        self.message = message


class UpstreamLimiterError(ScribeError):
    """
    Shared rate-limit store is unreachable, timed out, or errored.

    Maps to: 503 Service Unavailable (fail closed)
    """
    pass


class GenerationError(ScribeError):
    """
    Generation capability failed before or during streaming.

    Maps to: 502 Bad Gateway when nothing was streamed yet.
    Mid-stream failures abort the response; partial output is never cached.
    """
    pass


class CircuitBreakerOpenError(GenerationError):
    """
    Circuit breaker is open - LLM API is failing repeatedly.

    Maps to: 503 Service Unavailable
    Client should: Retry after the cooldown period.
    """
    pass


class NoteNotFoundError(ScribeError):
    """
    Note does not exist.

    Maps to: 404 Not Found
    """
    pass
