"""Tests for the circuit breaker and Groq stream parsing."""

import time

import pytest

from exceptions import CircuitBreakerOpenError, GenerationError
from llm_provider import CircuitBreaker, CircuitBreakerState, GroqProvider, parse_sse_line


# --- circuit breaker -----------------------------------------------------------

def test_breaker_starts_closed():
    cb = CircuitBreaker(failure_threshold=2, cooldown_sec=60)
    assert cb.state == CircuitBreakerState.CLOSED
    assert cb.last_failure_time is None
    cb.before_call()


def test_breaker_opens_after_threshold():
    cb = CircuitBreaker(failure_threshold=2, cooldown_sec=60)

    cb.record_failure()
    assert cb.state == CircuitBreakerState.CLOSED
    cb.record_failure()
    assert cb.state == CircuitBreakerState.OPEN

    with pytest.raises(CircuitBreakerOpenError, match="OPEN"):
        cb.before_call()


def test_breaker_open_error_is_a_generation_error():
    assert issubclass(CircuitBreakerOpenError, GenerationError)


def test_success_resets_failure_count():
    cb = CircuitBreaker(failure_threshold=2, cooldown_sec=60)
    cb.record_failure()
    cb.record_success()
    cb.record_failure()
    assert cb.state == CircuitBreakerState.CLOSED


def test_breaker_recovers_through_half_open():
    cb = CircuitBreaker(failure_threshold=1, cooldown_sec=2)
    cb.record_failure()
    cb.last_failure_time = time.time() - 3

    cb.before_call()
    assert cb.state == CircuitBreakerState.HALF_OPEN

    cb.record_success()
    assert cb.state == CircuitBreakerState.CLOSED
    assert cb.failure_count == 0


def test_failure_while_half_open_reopens():
    cb = CircuitBreaker(failure_threshold=5, cooldown_sec=2)
    for _ in range(5):
        cb.record_failure()
    cb.last_failure_time = time.time() - 3
    cb.before_call()

    cb.record_failure()
    assert cb.state == CircuitBreakerState.OPEN


def test_half_open_passes_calls_until_an_outcome_is_recorded():
    cb = CircuitBreaker(failure_threshold=1, cooldown_sec=2)
    cb.record_failure()
    cb.last_failure_time = time.time() - 3

    cb.before_call()
    cb.before_call()
    assert cb.state == CircuitBreakerState.HALF_OPEN

    cb.record_failure()
    with pytest.raises(CircuitBreakerOpenError):
        cb.before_call()


# --- SSE parsing -----------------------------------------------------------------

def test_parse_content_delta():
    line = 'data: {"choices":[{"index":0,"delta":{"content":"Hel"}}]}'
    assert parse_sse_line(line) == "Hel"


def test_parse_done_marker():
    assert parse_sse_line("data: [DONE]\n") is None


@pytest.mark.parametrize(
    "line",
    [
        "",
        ": keep-alive",
        'data: {"choices":[{"index":0,"delta":{"role":"assistant"}}]}',
        'data: {"choices":[]}',
        'data: {"choices":[{"delta":{"content":null},"finish_reason":"stop"}]}',
    ],
)
def test_parse_lines_without_text(line):
    assert parse_sse_line(line) == ""


def test_parse_invalid_json_raises():
    with pytest.raises(GenerationError):
        parse_sse_line("data: {broken")


def test_parse_error_payload_raises():
    with pytest.raises(GenerationError, match="rate limit"):
        parse_sse_line('data: {"error": {"message": "rate limit"}}')


# --- provider ------------------------------------------------------------------

async def test_missing_api_key_raises_generation_error(monkeypatch):
    monkeypatch.delenv("GROQ_API_KEY", raising=False)
    provider = GroqProvider(api_key=None)

    with pytest.raises(GenerationError, match="GROQ_API_KEY"):
        async for _ in provider.stream("prompt"):
            pass


async def test_open_breaker_rejects_before_network(monkeypatch):
    breaker = CircuitBreaker(failure_threshold=1, cooldown_sec=60)
    breaker.record_failure()
    provider = GroqProvider(api_key="key", circuit_breaker=breaker)

    async def no_network():
        raise AssertionError("session must not be created")

    monkeypatch.setattr(provider, "connect", no_network)
    provider.session = object()

    with pytest.raises(CircuitBreakerOpenError):
        async for _ in provider.stream("prompt"):
            pass


def test_model_from_environment(monkeypatch):
    monkeypatch.setenv("GROQ_MODEL", "llama-3.3-70b-versatile")
    assert GroqProvider(api_key="key").model == "llama-3.3-70b-versatile"
