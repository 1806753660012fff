"""LLM Provider Interface and Implementations - Strategy pattern for swappable streaming LLM APIs."""

import os
import time
import json
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional
from enum import Enum

import aiohttp

from exceptions import GenerationError, CircuitBreakerOpenError

logger = logging.getLogger(__name__)


class CircuitBreakerState(Enum):
    """Circuit breaker state machine."""
    CLOSED = "closed"          # Normal operation
    OPEN = "open"              # Failing - reject all requests
    HALF_OPEN = "half_open"    # Cooldown over - calls pass until one succeeds or fails


class CircuitBreaker:
    """
    Simple circuit breaker for streaming LLM calls.

    A stream has no single awaitable to wrap, so callers report the outcome:
    before_call() at start, record_success() when the stream finishes,
    record_failure() when it raises.
    """

    def __init__(self, failure_threshold: int = 5, cooldown_sec: int = 60):
        """Initialize circuit breaker."""
        self.failure_threshold = failure_threshold
        self.cooldown_sec = cooldown_sec
        self.state = CircuitBreakerState.CLOSED
        self.failure_count = 0
        self.last_failure_time = None

    def before_call(self) -> None:
        """Raise CircuitBreakerOpenError if calls are currently rejected."""
        if self.state == CircuitBreakerState.OPEN:
            if self.last_failure_time and time.time() - self.last_failure_time > self.cooldown_sec:
                self.state = CircuitBreakerState.HALF_OPEN
                logger.info("Circuit breaker: HALF_OPEN - attempting recovery")
            else:
                raise CircuitBreakerOpenError("Circuit breaker OPEN - LLM API unavailable")

    def record_success(self) -> None:
        if self.state == CircuitBreakerState.HALF_OPEN:
            logger.info("Circuit breaker: CLOSED - recovered")
        self.state = CircuitBreakerState.CLOSED
        self.failure_count = 0

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.time()

        if self.state == CircuitBreakerState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            self.state = CircuitBreakerState.OPEN
            logger.error(f"Circuit breaker: OPEN - {self.failure_count} consecutive failures")


class LLMProvider(ABC):
    """Abstract base class for streaming LLM providers."""

    @abstractmethod
    def stream(self, prompt: str) -> AsyncIterator[str]:
        """Yield response text chunks for a prompt. Raises GenerationError on failure."""
        pass


def parse_sse_line(line: str) -> Optional[str]:
    """
    Extract the text delta from one server-sent-event line.

    Returns:
        The chunk text, "" for lines that carry no text (comments, role
        deltas, keep-alives), or None for the terminal "data: [DONE]".

    Raises:
        GenerationError: the data payload is not valid JSON.
    """
    line = line.strip()
    if not line.startswith("data:"):
        return ""

    data = line[len("data:"):].strip()
    if data == "[DONE]":
        return None

    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        raise GenerationError(f"Invalid stream payload: {data[:80]}") from e

    if "error" in payload:
        raise GenerationError(f"LLM stream error: {payload['error']}")

    choices = payload.get("choices") or []
    if not choices:
        return ""
    return (choices[0].get("delta") or {}).get("content") or ""


class GroqProvider(LLMProvider):
    """Groq API Provider - streaming chat completions over server-sent events."""

    GROQ_API_URL = "https://api.groq.com/openai/v1/chat/completions"
    DEFAULT_MODEL = "llama-3.1-8b-instant"
    MAX_RETRIES = 3
    INITIAL_BACKOFF_SEC = 1.0
    CONNECT_TIMEOUT_SEC = 10.0
    SOCK_READ_TIMEOUT_SEC = 30.0

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1024,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        """Initialize Groq provider with API key from environment and circuit breaker."""
        self.api_key = api_key or os.getenv("GROQ_API_KEY")
        if not self.api_key:
            logger.warning("GROQ_API_KEY not set. Get key from https://console.groq.com")

        self.model = model or os.getenv("GROQ_MODEL") or self.DEFAULT_MODEL
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.session: Optional[aiohttp.ClientSession] = None
        self.circuit_breaker = circuit_breaker or CircuitBreaker(failure_threshold=5, cooldown_sec=60)
        logger.info(f"GroqProvider initialized (model={self.model})")

    async def connect(self):
        """Create aiohttp session for connection pooling."""
        if self.session is None:
            # No total timeout: a long answer may stream for a while.
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(
                    total=None, connect=self.CONNECT_TIMEOUT_SEC, sock_read=self.SOCK_READ_TIMEOUT_SEC
                )
            )
            logger.info("Groq connection pool created")

    async def disconnect(self):
        """Close aiohttp session."""
        if self.session:
            await self.session.close()
            self.session = None
            logger.info("Groq connection pool closed")

    async def stream(self, prompt: str) -> AsyncIterator[str]:
        """Stream a completion, guarded by the circuit breaker."""
        if not self.api_key:
            raise GenerationError("GROQ_API_KEY not set. export GROQ_API_KEY=your_key")

        if self.session is None:
            await self.connect()

        self.circuit_breaker.before_call()

        start_time = time.perf_counter()
        chunks = 0
        try:
            response = await self._open_stream_with_retries(prompt)
            async with response:
                async for raw_line in response.content:
                    text = parse_sse_line(raw_line.decode("utf-8"))
                    if text is None:
                        break
                    if text:
                        chunks += 1
                        yield text
        except GenerationError:
            self.circuit_breaker.record_failure()
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.circuit_breaker.record_failure()
            logger.error(f"Stream interrupted after {chunks} chunks: {type(e).__name__}: {e}")
            raise GenerationError(f"LLM stream interrupted: {e}") from e

        self.circuit_breaker.record_success()
        latency_ms = (time.perf_counter() - start_time) * 1000
        logger.info(f"Groq stream complete | model={self.model} | chunks={chunks} | latency={latency_ms:.1f}ms")

    async def _open_stream_with_retries(self, prompt: str) -> aiohttp.ClientResponse:
        """Open the streaming response, retrying connection errors and timeouts with exponential backoff."""
        backoff_sec = self.INITIAL_BACKOFF_SEC

        for attempt in range(self.MAX_RETRIES):
            try:
                return await self._open_stream(prompt)

            except aiohttp.ClientSSLError as e:
                logger.error(f"SSL error: {e}")
                # SSL errors are not retryable - fail immediately
                raise GenerationError(f"SSL error connecting to LLM API: {e}") from e

            except (aiohttp.ClientConnectorError, asyncio.TimeoutError) as e:
                logger.error(f"{type(e).__name__} (attempt {attempt+1}/{self.MAX_RETRIES}): {e}")
                if attempt < self.MAX_RETRIES - 1:
                    await asyncio.sleep(backoff_sec)
                    backoff_sec *= 2
                else:
                    raise GenerationError(f"LLM API unreachable after {self.MAX_RETRIES} attempts: {e}") from e

        raise GenerationError("Max retries exceeded")

    async def _open_stream(self, prompt: str) -> aiohttp.ClientResponse:
        """POST the streaming request and check the status before any body is read."""
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": True,
        }

        response = await self.session.post(self.GROQ_API_URL, json=payload, headers=headers)
        if response.status == 200:
            return response

        error_text = await response.text()
        response.release()
        if response.status == 401:
            raise GenerationError("Invalid API key (401)")
        if response.status == 429:
            raise GenerationError("Rate limited by LLM API (429)")
        raise GenerationError(f"HTTP {response.status}: {error_text[:200]}")
