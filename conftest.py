"""Shared fixtures: fake clock, fakeredis-backed limiter, stub LLM provider, HTTP client."""

import os

import pytest
from fakeredis import aioredis as fake_aioredis
from httpx import ASGITransport, AsyncClient

os.environ.setdefault("GROQ_API_KEY", "test-key")

from cache import BoundedTTLCache
from exceptions import GenerationError
from llm_provider import LLMProvider
from memoizer import ResponseMemoizer
from models import RateLimitDecision
from note_service import InMemoryNoteRepository, NoteService
from pipeline import ActionPipeline
from rate_limiter import FixedWindowRateLimiter, RateLimitGate

# Exactly on a 300s window boundary.
WINDOW_START = 1_200_000.0


class FakeClock:
    """Manually advanced clock, usable as both monotonic and wall clock."""

    def __init__(self, start: float = WINDOW_START):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubProvider(LLMProvider):
    """
    Canned streaming provider.

    fail_after=N yields the first N chunks, then raises GenerationError.
    """

    def __init__(self, chunks=("A fox ", "runs."), fail_after=None):
        self.chunks = list(chunks)
        self.fail_after = fail_after
        self.calls = 0
        self.prompts: list[str] = []
        self.closed = 0

    def stream(self, prompt: str):
        self.calls += 1
        self.prompts.append(prompt)
        return self._chunks()

    async def _chunks(self):
        try:
            if self.fail_after is None:
                for chunk in self.chunks:
                    yield chunk
                return
            for chunk in self.chunks[:self.fail_after]:
                yield chunk
            raise GenerationError("model went away")
        finally:
            self.closed += 1


class CountingLimiter:
    """Upstream limiter stand-in that returns a fixed decision and counts calls."""

    def __init__(self, allowed: bool = True, limit: int = 15, window_seconds: int = 300):
        self.window_seconds = window_seconds
        self.calls = 0
        self.allowed = allowed
        self.limit_value = limit

    async def limit(self, client_id: str) -> RateLimitDecision:
        self.calls += 1
        return RateLimitDecision(
            allowed=self.allowed,
            limit=self.limit_value,
            remaining=max(0, self.limit_value - self.calls) if self.allowed else 0,
            reset_at=int(WINDOW_START) + self.window_seconds,
        )

    async def disconnect(self) -> None:
        pass


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def redis_client():
    client = fake_aioredis.FakeRedis(decode_responses=True)
    await client.flushall()
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def limiter(redis_client, clock) -> FixedWindowRateLimiter:
    return FixedWindowRateLimiter(redis_client=redis_client, max_requests=15, window_seconds=300, clock=clock)


@pytest.fixture
def gate(limiter, clock) -> RateLimitGate:
    decisions = BoundedTTLCache(max_entries=100, default_ttl=60, clock=clock)
    return RateLimitGate(upstream=limiter, decisions=decisions, local_ttl_seconds=60)


@pytest.fixture
def provider() -> StubProvider:
    return StubProvider()


@pytest.fixture
def memoizer(clock) -> ResponseMemoizer:
    return ResponseMemoizer(BoundedTTLCache(max_entries=1000, default_ttl=3600, clock=clock))


@pytest.fixture
def pipeline(gate, memoizer, provider) -> ActionPipeline:
    return ActionPipeline(gate=gate, memoizer=memoizer, llm_provider=provider)


@pytest.fixture
def note_service() -> NoteService:
    return NoteService(InMemoryNoteRepository())


@pytest.fixture
async def client(pipeline, note_service):
    from main import create_app

    app = create_app(pipeline=pipeline, notes=note_service)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client


async def collect(stream) -> list[str]:
    return [chunk async for chunk in stream]
