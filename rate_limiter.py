"""
Rate Limiter - Fixed window counter in Redis, fronted by a local decision cache.

RESPONSIBILITY:
    Decide whether a client may run another AI action.
    Upstream state lives in Redis so every server instance shares one count.

FIXED WINDOW:
    Each client gets one counter per window (e.g. 15 requests / 300s).
    Key: `ratelimit:{client_id}:{window_index}` where
    window_index = floor(now / window_seconds). INCR + EXPIRE in one
    MULTI/EXEC; the counter dies with its window.

LOCAL DECISION CACHE:
    RateLimitGate remembers the last decision per client for a TTL shorter
    than the upstream window and replays it without touching Redis.
    Tradeoff: inside that TTL a client may run past its true quota (cached
    allow) or stay blocked after its window resets (cached deny).

FAILURE POLICY:
    Redis down, erroring or slow -> UpstreamLimiterError (fail closed).
    Errors are never cached as decisions.
"""

import asyncio
import logging
import os
import time
from typing import Callable, Mapping, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from cache import BoundedTTLCache
from exceptions import UpstreamLimiterError
from models import RateLimitDecision
import metrics

logger = logging.getLogger(__name__)

ANONYMOUS_CLIENT = "anonymous"


def client_id_from_headers(headers: Mapping[str, str]) -> str:
    """
    Derive the client identity from the first X-Forwarded-For entry.

    Clients behind one proxy share an identity, and every request without
    the header shares the "anonymous" bucket.
    """
    forwarded = headers.get("x-forwarded-for") or headers.get("X-Forwarded-For")
    if not forwarded:
        return ANONYMOUS_CLIENT
    first = forwarded.split(",")[0].strip()
    return first or ANONYMOUS_CLIENT


class FixedWindowRateLimiter:
    """
    Upstream fixed-window limiter over a shared Redis counter.

    Example: max_requests=15, window_seconds=300 = 15 requests per 5 minutes.
    """

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        redis_url: str | None = None,
        max_requests: int = 15,
        window_seconds: int = 300,
        timeout_seconds: float = 2.0,
        key_prefix: str = "ratelimit:",
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize rate limiter.

        Args:
            redis_client: Existing connection (tests pass a fakeredis client)
            redis_url: Used by connect() when no client was injected
            max_requests: Max requests per window
            window_seconds: Window length in seconds
            timeout_seconds: Upper bound on one Redis round trip
            key_prefix: Redis key prefix for rate limit counters
            clock: Wall clock in epoch seconds
        """
        if max_requests < 1 or window_seconds < 1:
            raise ValueError("max_requests and window_seconds must be positive")
        self.redis = redis_client
        self.redis_url = redis_url or os.getenv("REDIS_URL")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.timeout_seconds = timeout_seconds
        self.key_prefix = key_prefix
        self._clock = clock
        self._owns_client = False

    async def connect(self) -> None:
        """Establish Redis connection (no-op when a client was injected)."""
        if self.redis is not None:
            return
        if not self.redis_url:
            raise ValueError("Redis URL required. Set REDIS_URL env var or pass redis_url parameter.")
        try:
            self.redis = redis.from_url(self.redis_url, encoding="utf-8", decode_responses=True)
            await self.redis.ping()
            self._owns_client = True
            logger.info("Rate limiter connected to Redis")
        except (RedisError, OSError) as e:
            logger.error(f"Redis connection failed: {e}")
            raise

    async def disconnect(self) -> None:
        """Close Redis connection if this limiter opened it."""
        if self.redis is not None and self._owns_client:
            await self.redis.aclose()
            logger.info("Rate limiter Redis connection closed")
        self.redis = None
        self._owns_client = False

    def _window(self, now: float) -> tuple[int, int]:
        """Return (window_index, reset_at) for a timestamp."""
        index = int(now // self.window_seconds)
        return index, (index + 1) * self.window_seconds

    async def limit(self, client_id: str) -> RateLimitDecision:
        """
        Count one request for client_id in the current window.

        Raises:
            UpstreamLimiterError: Redis unavailable, errored, or timed out.
        """
        if self.redis is None:
            raise UpstreamLimiterError("Rate limiter is not connected to Redis")

        index, reset_at = self._window(self._clock())
        key = f"{self.key_prefix}{client_id}:{index}"

        try:
            count = await asyncio.wait_for(self._increment(key), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            metrics.record_limiter_error("timeout")
            raise UpstreamLimiterError(
                f"Rate limiter timed out after {self.timeout_seconds}s"
            ) from e
        except (RedisError, OSError) as e:
            metrics.record_limiter_error("redis")
            raise UpstreamLimiterError(f"Rate limiter error: {e}") from e

        return RateLimitDecision(
            allowed=count <= self.max_requests,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - count),
            reset_at=reset_at,
        )

    async def _increment(self, key: str) -> int:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, self.window_seconds + 1)
            results = await pipe.execute()
        return int(results[0])

    async def reset_limit(self, client_id: str) -> None:
        """Reset the current window for a client (admin/testing operation)."""
        if self.redis is None:
            return
        index, _ = self._window(self._clock())
        await self.redis.delete(f"{self.key_prefix}{client_id}:{index}")
        logger.info(f"Rate limit reset for client: {client_id[:16]}")


class RateLimitGate:
    """
    Local decision cache in front of the upstream limiter.

    check() returns a cached decision (allowed or denied) while it is live,
    otherwise asks upstream and caches whatever comes back.
    """

    def __init__(
        self,
        upstream: FixedWindowRateLimiter,
        decisions: Optional[BoundedTTLCache[RateLimitDecision]] = None,
        local_ttl_seconds: float = 60.0,
        max_clients: int = 10_000,
    ):
        if local_ttl_seconds >= upstream.window_seconds:
            logger.warning(
                f"Local decision TTL ({local_ttl_seconds}s) is not shorter than the "
                f"upstream window ({upstream.window_seconds}s)"
            )
        self.upstream = upstream
        self.local_ttl_seconds = local_ttl_seconds
        self.decisions = decisions if decisions is not None else BoundedTTLCache(
            max_entries=max_clients, default_ttl=local_ttl_seconds
        )

    async def check(self, client_id: str) -> RateLimitDecision:
        """
        Decide whether client_id may proceed.

        Raises:
            UpstreamLimiterError: upstream failed and no cached decision exists.
        """
        cached = self.decisions.get(client_id)
        if cached is not None:
            metrics.record_rate_limit_decision(cached.allowed, source="local")
            return cached

        decision = await self.upstream.limit(client_id)
        self.decisions.set(client_id, decision, ttl=self.local_ttl_seconds)
        metrics.record_rate_limit_decision(decision.allowed, source="upstream")

        if not decision.allowed:
            logger.warning(f"Rate limited: {client_id[:16]} (limit={decision.limit}, reset_at={decision.reset_at})")
        return decision
