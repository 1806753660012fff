"""
Response Memoizer - Replay cached AI output, tee live output into the cache.

HIT:
    The stored text comes back as a one-chunk stream, so callers consume a
    replay exactly like a live generation.

MISS:
    generate() supplies the live stream. Every chunk is forwarded to the
    caller as soon as it arrives and appended to a buffer. Only after the
    source is exhausted is the joined text written to the cache.

    Source raises       -> error propagates, nothing stored
    Caller stops early  -> source closed, nothing stored
"""

import logging
from typing import AsyncIterator, Callable, Optional

from cache import BoundedTTLCache
import metrics

logger = logging.getLogger(__name__)

ChunkStream = AsyncIterator[str]


class ResponseMemoizer:
    """Fingerprint-keyed cache around an expensive streaming generator."""

    def __init__(self, cache: Optional[BoundedTTLCache[str]] = None):
        self.cache = cache if cache is not None else BoundedTTLCache(max_entries=1000, default_ttl=3600)

    async def with_cache(
        self,
        fingerprint: str,
        generate: Callable[[], ChunkStream],
    ) -> tuple[ChunkStream, bool]:
        """
        Return (stream, hit) for a fingerprint.

        generate is only called on a miss.
        """
        cached = self.cache.get(fingerprint)
        if cached is not None:
            metrics.record_cache_lookup(hit=True)
            logger.info(f"Cache HIT: {fingerprint[:12]}")
            return self._replay(cached), True

        metrics.record_cache_lookup(hit=False)
        logger.info(f"Cache MISS: {fingerprint[:12]}")
        return self._tee(fingerprint, generate()), False

    @staticmethod
    async def _replay(text: str) -> ChunkStream:
        yield text

    async def _tee(self, fingerprint: str, source: ChunkStream) -> ChunkStream:
        buffer: list[str] = []
        try:
            async for chunk in source:
                buffer.append(chunk)
                yield chunk
        finally:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()

        text = "".join(buffer)
        if not text:
            logger.warning(f"Empty generation not cached: {fingerprint[:12]}")
            return

        self.cache.set(fingerprint, text)
        metrics.record_cache_write()
        logger.info(f"Cached response: {fingerprint[:12]} ({len(text)} chars)")
