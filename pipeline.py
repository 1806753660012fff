"""
Action Pipeline - Orchestrates validation, rate limiting, memoization and streaming.

RESPONSIBILITY:
    Run one AI action request through:

        Validating -> RateLimiting -> CacheLookup
            -> hit:  replay cached text
            -> miss: Generating -> StreamingOut -> CacheWrite

    API layer (main.py) handles HTTP: routing, headers, status codes.
    This layer raises domain exceptions and never builds HTTP responses.

TERMINAL OUTCOMES:
    - ActionValidationError: rejected before any rate-limit or generation call
    - ThrottledError: rejected by the gate, nothing generated
    - UpstreamLimiterError: limiter unavailable
    - GenerationError: provider failed before the first chunk
    - ActionResult: streaming (live or replayed)
"""

import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from pydantic import ValidationError

from exceptions import ActionValidationError, GenerationError, ThrottledError
from hashing import fingerprint
from llm_provider import LLMProvider
from memoizer import ResponseMemoizer
from models import ActionKind, ActionRequest, RateLimitDecision
from prompts import build_prompt, load_prompts
from rate_limiter import RateLimitGate
import metrics

logger = logging.getLogger(__name__)

JSON_MEDIA_TYPE = "application/json"


@dataclass
class ActionResult:
    """A started response: chunks to forward plus the metadata for headers."""

    stream: AsyncIterator[str]
    cache_hit: bool
    decision: RateLimitDecision
    fingerprint: str


def _describe(error: ValidationError) -> str:
    first = error.errors()[0]
    field = ".".join(str(part) for part in first.get("loc", ())) or "body"
    message = first.get("msg", "invalid value").removeprefix("Value error, ")
    return f"{field}: {message}"


def parse_action_request(
    body: bytes,
    content_type: Optional[str],
    action: Optional[ActionKind] = None,
) -> ActionRequest:
    """
    Validate a raw request body into an ActionRequest.

    Args:
        body: Raw request bytes
        content_type: Content-Type header value (parameters ignored)
        action: Forces the action regardless of the body (used by /summarize)

    Raises:
        ActionValidationError: on any malformed input
    """
    media_type = (content_type or "").split(";")[0].strip().lower()
    if media_type != JSON_MEDIA_TYPE:
        raise ActionValidationError("Missing or invalid input: Content-Type must be application/json")

    try:
        data = json.loads(body)
    except ValueError as e:
        raise ActionValidationError("Missing or invalid input: body is not valid JSON") from e

    if not isinstance(data, dict):
        raise ActionValidationError("Missing or invalid input: body must be a JSON object")

    if action is not None:
        data = {**data, "action": action.value}

    try:
        return ActionRequest.model_validate(data)
    except ValidationError as e:
        raise ActionValidationError(f"Missing or invalid input: {_describe(e)}") from e


class ActionPipeline:
    """
    Service layer for AI actions.

    Dependencies are injected so tests can pass fakes for the gate (fakeredis),
    the provider (canned chunks) and the memo cache.
    """

    def __init__(
        self,
        gate: RateLimitGate,
        memoizer: ResponseMemoizer,
        llm_provider: LLMProvider,
        prompts: Optional[dict[ActionKind, str]] = None,
    ):
        self.gate = gate
        self.memoizer = memoizer
        self.llm_provider = llm_provider
        self.prompts = prompts or load_prompts()

    async def handle(
        self,
        body: bytes,
        content_type: Optional[str],
        client_id: str,
        action: Optional[ActionKind] = None,
    ) -> ActionResult:
        """Validate, gate, and start streaming one AI action."""
        request = parse_action_request(body, content_type, action)

        decision = await self.gate.check(client_id)
        if not decision.allowed:
            raise ThrottledError(decision)

        key = fingerprint(request.action, request.content, request.question)
        stream, hit = await self.memoizer.with_cache(key, lambda: self._generate(request))

        if not hit:
            stream = await self._start(stream)

        logger.info(
            f"Action {request.action.value} | client={client_id[:16]} | "
            f"cache_hit={hit} | remaining={decision.remaining}"
        )
        return ActionResult(stream=stream, cache_hit=hit, decision=decision, fingerprint=key)

    def _generate(self, request: ActionRequest) -> AsyncIterator[str]:
        prompt = build_prompt(request.action, request.content, request.question, self.prompts)
        return self.llm_provider.stream(prompt)

    async def _start(self, stream: AsyncIterator[str]) -> AsyncIterator[str]:
        """
        Pull the first chunk before the response is committed.

        A provider that fails before producing anything raises here, so the
        API layer can still answer with an error status.
        """
        try:
            first = await stream.__anext__()
        except StopAsyncIteration:
            return _empty()
        except GenerationError as e:
            metrics.record_generation_failure("start")
            logger.error(f"Generation failed before streaming: {e}")
            raise

        return _continue(first, stream)


async def _empty() -> AsyncIterator[str]:
    return
    yield


async def _continue(first: str, rest: AsyncIterator[str]) -> AsyncIterator[str]:
    try:
        yield first
        async for chunk in rest:
            yield chunk
    except GenerationError as e:
        metrics.record_generation_failure("stream")
        logger.error(f"Generation failed mid-stream: {e}")
        raise
    finally:
        await rest.aclose()
