"""
Forge LLM Helpers

Text and JSON calls on top of the process layer. Unlike invoke(), these
raise: a rate limit that outlasts the backoff schedule is terminal, and any
other non-done status is an LLMError.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Tuple

from .errors import LLMError, RateLimitedError
from .models import InvocationRequest, InvocationStatus, OUTPUT_STREAM_JSON, TokenUsage
from .parsers import extract_json
from .process import invoke

logger = logging.getLogger("forge")

RATE_LIMIT_RETRIES = 3
RATE_LIMIT_BASE_DELAY = 5.0  # seconds, doubled per attempt

InvokeFn = Callable[..., Awaitable[Any]]


async def llm_text(
    prompt: str,
    request: Optional[InvocationRequest] = None,
    *,
    invoke_fn: InvokeFn = invoke,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Tuple[str, TokenUsage]:
    """Run a stream-json call and return (text, token_usage).

    Rate-limited attempts are retried after 5s, 10s and 20s. A fourth
    rate-limited result raises RateLimitedError.
    """
    request = (request or InvocationRequest()).with_(output_mode=OUTPUT_STREAM_JSON)
    usage = TokenUsage()
    attempt = 0
    while True:
        result = await invoke_fn(prompt, request)
        usage.add(result.token_usage)
        if result.status == InvocationStatus.DONE:
            return result.stdout.strip(), usage
        if result.status == InvocationStatus.RATE_LIMITED:
            if attempt >= RATE_LIMIT_RETRIES:
                raise RateLimitedError(attempt + 1, result.stderr)
            delay = RATE_LIMIT_BASE_DELAY * (2 ** attempt)
            logger.warning(
                f"Rate limited ({request.provider}), retry {attempt + 1}/{RATE_LIMIT_RETRIES} in {delay:.0f}s"
            )
            await sleep(delay)
            attempt += 1
            continue
        raise LLMError(result.status.value, result.stderr)


async def llm_json(
    prompt: str,
    request: Optional[InvocationRequest] = None,
    *,
    invoke_fn: InvokeFn = invoke,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Tuple[Any, TokenUsage]:
    """llm_text() followed by extract_json(). Raises JsonExtractionError on prose."""
    text, usage = await llm_text(prompt, request, invoke_fn=invoke_fn, sleep=sleep)
    return extract_json(text), usage
