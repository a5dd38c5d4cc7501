"""Retry helpers for async HTTP calls."""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

RETRY_EXCEPTIONS = (httpx.TransportError, httpx.HTTPStatusError, OSError, asyncio.TimeoutError)
NON_RETRYABLE_STATUS = frozenset({401})


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code not in NON_RETRYABLE_STATUS
    return isinstance(exc, RETRY_EXCEPTIONS)


def retry_async(
    func: Callable[..., Awaitable],
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    should_retry: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
):
    """Wrap ``func`` with exponential backoff: waits ``base_delay * 2**attempt``."""

    max_attempts = max(1, max_attempts)

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        for attempt in range(max_attempts):
            try:
                return await func(*args, **kwargs)
            except Exception as exc:
                if attempt >= max_attempts - 1 or not should_retry(exc):
                    raise
                wait = base_delay * (2**attempt)
                logger.info(
                    "Retry %s/%s for %s in %.1fs: %s",
                    attempt + 1,
                    max_attempts,
                    getattr(func, "__name__", "call"),
                    wait,
                    exc,
                )
                await sleep(wait)

    return wrapper
