"""Exponential backoff for calls to external usage sources."""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from codemeter import config
from codemeter.errors import RateLimitError, TransientSourceError

logger = logging.getLogger("codemeter.retry")

T = TypeVar("T")

RETRYABLE_ERRORS = (TransientSourceError, ConnectionError, TimeoutError)


@dataclass
class BackoffConfig:
    max_attempts: int = config.RETRY_MAX_ATTEMPTS
    base_delay_ms: int = config.RETRY_BASE_DELAY_MS
    max_delay_ms: int = config.RETRY_MAX_DELAY_MS
    max_jitter_ms: int = 250


def retry_after_ms(exc: BaseException) -> Optional[int]:
    if isinstance(exc, RateLimitError) and exc.retry_after_ms and exc.retry_after_ms > 0:
        return int(exc.retry_after_ms)
    return None


def calculate_delay_ms(attempt: int, cfg: BackoffConfig, hint_ms: Optional[int] = None) -> int:
    """Delay before retrying after ``attempt`` (1-indexed) failed.

    A source-provided retry-after hint replaces the exponential term; the
    result is always capped at ``max_delay_ms``.
    """
    exp = min(cfg.max_delay_ms, cfg.base_delay_ms * (2 ** (attempt - 1)))
    jitter = random.randint(0, cfg.max_jitter_ms) if cfg.max_jitter_ms > 0 else 0
    base = hint_ms if hint_ms is not None else exp
    return min(cfg.max_delay_ms, base + jitter)


async def with_backoff(
    fn: Callable[[], Awaitable[T]],
    cfg: Optional[BackoffConfig] = None,
    *,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``fn()`` with bounded retries on transient failures.

    Non-retryable errors propagate on the first attempt. After the final
    attempt the last error is raised unchanged.
    """
    cfg = cfg or BackoffConfig()
    attempts = max(1, cfg.max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except RETRYABLE_ERRORS as exc:
            if attempt >= attempts:
                logger.error("Giving up on %s after %d attempts: %s", label, attempt, exc)
                raise
            delay_ms = calculate_delay_ms(attempt, cfg, retry_after_ms(exc))
            logger.warning(
                "Retry %d/%d for %s: %s, waiting %dms",
                attempt, attempts - 1, label, exc, delay_ms,
            )
            await sleep(delay_ms / 1000.0)
    raise RuntimeError("Unexpected retry loop exit")
