"""Error taxonomy and the non-critical operation wrapper."""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger("codemeter.errors")

T = TypeVar("T")


class CodeMeterError(Exception):
    """Base class for CodeMeter errors."""


class PreconditionError(CodeMeterError):
    """A precondition (credentials, open workspace, ...) is not met. Never retried."""


class TransientSourceError(CodeMeterError):
    """Transient failure talking to an external usage source."""


class RateLimitError(TransientSourceError):
    """The usage source asked us to slow down."""

    def __init__(self, message: str, retry_after_ms: Optional[int] = None):
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


def best_effort(label: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> Optional[T]:
    """Run a non-critical operation; log and swallow any failure."""
    try:
        return fn(*args, **kwargs)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Non-critical operation '%s' failed: %s", label, exc)
        return None


async def best_effort_async(
    label: str,
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    **kwargs: Any,
) -> Optional[T]:
    """Async variant of :func:`best_effort`."""
    try:
        return await fn(*args, **kwargs)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Non-critical operation '%s' failed: %s", label, exc)
        return None
