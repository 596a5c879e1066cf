"""Capped exponential backoff for retryable bridge failures."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .errors import CursorSpawnError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BACKOFF_BASE_SECONDS = 0.25
DEFAULT_BACKOFF_CAP_SECONDS = 5.0


def calculate_backoff(
    attempt: int,
    base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS,
    cap_seconds: float = DEFAULT_BACKOFF_CAP_SECONDS,
) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    if attempt < 1:
        return 0.0
    return min(base_seconds * (2 ** (attempt - 1)), cap_seconds)


def is_retryable(exc: BaseException) -> bool:
    """Spawn-fatal errors (missing binary, no permission) are never retried."""
    if isinstance(exc, CursorSpawnError):
        return exc.retryable
    if isinstance(exc, (FileNotFoundError, PermissionError)):
        return False
    return isinstance(exc, OSError)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS,
    cap_seconds: float = DEFAULT_BACKOFF_CAP_SECONDS,
    should_retry: Callable[[BaseException], bool] = is_retryable,
) -> T:
    """Run ``operation`` until it succeeds or a non-retryable error occurs."""
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:
            if attempt >= max_attempts or not should_retry(exc):
                raise
            delay = calculate_backoff(attempt, base_seconds, cap_seconds)
            logger.warning(
                "retry_with_backoff: attempt %d/%d failed (%s), retrying in %.2fs",
                attempt, max_attempts, exc, delay,
            )
            await asyncio.sleep(delay)
