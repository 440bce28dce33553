"""Bounded async retry driver with exponential backoff and jitter."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from notation_ocr.backoff import backoff_delay
from notation_ocr.config import NOTATION_RETRY_MAX_ATTEMPTS
from notation_ocr.errors import is_retryable_error
from notation_ocr.types import RetryAttempt

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    operation_name: str,
    max_attempts: int = NOTATION_RETRY_MAX_ATTEMPTS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    delay: Callable[[int], int] = backoff_delay,
    on_retry: Callable[[RetryAttempt], None] | None = None,
) -> T:
    """Await ``operation`` up to ``max_attempts`` times.

    Non-retryable errors and the error of the last attempt propagate unchanged.
    Between attempts the driver sleeps ``delay(attempt)`` milliseconds.
    """
    attempts = max(1, max_attempts)
    for attempt in range(attempts):
        try:
            result = await operation()
        except Exception as e:
            retryable = is_retryable_error(e)
            if not retryable or attempt >= attempts - 1:
                logger.warning(
                    "%s failed on attempt %d/%d (%s); giving up",
                    operation_name,
                    attempt + 1,
                    attempts,
                    "retries exhausted" if retryable else "non-retryable",
                    extra={"operation": operation_name, "attempt": attempt + 1},
                )
                raise
            delay_ms = delay(attempt)
            logger.warning(
                "%s attempt %d/%d failed; retrying in %dms: %s",
                operation_name,
                attempt + 1,
                attempts,
                delay_ms,
                e,
                extra={"operation": operation_name, "attempt": attempt + 1, "delayMs": delay_ms},
            )
            if on_retry is not None:
                on_retry(RetryAttempt(operation=operation_name, attempt=attempt + 1, delay_ms=delay_ms, error=e))
            await sleep(delay_ms / 1000)
            continue

        if attempt > 0:
            logger.info("%s succeeded after %d attempts", operation_name, attempt + 1)
        return result

    raise RuntimeError("Unreachable retry path")
