"""Retry delay computation and per-dependency retryability tables.

Pure functions only; the retry loop itself lives in ``notation_ocr.retry``.
"""

from __future__ import annotations

import random
from collections.abc import Callable

from notation_ocr.types import Service

INITIAL_DELAY_MS = 100
MAX_DELAY_MS = 3200
JITTER_RATIO = 0.25

# 2**6 * 100 already exceeds MAX_DELAY_MS; clamping keeps huge attempts cheap.
_MAX_EXPONENT = 16

_RETRYABLE_HTTP_STATUS = frozenset({429, 503})

_RETRYABLE_CODES: dict[Service, frozenset[str]] = {
    Service.OBJECT_STORE: frozenset(
        {
            "DEADLINE_EXCEEDED",
            "UNAVAILABLE",
            "REQUEST_TIMEOUT",
            "RequestTimeout",
            "ServiceUnavailable",
        }
    ),
    Service.OCR_ENGINE: frozenset(
        {
            "RESOURCE_EXHAUSTED",
            "UNAVAILABLE",
            "ThrottlingException",
            "ProvisionedThroughputExceededException",
            "ServiceUnavailable",
        }
    ),
    Service.WORKFLOW_STORE: frozenset(
        {
            "53300",  # too_many_connections
            "53000",  # insufficient_resources
            "57P03",  # cannot_connect_now
            "40001",  # serialization_failure
            "40P01",  # deadlock_detected
            "TooManyConnectionsError",
            "CannotConnectNowError",
        }
    ),
}


def backoff_delay(attempt: int, *, rand: Callable[[], float] = random.random) -> int:
    """Delay in milliseconds before retrying after failed attempt ``attempt`` (0-based).

    ``min(100 * 2**attempt, 3200)`` with symmetric +/-25% jitter applied after
    the cap, floored and never negative.
    """
    exponent = min(max(attempt, 0), _MAX_EXPONENT)
    capped = min(INITIAL_DELAY_MS * (2**exponent), MAX_DELAY_MS)
    jitter = capped * JITTER_RATIO * (rand() * 2 - 1)
    return max(0, int(capped + jitter))


def is_retryable(kind: Service, code: str | None = None, http_status: int | None = None) -> bool:
    """Classify a dependency failure as transient or permanent."""
    if kind is Service.NETWORK:
        return True
    if http_status is not None and http_status in _RETRYABLE_HTTP_STATUS:
        return True
    if code is None:
        return False
    return code in _RETRYABLE_CODES.get(kind, frozenset())
