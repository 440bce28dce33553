"""Unit tests for backoff delays, retryability tables and the retry driver."""

from __future__ import annotations

import pytest

from notation_ocr.backoff import MAX_DELAY_MS, backoff_delay, is_retryable
from notation_ocr.errors import (
    ConflictError,
    DependencyError,
    NotFoundError,
    ValidationError,
)
from notation_ocr.retry import with_retry
from notation_ocr.types import Service


class TestBackoffDelay:
    @pytest.mark.parametrize("attempt", [0, 1, 2, 3, 4, 5, 6, 10])
    def test_within_jitter_bounds(self, attempt):
        base = min(100 * 2**attempt, MAX_DELAY_MS)
        for _ in range(200):
            delay = backoff_delay(attempt)
            assert base * 0.75 - 1 <= delay <= base * 1.25

    def test_extremes_of_random_source(self):
        assert backoff_delay(0, rand=lambda: 0.0) == 75
        assert backoff_delay(0, rand=lambda: 0.5) == 100
        assert backoff_delay(2, rand=lambda: 0.999999) == 499

    def test_capped_values_still_jittered(self):
        delays = {backoff_delay(8) for _ in range(50)}
        assert len(delays) > 1
        assert all(2400 <= d <= 4000 for d in delays)

    def test_huge_attempt_does_not_overflow(self):
        assert 2400 <= backoff_delay(10_000) <= 4000

    def test_never_negative(self):
        assert backoff_delay(-3, rand=lambda: 0.0) >= 0


class TestIsRetryable:
    def test_network_always_retryable(self):
        assert is_retryable(Service.NETWORK)
        assert is_retryable(Service.NETWORK, "ECONNRESET")

    @pytest.mark.parametrize("status", [429, 503])
    def test_throttle_and_unavailable_status(self, status):
        for kind in (Service.OBJECT_STORE, Service.OCR_ENGINE, Service.WORKFLOW_STORE):
            assert is_retryable(kind, None, status)

    @pytest.mark.parametrize(
        "kind,code",
        [
            (Service.OBJECT_STORE, "DEADLINE_EXCEEDED"),
            (Service.OBJECT_STORE, "ServiceUnavailable"),
            (Service.OCR_ENGINE, "RESOURCE_EXHAUSTED"),
            (Service.OCR_ENGINE, "ThrottlingException"),
            (Service.WORKFLOW_STORE, "40001"),
            (Service.WORKFLOW_STORE, "53300"),
        ],
    )
    def test_transient_codes(self, kind, code):
        assert is_retryable(kind, code)

    @pytest.mark.parametrize(
        "kind,code",
        [
            (Service.OBJECT_STORE, "NOT_FOUND"),
            (Service.OCR_ENGINE, "INVALID_ARGUMENT"),
            (Service.WORKFLOW_STORE, "23505"),
            (Service.OCR_ENGINE, "DEADLINE_EXCEEDED_BUT_NOT"),
        ],
    )
    def test_permanent_codes(self, kind, code):
        assert not is_retryable(kind, code, 400)

    def test_codes_are_per_service(self):
        assert is_retryable(Service.OCR_ENGINE, "RESOURCE_EXHAUSTED")
        assert not is_retryable(Service.WORKFLOW_STORE, "RESOURCE_EXHAUSTED")


class TestDependencyErrorClassification:
    def test_retryable_decided_at_construction(self):
        err = DependencyError(Service.OCR_ENGINE, "throttled", code="RESOURCE_EXHAUSTED")
        assert err.retryable is True
        assert err.http_status == 503

    def test_explicit_retryable_wins(self):
        err = DependencyError(Service.NETWORK, "boom", retryable=False)
        assert err.retryable is False
        assert err.http_status == 502

    def test_client_errors_never_retryable(self):
        for err in (ValidationError("bad"), NotFoundError("missing"), ConflictError("dup")):
            assert err.retryable is False


class _Counter:
    def __init__(self, error: Exception | None = None, succeed_after: int | None = None):
        self.calls = 0
        self.error = error
        self.succeed_after = succeed_after

    async def __call__(self):
        self.calls += 1
        if self.succeed_after is not None and self.calls > self.succeed_after:
            return "ok"
        raise self.error


class TestWithRetry:
    async def test_retryable_failure_runs_max_attempts(self, sleep):
        err = DependencyError(Service.OCR_ENGINE, "throttled", code="RESOURCE_EXHAUSTED")
        op = _Counter(err)
        with pytest.raises(DependencyError) as exc_info:
            await with_retry(op, operation_name="op", max_attempts=3, sleep=sleep)
        assert exc_info.value is err
        assert op.calls == 3

    async def test_non_retryable_failure_runs_once(self, sleep):
        err = ValidationError("bad input")
        op = _Counter(err)
        with pytest.raises(ValidationError):
            await with_retry(op, operation_name="op", max_attempts=3, sleep=sleep)
        assert op.calls == 1

    async def test_recovers_after_transient_errors(self, sleep):
        op = _Counter(ConnectionError("reset"), succeed_after=2)
        assert await with_retry(op, operation_name="op", max_attempts=3, sleep=sleep) == "ok"
        assert op.calls == 3

    async def test_sleeps_backoff_delay_between_attempts(self):
        slept: list[float] = []

        async def record(seconds: float) -> None:
            slept.append(seconds)

        op = _Counter(TimeoutError("slow"))
        with pytest.raises(TimeoutError):
            await with_retry(op, operation_name="op", max_attempts=3, sleep=record, delay=lambda a: 100 * (a + 1))
        assert slept == [0.1, 0.2]

    async def test_on_retry_receives_attempt_context(self, sleep):
        attempts = []
        op = _Counter(ConnectionError("reset"), succeed_after=1)
        await with_retry(
            op,
            operation_name="getWorkflow",
            sleep=sleep,
            delay=lambda a: 42,
            on_retry=attempts.append,
        )
        assert len(attempts) == 1
        assert attempts[0].operation == "getWorkflow"
        assert attempts[0].attempt == 1
        assert attempts[0].delay_ms == 42
        assert isinstance(attempts[0].error, ConnectionError)

    async def test_unclassified_exception_not_retried(self, sleep):
        op = _Counter(KeyError("x"))
        with pytest.raises(KeyError):
            await with_retry(op, operation_name="op", sleep=sleep)
        assert op.calls == 1
