"""Async HTTP client for the notation OCR API.

Wraps the tagged ``POST /v1/ocr`` operations and the signed-URL upload, with
transient-failure retry and a wall-clock-bounded poll loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from notation_ocr.backoff import backoff_delay
from notation_ocr.config import NOTATION_RETRY_MAX_ATTEMPTS

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}
_TERMINAL_STATUSES = {"completed", "failed"}


class ApiError(Exception):
    def __init__(
        self,
        message: str,
        *,
        error_code: str = "UNKNOWN_ERROR",
        retryable: bool = False,
        workflow_id: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.retryable = retryable
        self.workflow_id = workflow_id
        self.status_code = status_code


class PollingTimeoutError(ApiError):
    """The workflow was still processing when the poll deadline passed."""

    def __init__(self, workflow_id: str, timeout: float) -> None:
        super().__init__(
            f"OCR processing timed out after {timeout:g}s",
            error_code="POLLING_TIMEOUT",
            retryable=True,
            workflow_id=workflow_id,
        )


class NotationOcrClient:
    def __init__(
        self,
        base_url: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        max_attempts: int = NOTATION_RETRY_MAX_ATTEMPTS,
        timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._endpoint = base_url.rstrip("/") + "/v1/ocr"
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_http = http_client is None
        self._max_attempts = max(1, max_attempts)
        self._sleep = sleep
        self._clock = clock

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> NotationOcrClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    async def generate_upload_url(self, file_name: str, file_type: str) -> dict[str, Any]:
        return await self._call({"type": "generate-presigned-url", "fileName": file_name, "fileType": file_type})

    async def get_status(self, workflow_id: str) -> dict[str, Any]:
        return await self._call({"type": "get-status", "workflowId": workflow_id}, workflow_id=workflow_id)

    async def get_results(self, workflow_id: str) -> dict[str, Any]:
        return await self._call({"type": "get-results", "workflowId": workflow_id}, workflow_id=workflow_id)

    async def upload(self, presigned_url: str, data: bytes, headers: dict[str, str]) -> None:
        """PUT the image bytes to the signed URL with the headers it was signed for."""
        resp = await self._send("PUT", presigned_url, content=data, headers=headers)
        if resp.status_code >= 400:
            raise ApiError(
                f"Upload failed with status {resp.status_code}",
                error_code="UPLOAD_FAILED",
                retryable=resp.status_code in _RETRYABLE_STATUS,
                status_code=resp.status_code,
            )

    async def upload_file(self, file_name: str, file_type: str, data: bytes) -> str:
        """Request an upload URL, upload ``data`` and return the workflow id."""
        intent = await self.generate_upload_url(file_name, file_type)
        headers = intent.get("uploadHeaders") or {"Content-Type": file_type}
        await self.upload(intent["presignedUrl"], data, headers)
        return str(intent["workflowId"])

    async def poll_until_complete(
        self,
        workflow_id: str,
        *,
        poll_interval: float = 2.0,
        timeout: float = 300.0,
        on_status: Callable[[str], None] | None = None,
    ) -> dict[str, Any]:
        """Poll get-results until the workflow is completed or failed.

        A failed workflow is returned, not raised. Raises PollingTimeoutError
        when the workflow is still processing after ``timeout`` seconds.
        """
        deadline = self._clock() + timeout
        while self._clock() < deadline:
            try:
                result = await self.get_results(workflow_id)
            except ApiError as e:
                if not e.retryable and e.status_code is not None and e.status_code < 500:
                    raise
                logger.warning("get-results failed for %s, falling back to get-status: %s", workflow_id, e)
                result = await self.get_status(workflow_id)

            status = str(result.get("status", ""))
            if on_status is not None:
                on_status(status)
            if status in _TERMINAL_STATUSES and ("extractedText" in result or "errorMessage" in result):
                return result

            await self._sleep(poll_interval)

        raise PollingTimeoutError(workflow_id, timeout)

    async def _call(self, payload: dict[str, Any], *, workflow_id: str | None = None) -> dict[str, Any]:
        resp = await self._send("POST", self._endpoint, json=payload)
        body = _json_or_empty(resp)
        if resp.status_code >= 400:
            raise ApiError(
                str(body.get("error") or f"Request failed with status {resp.status_code}"),
                error_code=str(body.get("errorCode") or "UNKNOWN_ERROR"),
                retryable=bool(body.get("retryable", resp.status_code in _RETRYABLE_STATUS)),
                workflow_id=body.get("workflowId") or workflow_id,
                status_code=resp.status_code,
            )
        return body

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send with retry on connection errors, 408/429/5xx, or a ``retryable`` body."""
        for attempt in range(self._max_attempts):
            last = attempt >= self._max_attempts - 1
            try:
                resp = await self._http.request(method, url, **kwargs)
            except httpx.TransportError as e:
                if last:
                    raise ApiError(
                        f"Network error: {e}", error_code="NETWORK_ERROR", retryable=True
                    ) from e
                logger.warning("HTTP request failed (attempt %d/%d): %s", attempt + 1, self._max_attempts, e)
            else:
                if last or not _should_retry(resp):
                    return resp
                logger.warning(
                    "HTTP %d from %s (attempt %d/%d)", resp.status_code, method, attempt + 1, self._max_attempts
                )
            await self._sleep(backoff_delay(attempt) / 1000)
        raise RuntimeError("Unreachable retry path")


def _should_retry(resp: httpx.Response) -> bool:
    if resp.status_code in _RETRYABLE_STATUS:
        return True
    if resp.status_code >= 400:
        return bool(_json_or_empty(resp).get("retryable"))
    return False


def _json_or_empty(resp: httpx.Response) -> dict[str, Any]:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
