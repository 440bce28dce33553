"""Request router: the four tagged operations behind one entry point.

Every response is a ``RouterResponse`` (HTTP status + JSON body); errors are
classified, logged and rendered here, never raised to the transport.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

from notation_ocr.config import NOTATION_RETRY_MAX_ATTEMPTS
from notation_ocr.errors import (
    InternalError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
    WorkflowError,
    is_retryable_error,
)
from notation_ocr.logging_config import log_error
from notation_ocr.models import (
    ErrorResponse,
    PresignedUrlResponse,
    ResultsResponse,
    StatusResponse,
    StorageEventError,
    StorageEventResponse,
)
from notation_ocr.retry import with_retry
from notation_ocr.stores.workflow_store import WorkflowStore
from notation_ocr.types import JobState, Workflow, WorkflowStatus, epoch_millis
from notation_ocr.workflow.events import OcrJobClient, StorageEventHandler
from notation_ocr.workflow.intents import UploadIntentIssuer

logger = logging.getLogger(__name__)

T = TypeVar("T")

GENERATE_PRESIGNED_URL = "generate-presigned-url"
GET_STATUS = "get-status"
GET_RESULTS = "get-results"
STORAGE_TRIGGER = "s3-trigger"
# Same operation as STORAGE_TRIGGER.
STORAGE_TRIGGER_ALIAS = "storage-trigger"


@dataclass(frozen=True)
class RouterResponse:
    status_code: int
    body: dict[str, Any]


def _error_response(error: WorkflowError, workflow_id: str | None = None) -> RouterResponse:
    body = ErrorResponse(
        error=error.message,
        error_code=error.code,
        retryable=error.retryable,
        workflow_id=workflow_id or error.workflow_id,
    )
    return RouterResponse(error.http_status, body.to_wire())


def _results(workflow: Workflow) -> RouterResponse:
    body = ResultsResponse(workflow_id=workflow.id, status=workflow.status.value)
    if workflow.status == WorkflowStatus.COMPLETED:
        body.extracted_text = workflow.extracted_text or ""
        body.confidence = workflow.confidence if workflow.confidence is not None else 0.0
    elif workflow.status == WorkflowStatus.FAILED:
        body.error_message = workflow.error_message or "Unknown error"
    return RouterResponse(200, body.to_wire())


class WorkflowRouter:
    def __init__(
        self,
        *,
        store: WorkflowStore,
        issuer: UploadIntentIssuer,
        handler: StorageEventHandler,
        ocr: OcrJobClient,
        max_attempts: int = NOTATION_RETRY_MAX_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._issuer = issuer
        self._handler = handler
        self._ocr = ocr
        self._max_attempts = max_attempts
        self._sleep = sleep

    async def dispatch(self, payload: Any) -> RouterResponse:
        """Route a request by its ``type`` tag."""
        request = payload if isinstance(payload, Mapping) else {}
        request_type = request.get("type")
        if request_type == GENERATE_PRESIGNED_URL:
            return await self.generate_presigned_url(request.get("fileName"), request.get("fileType"))
        if request_type == GET_STATUS:
            return await self.get_status(request.get("workflowId"))
        if request_type == GET_RESULTS:
            return await self.get_results(request.get("workflowId"))
        if request_type in (STORAGE_TRIGGER, STORAGE_TRIGGER_ALIAS):
            return await self.storage_trigger(request.get("event"))

        error = ValidationError(f"Invalid request type: {request_type}", code="INVALID_REQUEST_TYPE")
        log_error(logger, error, context="Request routing failed")
        return _error_response(error)

    async def generate_presigned_url(self, file_name: str | None, file_type: str | None) -> RouterResponse:
        async def _issue() -> RouterResponse:
            intent = await self._issuer.issue(file_name, file_type)
            body = PresignedUrlResponse(
                presigned_url=intent.upload_url,
                workflow_id=intent.workflow_id,
                key=intent.storage_key,
                expires_in=intent.expires_in,
                upload_headers=intent.upload_headers,
            )
            return RouterResponse(200, body.to_wire())

        return await self._respond(_issue, context="Presigned URL generation failed", file_type=file_type)

    async def storage_trigger(self, event: Any) -> RouterResponse:
        """Handle a storage notification.

        Retryable failures answer 500 so the push transport redelivers; all
        other failures answer 200 so poison messages are acknowledged.
        """
        try:
            handled = await self._handler.handle(event)
        except Exception as e:
            error = e if isinstance(e, WorkflowError) else InternalError(str(e) or type(e).__name__)
            log_error(logger, e, context="Storage event processing failed", workflow_id=error.workflow_id)
            body = StorageEventError(error="Storage event processing failed", message=error.message)
            return RouterResponse(500 if error.retryable else 200, body.to_wire())

        body = StorageEventResponse(
            message="Duplicate storage event ignored" if handled.duplicate else "Storage event processed",
            workflow_id=handled.workflow_id,
            status=handled.status.value,
            duplicate=handled.duplicate,
        )
        return RouterResponse(200, body.to_wire())

    async def get_status(self, workflow_id: str | None) -> RouterResponse:
        async def _status() -> RouterResponse:
            workflow = await self._load(workflow_id)
            body = StatusResponse(
                workflow_id=workflow.id,
                status=workflow.status.value,
                updated_at=epoch_millis(workflow.updated_at),
            )
            return RouterResponse(200, body.to_wire())

        return await self._respond(_status, context="Get status failed", workflow_id=workflow_id)

    async def get_results(self, workflow_id: str | None) -> RouterResponse:
        """Return stored results, advancing a processing workflow by polling its job."""

        async def _get() -> RouterResponse:
            workflow = await self._load(workflow_id)
            if workflow.status == WorkflowStatus.PROCESSING and workflow.job_id:
                workflow = await self._advance(workflow, workflow.job_id)
            return _results(workflow)

        return await self._respond(_get, context="Get results failed", workflow_id=workflow_id)

    async def _advance(self, workflow: Workflow, job_id: str) -> Workflow:
        try:
            result = await self._retry(lambda: self._ocr.poll_job(job_id), "pollOcrJob")
        except Exception as e:
            if is_retryable_error(e):
                raise
            log_error(logger, e, context="OCR job failed", workflow_id=workflow.id, jobId=job_id)
            message = e.message if isinstance(e, WorkflowError) else str(e) or type(e).__name__
            return await self._fail(workflow.id, message)

        if result.state == JobState.IN_PROGRESS:
            return workflow
        if result.state == JobState.FAILED:
            return await self._fail(workflow.id, "OCR job failed")

        text = result.text or ""
        confidence = result.confidence or 0.0
        try:
            return await self._retry(
                lambda: self._store.store_result(workflow.id, text, confidence),
                "storeResult",
            )
        except InvalidTransitionError:
            return await self._load(workflow.id)

    async def _fail(self, workflow_id: str, message: str) -> Workflow:
        try:
            return await self._retry(
                lambda: self._store.transition(workflow_id, WorkflowStatus.FAILED, {"error_message": message}),
                "markFailed",
            )
        except InvalidTransitionError:
            # A concurrent poller already finished the workflow.
            return await self._load(workflow_id)

    async def _load(self, workflow_id: str | None) -> Workflow:
        if not workflow_id:
            raise ValidationError("Missing required field: workflowId", code="MISSING_WORKFLOW_ID")
        workflow = await self._retry(lambda: self._store.get(workflow_id), "getWorkflow")
        if workflow is None:
            raise NotFoundError("Workflow not found", workflow_id=workflow_id)
        return workflow

    async def _retry(self, operation: Callable[[], Awaitable[T]], name: str) -> T:
        return await with_retry(operation, operation_name=name, max_attempts=self._max_attempts, sleep=self._sleep)

    async def _respond(
        self,
        call: Callable[[], Awaitable[RouterResponse]],
        *,
        context: str,
        workflow_id: str | None = None,
        **metadata: Any,
    ) -> RouterResponse:
        try:
            return await call()
        except WorkflowError as e:
            log_error(logger, e, context=context, workflow_id=workflow_id, **metadata)
            return _error_response(e, workflow_id)
        except Exception as e:
            log_error(logger, e, context=context, workflow_id=workflow_id, **metadata)
            return _error_response(InternalError("Internal server error"), workflow_id)
