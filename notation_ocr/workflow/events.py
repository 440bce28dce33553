"""Storage-event handling: an uploaded object starts its OCR job.

Notifications are delivered at least once, so ``handle`` is a safely
repeatable function of (bucket, key). A redelivery for a workflow whose job
already started is a no-op; a redelivery for a workflow whose job failed to
start restarts it.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol, TypeVar
from urllib.parse import unquote_plus

from notation_ocr.config import NOTATION_KEY_PREFIX, NOTATION_RETRY_MAX_ATTEMPTS, NOTATION_UPLOAD_BUCKET
from notation_ocr.errors import InvalidTransitionError, NotFoundError, StorageEventParseError, WorkflowError
from notation_ocr.logging_config import log_error
from notation_ocr.retry import with_retry
from notation_ocr.storage.gcs import parse_workflow_id
from notation_ocr.stores.workflow_store import WorkflowStore
from notation_ocr.types import HandledEvent, JobResult, StorageLocation, Workflow, WorkflowStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

FINALIZE_EVENT_TYPES = frozenset({"OBJECT_FINALIZE", "google.cloud.storage.object.v1.finalized"})


class OcrJobClient(Protocol):
    async def start_job(self, location: StorageLocation) -> str: ...

    async def poll_job(self, job_id: str) -> JobResult: ...


def parse_storage_event(event: Any) -> StorageLocation:
    """Extract the object location from a Pub/Sub push or Eventarc payload."""
    if not isinstance(event, Mapping):
        raise StorageEventParseError("Storage event must be a JSON object")

    message = event.get("message")
    if isinstance(message, Mapping):
        attributes = message.get("attributes") or {}
        event_type = attributes.get("eventType")
        bucket = attributes.get("bucketId")
        name = attributes.get("objectId")
        if not (bucket and name) and message.get("data"):
            try:
                payload = json.loads(base64.b64decode(message["data"]))
            except ValueError as e:
                raise StorageEventParseError(f"Undecodable Pub/Sub message data: {e}") from e
            if isinstance(payload, Mapping):
                bucket = bucket or payload.get("bucket")
                name = name or payload.get("name")
    else:
        event_type = event.get("eventType")
        bucket = event.get("bucket")
        name = event.get("name")

    if event_type and event_type not in FINALIZE_EVENT_TYPES:
        raise StorageEventParseError(f"Unsupported storage event type: {event_type}")
    if not bucket or not name:
        raise StorageEventParseError("Storage event is missing bucket or object name")

    return StorageLocation(bucket=str(bucket), key=unquote_plus(str(name)))


def _job_already_started(workflow: Workflow) -> bool:
    if workflow.status in (WorkflowStatus.PROCESSING, WorkflowStatus.COMPLETED):
        return True
    return workflow.status == WorkflowStatus.FAILED and workflow.job_id is not None


class StorageEventHandler:
    def __init__(
        self,
        store: WorkflowStore,
        ocr: OcrJobClient,
        *,
        upload_bucket: str = NOTATION_UPLOAD_BUCKET,
        key_prefix: str = NOTATION_KEY_PREFIX,
        max_attempts: int = NOTATION_RETRY_MAX_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._ocr = ocr
        self._upload_bucket = upload_bucket
        self._key_prefix = key_prefix
        self._max_attempts = max_attempts
        self._sleep = sleep

    async def handle(self, event: Any) -> HandledEvent:
        """Mark the workflow stored, start its OCR job and mark it processing.

        ``stored`` is committed before the job starts and ``processing`` with
        the job id before returning. When the job cannot be started the
        workflow is marked failed and the error is re-raised.
        """
        location = parse_storage_event(event)
        if location.bucket != self._upload_bucket:
            raise StorageEventParseError(f"Storage event for unexpected bucket: {location.bucket}")
        workflow_id = parse_workflow_id(location.key, prefix=self._key_prefix)
        logger.info("Storage event for %s", location.uri, extra={"workflowId": workflow_id})

        current = await self._retry(lambda: self._store.get(workflow_id), "getWorkflow")
        if current is None:
            raise NotFoundError(f"Workflow {workflow_id} not found", workflow_id=workflow_id)
        if _job_already_started(current):
            return self._duplicate(current)

        try:
            await self._retry(
                lambda: self._store.transition(
                    workflow_id, WorkflowStatus.STORED, {"storage_location": location}
                ),
                "markStored",
            )
        except InvalidTransitionError:
            return await self._reread_duplicate(workflow_id)

        try:
            job_id = await self._retry(lambda: self._ocr.start_job(location), "startOcrJob")
        except Exception as e:
            await self._mark_failed(workflow_id, f"OCR job failed to start: {e}")
            raise

        try:
            await self._retry(
                lambda: self._store.transition(workflow_id, WorkflowStatus.PROCESSING, {"job_id": job_id}),
                "markProcessing",
            )
        except InvalidTransitionError:
            return await self._reread_duplicate(workflow_id)

        logger.info("OCR started for workflow %s: %s", workflow_id, job_id, extra={"workflowId": workflow_id})
        return HandledEvent(workflow_id=workflow_id, status=WorkflowStatus.PROCESSING, job_id=job_id)

    async def _retry(self, operation: Callable[[], Awaitable[T]], name: str) -> T:
        return await with_retry(operation, operation_name=name, max_attempts=self._max_attempts, sleep=self._sleep)

    async def _mark_failed(self, workflow_id: str, message: str) -> None:
        try:
            await self._retry(
                lambda: self._store.transition(workflow_id, WorkflowStatus.FAILED, {"error_message": message}),
                "markFailed",
            )
        except WorkflowError as e:
            log_error(logger, e, context="Could not record OCR start failure", workflow_id=workflow_id)

    async def _reread_duplicate(self, workflow_id: str) -> HandledEvent:
        # Another delivery of the same event moved the workflow first.
        latest = await self._retry(lambda: self._store.get(workflow_id), "getWorkflow")
        if latest is None:
            raise NotFoundError(f"Workflow {workflow_id} not found", workflow_id=workflow_id)
        return self._duplicate(latest)

    def _duplicate(self, workflow: Workflow) -> HandledEvent:
        logger.info(
            "Duplicate storage event ignored for workflow %s (status %s)",
            workflow.id,
            workflow.status,
            extra={"workflowId": workflow.id},
        )
        return HandledEvent(
            workflow_id=workflow.id,
            status=workflow.status,
            job_id=workflow.job_id,
            duplicate=True,
        )
