from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable

from google.api_core import exceptions as google_exceptions
from google.auth import exceptions as auth_exceptions

from notation_ocr.config import (
    NOTATION_ALLOWED_FILE_TYPES,
    NOTATION_KEY_PREFIX,
    NOTATION_RETRY_MAX_ATTEMPTS,
    NOTATION_UPLOAD_BUCKET,
    NOTATION_UPLOAD_URL_TTL_SECONDS,
)
from notation_ocr.errors import InvalidFileTypeError, ValidationError, WorkflowError, dependency_error_from_google
from notation_ocr.logging_config import log_error
from notation_ocr.retry import with_retry
from notation_ocr.storage.gcs import UploadUrlSigner, derive_storage_key
from notation_ocr.stores.workflow_store import WorkflowStore
from notation_ocr.types import Service, StorageLocation, UploadIntent

logger = logging.getLogger(__name__)


def _new_workflow_id() -> str:
    return str(uuid.uuid4())


class UploadIntentIssuer:
    """Validates an upload request, mints a signed PUT URL and records the workflow."""

    def __init__(
        self,
        store: WorkflowStore,
        signer: UploadUrlSigner,
        *,
        bucket: str = NOTATION_UPLOAD_BUCKET,
        key_prefix: str = NOTATION_KEY_PREFIX,
        expires_in: int = NOTATION_UPLOAD_URL_TTL_SECONDS,
        allowed_types: Iterable[str] = NOTATION_ALLOWED_FILE_TYPES,
        max_attempts: int = NOTATION_RETRY_MAX_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        id_factory: Callable[[], str] = _new_workflow_id,
    ) -> None:
        self._store = store
        self._signer = signer
        self._bucket = bucket
        self._key_prefix = key_prefix
        self._expires_in = expires_in
        self._allowed_types = frozenset(t.lower() for t in allowed_types)
        self._max_attempts = max_attempts
        self._sleep = sleep
        self._id_factory = id_factory

    async def issue(self, file_name: str | None, file_type: str | None) -> UploadIntent:
        """Return a time-boxed upload URL for a new workflow.

        Unsupported types are rejected before anything is signed or stored.
        A failed record write after signing is logged and the intent is
        still returned; the orphan URL expires on its own.
        """
        if not file_name or not file_type:
            raise ValidationError("Missing required fields: fileName, fileType", code="MISSING_FIELDS")

        content_type = file_type.strip()
        if content_type.lower() not in self._allowed_types:
            raise InvalidFileTypeError(
                f"Invalid file type: {file_type}. Allowed types: {', '.join(sorted(self._allowed_types))}"
            )

        workflow_id = self._id_factory()
        location = StorageLocation(
            bucket=self._bucket,
            key=derive_storage_key(workflow_id, file_name, prefix=self._key_prefix),
        )

        url, headers = await with_retry(
            lambda: self._sign(location, content_type),
            operation_name="signUploadUrl",
            max_attempts=self._max_attempts,
            sleep=self._sleep,
        )
        logger.info(
            "Upload URL issued for %s",
            location.uri,
            extra={"workflowId": workflow_id, "fileType": content_type},
        )

        metadata = {
            "uploadKey": location.key,
            "uploadBucket": location.bucket,
            "originalFileName": file_name,
            "fileType": content_type,
        }
        try:
            await with_retry(
                lambda: self._store.create(workflow_id, metadata),
                operation_name="createWorkflow",
                max_attempts=self._max_attempts,
                sleep=self._sleep,
            )
        except WorkflowError as e:
            log_error(
                logger,
                e,
                context="Workflow record creation failed after upload URL was issued",
                workflow_id=workflow_id,
            )

        return UploadIntent(
            upload_url=url,
            workflow_id=workflow_id,
            storage_key=location.key,
            expires_in=self._expires_in,
            upload_headers=headers,
        )

    async def _sign(self, location: StorageLocation, content_type: str) -> tuple[str, dict[str, str]]:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None,
                lambda: self._signer.sign_put_url(location, content_type=content_type, expires_in=self._expires_in),
            )
        except (google_exceptions.GoogleAPIError, auth_exceptions.GoogleAuthError, OSError) as e:
            raise dependency_error_from_google(Service.OBJECT_STORE, e) from e
