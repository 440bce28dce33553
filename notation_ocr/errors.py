"""Error taxonomy for the workflow engine.

Every error raised across a module boundary is a ``WorkflowError`` carrying a
stable machine-readable ``code`` and a ``retryable`` flag. Dependency failures
are translated into ``DependencyError`` where the raw SDK/driver exception is
first observed, so retryability is decided once and never re-inspected.
"""

from __future__ import annotations

import asyncpg
from google.api_core import exceptions as google_exceptions
from google.auth import exceptions as auth_exceptions

from notation_ocr.backoff import is_retryable
from notation_ocr.types import Service, WorkflowStatus


class WorkflowError(Exception):
    """Base class for all classified errors."""

    code = "WORKFLOW_ERROR"
    category = "INTERNAL"
    http_status = 500
    retryable = False

    def __init__(self, message: str, *, code: str | None = None, workflow_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.workflow_id = workflow_id


class ValidationError(WorkflowError):
    code = "VALIDATION_ERROR"
    category = "VALIDATION"
    http_status = 400


class InvalidFileTypeError(ValidationError):
    code = "INVALID_FILE_TYPE"


class StorageEventParseError(ValidationError):
    code = "INVALID_STORAGE_EVENT"


class NotFoundError(WorkflowError):
    code = "WORKFLOW_NOT_FOUND"
    category = "NOT_FOUND"
    http_status = 404


class ConflictError(WorkflowError):
    code = "WORKFLOW_EXISTS"
    category = "CONFLICT"
    http_status = 409


class InvalidTransitionError(ConflictError):
    code = "INVALID_TRANSITION"

    def __init__(self, workflow_id: str, current: WorkflowStatus, target: WorkflowStatus) -> None:
        super().__init__(
            f"Workflow {workflow_id} cannot move from {current} to {target}",
            workflow_id=workflow_id,
        )
        self.current = current
        self.target = target


class DependencyError(WorkflowError):
    """Failure of an external dependency, classified at the boundary."""

    category = "DEPENDENCY"

    def __init__(
        self,
        service: Service,
        message: str,
        *,
        code: str | None = None,
        status: int | None = None,
        retryable: bool | None = None,
        workflow_id: str | None = None,
    ) -> None:
        super().__init__(message, code=code or "DEPENDENCY_ERROR", workflow_id=workflow_id)
        self.service = service
        self.category = service.value
        self.status = status
        self.retryable = is_retryable(service, code, status) if retryable is None else retryable
        self.http_status = 503 if self.retryable else 502


class OcrJobFailedError(DependencyError):
    """The OCR engine reported the job itself as failed."""

    def __init__(self, message: str, *, job_id: str | None = None) -> None:
        super().__init__(Service.OCR_ENGINE, message, code="JOB_FAILED", retryable=False)
        self.job_id = job_id


class InternalError(WorkflowError):
    code = "INTERNAL_ERROR"


def is_retryable_error(error: BaseException) -> bool:
    if isinstance(error, WorkflowError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError))


def dependency_error_from_google(service: Service, error: Exception) -> DependencyError:
    """Translate a google-api-core / google-auth exception."""
    if isinstance(error, DependencyError):
        return error
    if isinstance(error, google_exceptions.GoogleAPICallError):
        grpc_code = getattr(error, "grpc_status_code", None)
        code = grpc_code.name if grpc_code is not None else type(error).__name__
        status = error.code if isinstance(error.code, int) else None
        return DependencyError(service, error.message or str(error), code=code, status=status)
    if isinstance(error, (google_exceptions.RetryError, auth_exceptions.TransportError)):
        return DependencyError(Service.NETWORK, str(error), code=type(error).__name__)
    if isinstance(error, (ConnectionError, TimeoutError)):
        return DependencyError(Service.NETWORK, str(error) or type(error).__name__, code=type(error).__name__)
    return DependencyError(service, str(error) or type(error).__name__, code=type(error).__name__, retryable=False)


def dependency_error_from_postgres(error: Exception) -> DependencyError:
    """Translate an asyncpg / socket-level exception from the workflow store."""
    if isinstance(error, DependencyError):
        return error
    if isinstance(error, asyncpg.PostgresError):
        sqlstate = getattr(error, "sqlstate", None)
        return DependencyError(Service.WORKFLOW_STORE, str(error), code=sqlstate or type(error).__name__)
    if isinstance(error, (ConnectionError, TimeoutError, OSError, asyncpg.InterfaceError)):
        return DependencyError(Service.NETWORK, str(error) or type(error).__name__, code=type(error).__name__)
    return DependencyError(
        Service.WORKFLOW_STORE, str(error) or type(error).__name__, code=type(error).__name__, retryable=False
    )
