"""Domain types shared across the workflow engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class WorkflowStatus(StrEnum):
    INITIATED = "initiated"
    STORED = "stored"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED)


# Legal previous statuses for each target status. Self-transitions of
# non-terminal states make redelivered storage events harmless rewrites;
# failed -> stored is the restart path after a job-start failure.
ALLOWED_SOURCES: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.INITIATED: frozenset(),
    WorkflowStatus.STORED: frozenset(
        {WorkflowStatus.INITIATED, WorkflowStatus.STORED, WorkflowStatus.FAILED}
    ),
    WorkflowStatus.PROCESSING: frozenset({WorkflowStatus.STORED, WorkflowStatus.PROCESSING}),
    WorkflowStatus.COMPLETED: frozenset({WorkflowStatus.PROCESSING}),
    WorkflowStatus.FAILED: frozenset(
        {WorkflowStatus.INITIATED, WorkflowStatus.STORED, WorkflowStatus.PROCESSING}
    ),
}


def can_transition(current: WorkflowStatus, target: WorkflowStatus) -> bool:
    return current in ALLOWED_SOURCES[target]


class Service(StrEnum):
    """External dependency kinds, used to pick a retry classification table."""

    NETWORK = "NETWORK"
    OBJECT_STORE = "OBJECT_STORE"
    OCR_ENGINE = "OCR_ENGINE"
    WORKFLOW_STORE = "WORKFLOW_STORE"


class JobState(StrEnum):
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class StorageLocation:
    bucket: str
    key: str

    @property
    def uri(self) -> str:
        return f"gs://{self.bucket}/{self.key}"


@dataclass(frozen=True)
class BoundingBox:
    left: float
    top: float
    width: float
    height: float


@dataclass(frozen=True)
class TextFragment:
    text: str
    confidence: float  # 0-100
    bounding_box: BoundingBox | None = None
    page: int = 0


@dataclass(frozen=True)
class JobResult:
    state: JobState
    text: str | None = None
    confidence: float | None = None
    fragments: list[TextFragment] | None = None


@dataclass(frozen=True)
class Workflow:
    id: str
    status: WorkflowStatus
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    storage_location: StorageLocation | None = None
    job_id: str | None = None
    extracted_text: str | None = None
    confidence: float | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UploadIntent:
    upload_url: str
    workflow_id: str
    storage_key: str
    expires_in: int
    upload_headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class HandledEvent:
    workflow_id: str
    status: WorkflowStatus
    job_id: str | None
    duplicate: bool = False


@dataclass(frozen=True)
class RetryAttempt:
    """Per-call retry context; logged, never persisted."""

    operation: str
    attempt: int  # 1-based number of the attempt that just failed
    delay_ms: int
    error: Exception


def epoch_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)
