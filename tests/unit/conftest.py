"""Unit test conftest: no database or GCP access required.

In-memory fakes stand in for the workflow store, the OCR job client and the
URL signer. The fake store applies the same transition guard and column
resets as the Postgres implementation.
"""

from __future__ import annotations

import dataclasses
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from notation_ocr.errors import ConflictError, InvalidTransitionError, NotFoundError
from notation_ocr.ocr.document_ai import assemble_text
from notation_ocr.stores.workflow_store import CLEARED_ON_ENTRY
from notation_ocr.types import (
    BoundingBox,
    JobResult,
    JobState,
    StorageLocation,
    TextFragment,
    Workflow,
    WorkflowStatus,
    can_transition,
)


class FakeWorkflowStore:
    def __init__(self) -> None:
        self.rows: dict[str, Workflow] = {}
        self.calls: list[tuple[str, str, Any]] = []
        self.fail_next: list[Exception] = []

    def _maybe_fail(self) -> None:
        if self.fail_next:
            raise self.fail_next.pop(0)

    async def create(self, workflow_id: str, metadata: dict[str, Any] | None = None) -> Workflow:
        self.calls.append(("create", workflow_id, metadata))
        self._maybe_fail()
        if workflow_id in self.rows:
            raise ConflictError(f"Workflow {workflow_id} already exists", workflow_id=workflow_id)
        now = datetime.now(UTC)
        wf = Workflow(
            id=workflow_id,
            status=WorkflowStatus.INITIATED,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(days=30),
            metadata=dict(metadata or {}),
        )
        self.rows[workflow_id] = wf
        return wf

    async def transition(
        self, workflow_id: str, status: WorkflowStatus, fields: dict[str, Any] | None = None
    ) -> Workflow:
        self.calls.append(("transition", workflow_id, status))
        self._maybe_fail()
        current = self.rows.get(workflow_id)
        if current is None:
            raise NotFoundError(f"Workflow {workflow_id} not found", workflow_id=workflow_id)
        if not can_transition(current.status, status):
            raise InvalidTransitionError(workflow_id, current.status, status)
        changes: dict[str, Any] = {name: None for name in CLEARED_ON_ENTRY.get(status, ())}
        changes.update(fields or {})
        updated = dataclasses.replace(current, status=status, updated_at=datetime.now(UTC), **changes)
        self.rows[workflow_id] = updated
        return updated

    async def get(self, workflow_id: str) -> Workflow | None:
        self.calls.append(("get", workflow_id, None))
        self._maybe_fail()
        return self.rows.get(workflow_id)

    async def store_result(self, workflow_id: str, text: str, confidence: float) -> Workflow:
        return await self.transition(
            workflow_id,
            WorkflowStatus.COMPLETED,
            {"extracted_text": text, "confidence": confidence},
        )

    def writes(self) -> list[tuple[str, str, Any]]:
        return [c for c in self.calls if c[0] in ("create", "transition")]


class FakeOcrClient:
    def __init__(self) -> None:
        self.started: list[StorageLocation] = []
        self.polled: list[str] = []
        self.start_errors: list[Exception] = []
        self.poll_results: list[JobResult | Exception] = []
        self.next_job_id = "projects/123/locations/us/operations/1"

    async def start_job(self, location: StorageLocation) -> str:
        self.started.append(location)
        if self.start_errors:
            raise self.start_errors.pop(0)
        return self.next_job_id

    def complete_with(self, fragments: list[TextFragment]) -> None:
        """Queue a successful poll whose text and confidence come from the real assembly."""
        confidence = sum(f.confidence for f in fragments) / len(fragments) if fragments else 0.0
        self.poll_results.append(
            JobResult(
                state=JobState.SUCCEEDED,
                text=assemble_text(fragments),
                confidence=confidence,
                fragments=fragments,
            )
        )

    async def poll_job(self, job_id: str) -> JobResult:
        self.polled.append(job_id)
        item = self.poll_results.pop(0) if self.poll_results else JobResult(state=JobState.IN_PROGRESS)
        if isinstance(item, Exception):
            raise item
        return item


class FakeSigner:
    def __init__(self) -> None:
        self.signed: list[tuple[StorageLocation, str, int]] = []

    def sign_put_url(
        self, location: StorageLocation, *, content_type: str, expires_in: int
    ) -> tuple[str, dict[str, str]]:
        self.signed.append((location, content_type, expires_in))
        return (
            f"https://storage.googleapis.com/{location.bucket}/{location.key}?X-Goog-Signature=abc",
            {"Content-Type": content_type},
        )


async def no_sleep(_seconds: float) -> None:
    return None


def line(text: str, confidence: float, *, top: float, left: float = 0.1, height: float = 0.1) -> TextFragment:
    return TextFragment(
        text=text,
        confidence=confidence,
        bounding_box=BoundingBox(left=left, top=top, width=0.3, height=height),
        page=1,
    )


@pytest.fixture
def store() -> FakeWorkflowStore:
    return FakeWorkflowStore()


@pytest.fixture
def ocr() -> FakeOcrClient:
    return FakeOcrClient()


@pytest.fixture
def signer() -> FakeSigner:
    return FakeSigner()


@pytest.fixture
def sleep():
    return no_sleep


@pytest.fixture
def make_line():
    return line
