"""Persistence for notation_workflows: one row per upload-to-text workflow.

Coordination between concurrent invocations relies only on the atomic
preconditions of these statements: ``create`` inserts only when the id is
free, and ``transition`` updates only an existing row whose current status is
a legal source for the target status.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import asyncpg

from notation_ocr.config import NOTATION_WORKFLOW_TTL_DAYS
from notation_ocr.db import get_pool
from notation_ocr.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    WorkflowError,
    dependency_error_from_postgres,
)
from notation_ocr.types import ALLOWED_SOURCES, StorageLocation, Workflow, WorkflowStatus

logger = logging.getLogger(__name__)

_TRANSITION_FIELDS = frozenset(
    {"storage_location", "job_id", "error_message", "extracted_text", "confidence"}
)

# Columns reset on entry to a status unless the caller sets them explicitly.
CLEARED_ON_ENTRY: dict[WorkflowStatus, tuple[str, ...]] = {
    WorkflowStatus.STORED: ("job_id", "error_message"),
    WorkflowStatus.COMPLETED: ("job_id", "error_message"),
    WorkflowStatus.FAILED: ("extracted_text", "confidence"),
}


def _row_to_workflow(row: Mapping[str, Any]) -> Workflow:
    metadata = row.get("metadata") or {}
    if isinstance(metadata, str):
        metadata = json.loads(metadata)

    location = None
    if row.get("storage_bucket") and row.get("storage_key"):
        location = StorageLocation(bucket=row["storage_bucket"], key=row["storage_key"])

    confidence = row.get("confidence")
    return Workflow(
        id=row["id"],
        status=WorkflowStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        expires_at=row["expires_at"],
        storage_location=location,
        job_id=row.get("job_id"),
        extracted_text=row.get("extracted_text"),
        confidence=float(confidence) if confidence is not None else None,
        error_message=row.get("error_message"),
        metadata=dict(metadata),
    )


def _columns_for(status: WorkflowStatus, fields: Mapping[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - _TRANSITION_FIELDS
    if unknown:
        raise ValueError(f"Unknown workflow fields: {', '.join(sorted(unknown))}")

    columns: dict[str, Any] = {col: None for col in CLEARED_ON_ENTRY.get(status, ())}
    for name, value in fields.items():
        if name == "storage_location":
            location: StorageLocation | None = value
            columns["storage_bucket"] = location.bucket if location else None
            columns["storage_key"] = location.key if location else None
        else:
            columns[name] = value
    return columns


class WorkflowStore:
    """Data-access object for the notation_workflows table."""

    def __init__(self, pool: asyncpg.Pool | None = None, *, ttl_days: int = NOTATION_WORKFLOW_TTL_DAYS) -> None:
        self._pool = pool
        self._ttl_days = ttl_days

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        try:
            pool = self._pool if self._pool is not None else await get_pool()
            async with pool.acquire() as conn:
                yield conn
        except WorkflowError:
            raise
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise dependency_error_from_postgres(e) from e

    async def create(self, workflow_id: str, metadata: Mapping[str, Any] | None = None) -> Workflow:
        """Insert a new ``initiated`` workflow. Raises ConflictError if the id exists."""
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO notation_workflows (id, status, metadata, created_at, updated_at, expires_at)
                VALUES ($1, $2, $3::jsonb, NOW(), NOW(), NOW() + make_interval(days => $4))
                ON CONFLICT (id) DO NOTHING
                RETURNING *
                """,
                workflow_id,
                WorkflowStatus.INITIATED.value,
                json.dumps(dict(metadata or {})),
                self._ttl_days,
            )

        if row is None:
            raise ConflictError(f"Workflow {workflow_id} already exists", workflow_id=workflow_id)

        logger.info("Workflow created: %s", workflow_id, extra={"workflowId": workflow_id})
        return _row_to_workflow(row)

    async def transition(
        self,
        workflow_id: str,
        status: WorkflowStatus,
        fields: Mapping[str, Any] | None = None,
    ) -> Workflow:
        """Move an existing workflow to ``status``, merging ``fields``.

        Raises NotFoundError for unknown ids and InvalidTransitionError when
        the current status is not a legal source for ``status``.
        """
        columns = _columns_for(status, fields or {})
        sources = ALLOWED_SOURCES[status]

        args: list[Any] = [workflow_id, status.value]
        assignments = ["status = $2", "updated_at = NOW()"]
        for column, value in columns.items():
            args.append(value)
            assignments.append(f"{column} = ${len(args)}")
        args.append([s.value for s in sources])

        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE notation_workflows
                SET {", ".join(assignments)}
                WHERE id = $1 AND status = ANY(${len(args)}::text[])
                RETURNING *
                """,
                *args,
            )
            if row is None:
                current = await conn.fetchval(
                    "SELECT status FROM notation_workflows WHERE id = $1",
                    workflow_id,
                )

        if row is None:
            if current is None:
                raise NotFoundError(f"Workflow {workflow_id} not found", workflow_id=workflow_id)
            raise InvalidTransitionError(workflow_id, WorkflowStatus(current), status)

        logger.info(
            "Workflow status updated: %s -> %s",
            workflow_id,
            status,
            extra={"workflowId": workflow_id, "status": status.value},
        )
        return _row_to_workflow(row)

    async def get(self, workflow_id: str) -> Workflow | None:
        """Return the workflow, or None when it does not exist."""
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM notation_workflows WHERE id = $1", workflow_id)
        return _row_to_workflow(row) if row is not None else None

    async def store_result(self, workflow_id: str, text: str, confidence: float) -> Workflow:
        """Complete a workflow with its extracted text and mean confidence."""
        workflow = await self.transition(
            workflow_id,
            WorkflowStatus.COMPLETED,
            {"extracted_text": text, "confidence": confidence},
        )
        logger.info(
            "Results stored for workflow: %s (%d chars, confidence %.1f)",
            workflow_id,
            len(text),
            confidence,
            extra={"workflowId": workflow_id},
        )
        return workflow

    async def count_expired(self, now: datetime | None = None) -> int:
        async with self._connection() as conn:
            count = await conn.fetchval(
                "SELECT COUNT(*) FROM notation_workflows WHERE expires_at <= $1",
                now or datetime.now(UTC),
            )
        return int(count or 0)

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Delete workflows past their expiry; returns the number removed."""
        async with self._connection() as conn:
            status = await conn.execute(
                "DELETE FROM notation_workflows WHERE expires_at <= $1",
                now or datetime.now(UTC),
            )
        # asyncpg returns the command tag, e.g. "DELETE 3"
        deleted = int(status.split()[-1]) if status else 0
        logger.info("Purged %d expired workflows", deleted)
        return deleted
