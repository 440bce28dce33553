"""Unit tests for WorkflowStore: mock asyncpg, verify SQL guards and error translation."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import asyncpg
import pytest

from notation_ocr.errors import (
    ConflictError,
    DependencyError,
    InvalidTransitionError,
    NotFoundError,
)
from notation_ocr.stores.workflow_store import WorkflowStore
from notation_ocr.types import Service, StorageLocation, WorkflowStatus

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


class _FakePool:
    def __init__(self, conn):
        self.conn = conn

    @asynccontextmanager
    async def acquire(self):
        yield self.conn


def _row(**overrides):
    row = {
        "id": "wf-1",
        "status": "initiated",
        "created_at": NOW,
        "updated_at": NOW,
        "expires_at": NOW + timedelta(days=30),
        "storage_bucket": None,
        "storage_key": None,
        "job_id": None,
        "extracted_text": None,
        "confidence": None,
        "error_message": None,
        "metadata": "{}",
    }
    row.update(overrides)
    return row


@pytest.fixture
def mock_conn() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def pg_store(mock_conn) -> WorkflowStore:
    return WorkflowStore(_FakePool(mock_conn), ttl_days=30)


class TestCreate:
    async def test_insert_returns_initiated_workflow(self, pg_store, mock_conn):
        mock_conn.fetchrow.return_value = _row(metadata=json.dumps({"fileType": "image/jpeg"}))

        wf = await pg_store.create("wf-1", {"fileType": "image/jpeg"})

        assert wf.status == WorkflowStatus.INITIATED
        assert wf.metadata == {"fileType": "image/jpeg"}
        sql, *args = mock_conn.fetchrow.call_args.args
        assert "ON CONFLICT (id) DO NOTHING" in sql
        assert "make_interval(days => $4)" in sql
        assert args == ["wf-1", "initiated", '{"fileType": "image/jpeg"}', 30]

    async def test_existing_id_conflicts(self, pg_store, mock_conn):
        mock_conn.fetchrow.return_value = None

        with pytest.raises(ConflictError) as exc_info:
            await pg_store.create("wf-1", {})
        assert exc_info.value.code == "WORKFLOW_EXISTS"
        assert exc_info.value.retryable is False


class TestTransition:
    async def test_conditional_update_on_legal_sources(self, pg_store, mock_conn):
        location = StorageLocation("bucket", "notation-uploads/wf-1/1-a.jpg")
        mock_conn.fetchrow.return_value = _row(
            status="stored", storage_bucket=location.bucket, storage_key=location.key
        )

        wf = await pg_store.transition("wf-1", WorkflowStatus.STORED, {"storage_location": location})

        assert wf.status == WorkflowStatus.STORED
        assert wf.storage_location == location
        sql, *args = mock_conn.fetchrow.call_args.args
        assert "status = ANY(" in sql
        assert args[0] == "wf-1"
        assert args[1] == "stored"
        assert sorted(args[-1]) == ["failed", "initiated", "stored"]
        # entering stored clears the previous job id and error
        assert "job_id = $" in sql
        assert "error_message = $" in sql

    async def test_completed_clears_job_id(self, pg_store, mock_conn):
        mock_conn.fetchrow.return_value = _row(status="completed", extracted_text="1. e4", confidence=90.0)

        await pg_store.store_result("wf-1", "1. e4", 90.0)

        sql, *args = mock_conn.fetchrow.call_args.args
        assert "job_id = $" in sql
        assert args[-1] == ["processing"]
        assert "1. e4" in args and 90.0 in args

    async def test_missing_workflow_not_found(self, pg_store, mock_conn):
        mock_conn.fetchrow.return_value = None
        mock_conn.fetchval.return_value = None

        with pytest.raises(NotFoundError):
            await pg_store.transition("nope", WorkflowStatus.STORED)

    async def test_illegal_transition_rejected(self, pg_store, mock_conn):
        mock_conn.fetchrow.return_value = None
        mock_conn.fetchval.return_value = "completed"

        with pytest.raises(InvalidTransitionError) as exc_info:
            await pg_store.transition("wf-1", WorkflowStatus.PROCESSING, {"job_id": "op"})
        assert exc_info.value.current == WorkflowStatus.COMPLETED
        assert exc_info.value.target == WorkflowStatus.PROCESSING
        assert exc_info.value.retryable is False

    async def test_unknown_field_is_programming_error(self, pg_store, mock_conn):
        with pytest.raises(ValueError, match="Unknown workflow fields"):
            await pg_store.transition("wf-1", WorkflowStatus.FAILED, {"status": "completed"})
        mock_conn.fetchrow.assert_not_called()


class TestGet:
    async def test_absent_returns_none(self, pg_store, mock_conn):
        mock_conn.fetchrow.return_value = None
        assert await pg_store.get("nope") is None

    async def test_maps_columns(self, pg_store, mock_conn):
        mock_conn.fetchrow.return_value = _row(status="processing", job_id="op-1", metadata={"a": 1})
        wf = await pg_store.get("wf-1")
        assert wf.status == WorkflowStatus.PROCESSING
        assert wf.job_id == "op-1"
        assert wf.metadata == {"a": 1}


class TestErrorTranslation:
    async def test_transient_sqlstate_is_retryable(self, pg_store, mock_conn):
        mock_conn.fetchrow.side_effect = asyncpg.exceptions.SerializationError("could not serialize")

        with pytest.raises(DependencyError) as exc_info:
            await pg_store.get("wf-1")
        assert exc_info.value.service == Service.WORKFLOW_STORE
        assert exc_info.value.code == "40001"
        assert exc_info.value.retryable is True

    async def test_permanent_sqlstate_not_retryable(self, pg_store, mock_conn):
        mock_conn.fetchrow.side_effect = asyncpg.exceptions.UndefinedTableError("no table")

        with pytest.raises(DependencyError) as exc_info:
            await pg_store.get("wf-1")
        assert exc_info.value.code == "42P01"
        assert exc_info.value.retryable is False

    async def test_connection_loss_is_network(self, pg_store, mock_conn):
        mock_conn.fetchrow.side_effect = ConnectionResetError("reset by peer")

        with pytest.raises(DependencyError) as exc_info:
            await pg_store.get("wf-1")
        assert exc_info.value.service == Service.NETWORK
        assert exc_info.value.retryable is True


class TestPurge:
    async def test_purge_parses_command_tag(self, pg_store, mock_conn):
        mock_conn.execute.return_value = "DELETE 3"
        assert await pg_store.purge_expired(NOW) == 3
        sql, cutoff = mock_conn.execute.call_args.args
        assert "expires_at <= $1" in sql
        assert cutoff == NOW

    async def test_count_expired(self, pg_store, mock_conn):
        mock_conn.fetchval.return_value = 7
        assert await pg_store.count_expired(NOW) == 7
