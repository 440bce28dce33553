"""Unit tests for UploadIntentIssuer: fake store and signer."""

from __future__ import annotations

import re

import pytest

from notation_ocr.errors import DependencyError, InvalidFileTypeError, ValidationError
from notation_ocr.types import Service, WorkflowStatus
from notation_ocr.workflow.intents import UploadIntentIssuer


@pytest.fixture
def issuer(store, signer, sleep, upload_bucket) -> UploadIntentIssuer:
    return UploadIntentIssuer(store, signer, bucket=upload_bucket, sleep=sleep)


class TestIssue:
    async def test_issues_url_and_records_workflow(self, issuer, store, signer, upload_bucket):
        intent = await issuer.issue("my notes.jpg", "image/jpeg")

        assert re.fullmatch(rf"notation-uploads/{intent.workflow_id}/\d+-my_notes\.jpg", intent.storage_key)
        assert intent.expires_in == 300
        assert intent.upload_url.startswith("https://storage.googleapis.com/")
        assert intent.upload_headers == {"Content-Type": "image/jpeg"}

        location, content_type, expires_in = signer.signed[0]
        assert location.bucket == upload_bucket
        assert location.key == intent.storage_key
        assert (content_type, expires_in) == ("image/jpeg", 300)

        wf = store.rows[intent.workflow_id]
        assert wf.status == WorkflowStatus.INITIATED
        assert wf.metadata == {
            "uploadKey": intent.storage_key,
            "uploadBucket": upload_bucket,
            "originalFileName": "my notes.jpg",
            "fileType": "image/jpeg",
        }

    async def test_fresh_id_per_intent(self, issuer):
        a = await issuer.issue("a.png", "image/png")
        b = await issuer.issue("a.png", "image/png")
        assert a.workflow_id != b.workflow_id

    @pytest.mark.parametrize("file_type", ["IMAGE/JPEG", "image/HEIC", "image/webp"])
    async def test_allow_list_case_insensitive(self, issuer, file_type):
        intent = await issuer.issue("x", file_type)
        assert intent.workflow_id

    async def test_unsupported_type_has_no_side_effects(self, issuer, store, signer):
        with pytest.raises(InvalidFileTypeError) as exc_info:
            await issuer.issue("scoresheet.pdf", "application/pdf")

        assert exc_info.value.code == "INVALID_FILE_TYPE"
        assert exc_info.value.retryable is False
        assert store.writes() == []
        assert signer.signed == []

    @pytest.mark.parametrize("file_name,file_type", [("", "image/jpeg"), ("a.jpg", None), (None, None)])
    async def test_missing_fields(self, issuer, store, file_name, file_type):
        with pytest.raises(ValidationError) as exc_info:
            await issuer.issue(file_name, file_type)
        assert exc_info.value.code == "MISSING_FIELDS"
        assert store.writes() == []

    async def test_record_failure_still_returns_intent(self, issuer, store):
        outage = DependencyError(Service.WORKFLOW_STORE, "too many connections", code="53300")
        store.fail_next = [outage, outage, outage]

        intent = await issuer.issue("a.jpg", "image/jpeg")

        assert intent.upload_url
        assert intent.workflow_id not in store.rows
        assert len([c for c in store.calls if c[0] == "create"]) == 3

    async def test_transient_record_failure_retried(self, issuer, store):
        store.fail_next = [DependencyError(Service.NETWORK, "reset")]

        intent = await issuer.issue("a.jpg", "image/jpeg")

        assert store.rows[intent.workflow_id].status == WorkflowStatus.INITIATED
