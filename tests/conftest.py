"""Shared test fixtures for the notation OCR test suite."""

from __future__ import annotations

import pytest


@pytest.fixture
def workflow_id() -> str:
    return "0b9f7a52-3c1e-4c4e-9d8a-5f2b6f1e2a10"


@pytest.fixture
def upload_bucket() -> str:
    return "test-notation-uploads"


@pytest.fixture
def job_id() -> str:
    return "projects/123/locations/us/operations/9876543210"
