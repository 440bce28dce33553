"""Pydantic request/response schemas for the notation OCR API (camelCase on the wire)."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# -- Responses ----------------------------------------------------------------


class PresignedUrlResponse(_WireModel):
    presigned_url: str
    workflow_id: str
    key: str
    expires_in: int
    upload_headers: dict[str, str] = Field(default_factory=dict)


class StatusResponse(_WireModel):
    workflow_id: str
    status: str
    updated_at: int  # epoch millis


class ResultsResponse(_WireModel):
    workflow_id: str
    status: str
    extracted_text: str | None = None
    confidence: float | None = None
    error_message: str | None = None


class StorageEventResponse(_WireModel):
    message: str
    workflow_id: str
    status: str
    duplicate: bool = False


class StorageEventError(_WireModel):
    error: str
    message: str


class ErrorResponse(_WireModel):
    error: str
    error_code: str
    retryable: bool
    workflow_id: str | None = None


# -- Health -------------------------------------------------------------------


class HealthResponse(BaseModel):
    status: str
    error: str | None = None
