"""FastAPI entry point for the chess notation OCR service.

Endpoints:
- POST /v1/ocr             : Tagged request dispatch (presigned URL, status, results)
- POST /v1/events/storage  : GCS object-finalize notifications (Pub/Sub push / Eventarc)
- GET  /liveness           : Health check
- GET  /readiness          : DB connectivity check
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from google.cloud import storage
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from notation_ocr.config import (
    NOTATION_CORS_ALLOW_HEADERS,
    NOTATION_CORS_ALLOW_METHODS,
    NOTATION_CORS_ALLOW_ORIGINS,
    NOTATION_DOC_AI_LOCATION,
    NOTATION_DOC_AI_PROCESSOR_ID,
    NOTATION_DOC_AI_PROJECT,
    NOTATION_KMS_KEY_NAME,
    NOTATION_OCR_OUTPUT_BUCKET,
    NOTATION_OCR_OUTPUT_PREFIX,
    NOTATION_RATE_LIMIT,
)
from notation_ocr.db import check_db_connection, close_pool, get_pool
from notation_ocr.logging_config import generate_request_id, setup_logging
from notation_ocr.models import HealthResponse
from notation_ocr.ocr.document_ai import DocAIConfig, DocumentAIJobClient
from notation_ocr.storage.gcs import UploadUrlSigner
from notation_ocr.stores.workflow_store import WorkflowStore
from notation_ocr.workflow.events import StorageEventHandler
from notation_ocr.workflow.intents import UploadIntentIssuer
from notation_ocr.workflow.router import STORAGE_TRIGGER, RouterResponse, WorkflowRouter

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_workflow_router() -> WorkflowRouter:
    """Build the router over real GCP clients (cached per process)."""
    if not NOTATION_DOC_AI_PROJECT or not NOTATION_DOC_AI_PROCESSOR_ID:
        raise RuntimeError("NOTATION_DOC_AI_PROJECT and NOTATION_DOC_AI_PROCESSOR_ID must be set")

    storage_client = storage.Client()
    store = WorkflowStore()
    ocr = DocumentAIJobClient(
        cfg=DocAIConfig(
            project=NOTATION_DOC_AI_PROJECT,
            location=NOTATION_DOC_AI_LOCATION,
            processor_id=NOTATION_DOC_AI_PROCESSOR_ID,
        ),
        storage_client=storage_client,
        output_bucket=NOTATION_OCR_OUTPUT_BUCKET,
        output_prefix=NOTATION_OCR_OUTPUT_PREFIX,
    )
    return WorkflowRouter(
        store=store,
        issuer=UploadIntentIssuer(store, UploadUrlSigner(storage_client, kms_key_name=NOTATION_KMS_KEY_NAME)),
        handler=StorageEventHandler(store, ocr),
        ocr=ocr,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: init pool on startup, close on shutdown."""
    setup_logging()
    await get_pool()
    logger.info("Notation OCR service started")
    yield
    await close_pool()
    logger.info("Notation OCR service stopped")


app = FastAPI(
    title="Chess Notation OCR API",
    version="0.1.0",
    lifespan=lifespan,
)

# -- Rate limiting ------------------------------------------------------------

limiter = Limiter(key_func=get_remote_address, default_limits=[NOTATION_RATE_LIMIT])
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"error": "Rate limit exceeded", "errorCode": "RATE_LIMITED", "retryable": True},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=NOTATION_CORS_ALLOW_ORIGINS,
    allow_credentials=False,
    allow_methods=NOTATION_CORS_ALLOW_METHODS,
    allow_headers=NOTATION_CORS_ALLOW_HEADERS,
)


# -- Body size limit ----------------------------------------------------------

_MAX_BODY_BYTES = 10 * 1024 * 1024  # 10 MB


@app.middleware("http")
async def body_size_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Reject requests with bodies exceeding the size limit."""
    content_length = request.headers.get("content-length")
    if content_length is not None and int(content_length) > _MAX_BODY_BYTES:
        return JSONResponse(status_code=413, content={"detail": "Request body too large"})
    return await call_next(request)


# -- Request ID middleware ----------------------------------------------------


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Attach a unique request ID for trace correlation."""
    request_id = request.headers.get("x-request-id") or generate_request_id()
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["x-request-id"] = request_id
    return response


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=400, detail="Request body must be valid JSON") from e


def _render(result: RouterResponse) -> JSONResponse:
    return JSONResponse(status_code=result.status_code, content=result.body)


# -- Health -------------------------------------------------------------------


@app.get("/liveness", response_model=HealthResponse)
async def liveness() -> HealthResponse:
    return HealthResponse(status="ok")


@app.get("/readiness", response_model=HealthResponse)
async def readiness() -> HealthResponse:
    db_ok = await check_db_connection()
    if not db_ok:
        raise HTTPException(status_code=503, detail="Database unavailable")
    return HealthResponse(status="ok")


# -- Workflow operations ------------------------------------------------------


@app.post("/v1/ocr")
@limiter.limit(NOTATION_RATE_LIMIT)
async def ocr_request(
    request: Request,
    router: Annotated[WorkflowRouter, Depends(get_workflow_router)],
) -> JSONResponse:
    """Dispatch a tagged request: generate-presigned-url, get-status or get-results."""
    payload = await _json_body(request)
    return _render(await router.dispatch(payload))


@app.post("/v1/events/storage")
async def storage_event(
    request: Request,
    router: Annotated[WorkflowRouter, Depends(get_workflow_router)],
) -> JSONResponse:
    """Push endpoint for object-finalize notifications."""
    payload = await _json_body(request)
    if isinstance(payload, dict) and "message" not in payload and "eventType" not in payload:
        # Eventarc binary mode carries the event type in a header.
        ce_type = request.headers.get("ce-type")
        if ce_type:
            payload = {**payload, "eventType": ce_type}
    return _render(await router.dispatch({"type": STORAGE_TRIGGER, "event": payload}))
