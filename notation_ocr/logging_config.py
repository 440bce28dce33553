"""Structured JSON logging for Cloud Run compatibility.

Configures python-json-logger for GCP Cloud Logging severity mapping and
request correlation via request IDs. ``log_error`` emits the classified error
entries every failure path writes before responding.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from pythonjsonlogger.json import JsonFormatter

from notation_ocr.config import NOTATION_LOG_JSON
from notation_ocr.errors import ValidationError, WorkflowError

# GCP severity mapping: Python log levels -> Cloud Logging severity strings
_GCP_SEVERITY = {
    "DEBUG": "DEBUG",
    "INFO": "INFO",
    "WARNING": "WARNING",
    "ERROR": "ERROR",
    "CRITICAL": "CRITICAL",
}


class GCPJsonFormatter(JsonFormatter):
    """JSON formatter that maps Python log levels to GCP severity."""

    def add_fields(
        self,
        log_record: dict[str, object],
        record: logging.LogRecord,
        message_dict: dict[str, object],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["severity"] = _GCP_SEVERITY.get(record.levelname, record.levelname)
        log_record["timestamp"] = datetime.fromtimestamp(record.created, UTC).isoformat()
        log_record.pop("levelname", None)


def setup_logging(*, level: str = "INFO", json_output: bool | None = None) -> None:
    """Configure structured JSON logging on Cloud Run, plain text locally."""
    use_json = NOTATION_LOG_JSON if json_output is None else json_output

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Remove existing handlers
    for h in root.handlers[:]:
        root.removeHandler(h)

    handler = logging.StreamHandler()
    if use_json:
        handler.setFormatter(GCPJsonFormatter(
            fmt="%(message)s %(name)s %(funcName)s %(lineno)d",
            rename_fields={"message": "message", "name": "logger"},
        ))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-8s %(name)s:%(lineno)d  %(message)s",
            datefmt="%H:%M:%S",
        ))

    root.addHandler(handler)


def generate_request_id() -> str:
    """Generate a unique request ID for trace correlation."""
    return uuid.uuid4().hex[:16]


def log_error(
    logger: logging.Logger,
    error: BaseException,
    *,
    context: str,
    workflow_id: str | None = None,
    level: int | None = None,
    **metadata: Any,
) -> dict[str, Any]:
    """Log a classified error entry and return the structured fields.

    Validation errors are logged at WARNING; everything else at ERROR.
    Unclassified exceptions are reported as ``INTERNAL`` / non-retryable.
    """
    if isinstance(error, WorkflowError):
        code = error.code
        category = error.category
        retryable = error.retryable
        workflow_id = workflow_id or error.workflow_id
    else:
        code = type(error).__name__
        category = "INTERNAL"
        retryable = False

    if level is None:
        level = logging.WARNING if isinstance(error, ValidationError) else logging.ERROR

    fields: dict[str, Any] = {
        "errorCode": code,
        "category": category,
        "retryable": retryable,
        "context": context,
        **metadata,
    }
    if workflow_id:
        fields["workflowId"] = workflow_id

    logger.log(
        level,
        "%s: %s",
        context,
        error,
        extra=fields,
        exc_info=error if level >= logging.ERROR and not isinstance(error, WorkflowError) else None,
    )
    return fields
