"""Environment-variable-driven configuration for the notation OCR service.

All config comes from env vars; defaults suit local development.
"""

from __future__ import annotations

import os


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_csv(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


# -- Uploads ------------------------------------------------------------------
NOTATION_UPLOAD_BUCKET: str = os.getenv("NOTATION_UPLOAD_BUCKET", "chess-notation-uploads")
NOTATION_KEY_PREFIX: str = os.getenv("NOTATION_KEY_PREFIX", "notation-uploads").strip("/")
NOTATION_UPLOAD_URL_TTL_SECONDS: int = _env_int("NOTATION_UPLOAD_URL_TTL_SECONDS", 300)
NOTATION_ALLOWED_FILE_TYPES: list[str] = [
    t.lower()
    for t in _env_csv(
        "NOTATION_ALLOWED_FILE_TYPES",
        "image/jpeg,image/png,image/heic,image/webp",
    )
]
# Customer-managed encryption key; GCS default encryption applies when unset.
NOTATION_KMS_KEY_NAME: str | None = os.getenv("NOTATION_KMS_KEY_NAME") or None

# -- Workflow store -----------------------------------------------------------
NOTATION_WORKFLOW_TTL_DAYS: int = _env_int("NOTATION_WORKFLOW_TTL_DAYS", 30)
NOTATION_RETRY_MAX_ATTEMPTS: int = _env_int("NOTATION_RETRY_MAX_ATTEMPTS", 3)

# -- Document AI --------------------------------------------------------------
NOTATION_DOC_AI_PROJECT: str | None = os.getenv("NOTATION_DOC_AI_PROJECT") or os.getenv(
    "GOOGLE_CLOUD_PROJECT"
)
NOTATION_DOC_AI_LOCATION: str = os.getenv("NOTATION_DOC_AI_LOCATION", "us")
NOTATION_DOC_AI_PROCESSOR_ID: str | None = os.getenv("NOTATION_DOC_AI_PROCESSOR_ID")
NOTATION_OCR_OUTPUT_BUCKET: str = os.getenv("NOTATION_OCR_OUTPUT_BUCKET", NOTATION_UPLOAD_BUCKET)
NOTATION_OCR_OUTPUT_PREFIX: str = os.getenv("NOTATION_OCR_OUTPUT_PREFIX", "ocr-output").strip("/")

# -- HTTP ---------------------------------------------------------------------
NOTATION_RATE_LIMIT: str = os.getenv("NOTATION_RATE_LIMIT", "60/minute")
NOTATION_CORS_ALLOW_ORIGINS: list[str] = _env_csv(
    "NOTATION_CORS_ALLOW_ORIGINS",
    "https://enjoylearningchess.com,http://localhost:8080,http://localhost:3000",
)
NOTATION_CORS_ALLOW_METHODS: list[str] = _env_csv(
    "NOTATION_CORS_ALLOW_METHODS",
    "GET,POST,OPTIONS",
)
NOTATION_CORS_ALLOW_HEADERS: list[str] = _env_csv(
    "NOTATION_CORS_ALLOW_HEADERS",
    "Content-Type",
)

# -- Server -------------------------------------------------------------------
IS_CLOUD_RUN: bool = bool(os.getenv("K_SERVICE"))
NOTATION_LOG_JSON: bool = _env_bool("NOTATION_LOG_JSON", IS_CLOUD_RUN)
