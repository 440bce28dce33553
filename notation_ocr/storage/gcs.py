from __future__ import annotations

import re
import time
from datetime import timedelta

import google.auth
from google.auth.transport import requests as google_requests
from google.cloud import storage

from notation_ocr.config import IS_CLOUD_RUN, NOTATION_KEY_PREFIX
from notation_ocr.errors import StorageEventParseError
from notation_ocr.types import StorageLocation

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def gs_uri(bucket: str, name: str) -> str:
    return f"gs://{bucket}/{name}"


def parse_gs_uri(uri: str) -> tuple[str, str]:
    """Split ``gs://bucket/prefix`` into ``(bucket, prefix)``."""
    if not uri.startswith("gs://"):
        raise ValueError(f"Not a gs:// URI: {uri}")
    bucket, _, prefix = uri[len("gs://") :].partition("/")
    return bucket, prefix


def sanitize_file_name(file_name: str) -> str:
    """Replace every character outside ``[A-Za-z0-9._-]`` with ``_``."""
    return _UNSAFE_CHARS.sub("_", file_name)


def derive_storage_key(
    workflow_id: str,
    file_name: str,
    *,
    prefix: str = NOTATION_KEY_PREFIX,
    timestamp_ms: int | None = None,
) -> str:
    """Object key ``<prefix>/<workflow_id>/<uploadTimestampMillis>-<sanitizedFileName>``."""
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"{prefix}/{workflow_id}/{timestamp_ms}-{sanitize_file_name(file_name)}"


def parse_workflow_id(key: str, *, prefix: str = NOTATION_KEY_PREFIX) -> str:
    """Extract the workflow id from an upload key; inverse of derive_storage_key."""
    head = f"{prefix}/"
    if not key.startswith(head):
        raise StorageEventParseError(f"Invalid storage key format: {key}")
    workflow_id = key[len(head) :].split("/", 1)[0]
    if not workflow_id:
        raise StorageEventParseError(f"Could not extract workflow ID from key: {key}")
    return workflow_id


class UploadUrlSigner:
    """Mints V4 signed PUT URLs scoped to one object and content type."""

    def __init__(self, client: storage.Client, *, kms_key_name: str | None = None) -> None:
        self._client = client
        self._kms_key_name = kms_key_name

    def sign_put_url(
        self,
        location: StorageLocation,
        *,
        content_type: str,
        expires_in: int,
    ) -> tuple[str, dict[str, str]]:
        """Return the signed URL and the headers the uploader must send."""
        headers: dict[str, str] = {"Content-Type": content_type}
        signed_headers: dict[str, str] = {}
        if self._kms_key_name:
            signed_headers["x-goog-encryption-kms-key-name"] = self._kms_key_name
            headers.update(signed_headers)

        blob = self._client.bucket(location.bucket).blob(location.key)
        url = blob.generate_signed_url(
            version="v4",
            expiration=timedelta(seconds=expires_in),
            method="PUT",
            content_type=content_type,
            headers=signed_headers or None,
            **self._signing_credentials(),
        )
        return url, headers

    def _signing_credentials(self) -> dict[str, str]:
        # Cloud Run credentials carry no private key; sign through IAM signBlob.
        if not IS_CLOUD_RUN:
            return {}
        credentials, _ = google.auth.default()
        credentials.refresh(google_requests.Request())
        return {
            "service_account_email": credentials.service_account_email,
            "access_token": credentials.token,
        }


def read_json_objects(client: storage.Client, bucket: str, prefix: str) -> list[str]:
    """Download every ``.json`` object under ``prefix``, ordered by name."""
    if prefix and not prefix.endswith("/"):
        prefix += "/"
    blobs = list(client.list_blobs(bucket, prefix=prefix))
    json_blobs = sorted([b for b in blobs if b.name.lower().endswith(".json")], key=lambda b: b.name)
    return [b.download_as_text(encoding="utf-8") for b in json_blobs]
