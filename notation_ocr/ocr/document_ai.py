from __future__ import annotations

import asyncio
import json
import logging
import mimetypes
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from google.api_core import exceptions as google_exceptions
from google.api_core.client_options import ClientOptions
from google.auth import exceptions as auth_exceptions
from google.cloud import documentai_v1 as documentai
from google.cloud.storage import Client
from google.protobuf import json_format

from notation_ocr.errors import OcrJobFailedError, dependency_error_from_google
from notation_ocr.ocr.layout import reconstruct_text
from notation_ocr.storage.gcs import gs_uri, parse_gs_uri, read_json_objects
from notation_ocr.types import BoundingBox, JobResult, JobState, Service, StorageLocation, TextFragment

logger = logging.getLogger(__name__)

T = TypeVar("T")

_GOOGLE_ERRORS = (google_exceptions.GoogleAPIError, auth_exceptions.GoogleAuthError, OSError)

# mimetypes does not know HEIC on every platform.
_MIME_OVERRIDES = {".heic": "image/heic", ".webp": "image/webp"}


@dataclass(frozen=True)
class DocAIConfig:
    project: str
    location: str
    processor_id: str

    @property
    def processor_name(self) -> str:
        return f"projects/{self.project}/locations/{self.location}/processors/{self.processor_id}"


@dataclass(frozen=True)
class ParsedText:
    text: str
    confidence: float
    fragments: list[TextFragment]


def mime_type_for(key: str) -> str:
    lowered = key.lower()
    for suffix, mime in _MIME_OVERRIDES.items():
        if lowered.endswith(suffix):
            return mime
    guessed, _ = mimetypes.guess_type(key)
    return guessed or "image/jpeg"


class DocumentAIJobClient:
    """
    Asynchronous OCR jobs on Document AI:
    - start: batch process one stored image (GCS in -> GCS out)
    - poll: inspect the long-running operation; parse output when done

    The job id is the operation name. Blocking SDK calls run in the
    default executor.
    """

    def __init__(
        self,
        *,
        cfg: DocAIConfig,
        storage_client: Client,
        output_bucket: str,
        output_prefix: str,
        doc_client: documentai.DocumentProcessorServiceClient | None = None,
    ) -> None:
        self._cfg = cfg
        self._storage = storage_client
        self._output_bucket = output_bucket
        self._output_prefix = output_prefix.strip("/")
        self._doc_client = doc_client or documentai.DocumentProcessorServiceClient(
            client_options=ClientOptions(api_endpoint=f"{cfg.location}-documentai.googleapis.com")
        )

    async def start_job(self, location: StorageLocation) -> str:
        """Submit the stored image for text detection and return the job id."""
        job_id = await self._call(Service.OCR_ENGINE, self._start_job_sync, location)
        logger.info("OCR job started: %s for %s", job_id, location.uri)
        return job_id

    async def poll_job(self, job_id: str) -> JobResult:
        """Return the job state; on success also the parsed text.

        Raises OcrJobFailedError when the engine reports the job as failed.
        """
        operation = await self._call(Service.OCR_ENGINE, self._doc_client.get_operation, {"name": job_id})
        if not operation.done:
            return JobResult(state=JobState.IN_PROGRESS)

        if operation.HasField("error") and operation.error.code != 0:
            raise OcrJobFailedError(
                f"OCR job failed: {operation.error.message or 'Unknown error'}", job_id=job_id
            )

        destinations = _output_destinations(operation, job_id)
        shards = await self._call(Service.OBJECT_STORE, self._read_outputs, destinations)
        documents = load_documents(shards)
        if shards and not documents:
            raise OcrJobFailedError("OCR job output could not be parsed", job_id=job_id)
        parsed = parse_documents(documents)

        logger.info(
            "OCR job completed: %s (%d fragments, confidence %.1f)",
            job_id,
            len(parsed.fragments),
            parsed.confidence,
        )
        return JobResult(
            state=JobState.SUCCEEDED,
            text=parsed.text,
            confidence=parsed.confidence,
            fragments=parsed.fragments,
        )

    def _start_job_sync(self, location: StorageLocation) -> str:
        output_uri = gs_uri(self._output_bucket, f"{self._output_prefix}/{location.key}/")
        gcs_doc = documentai.GcsDocument(gcs_uri=location.uri, mime_type=mime_type_for(location.key))
        req = documentai.BatchProcessRequest(
            name=self._cfg.processor_name,
            input_documents=documentai.BatchDocumentsInputConfig(
                gcs_documents=documentai.GcsDocuments(documents=[gcs_doc])
            ),
            document_output_config=documentai.DocumentOutputConfig(
                gcs_output_config=documentai.DocumentOutputConfig.GcsOutputConfig(gcs_uri=output_uri)
            ),
        )
        operation = self._doc_client.batch_process_documents(request=req)
        return str(operation.operation.name)

    def _read_outputs(self, destinations: Sequence[str]) -> list[str]:
        shards: list[str] = []
        for destination in destinations:
            bucket, prefix = parse_gs_uri(destination)
            shards.extend(read_json_objects(self._storage, bucket, prefix))
        return shards

    async def _call(self, service: Service, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn, *args)
        except _GOOGLE_ERRORS as e:
            raise dependency_error_from_google(service, e) from e


def _output_destinations(operation: Any, job_id: str) -> list[str]:
    if not operation.HasField("metadata"):
        raise OcrJobFailedError("OCR job finished without metadata", job_id=job_id)

    metadata = documentai.BatchProcessMetadata.deserialize(operation.metadata.value)
    if metadata.state != documentai.BatchProcessMetadata.State.SUCCEEDED:
        reason = metadata.state_message or metadata.state.name
        raise OcrJobFailedError(f"OCR job failed: {reason}", job_id=job_id)

    destinations: list[str] = []
    for status in metadata.individual_process_statuses:
        if status.status and status.status.code != 0:
            raise OcrJobFailedError(f"OCR job failed: {status.status.message}", job_id=job_id)
        if status.output_gcs_destination:
            destinations.append(status.output_gcs_destination)
    if not destinations:
        raise OcrJobFailedError("OCR job succeeded without an output location", job_id=job_id)
    return destinations


def load_documents(shards: Iterable[str]) -> list[documentai.Document]:
    """Parse Document AI output shards; malformed shards are skipped."""
    documents: list[documentai.Document] = []
    for raw in shards:
        try:
            obj = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Skipping OCR output shard that is not JSON")
            continue
        # Some outputs have {"document": {...}}; others are direct Document JSON.
        doc_obj = obj.get("document", obj) if isinstance(obj, dict) else obj
        if not isinstance(doc_obj, dict):
            logger.warning("Skipping OCR output shard that is not a JSON object")
            continue
        try:
            documents.append(documentai.Document.from_json(json.dumps(doc_obj), ignore_unknown_fields=True))
        except json_format.ParseError as e:
            logger.warning("Skipping OCR output shard that is not a Document: %s", e)
    return documents


def extract_fragments(documents: Sequence[documentai.Document]) -> list[TextFragment]:
    """Line-level fragments only; tokens, paragraphs and blocks are ignored."""
    fragments: list[TextFragment] = []
    page_number = 0
    for doc in documents:
        for page in doc.pages:
            page_number += 1
            for line in page.lines:
                text = _anchor_text(doc.text, line.layout.text_anchor).strip()
                if not text:
                    continue
                fragments.append(
                    TextFragment(
                        text=text,
                        confidence=float(line.layout.confidence) * 100,
                        bounding_box=_bounding_box(line.layout.bounding_poly),
                        page=page_number,
                    )
                )
    return fragments


def parse_documents(documents: Sequence[documentai.Document]) -> ParsedText:
    fragments = extract_fragments(documents)
    confidence = sum(f.confidence for f in fragments) / len(fragments) if fragments else 0.0
    return ParsedText(text=assemble_text(fragments), confidence=confidence, fragments=fragments)


def assemble_text(fragments: Sequence[TextFragment]) -> str:
    """Spatially reconstruct placed fragments page by page; append the rest newline-joined."""
    pages: dict[int, list[TextFragment]] = {}
    unplaced: list[str] = []
    for fragment in fragments:
        if fragment.bounding_box is None:
            unplaced.append(fragment.text)
        else:
            pages.setdefault(fragment.page, []).append(fragment)

    parts = [reconstruct_text(page) for _, page in sorted(pages.items())]
    parts.extend(unplaced)
    return "\n".join(p for p in parts if p)


def _anchor_text(full_text: str, anchor: documentai.Document.TextAnchor) -> str:
    if not anchor.text_segments:
        return anchor.content or ""
    return "".join(
        full_text[int(segment.start_index) : int(segment.end_index)] for segment in anchor.text_segments
    )


def _bounding_box(poly: documentai.BoundingPoly) -> BoundingBox | None:
    vertices = list(poly.normalized_vertices)
    if not vertices:
        return None
    xs = [v.x for v in vertices]
    ys = [v.y for v in vertices]
    return BoundingBox(left=min(xs), top=min(ys), width=max(xs) - min(xs), height=max(ys) - min(ys))
