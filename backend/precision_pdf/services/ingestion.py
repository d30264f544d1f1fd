"""
Document Ingestion Service

Orchestrates the progressive upload pipeline:
  0. Reject unauthenticated calls and invalid input (type, size, emptiness,
     magic bytes) before any side effect
  1. Upload the raw file to S3 under owners/<owner>/documents/<doc_id>.<ext>
  2. Insert the document record (status=uploading, page_count=1) so the owner
     sees it immediately
  3. PDFs only: rasterize every page to PNG (best-effort)
  4. Upload each page preview; attach them only as a complete set
  5. Move the record to status=processing with the previews + page count
  6. Hand the document to the extraction worker, fire-and-forget
  7. Return {documentId, status, pageCount}

Partial-failure policy:
  - invalid input / missing auth  → rejected, nothing written
  - raw upload fails              → StorageError, no record created
  - rasterization fails           → continue without previews (page_count=1)
  - a page upload fails           → orphaned page blobs deleted, continue without previews
  - processing write fails        → error propagates; record stays uploading
  - extraction handoff fails      → logged by the dispatcher; record stays processing

Steps run strictly in order; there is no compensating rollback of steps
that already completed.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass
from enum import Enum

from fastapi import UploadFile

from precision_pdf.auth.token import TokenPayload
from precision_pdf.core.errors import AuthError, StorageError, ValidationError
from precision_pdf.db.repository import DocumentRecordStore
from precision_pdf.processing.rasterizer import PdfRasterizer
from precision_pdf.schemas.documents import (
    ALLOWED_CONTENT_TYPES,
    EXTENSION_CONTENT_TYPES,
    MAX_FILE_SIZE_BYTES,
    PAGINATED_CONTENT_TYPES,
    DocumentErrors,
    DocumentStatus,
    IngestResponse,
)
from precision_pdf.services.dispatch import BackgroundDispatcher
from precision_pdf.storage.s3 import ResourceType, S3StorageService

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 1024 * 1024
_MAX_TITLE_LENGTH = 255

# ---------------------------------------------------------------------------
# File type validation helpers
# ---------------------------------------------------------------------------

# Signature each declared type must start with
_MAGIC_BYTES: dict[str, bytes] = {
    "application/pdf": b"%PDF-",
    "image/jpeg":      b"\xff\xd8\xff",
    "image/png":       b"\x89PNG\r\n\x1a\n",
}

# PDF readers accept the header anywhere in the first KiB
_PDF_HEADER_WINDOW = 1024

_GENERIC_CONTENT_TYPES = frozenset({"", "application/octet-stream", "binary/octet-stream"})


def _get_extension(filename: str) -> str:
    """Return lowercased file extension including the dot."""
    parts = filename.rsplit(".", 1)
    return f".{parts[-1].lower()}" if len(parts) == 2 else ""


def _sanitize_filename(filename: str) -> str:
    """Strip path components and replace characters unsafe in S3 keys."""
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    safe = re.sub(r"[^a-zA-Z0-9._\-]", "_", basename)
    return safe[:200]


def resolve_content_type(filename: str, declared: str | None) -> str:
    """
    Normalise the declared Content-Type; when the client sent nothing useful,
    fall back to the file extension.
    """
    content_type = (declared or "").split(";", 1)[0].strip().lower()
    if content_type in _GENERIC_CONTENT_TYPES:
        return EXTENSION_CONTENT_TYPES.get(_get_extension(filename), content_type or "application/octet-stream")
    return content_type


def matches_declared_type(content_type: str, head: bytes) -> bool:
    magic = _MAGIC_BYTES.get(content_type)
    if magic is None:
        return False
    if content_type == "application/pdf":
        return magic in head[:_PDF_HEADER_WINDOW]
    return head.startswith(magic)


# ---------------------------------------------------------------------------
# Page preview result
# ---------------------------------------------------------------------------

class PreviewOutcome(str, Enum):
    COMPLETE = "complete"   # every page rendered and stored
    SKIPPED  = "skipped"    # not a paginated type
    PARTIAL  = "partial"    # some page uploads failed; set discarded
    FAILED   = "failed"     # rasterizer could not render the file


@dataclass(frozen=True)
class PagePreviewResult:
    outcome:  PreviewOutcome
    keys:     tuple[str, ...] = ()
    uploaded: int = 0            # pages stored before a PARTIAL abort
    error:    str | None = None

    @property
    def page_images(self) -> list[str]:
        """Keys to attach to the record: the full set or nothing."""
        return list(self.keys) if self.outcome is PreviewOutcome.COMPLETE else []

    @property
    def page_count(self) -> int:
        return len(self.keys) if self.outcome is PreviewOutcome.COMPLETE else 1


# ---------------------------------------------------------------------------
# Core ingestion orchestrator
# ---------------------------------------------------------------------------

class IngestionService:
    """
    Constructed per request from process-wide collaborators (record store,
    S3 service, rasterizer, dispatcher) held on app.state.
    """

    def __init__(
        self,
        records:        DocumentRecordStore,
        storage:        S3StorageService,
        rasterizer:     PdfRasterizer,
        dispatcher:     BackgroundDispatcher,
        task_publisher: "TaskPublisher",
    ) -> None:
        self._records    = records
        self._storage    = storage
        self._rasterizer = rasterizer
        self._dispatcher = dispatcher
        self._publisher  = task_publisher

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def ingest(self, file: UploadFile | None, owner: TokenPayload | None) -> IngestResponse:
        """
        Run the synchronous phase of ingestion and return once extraction
        has been handed off.

        Raises:
            AuthError:       no authenticated owner.
            ValidationError: missing, empty, oversize or disallowed file.
            StorageError:    raw upload failed (no record created).
        """
        if owner is None or not owner.sub:
            raise AuthError.unauthorized()
        owner_id = owner.sub

        # ---- Step 0: validate before any side effect --------------------
        if file is None or not file.filename:
            raise ValidationError(DocumentErrors.missing_file())
        filename = file.filename

        content_type = resolve_content_type(filename, file.content_type)
        if content_type not in ALLOWED_CONTENT_TYPES:
            raise ValidationError(DocumentErrors.unsupported_file_type(filename, content_type))

        file_bytes = await self._read_upload(file, filename)

        if not matches_declared_type(content_type, file_bytes[:_PDF_HEADER_WINDOW]):
            raise ValidationError(DocumentErrors.content_mismatch(filename, content_type))

        document_id = uuid.uuid4()
        ext = _get_extension(_sanitize_filename(filename)) or _default_extension(content_type)

        logger.info(
            "Ingest start | owner=%s doc=%s file=%s size=%d type=%s",
            owner_id, document_id, filename, len(file_bytes), content_type,
        )

        # ---- Step 1: raw upload (StorageError propagates) ---------------
        s3_obj = await self._storage.put_object(
            owner_id,
            ResourceType.DOCUMENT,
            f"{document_id}{ext}",
            file_bytes,
            content_type,
            metadata={"document_id": str(document_id)},
        )

        # ---- Step 2: record visible to the owner ------------------------
        await self._records.create(
            document_id=document_id,
            owner_id=owner_id,
            title=filename.strip()[:_MAX_TITLE_LENGTH],
            file_key=s3_obj.key,
            file_size=len(file_bytes),
            mime_type=content_type,
        )

        # ---- Steps 3-4: page previews (best-effort) ---------------------
        if content_type in PAGINATED_CONTENT_TYPES:
            previews = await self.build_page_previews(owner_id, document_id, file_bytes)
        else:
            previews = PagePreviewResult(PreviewOutcome.SKIPPED)

        # ---- Step 5: processing ----------------------------------------
        try:
            doc = await self._records.mark_processing(
                document_id,
                page_images=previews.page_images,
                page_count=previews.page_count,
            )
        except Exception:
            # record stays uploading; failed is written only by the extraction bridge
            logger.exception("Ingest could not enter processing | doc=%s", document_id)
            raise

        # ---- Step 6: extraction handoff (fire-and-forget) ---------------
        self._hand_off(document_id, owner_id, s3_obj.key, content_type, doc.title)

        logger.info(
            "Ingest ok | owner=%s doc=%s pages=%d previews=%s",
            owner_id, document_id, previews.page_count, previews.outcome.value,
        )
        return IngestResponse(
            document_id=document_id,
            status=DocumentStatus.PROCESSING,
            page_count=previews.page_count,
        )

    # ------------------------------------------------------------------
    # Page previews
    # ------------------------------------------------------------------

    async def build_page_previews(
        self,
        owner_id:    str,
        document_id: uuid.UUID,
        pdf_bytes:   bytes,
    ) -> PagePreviewResult:
        """Render and store page previews. Never raises."""
        try:
            pages = await self._rasterizer.rasterize(pdf_bytes)
        except Exception as exc:
            logger.warning("Rasterization failed | doc=%s error=%s", document_id, exc)
            return PagePreviewResult(PreviewOutcome.FAILED, error=str(exc))

        keys: list[str] = []
        for page in pages:
            try:
                stored = await self._storage.put_object(
                    owner_id,
                    ResourceType.PAGE_IMAGE,
                    f"{document_id}-page-{page.index:04d}.{page.image_format}",
                    page.data,
                    page.content_type,
                    metadata={"document_id": str(document_id), "page_index": str(page.index)},
                )
            except StorageError as exc:
                logger.warning(
                    "Page upload failed | doc=%s page=%d uploaded=%d/%d error=%s",
                    document_id, page.index, len(keys), len(pages), exc.cause,
                )
                await self._discard_pages(document_id, keys)
                return PagePreviewResult(
                    PreviewOutcome.PARTIAL,
                    uploaded=len(keys),
                    error=exc.cause,
                )
            keys.append(stored.key)

        return PagePreviewResult(PreviewOutcome.COMPLETE, keys=tuple(keys), uploaded=len(keys))

    async def _discard_pages(self, document_id: uuid.UUID, keys: list[str]) -> None:
        for key in keys:
            try:
                await self._storage.delete_object(key)
            except StorageError as exc:
                logger.warning("Orphan page cleanup failed | doc=%s key=%s error=%s", document_id, key, exc.cause)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _hand_off(
        self,
        document_id:  uuid.UUID,
        owner_id:     str,
        file_key:     str,
        content_type: str,
        title:        str,
    ) -> None:
        try:
            self._dispatcher.submit(
                lambda: self._publisher.publish_extraction_task(
                    document_id=document_id,
                    owner_id=owner_id,
                    file_key=file_key,
                    mime_type=content_type,
                    title=title,
                ),
                name=f"extraction-handoff:{document_id}",
                context={"doc": str(document_id), "owner": owner_id},
            )
        except Exception as exc:
            logger.error("Extraction handoff not scheduled | doc=%s error=%s", document_id, exc)

    async def _read_upload(self, file: UploadFile, filename: str) -> bytes:
        """
        Read the upload into memory with a hard size ceiling.
        Stops reading as soon as the limit is crossed.
        """
        if file.size is not None and file.size > MAX_FILE_SIZE_BYTES:
            raise ValidationError(DocumentErrors.file_too_large(file.size))

        parts: list[bytes] = []
        total = 0
        while True:
            chunk = await file.read(_READ_CHUNK_BYTES)
            if not chunk:
                break
            total += len(chunk)
            if total > MAX_FILE_SIZE_BYTES:
                raise ValidationError(DocumentErrors.file_too_large(total))
            parts.append(chunk)

        if total == 0:
            raise ValidationError(DocumentErrors.empty_file(filename))
        return b"".join(parts)


def _default_extension(content_type: str) -> str:
    for ext, mime in EXTENSION_CONTENT_TYPES.items():
        if mime == content_type:
            return ext
    return ""


# ---------------------------------------------------------------------------
# Task publisher: thin abstraction over Celery apply_async()
# Injected into IngestionService so it can be mocked in tests.
# ---------------------------------------------------------------------------

class TaskPublisher:
    """
    Sends the extraction task to the Celery broker.
    Import is deferred so the broker connection is not required at module load time.
    """

    async def publish_extraction_task(
        self,
        document_id: uuid.UUID,
        owner_id:    str,
        file_key:    str,
        mime_type:   str,
        title:       str,
    ) -> None:
        """Runs apply_async in a thread executor to avoid blocking the event loop."""
        from precision_pdf.workers.tasks import extract_document

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: extract_document.apply_async(
                kwargs={
                    "document_id": str(document_id),
                    "owner_id":    owner_id,
                    "file_key":    file_key,
                    "mime_type":   mime_type,
                    "title":       title,
                },
                countdown=1,
            ),
        )
        logger.info("Extraction task published | doc=%s owner=%s", document_id, owner_id)
