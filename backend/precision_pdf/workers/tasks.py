"""
Celery Tasks — Extraction Bridge

Task: extract_document
  1. Load the document record; skip unless status == processing (idempotent replay)
  2. Download the raw file from S3
  3. POST it to the extraction service
  4. Write status → completed with markdown, normalised chunks, marginalia
     and the raw response
  On a retryable failure (timeout, transport, 429/5xx, S3 read error) the task
  is retried up to 3 times, 30s apart. On the final attempt, or on any
  non-retryable failure, the record moves to failed with a non-empty message.

The bridge is the only writer of the completed / failed transitions. Each task
builds its own NullPool engine, S3 service and HTTP client (one event loop per
task run) and closes them afterwards.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx
from celery import Task

from precision_pdf.core.config import settings
from precision_pdf.core.errors import InvalidTransition, StorageError
from precision_pdf.db.repository import DocumentRecordStore, SqlDocumentRecordStore
from precision_pdf.db.session import create_engine, create_session_factory
from precision_pdf.processing.extraction import ExtractionClient, ExtractionError
from precision_pdf.schemas.documents import DocumentStatus
from precision_pdf.storage.s3 import S3StorageService
from precision_pdf.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

EXTRACTION_MAX_RETRIES = 3
EXTRACTION_RETRY_DELAY_SECONDS = 30


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    import concurrent.futures
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


# ---------------------------------------------------------------------------
# Worker context: per-task clients
# ---------------------------------------------------------------------------

@dataclass
class WorkerContext:
    records:    DocumentRecordStore
    storage:    S3StorageService
    extraction: ExtractionClient


@asynccontextmanager
async def worker_context() -> AsyncIterator[WorkerContext]:
    engine = create_engine(settings, null_pool=True)
    http = httpx.AsyncClient()
    try:
        yield WorkerContext(
            records=SqlDocumentRecordStore(create_session_factory(engine)),
            storage=S3StorageService(settings),
            extraction=ExtractionClient(settings, http),
        )
    finally:
        await http.aclose()
        await engine.dispose()


# ---------------------------------------------------------------------------
# Extraction task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="precision_pdf.workers.tasks.extract_document",
    bind=True,
    max_retries=EXTRACTION_MAX_RETRIES,
    default_retry_delay=EXTRACTION_RETRY_DELAY_SECONDS,
    acks_late=True,
    reject_on_worker_lost=True,
)
def extract_document(
    self: Task,
    *,
    document_id: str,
    owner_id:    str,
    file_key:    str,
    mime_type:   str,
    title:       str,
) -> dict[str, Any]:
    final_attempt = self.request.retries >= self.max_retries

    async def _run() -> dict[str, Any]:
        async with worker_context() as ctx:
            return await run_extraction(
                ctx,
                document_id=uuid.UUID(document_id),
                owner_id=owner_id,
                file_key=file_key,
                mime_type=mime_type,
                title=title,
                final_attempt=final_attempt,
            )

    try:
        return run_async(_run())
    except ExtractionError as exc:
        logger.warning(
            "Extraction retry scheduled | doc=%s attempt=%d error=%s",
            document_id, self.request.retries + 1, exc,
        )
        raise self.retry(exc=exc, countdown=EXTRACTION_RETRY_DELAY_SECONDS)


async def run_extraction(
    ctx: WorkerContext,
    *,
    document_id:   uuid.UUID,
    owner_id:      str,
    file_key:      str,
    mime_type:     str,
    title:         str,
    final_attempt: bool = True,
) -> dict[str, Any]:
    """
    Body of extract_document.

    Raises ExtractionError only when the failure is retryable and attempts
    remain; every other outcome, unexpected exceptions included, is written
    to the record and returned.
    """
    doc = await ctx.records.get(document_id)
    if doc is None or doc.owner_id != owner_id:
        logger.error("Document not found | doc=%s owner=%s", document_id, owner_id)
        return {"status": "not_found"}

    if doc.status != DocumentStatus.PROCESSING.value:
        logger.warning("Document in status=%s, skipping | doc=%s", doc.status, document_id)
        return {"status": "skipped", "current_status": doc.status}

    try:
        try:
            file_bytes = await ctx.storage.get_object(file_key)
        except StorageError as exc:
            raise ExtractionError(f"could not read the uploaded file: {exc.cause}", retryable=True) from exc
        except FileNotFoundError as exc:
            raise ExtractionError("the uploaded file is missing from storage", retryable=False) from exc

        parsed = await ctx.extraction.parse(file_bytes, title, mime_type)
    except ExtractionError as exc:
        if exc.retryable and not final_attempt:
            raise
        logger.error("Extraction failed | doc=%s retryable=%s error=%s", document_id, exc.retryable, exc)
        await _mark_failed(ctx, document_id, f"Extraction failed: {exc}")
        return {"status": "failed", "document_id": str(document_id), "error": str(exc)}
    except Exception as exc:
        logger.exception("Extraction crashed | doc=%s", document_id)
        message = "Extraction failed: unexpected error while processing the extraction result"
        await _mark_failed(ctx, document_id, message)
        return {"status": "failed", "document_id": str(document_id), "error": str(exc)}

    try:
        await ctx.records.mark_completed(
            document_id,
            markdown=parsed.markdown,
            chunks=parsed.chunks,
            marginalia=parsed.marginalia,
            extraction_response=parsed.raw_response,
        )
    except InvalidTransition as exc:
        logger.warning("Completion skipped | doc=%s reason=%s", document_id, exc)
        return {"status": "skipped", "document_id": str(document_id)}

    logger.info(
        "Extraction complete | doc=%s chunks=%d elapsed_ms=%.0f",
        document_id, len(parsed.chunks), parsed.elapsed_ms,
    )
    return {
        "status":      "completed",
        "document_id": str(document_id),
        "chunk_count": len(parsed.chunks),
    }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _mark_failed(ctx: WorkerContext, document_id: uuid.UUID, error_message: str) -> None:
    try:
        await ctx.records.mark_failed(document_id, error_message=error_message)
    except InvalidTransition as exc:
        logger.warning("Failure not recorded | doc=%s reason=%s", document_id, exc)
