"""
Document API Router

  POST /documents                                upload + synchronous ingestion phase
  GET  /documents                                owner's documents, newest first
  GET  /documents/{document_id}                  one document record
  GET  /documents/{document_id}/page-image/{page} rendered page preview bytes
  GET  /documents/{document_id}/events           status stream (Server-Sent Events)

Request lifecycle for POST /documents:
  ┌─────────────────────────────────────────────────────────┐
  │ 1. JWT verification → owner id = sub claim               │
  │ 2. Validation (type allow-list, 250 MiB, magic bytes)    │
  │ 3. S3 upload under owners/<owner>/documents/             │
  │ 4. Record insert (status=uploading)                      │
  │ 5. PDF page previews (best-effort)                       │
  │ 6. status=processing, extraction handed off → 200        │
  └─────────────────────────────────────────────────────────┘

All failures are DocumentError subclasses rendered by the handler in main.py.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from typing import AsyncGenerator
from uuid import UUID

from fastapi import APIRouter, File, Query, Request, UploadFile, status
from fastapi.responses import RedirectResponse, Response, StreamingResponse

from precision_pdf.auth.dependencies import AppSettings, CurrentUser, Ingestion, PageImages, RecordStore
from precision_pdf.core.errors import NotFoundError, ValidationError
from precision_pdf.models.documents import Document
from precision_pdf.schemas.documents import (
    PAGE_IMAGE_CACHE_SECONDS,
    DocumentErrors,
    DocumentListResponse,
    DocumentResponse,
    DocumentStatus,
    DocumentSummary,
    ErrorResponse,
    IngestResponse,
    StatusEvent,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Documents"],
)

_PAGE_RE = re.compile(r"[0-9]+")


# ---------------------------------------------------------------------------
# POST /documents
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=IngestResponse,
    status_code=status.HTTP_200_OK,
    summary="Upload a document for ingestion",
    description=(
        "Accepts PDF, JPEG or PNG files up to 250 MB. Returns once the file is "
        "stored, page previews are attached (PDF only) and extraction has been "
        "handed off; extraction itself completes asynchronously."
    ),
    responses={
        400: {"model": ErrorResponse, "description": "Missing, empty, oversize or unsupported file"},
        401: {"model": ErrorResponse, "description": "Missing or invalid JWT"},
        500: {"model": ErrorResponse, "description": "Storage or internal failure"},
    },
)
async def upload_document(
    user:    CurrentUser,
    service: Ingestion,
    file:    UploadFile | None = File(None, description="Document file (PDF, JPEG, PNG — max 250 MB)"),
) -> IngestResponse:
    return await service.ingest(file, user)


# ---------------------------------------------------------------------------
# GET /documents
# ---------------------------------------------------------------------------

@router.get(
    "",
    response_model=DocumentListResponse,
    summary="List the caller's documents",
    responses={401: {"model": ErrorResponse}},
)
async def list_documents(
    user:    CurrentUser,
    records: RecordStore,
    limit:   int = Query(20, ge=1, le=100),
    offset:  int = Query(0, ge=0),
) -> DocumentListResponse:
    docs = await records.list_for_owner(user.sub, limit=limit, offset=offset)
    return DocumentListResponse(
        limit=limit,
        offset=offset,
        documents=[
            DocumentSummary(
                document_id=d.id,
                title=d.title,
                status=DocumentStatus(d.status),
                page_count=d.page_count,
                file_size=d.file_size,
                mime_type=d.mime_type,
                created_at=d.created_at,
            )
            for d in docs
        ],
    )


# ---------------------------------------------------------------------------
# GET /documents/{document_id}
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}",
    response_model=DocumentResponse,
    summary="Fetch one document record",
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def get_document(
    document_id: UUID,
    user:        CurrentUser,
    records:     RecordStore,
) -> DocumentResponse:
    doc = await _get_owned(records, document_id, user.sub)
    return document_response(doc)


# ---------------------------------------------------------------------------
# GET /documents/{document_id}/page-image/{page}
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/page-image/{page}",
    summary="Fetch one rendered page preview",
    response_class=Response,
    responses={
        200: {"content": {"image/png": {}}, "description": "Page image bytes"},
        307: {"description": "Example document: redirect to the static page image"},
        400: {"model": ErrorResponse, "description": "Page is not a non-negative integer"},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse, "description": "Unknown document or page"},
        500: {"model": ErrorResponse, "description": "Blob fetch failed"},
    },
)
async def get_page_image(
    document_id: UUID,
    page:        str,
    user:        CurrentUser,
    service:     PageImages,
) -> Response:
    if not _PAGE_RE.fullmatch(page):
        raise ValidationError(DocumentErrors.invalid_page(page))

    result = await service.get_page_image(document_id, int(page), user)
    if result.redirect_url:
        return RedirectResponse(result.redirect_url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
    return Response(
        content=result.data,
        media_type=result.content_type,
        headers={"Cache-Control": f"public, max-age={PAGE_IMAGE_CACHE_SECONDS}"},
    )


# ---------------------------------------------------------------------------
# GET /documents/{document_id}/events: SSE status stream
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/events",
    summary="Stream document status changes via Server-Sent Events",
    description=(
        "Emits a `status` event whenever the document's status changes, keepalive "
        "comments while idle, `done` once the status is terminal and `timeout` "
        "when the stream lifetime expires."
    ),
    response_class=StreamingResponse,
)
async def stream_document_status(
    document_id: UUID,
    request:     Request,
    user:        CurrentUser,
    records:     RecordStore,
    cfg:         AppSettings,
) -> StreamingResponse:
    await _get_owned(records, document_id, user.sub)
    poll_seconds = cfg.status_stream_poll_seconds
    ttl_seconds = cfg.status_stream_ttl_seconds

    async def event_generator() -> AsyncGenerator[str, None]:
        start = time.monotonic()
        last_seen: tuple | None = None

        while True:
            if await request.is_disconnected():
                logger.debug("SSE client disconnected | doc=%s", document_id)
                break

            if time.monotonic() - start > ttl_seconds:
                yield _sse_event("timeout", {"message": "Status stream expired"})
                break

            doc = await records.get(document_id)
            if doc is None:
                break

            marker = (doc.status, doc.updated_at)
            if marker != last_seen:
                last_seen = marker
                event = StatusEvent(
                    document_id=doc.id,
                    status=DocumentStatus(doc.status),
                    page_count=doc.page_count,
                    error_message=doc.error_message,
                    updated_at=doc.updated_at,
                )
                yield _sse_event("status", event.model_dump(mode="json", by_alias=True))

                if DocumentStatus(doc.status).is_terminal:
                    yield _sse_event("done", {"status": doc.status})
                    break
            else:
                # keepalive comment so proxies do not close the connection
                yield ": keepalive\n\n"

            await asyncio.sleep(poll_seconds)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control":     "no-cache",
            "Connection":        "keep-alive",
            "X-Accel-Buffering": "no",  # disable nginx buffering for SSE
        },
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _get_owned(records, document_id: UUID, owner_id: str) -> Document:
    """Foreign and missing documents are indistinguishable here (404)."""
    doc = await records.get(document_id)
    if doc is None or doc.owner_id != owner_id:
        raise NotFoundError(DocumentErrors.document_not_found(document_id))
    return doc


def document_response(doc: Document) -> DocumentResponse:
    return DocumentResponse(
        document_id=doc.id,
        title=doc.title,
        status=DocumentStatus(doc.status),
        error_message=doc.error_message,
        page_count=doc.page_count,
        file_size=doc.file_size,
        mime_type=doc.mime_type,
        markdown=doc.markdown,
        chunks=doc.chunks,
        marginalia=doc.marginalia,
        created_at=doc.created_at,
        updated_at=doc.updated_at,
    )


def _sse_event(event: str, data: dict) -> str:
    """Format a single Server-Sent Event frame."""
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"
