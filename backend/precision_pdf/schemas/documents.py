"""
Document Ingestion — Pydantic Request/Response Schemas

Covers the document lifecycle exposed over HTTP:
  - Upload acceptance (POST /documents)
  - Document records and listings (GET /documents, GET /documents/{id})
  - Status stream events (GET /documents/{id}/events)
  - All structured error bodies (400, 401, 403, 404, 422, 500)

Design decisions:
  - document ids are always server-generated (UUID4); never client-supplied.
  - Public payloads use camelCase keys (documentId, pageCount, ...);
    Python attributes stay snake_case.
  - processing status is the async pipeline state, separate from HTTP status.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Upload limits: enforced before touching S3
# ---------------------------------------------------------------------------

ALLOWED_CONTENT_TYPES: frozenset[str] = frozenset(
    {
        "application/pdf",
        "image/jpeg",
        "image/png",
    }
)

# Fallback when the client sends no usable Content-Type
EXTENSION_CONTENT_TYPES: dict[str, str] = {
    ".pdf":  "application/pdf",
    ".jpg":  "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png":  "image/png",
}

# Only these are rasterized into page previews
PAGINATED_CONTENT_TYPES: frozenset[str] = frozenset({"application/pdf"})

MAX_FILE_SIZE_BYTES: int = 250 * 1024 * 1024  # 250 MiB

PAGE_IMAGE_CACHE_SECONDS: int = 3600


# ---------------------------------------------------------------------------
# Processing pipeline state machine
# ---------------------------------------------------------------------------

class DocumentStatus(str, Enum):
    """
    Maps to documents.status column.
    Transitions: uploading → processing → completed | failed
    """
    UPLOADING   = "uploading"    # record visible, previews not attached yet
    PROCESSING  = "processing"   # handed off to the extraction service
    COMPLETED   = "completed"    # extracted content available
    FAILED      = "failed"       # terminal; error_message explains why

    @property
    def is_terminal(self) -> bool:
        return self in (DocumentStatus.COMPLETED, DocumentStatus.FAILED)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Upload success response
# ---------------------------------------------------------------------------

class IngestResponse(_CamelModel):
    """Returned once the document is stored and handed to extraction."""
    document_id: UUID           = Field(..., description="Server-generated document UUID")
    status:      DocumentStatus = Field(..., description="Status after the synchronous phase")
    page_count:  int            = Field(..., description="Pages detected (1 when unknown)")


# ---------------------------------------------------------------------------
# Document records
# ---------------------------------------------------------------------------

class BoundingBox(BaseModel):
    x:      float
    y:      float
    width:  float
    height: float


class ContentChunk(BaseModel):
    """One extracted chunk, as written back by the extraction bridge."""
    chunk_id: str
    content:  str
    page:     int
    bbox:     BoundingBox | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class DocumentResponse(_CamelModel):
    """Full document record for the dashboard."""
    document_id:   UUID
    title:         str
    status:        DocumentStatus
    error_message: str | None = None
    page_count:    int | None = None
    file_size:     int
    mime_type:     str
    markdown:      str | None = None
    chunks:        list[ContentChunk] | None = None
    marginalia:    list[Any] | None = None
    created_at:    datetime
    updated_at:    datetime


class DocumentSummary(_CamelModel):
    document_id: UUID
    title:       str
    status:      DocumentStatus
    page_count:  int | None = None
    file_size:   int
    mime_type:   str
    created_at:  datetime


class DocumentListResponse(BaseModel):
    limit:     int
    offset:    int
    documents: list[DocumentSummary]


# ---------------------------------------------------------------------------
# Example documents
# ---------------------------------------------------------------------------

class ExampleDocument(_CamelModel):
    """A pre-processed example, loaded from the examples directory."""
    example_id:       str
    title:            str
    page_count:       int
    markdown:         str
    chunks:           list[ContentChunk]
    static_base_path: str


# ---------------------------------------------------------------------------
# SSE status event payload
# ---------------------------------------------------------------------------

class StatusEvent(_CamelModel):
    """
    Emitted as Server-Sent Events while a client waits on a document.
    event: status
    data: <json of this model>
    """
    document_id:   UUID
    status:        DocumentStatus
    page_count:    int | None = None
    error_message: str | None = None
    updated_at:    datetime


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps route handlers thin)
# ---------------------------------------------------------------------------

class DocumentErrors:
    """Factories for every documented error case."""

    @staticmethod
    def unsupported_file_type(filename: str, content_type: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="UNSUPPORTED_FILE_TYPE",
            message="Invalid file type. Only PDF, JPEG, and PNG files are allowed.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"'{filename}' has an unsupported type '{content_type}'.",
                    code="UNSUPPORTED_FILE_TYPE",
                )
            ],
        )

    @staticmethod
    def file_too_large(size_bytes: int) -> ErrorResponse:
        max_mb = MAX_FILE_SIZE_BYTES // (1024 * 1024)
        return ErrorResponse(
            error_code="FILE_TOO_LARGE",
            message=f"File size exceeds maximum limit of {max_mb}MB.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received at least {size_bytes:,} bytes; limit is {MAX_FILE_SIZE_BYTES:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @staticmethod
    def missing_file() -> ErrorResponse:
        return ErrorResponse(
            error_code="MISSING_FILE",
            message="No file provided.",
            details=[
                ErrorDetail(
                    field="file",
                    message="The 'file' multipart field is required.",
                    code="MISSING_FILE",
                )
            ],
        )

    @staticmethod
    def empty_file(filename: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="EMPTY_FILE",
            message="The uploaded file is empty.",
            details=[
                ErrorDetail(field="file", message=f"'{filename}' contains 0 bytes.", code="EMPTY_FILE")
            ],
        )

    @staticmethod
    def content_mismatch(filename: str, content_type: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="CONTENT_MISMATCH",
            message="File contents do not match the declared file type.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"'{filename}' was declared as '{content_type}' but is not a valid file of that type.",
                    code="CONTENT_MISMATCH",
                )
            ],
        )

    @staticmethod
    def invalid_page(page: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_PAGE",
            message="Invalid page number.",
            details=[
                ErrorDetail(
                    field="page",
                    message=f"'{page}' is not a non-negative integer.",
                    code="INVALID_PAGE",
                )
            ],
        )

    @staticmethod
    def unauthorized() -> ErrorResponse:
        return ErrorResponse(
            error_code="UNAUTHORIZED",
            message="Authentication required. Provide a valid Bearer token.",
            details=[
                ErrorDetail(
                    field=None,
                    message="Missing or invalid Authorization header.",
                    code="UNAUTHORIZED",
                )
            ],
        )

    @staticmethod
    def token_expired() -> ErrorResponse:
        return ErrorResponse(
            error_code="TOKEN_EXPIRED",
            message="Your access token has expired. Please re-authenticate.",
            details=[],
        )

    @staticmethod
    def forbidden(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="FORBIDDEN",
            message=f"You do not have access to document '{document_id}'.",
            details=[],
        )

    @staticmethod
    def document_not_found(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_NOT_FOUND",
            message=f"Document '{document_id}' was not found.",
            details=[],
        )

    @staticmethod
    def page_image_not_found(document_id: UUID, page_index: int) -> ErrorResponse:
        return ErrorResponse(
            error_code="PAGE_IMAGE_NOT_FOUND",
            message="Page image not found.",
            details=[
                ErrorDetail(
                    field="page",
                    message=f"Document '{document_id}' has no page image at index {page_index}.",
                    code="PAGE_IMAGE_NOT_FOUND",
                )
            ],
        )

    @staticmethod
    def example_not_found(example_id: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="EXAMPLE_NOT_FOUND",
            message=f"Example '{example_id}' was not found.",
            details=[],
        )

    @staticmethod
    def example_invalid(example_id: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="EXAMPLE_INVALID",
            message=f"Example '{example_id}' could not be loaded.",
            details=[],
        )

    @staticmethod
    def storage_error() -> ErrorResponse:
        return ErrorResponse(
            error_code="STORAGE_ERROR",
            message="Failed to store the document. Please retry.",
            details=[],
        )

    @staticmethod
    def upstream_error(service: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="UPSTREAM_ERROR",
            message=f"The {service} service is unavailable. Please retry.",
            details=[],
        )

    @staticmethod
    def export_failed(export_format: str, upstream_status: int | None) -> ErrorResponse:
        return ErrorResponse(
            error_code="EXPORT_FAILED",
            message=f"Export to '{export_format}' failed.",
            details=(
                [ErrorDetail(field=None, message=f"Export backend returned HTTP {upstream_status}.", code="EXPORT_FAILED")]
                if upstream_status
                else []
            ),
        )

    @staticmethod
    def export_not_configured() -> ErrorResponse:
        return ErrorResponse(
            error_code="EXPORT_NOT_CONFIGURED",
            message="The export backend is not configured.",
            details=[],
        )

    @staticmethod
    def unknown_export_format(export_format: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="UNKNOWN_EXPORT_FORMAT",
            message=f"Export format '{export_format}' is not supported.",
            details=[],
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred. Our team has been notified.",
            details=[],
            request_id=request_id,
        )

