"""
SQLAlchemy ORM Models — Documents

Maps to the documents table. Using SQLAlchemy 2.x mapped classes for full
async support.

Ownership note: the record store filters by owner_id on every owner-facing
read; the model itself carries no implicit scoping.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from precision_pdf.core.errors import InvalidTransition
from precision_pdf.schemas.documents import DocumentStatus


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Status state machine
# ---------------------------------------------------------------------------

# uploading is the only initial state; completed / failed are terminal and
# reachable only from processing.
_TRANSITIONS: dict[DocumentStatus, frozenset[DocumentStatus]] = {
    DocumentStatus.UPLOADING:  frozenset({DocumentStatus.PROCESSING}),
    DocumentStatus.PROCESSING: frozenset({DocumentStatus.COMPLETED, DocumentStatus.FAILED}),
    DocumentStatus.COMPLETED:  frozenset(),
    DocumentStatus.FAILED:     frozenset(),
}


def check_transition(current: DocumentStatus | str, new: DocumentStatus | str) -> None:
    """Raise InvalidTransition unless current → new is a forward edge."""
    current, new = DocumentStatus(current), DocumentStatus(new)
    if new not in _TRANSITIONS[current]:
        raise InvalidTransition(f"status {current.value!r} cannot move to {new.value!r}")


# ---------------------------------------------------------------------------
# Document model: documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Tracks a single uploaded file from upload → page previews → extraction.

    State machine (status column):
        uploading  — raw file stored, record visible to the owner
        processing — previews attached (if any), extraction handed off
        completed  — markdown / chunks written by the extraction bridge
        failed     — terminal error (see error_message)

    page_images holds the S3 keys of the rendered page previews in source
    page order; when non-empty, page_count == len(page_images).

    Example documents are inserted directly as completed, with no raw file
    (file_key = "", file_size = 0); their page images are static files under
    extraction_response["staticBasePath"].
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('uploading', 'processing', 'completed', 'failed')",
            name="documents_status_check",
        ),
        CheckConstraint(
            "status <> 'failed' OR coalesce(error_message, '') <> ''",
            name="documents_failed_has_error",
        ),
        CheckConstraint(
            "status <> 'completed' OR markdown IS NOT NULL",
            name="documents_completed_has_markdown",
        ),
        Index("idx_documents_owner_id",   "owner_id"),
        Index("idx_documents_status",     "status"),
        Index("idx_documents_created_at", "owner_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )

    # Owner: the `sub` claim of the verified bearer token
    owner_id: Mapped[str] = mapped_column(Text, nullable=False)

    title: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Display name — the uploaded filename",
    )

    # Blob references
    file_key: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="S3 key of the raw upload: owners/<owner>/documents/<doc_id>.<ext>",
    )
    page_images: Mapped[list[str]] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        server_default="[]",
        comment="Ordered S3 keys of page previews (index 0 = first page)",
    )

    file_size: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Bytes — fixed at creation",
    )
    mime_type: Mapped[str] = mapped_column(Text, nullable=False)
    page_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Ingestion state machine
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=DocumentStatus.UPLOADING.value,
        server_default=DocumentStatus.UPLOADING.value,
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='failed'",
    )

    # Extraction output: written only by the extraction bridge
    extraction_response: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)
    markdown: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    chunks: Mapped[Optional[list[dict[str, Any]]]] = mapped_column(JSONB, nullable=True)
    marginalia: Mapped[Optional[list[Any]]] = mapped_column(JSONB, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    @property
    def document_status(self) -> DocumentStatus:
        return DocumentStatus(self.status)

    @property
    def static_base_path(self) -> str | None:
        """URL prefix of the static page images of an example document, else None."""
        response = self.extraction_response or {}
        if not response.get("isExample"):
            return None
        return response.get("staticBasePath") or None

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} owner={self.owner_id} "
            f"status={self.status} title={self.title!r}>"
        )
