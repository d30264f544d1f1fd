"""
Document Record Store

Persistent, queryable state for every uploaded document. The ingestion
workflow, the page-image read path, the status stream and the extraction
bridge only speak the DocumentRecordStore interface, so the backend is
swappable (tests use an in-memory implementation).

Write contract (enforced here for ALL implementations):
  - create() inserts status='uploading', page_count=1.
  - create_example() inserts a completed example document with no raw file.
  - Every later write is a status transition validated by check_transition().
  - processing: when page images are attached, page_count == len(page_images).
  - completed:  markdown must be non-null.
  - failed:     error_message must be non-empty.
  - Each write is atomic for its single record; nothing spans several writes.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from precision_pdf.core.errors import NotFoundError
from precision_pdf.models.documents import Document, check_transition
from precision_pdf.schemas.documents import DocumentErrors, DocumentStatus

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class DocumentRecordStore(ABC):

    @abstractmethod
    async def create(
        self,
        *,
        document_id: uuid.UUID,
        owner_id:    str,
        title:       str,
        file_key:    str,
        file_size:   int,
        mime_type:   str,
    ) -> Document:
        """Insert a new record in status 'uploading' and return it."""

    @abstractmethod
    async def get(self, document_id: uuid.UUID) -> Document | None:
        """Return the record or None. No ownership filtering."""

    @abstractmethod
    async def list_for_owner(
        self,
        owner_id: str,
        limit:    int = 20,
        offset:   int = 0,
    ) -> list[Document]:
        """Owner's documents, newest first."""

    @abstractmethod
    async def _insert(self, doc: Document) -> Document:
        """Persist a fully built record as-is and return it."""

    @abstractmethod
    async def _transition(
        self,
        document_id: uuid.UUID,
        new_status:  DocumentStatus,
        values:      dict[str, Any],
    ) -> Document:
        """
        Atomically: load the record, check_transition(current, new_status),
        apply values + status + updated_at. Raise NotFoundError if missing.
        """

    async def create_example(
        self,
        *,
        document_id:      uuid.UUID,
        owner_id:         str,
        title:            str,
        markdown:         str,
        chunks:           list[dict[str, Any]],
        page_count:       int,
        static_base_path: str,
    ) -> Document:
        """
        Insert a pre-processed example document directly as completed.

        The only record that does not start in uploading: there is no raw
        file to ingest and nothing for the extraction bridge to do.
        """
        if markdown is None:
            raise ValueError("completed documents require markdown")
        if page_count < 1:
            raise ValueError("page_count must be >= 1")
        if not static_base_path.startswith("/examples/"):
            raise ValueError(f"static base path must live under /examples/: {static_base_path!r}")

        now = datetime.now(timezone.utc)
        doc = Document(
            id=document_id,
            owner_id=owner_id,
            title=title,
            file_key="",
            file_size=0,
            mime_type="application/pdf",
            page_count=page_count,
            page_images=[],
            status=DocumentStatus.COMPLETED.value,
            markdown=markdown,
            chunks=chunks,
            extraction_response={"isExample": True, "staticBasePath": static_base_path},
            created_at=now,
            updated_at=now,
        )
        return await self._insert(doc)

    # ------------------------------------------------------------------
    # Validated transitions
    # ------------------------------------------------------------------

    async def mark_processing(
        self,
        document_id: uuid.UUID,
        *,
        page_images: list[str],
        page_count:  int,
    ) -> Document:
        if page_images and page_count != len(page_images):
            raise ValueError(
                f"page_count={page_count} does not match {len(page_images)} page images"
            )
        if page_count < 1:
            raise ValueError("page_count must be >= 1")
        return await self._transition(
            document_id,
            DocumentStatus.PROCESSING,
            {"page_images": list(page_images), "page_count": page_count},
        )

    async def mark_completed(
        self,
        document_id: uuid.UUID,
        *,
        markdown:            str,
        chunks:              list[dict[str, Any]],
        marginalia:          list[Any] | None = None,
        extraction_response: dict[str, Any] | None = None,
    ) -> Document:
        if markdown is None:
            raise ValueError("completed documents require markdown")
        return await self._transition(
            document_id,
            DocumentStatus.COMPLETED,
            {
                "markdown":            markdown,
                "chunks":              chunks,
                "marginalia":          marginalia,
                "extraction_response": extraction_response,
                "error_message":       None,
            },
        )

    async def mark_failed(self, document_id: uuid.UUID, *, error_message: str) -> Document:
        if not error_message or not error_message.strip():
            raise ValueError("failed documents require an error message")
        return await self._transition(
            document_id,
            DocumentStatus.FAILED,
            {"error_message": error_message},
        )


# ---------------------------------------------------------------------------
# SQLAlchemy implementation
# ---------------------------------------------------------------------------

class SqlDocumentRecordStore(DocumentRecordStore):
    """
    PostgreSQL-backed record store.

    Constructed once per process with the shared session factory; each call
    opens its own short transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = session_factory

    async def create(
        self,
        *,
        document_id: uuid.UUID,
        owner_id:    str,
        title:       str,
        file_key:    str,
        file_size:   int,
        mime_type:   str,
    ) -> Document:
        now = datetime.now(timezone.utc)
        doc = Document(
            id=document_id,
            owner_id=owner_id,
            title=title,
            file_key=file_key,
            file_size=file_size,
            mime_type=mime_type,
            page_count=1,
            page_images=[],
            status=DocumentStatus.UPLOADING.value,
            created_at=now,
            updated_at=now,
        )
        async with self._sessions() as session:
            async with session.begin():
                session.add(doc)
        logger.debug("Record created | doc=%s owner=%s", document_id, owner_id)
        return doc

    async def _insert(self, doc: Document) -> Document:
        async with self._sessions() as session:
            async with session.begin():
                session.add(doc)
        logger.info("Example record created | doc=%s owner=%s", doc.id, doc.owner_id)
        return doc

    async def get(self, document_id: uuid.UUID) -> Document | None:
        async with self._sessions() as session:
            result = await session.execute(
                select(Document).where(Document.id == document_id)
            )
            return result.scalars().first()

    async def list_for_owner(
        self,
        owner_id: str,
        limit:    int = 20,
        offset:   int = 0,
    ) -> list[Document]:
        async with self._sessions() as session:
            result = await session.execute(
                select(Document)
                .where(Document.owner_id == owner_id)
                .order_by(Document.created_at.desc())
                .offset(offset)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def _transition(
        self,
        document_id: uuid.UUID,
        new_status:  DocumentStatus,
        values:      dict[str, Any],
    ) -> Document:
        async with self._sessions() as session:
            async with session.begin():
                result = await session.execute(
                    select(Document)
                    .where(Document.id == document_id)
                    .with_for_update()
                )
                doc = result.scalars().first()
                if doc is None:
                    raise NotFoundError(DocumentErrors.document_not_found(document_id))

                check_transition(doc.status, new_status)

                for column, value in values.items():
                    setattr(doc, column, value)
                doc.status = new_status.value
                doc.updated_at = datetime.now(timezone.utc)

        logger.info("Record transition | doc=%s status=%s", document_id, new_status.value)
        return doc
