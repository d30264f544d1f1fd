"""
Page Image Retrieval — read path for rendered page previews

get_page_image(document_id, page_index, requester) -> PageImageResult

  1. requester must be authenticated (401) and own the document (403)
  2. example documents: page_index must be below page_count (404); the
     result is a redirect to the static page image, nothing is fetched
  3. page_index must fall inside the stored page-image sequence (404)
  4. the stored S3 key is presigned and fetched over HTTP; a missing object
     is 404, any other fetch failure is UpstreamError (500)

Page images are immutable once attached, so callers may cache the bytes
(routes send Cache-Control: public, max-age=3600).
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

import httpx

from precision_pdf.auth.token import TokenPayload
from precision_pdf.core.errors import (
    AuthError,
    NotFoundError,
    StorageError,
    UpstreamError,
    ValidationError,
)
from precision_pdf.db.repository import DocumentRecordStore
from precision_pdf.processing.rasterizer import RASTER_CONTENT_TYPE
from precision_pdf.schemas.documents import DocumentErrors
from precision_pdf.storage.s3 import S3StorageService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageImageResult:
    """Either the image bytes or, for example documents, where to find them."""
    data:         bytes = b""
    content_type: str = RASTER_CONTENT_TYPE
    redirect_url: str | None = None


class PageImageService:

    def __init__(
        self,
        records: DocumentRecordStore,
        storage: S3StorageService,
        http:    httpx.AsyncClient,
    ) -> None:
        self._records = records
        self._storage = storage
        self._http = http

    async def get_page_image(
        self,
        document_id: uuid.UUID,
        page_index:  int,
        requester:   TokenPayload | None,
    ) -> PageImageResult:
        if requester is None or not requester.sub:
            raise AuthError.unauthorized()
        if page_index < 0:
            raise ValidationError(DocumentErrors.invalid_page(str(page_index)))

        doc = await self._records.get(document_id)
        if doc is None:
            raise NotFoundError(DocumentErrors.document_not_found(document_id))
        if doc.owner_id != requester.sub:
            logger.warning(
                "Page image access denied | doc=%s requester=%s", document_id, requester.sub,
            )
            raise AuthError(DocumentErrors.forbidden(document_id), status_code=403)

        base_path = doc.static_base_path
        if base_path:
            if page_index >= (doc.page_count or 0):
                raise NotFoundError(DocumentErrors.page_image_not_found(document_id, page_index))
            return PageImageResult(redirect_url=f"{base_path}/page_{page_index}.png")

        page_images = doc.page_images or []
        if page_index >= len(page_images):
            raise NotFoundError(DocumentErrors.page_image_not_found(document_id, page_index))
        key = page_images[page_index]

        try:
            presigned = await self._storage.get_object_url(key)
        except StorageError as exc:
            logger.error("Page image presign failed | doc=%s key=%s error=%s", document_id, key, exc.cause)
            raise UpstreamError(DocumentErrors.upstream_error("storage"), cause=exc.cause) from exc

        try:
            response = await self._http.get(presigned.url)
        except httpx.HTTPError as exc:
            logger.error("Page image fetch failed | doc=%s page=%d error=%s", document_id, page_index, exc)
            raise UpstreamError(DocumentErrors.upstream_error("storage"), cause=str(exc)) from exc

        if response.status_code == 404:
            raise NotFoundError(DocumentErrors.page_image_not_found(document_id, page_index))
        if response.status_code != 200:
            logger.error(
                "Page image fetch failed | doc=%s page=%d status=%d",
                document_id, page_index, response.status_code,
            )
            raise UpstreamError(
                DocumentErrors.upstream_error("storage"),
                cause=f"blob fetch returned HTTP {response.status_code}",
            )

        content_type = response.headers.get("content-type") or RASTER_CONTENT_TYPE
        return PageImageResult(data=response.content, content_type=content_type)
