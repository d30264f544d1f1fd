"""
Unit Tests — PageImageService
══════════════════════════════
  • owner gets the stored bytes with the stored content type
  • re-fetching the same page returns identical bytes
  • 401 without requester, 403 for a foreign owner, 404 for unknown document
  • index >= page count → 404 PAGE_IMAGE_NOT_FOUND
  • presign failure / blob fetch failure → UpstreamError (not 404)
  • example documents redirect to their static page images
"""

from __future__ import annotations

import uuid

import httpx
import pytest

from precision_pdf.core.errors import AuthError, NotFoundError, UpstreamError, ValidationError
from precision_pdf.services.page_images import PageImageService
from precision_pdf.storage.s3 import ResourceType
from tests.conftest import PNG_SIGNATURE, TEST_OWNER_ID


@pytest.fixture
async def seeded_doc(record_store, blob_store):
    """A processing document with three stored page images."""
    doc_id = uuid.uuid4()
    keys = []
    for index in range(3):
        stored = await blob_store.put_object(
            TEST_OWNER_ID,
            ResourceType.PAGE_IMAGE,
            f"{doc_id}-page-{index:04d}.png",
            PNG_SIGNATURE + f"page-{index}".encode(),
            "image/png",
        )
        keys.append(stored.key)
    return record_store.add(id=doc_id, page_images=keys, page_count=3)


@pytest.fixture
def service(record_store, blob_store, blob_http):
    return PageImageService(record_store, blob_store, blob_http)


@pytest.mark.unit
class TestPageImageRetrieval:

    async def test_owner_gets_page_bytes(self, service, seeded_doc, owner_payload):
        result = await service.get_page_image(seeded_doc.id, 1, owner_payload)

        assert result.data == PNG_SIGNATURE + b"page-1"
        assert result.content_type == "image/png"
        assert result.redirect_url is None

    async def test_refetch_is_byte_identical(self, service, seeded_doc, owner_payload):
        first = await service.get_page_image(seeded_doc.id, 2, owner_payload)
        second = await service.get_page_image(seeded_doc.id, 2, owner_payload)
        assert first == second

    async def test_missing_requester_is_401(self, service, seeded_doc):
        with pytest.raises(AuthError) as exc_info:
            await service.get_page_image(seeded_doc.id, 0, None)
        assert exc_info.value.status_code == 401

    async def test_foreign_owner_is_403(self, service, seeded_doc, other_payload):
        with pytest.raises(AuthError) as exc_info:
            await service.get_page_image(seeded_doc.id, 0, other_payload)
        assert exc_info.value.status_code == 403
        assert exc_info.value.error_code == "FORBIDDEN"

    async def test_unknown_document_is_404(self, service, owner_payload):
        with pytest.raises(NotFoundError) as exc_info:
            await service.get_page_image(uuid.uuid4(), 0, owner_payload)
        assert exc_info.value.error_code == "DOCUMENT_NOT_FOUND"

    @pytest.mark.parametrize("page_index", [3, 4, 1000])
    async def test_index_past_page_count_is_404(self, service, seeded_doc, owner_payload, page_index):
        with pytest.raises(NotFoundError) as exc_info:
            await service.get_page_image(seeded_doc.id, page_index, owner_payload)
        assert exc_info.value.error_code == "PAGE_IMAGE_NOT_FOUND"

    async def test_document_without_previews_is_404(self, service, record_store, owner_payload):
        doc = record_store.add(page_images=[], page_count=1, mime_type="image/png")
        with pytest.raises(NotFoundError):
            await service.get_page_image(doc.id, 0, owner_payload)

    async def test_negative_index_is_400(self, service, seeded_doc, owner_payload):
        with pytest.raises(ValidationError):
            await service.get_page_image(seeded_doc.id, -1, owner_payload)

    async def test_blob_gone_is_404(self, service, seeded_doc, blob_store, owner_payload):
        blob_store.objects.pop(seeded_doc.page_images[0])
        with pytest.raises(NotFoundError):
            await service.get_page_image(seeded_doc.id, 0, owner_payload)

    async def test_presign_failure_is_upstream_error(self, service, seeded_doc, blob_store, owner_payload):
        blob_store.fail_presign = True
        with pytest.raises(UpstreamError) as exc_info:
            await service.get_page_image(seeded_doc.id, 0, owner_payload)
        assert exc_info.value.status_code == 500
        assert exc_info.value.error_code == "UPSTREAM_ERROR"

    async def test_blob_outage_is_upstream_error(self, record_store, blob_store, seeded_doc, owner_payload):
        def _down(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(_down)) as http:
            service = PageImageService(record_store, blob_store, http)
            with pytest.raises(UpstreamError):
                await service.get_page_image(seeded_doc.id, 0, owner_payload)

    async def test_blob_5xx_is_upstream_error(self, record_store, blob_store, seeded_doc, owner_payload):
        async with httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(503))
        ) as http:
            service = PageImageService(record_store, blob_store, http)
            with pytest.raises(UpstreamError) as exc_info:
                await service.get_page_image(seeded_doc.id, 0, owner_payload)
        assert exc_info.value.status_code == 500


@pytest.fixture
def example_doc(record_store):
    return record_store.add(
        status="completed",
        markdown="# Example",
        file_key="",
        file_size=0,
        page_count=2,
        extraction_response={"isExample": True, "staticBasePath": "/examples/invoice/images"},
    )


@pytest.mark.unit
class TestExamplePageImages:

    @pytest.mark.parametrize("page_index", [0, 1])
    async def test_example_redirects_to_static_image(self, service, example_doc, owner_payload, page_index):
        result = await service.get_page_image(example_doc.id, page_index, owner_payload)

        assert result.redirect_url == f"/examples/invoice/images/page_{page_index}.png"
        assert result.data == b""

    async def test_example_index_past_page_count_is_404(self, service, example_doc, owner_payload):
        with pytest.raises(NotFoundError) as exc_info:
            await service.get_page_image(example_doc.id, 2, owner_payload)
        assert exc_info.value.error_code == "PAGE_IMAGE_NOT_FOUND"

    async def test_foreign_example_is_403(self, service, example_doc, other_payload):
        with pytest.raises(AuthError) as exc_info:
            await service.get_page_image(example_doc.id, 0, other_payload)
        assert exc_info.value.status_code == 403

    async def test_example_never_touches_storage(self, service, example_doc, blob_store, owner_payload):
        blob_store.fail_presign = True

        result = await service.get_page_image(example_doc.id, 0, owner_payload)

        assert result.redirect_url is not None
