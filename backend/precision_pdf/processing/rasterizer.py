"""
PDF Rasterizer — page previews via PyMuPDF (fitz)

Renders every page of a PDF into a PNG bitmap at a fixed 2x scale factor.
Rendering is CPU-bound, so the blocking work runs in the default thread
executor and the event loop stays free for other requests.

Output order always matches source page order: result[i] is page i
(zero-based). Any failure to open or render raises RasterizationError;
deciding whether that is fatal is the caller's business.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Fixed rendering parameters
# ---------------------------------------------------------------------------

RASTER_SCALE = 2.0
RASTER_FORMAT = "png"
RASTER_CONTENT_TYPE = "image/png"


class RasterizationError(Exception):
    """The PDF could not be opened or a page could not be rendered."""


@dataclass(frozen=True)
class PageImage:
    """
    One rendered page.

    index        : zero-based source page index
    data         : encoded image bytes
    image_format : always "png"
    scale        : pixel scale factor used for rendering
    """
    index:        int
    data:         bytes
    image_format: str = RASTER_FORMAT
    scale:        float = RASTER_SCALE

    @property
    def content_type(self) -> str:
        return RASTER_CONTENT_TYPE


class PdfRasterizer:
    """
    Thread-safety: fitz.open() returns an independent document object per
    call, so one instance can serve concurrent ingestions.
    """

    def __init__(self, scale: float = RASTER_SCALE) -> None:
        self._scale = scale

    async def rasterize(self, pdf_bytes: bytes) -> list[PageImage]:
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()
        pages = await loop.run_in_executor(None, self._rasterize_sync, pdf_bytes)
        logger.info(
            "Rasterize ok | pages=%d scale=%.1f elapsed_ms=%.0f",
            len(pages), self._scale, (time.monotonic() - t0) * 1000,
        )
        return pages

    def _rasterize_sync(self, pdf_bytes: bytes) -> list[PageImage]:
        """Blocking render — runs in thread executor."""
        import fitz  # PyMuPDF; imported here to avoid module-level import cost

        try:
            doc = fitz.open(stream=pdf_bytes, filetype="pdf")
        except Exception as exc:
            raise RasterizationError(f"cannot open PDF: {exc}") from exc

        matrix = fitz.Matrix(self._scale, self._scale)
        pages: list[PageImage] = []
        with doc:
            if doc.needs_pass:
                raise RasterizationError("PDF is password-protected")
            if doc.page_count == 0:
                raise RasterizationError("PDF has no pages")
            for index, page in enumerate(doc):
                try:
                    pix = page.get_pixmap(matrix=matrix, alpha=False)
                    data = pix.tobytes(RASTER_FORMAT)
                except Exception as exc:
                    raise RasterizationError(f"page {index} failed to render: {exc}") from exc
                pages.append(PageImage(index=index, data=data, scale=self._scale))
        return pages
