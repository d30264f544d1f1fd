"""
Export proxy — aggregated markdown / text / CSV / DOCX downloads

The export backend renders selected chunks or whole documents into a file.
This client forwards the caller's JSON body to
    POST <EXPORT_API_URL>/api/export/<format>     (X-API-Key header)
and returns the backend bytes with the format's content type.

Errors:
  unknown format            → NotFoundError (404)
  EXPORT_API_KEY not set    → DocumentError EXPORT_NOT_CONFIGURED (500)
  backend non-2xx           → UpstreamError with the backend's status code
  transport failure/timeout → UpstreamError (500)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from precision_pdf.core.config import Settings
from precision_pdf.core.errors import DocumentError, NotFoundError, UpstreamError
from precision_pdf.schemas.documents import DocumentErrors

logger = logging.getLogger(__name__)

DOCX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


@dataclass(frozen=True)
class ExportFormat:
    name:         str
    content_type: str


EXPORT_FORMATS: dict[str, ExportFormat] = {
    "markdown":     ExportFormat("markdown", "text/plain"),
    "csv":          ExportFormat("csv", "text/csv"),
    "all-markdown": ExportFormat("all-markdown", "text/plain"),
    "all-text":     ExportFormat("all-text", "text/plain"),
    "all-docx":     ExportFormat("all-docx", DOCX_CONTENT_TYPE),
}


class ExportClient:

    def __init__(self, cfg: Settings, http: httpx.AsyncClient) -> None:
        self._base_url = cfg.export_api_url.rstrip("/")
        self._api_key = cfg.export_api_key
        self._timeout = cfg.export_timeout_seconds
        self._http = http

    async def export(self, export_format: str, payload: dict[str, Any]) -> tuple[bytes, str]:
        fmt = EXPORT_FORMATS.get(export_format)
        if fmt is None:
            raise NotFoundError(DocumentErrors.unknown_export_format(export_format))
        if not self._api_key:
            logger.error("Export rejected | format=%s reason=missing_api_key", fmt.name)
            raise DocumentError(DocumentErrors.export_not_configured())

        url = f"{self._base_url}/api/export/{fmt.name}"
        try:
            response = await self._http.post(
                url,
                json=payload,
                headers={"X-API-Key": self._api_key},
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            logger.error("Export transport error | format=%s error=%s", fmt.name, exc)
            raise UpstreamError(DocumentErrors.export_failed(fmt.name, None), cause=str(exc)) from exc

        if not response.is_success:
            logger.error(
                "Export failed | format=%s status=%d body=%s",
                fmt.name, response.status_code, response.text[:500],
            )
            raise UpstreamError(
                DocumentErrors.export_failed(fmt.name, response.status_code),
                upstream_status=response.status_code if response.status_code >= 400 else None,
                cause=response.text[:500],
            )

        logger.info("Export ok | format=%s bytes=%d", fmt.name, len(response.content))
        return response.content, fmt.content_type
