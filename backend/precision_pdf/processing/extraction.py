"""
Extraction Service client — agentic document analysis over HTTP

The extraction service turns a document (PDF or image) into markdown plus
grounded content chunks. It is called only from the Celery extraction
bridge (workers/tasks.py), never on the request path.

Response normalisation:
  raw chunk   {"chunk_id", "text", "chunk_type",
               "grounding": [{"page": 0, "box": {"l", "t", "r", "b"}}, ...]}
  stored as   {"chunk_id", "content", "page",
               "bbox": {"x", "y", "width", "height"} | None,
               "metadata": {"chunk_type", "grounding"}}

  page comes from the first grounding entry (0 when absent) and the bbox is
  the first grounding box converted from edges to origin + size.

Failure classification (drives Celery retry):
  retryable      timeouts, transport errors, HTTP 429 and 5xx
  non-retryable  other 4xx, unreadable JSON, response without markdown,
                 response or chunks of the wrong shape
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

import httpx
from pydantic import ValidationError as SchemaValidationError

from precision_pdf.core.config import Settings
from precision_pdf.schemas.documents import BoundingBox, ContentChunk

logger = logging.getLogger(__name__)


class ExtractionError(Exception):
    """Extraction call failed; `retryable` says whether trying again can help."""

    def __init__(self, message: str, *, retryable: bool, status_code: int | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


@dataclass
class ParsedDocument:
    markdown:     str
    chunks:       list[dict[str, Any]]
    marginalia:   list[Any] = field(default_factory=list)
    raw_response: dict[str, Any] = field(default_factory=dict)
    elapsed_ms:   float = 0.0


# ---------------------------------------------------------------------------
# Chunk normalisation
# ---------------------------------------------------------------------------

def _grounding_bbox(grounding: dict[str, Any]) -> BoundingBox | None:
    box = grounding.get("box")
    if not isinstance(box, dict):
        return None
    try:
        left, top = float(box["l"]), float(box["t"])
        right, bottom = float(box["r"]), float(box["b"])
    except (KeyError, TypeError, ValueError):
        return None
    return BoundingBox(x=left, y=top, width=right - left, height=bottom - top)


def normalize_chunks(raw_chunks: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Convert extraction-service chunks into the stored chunk shape."""
    normalized: list[dict[str, Any]] = []
    for position, raw in enumerate(raw_chunks):
        if not isinstance(raw, dict):
            raise TypeError(f"chunk {position} is {type(raw).__name__}, not an object")
        grounding = raw.get("grounding") or []
        if not isinstance(grounding, list):
            raise TypeError(f"chunk {position} grounding is not a list")
        first = grounding[0] if grounding and isinstance(grounding[0], dict) else {}

        chunk = ContentChunk(
            chunk_id=str(raw.get("chunk_id") or f"chunk-{position + 1}"),
            content=raw.get("text") or raw.get("content") or "",
            page=int(first.get("page") or 0),
            bbox=_grounding_bbox(first) if first else None,
            metadata={
                "chunk_type": raw.get("chunk_type", "text"),
                "grounding":  grounding,
            },
        )
        normalized.append(chunk.model_dump())
    return normalized


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class ExtractionClient:
    """
    Thin async wrapper over the extraction endpoint.

    The httpx.AsyncClient is injected so the worker owns its lifecycle and
    tests can swap in an httpx.MockTransport.
    """

    def __init__(self, cfg: Settings, http: httpx.AsyncClient) -> None:
        self._url = cfg.extraction_api_url
        self._api_key = cfg.extraction_api_key
        self._timeout = cfg.extraction_timeout_seconds
        self._http = http

    async def parse(self, file_bytes: bytes, filename: str, content_type: str) -> ParsedDocument:
        if not self._api_key:
            raise ExtractionError("extraction API key is not configured", retryable=False)

        # the service takes PDFs under "pdf" and everything else under "image"
        field_name = "pdf" if content_type == "application/pdf" else "image"
        t0 = time.monotonic()

        try:
            response = await self._http.post(
                self._url,
                files={field_name: (filename, file_bytes, content_type)},
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=httpx.Timeout(self._timeout, connect=30.0, write=60.0),
            )
        except httpx.TimeoutException as exc:
            raise ExtractionError(f"extraction timed out after {self._timeout:.0f}s", retryable=True) from exc
        except httpx.HTTPError as exc:
            raise ExtractionError(f"extraction transport error: {exc}", retryable=True) from exc

        if response.status_code != 200:
            retryable = response.status_code == 429 or response.status_code >= 500
            logger.error(
                "Extraction error | status=%d retryable=%s body=%s",
                response.status_code, retryable, response.text[:500],
            )
            raise ExtractionError(
                f"extraction service returned HTTP {response.status_code}",
                retryable=retryable,
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ExtractionError("extraction service returned invalid JSON", retryable=False) from exc

        data = payload.get("data", payload) if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise ExtractionError("extraction response is not a JSON object", retryable=False)
        markdown = data.get("markdown")
        if markdown is None:
            raise ExtractionError("extraction response has no markdown", retryable=False)
        if not isinstance(markdown, str):
            raise ExtractionError("extraction response markdown is not text", retryable=False)

        raw_chunks = data.get("chunks") or []
        raw_marginalia = data.get("marginalia") or []
        if not isinstance(raw_chunks, list) or not isinstance(raw_marginalia, list):
            raise ExtractionError("extraction response chunks / marginalia are not lists", retryable=False)
        try:
            chunks = normalize_chunks(raw_chunks)
        except (TypeError, ValueError, AttributeError, SchemaValidationError) as exc:
            raise ExtractionError(f"extraction response has malformed chunks: {exc}", retryable=False) from exc

        elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Extraction ok | file=%s chunks=%d markdown_chars=%d elapsed_ms=%.0f",
            filename, len(chunks), len(markdown), elapsed_ms,
        )
        return ParsedDocument(
            markdown=markdown,
            chunks=chunks,
            marginalia=list(raw_marginalia),
            raw_response=payload,
            elapsed_ms=elapsed_ms,
        )
