"""
Export API Router

POST /export/{format}   format ∈ markdown | csv | all-markdown | all-text | all-docx

Authenticated pass-through to the export backend: the JSON body (selected
chunks or documents) is forwarded untouched and the rendered file comes
back with the format's content type.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body
from fastapi.responses import Response

from precision_pdf.auth.dependencies import CurrentUser, Exporter
from precision_pdf.schemas.documents import ErrorResponse

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/export",
    tags=["Export"],
)


@router.post(
    "/{export_format}",
    summary="Export content as markdown, text, CSV or DOCX",
    response_class=Response,
    responses={
        200: {"description": "Rendered file bytes"},
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse, "description": "Unknown export format"},
        500: {"model": ErrorResponse, "description": "Export backend unreachable or not configured"},
    },
)
async def export_content(
    export_format: str,
    user:          CurrentUser,
    exporter:      Exporter,
    payload:       dict[str, Any] | None = Body(None),
) -> Response:
    logger.info("Export requested | owner=%s format=%s", user.sub, export_format)
    data, content_type = await exporter.export(export_format, payload or {})
    return Response(content=data, media_type=content_type)
