"""
Example Documents Router

  GET  /examples/{example_id}   the pre-processed example, nothing stored
  POST /examples/{example_id}   add the example to the caller's documents (completed)

Static page images are served by the /examples mount in main.py.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter

from precision_pdf.api.v1.documents import document_response
from precision_pdf.auth.dependencies import CurrentUser, Examples
from precision_pdf.schemas.documents import DocumentResponse, ErrorResponse, ExampleDocument

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/examples",
    tags=["Examples"],
)


@router.get(
    "/{example_id}",
    response_model=ExampleDocument,
    summary="Load a pre-processed example document",
    responses={
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse, "description": "Unknown example"},
        500: {"model": ErrorResponse, "description": "Example file unusable"},
    },
)
async def get_example(
    example_id: str,
    user:       CurrentUser,
    examples:   Examples,
) -> ExampleDocument:
    return await examples.load(example_id)


@router.post(
    "/{example_id}",
    response_model=DocumentResponse,
    summary="Add an example to the caller's documents",
    responses={
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse, "description": "Unknown example"},
        500: {"model": ErrorResponse, "description": "Example file unusable"},
    },
)
async def create_example_document(
    example_id: str,
    user:       CurrentUser,
    examples:   Examples,
) -> DocumentResponse:
    doc = await examples.create_for_owner(example_id, user)
    return document_response(doc)
