"""
Example Documents — pre-processed demo content

Each example lives in the examples directory as
    <examples_dir>/<id>/<id>.json          raw extraction output
    <examples_dir>/<id>/images/page_<n>.png static page previews (served at /examples)

load(id)                   parse the JSON into an ExampleDocument (no side effects)
create_for_owner(id, user) insert it for the caller as a completed record

Example records never go through ingestion or the extraction bridge: they
are written completed, with no raw file, and their page images are static
files (the page-image route redirects to them).
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from pathlib import Path

from precision_pdf.auth.token import TokenPayload
from precision_pdf.core.errors import AuthError, DocumentError, NotFoundError
from precision_pdf.db.repository import DocumentRecordStore
from precision_pdf.models.documents import Document
from precision_pdf.processing.extraction import normalize_chunks
from precision_pdf.schemas.documents import ContentChunk, DocumentErrors, ExampleDocument

logger = logging.getLogger(__name__)

# ids become path components; nothing else is allowed
_EXAMPLE_ID_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9_\-]{0,127}")


def static_base_path(example_id: str) -> str:
    return f"/examples/{example_id}/images"


class ExampleService:

    def __init__(self, records: DocumentRecordStore, examples_dir: str | Path) -> None:
        self._records = records
        self._dir = Path(examples_dir)

    async def load(self, example_id: str) -> ExampleDocument:
        """
        Raises:
            NotFoundError: unknown or ill-formed example id.
            DocumentError: the example file exists but is not a usable document (500).
        """
        if not _EXAMPLE_ID_RE.fullmatch(example_id):
            raise NotFoundError(DocumentErrors.example_not_found(example_id))

        path = self._dir / example_id / f"{example_id}.json"
        loop = asyncio.get_running_loop()
        try:
            raw = await loop.run_in_executor(None, path.read_text, "utf-8")
        except (FileNotFoundError, NotADirectoryError, IsADirectoryError) as exc:
            raise NotFoundError(DocumentErrors.example_not_found(example_id)) from exc

        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise TypeError("example file is not a JSON object")
            markdown = data.get("markdown") or ""
            if not isinstance(markdown, str):
                raise TypeError("markdown is not text")
            chunks = normalize_chunks(data.get("chunks") or [])
            page_count = max(int(data.get("num_pages") or 0), 1)
        except (TypeError, ValueError, AttributeError) as exc:
            logger.error("Example file unusable | example=%s path=%s error=%s", example_id, path, exc)
            raise DocumentError(DocumentErrors.example_invalid(example_id)) from exc

        return ExampleDocument(
            example_id=example_id,
            title=str(data.get("filename") or f"{example_id}.pdf"),
            page_count=page_count,
            markdown=markdown,
            chunks=[ContentChunk.model_validate(c) for c in chunks],
            static_base_path=static_base_path(example_id),
        )

    async def create_for_owner(self, example_id: str, owner: TokenPayload | None) -> Document:
        if owner is None or not owner.sub:
            raise AuthError.unauthorized()

        example = await self.load(example_id)
        doc = await self._records.create_example(
            document_id=uuid.uuid4(),
            owner_id=owner.sub,
            title=example.title,
            markdown=example.markdown,
            chunks=[chunk.model_dump() for chunk in example.chunks],
            page_count=example.page_count,
            static_base_path=example.static_base_path,
        )
        logger.info("Example loaded | owner=%s example=%s doc=%s", owner.sub, example_id, doc.id)
        return doc
