"""
Composed FastAPI Dependencies

Wires the per-process clients built in the lifespan hook (app.state) into
request-scoped services. Route handlers import from here — never from
db/, storage/ or services/ constructors directly.

This is the single wiring point for the entire request context.
"""

from __future__ import annotations

from typing import Annotated

import httpx
from fastapi import Depends, Request

from precision_pdf.auth.token import TokenPayload, get_current_user
from precision_pdf.core.config import Settings, get_settings
from precision_pdf.db.repository import DocumentRecordStore
from precision_pdf.processing.rasterizer import PdfRasterizer
from precision_pdf.services.dispatch import BackgroundDispatcher
from precision_pdf.services.examples import ExampleService
from precision_pdf.services.export import ExportClient
from precision_pdf.services.ingestion import IngestionService, TaskPublisher
from precision_pdf.services.page_images import PageImageService
from precision_pdf.storage.s3 import S3StorageService


# ---------------------------------------------------------------------------
# 1. Process-wide clients (constructed once in main.lifespan)
# ---------------------------------------------------------------------------

def get_record_store(request: Request) -> DocumentRecordStore:
    return request.app.state.record_store


def get_storage(request: Request) -> S3StorageService:
    return request.app.state.storage


def get_rasterizer(request: Request) -> PdfRasterizer:
    return request.app.state.rasterizer


def get_dispatcher(request: Request) -> BackgroundDispatcher:
    return request.app.state.dispatcher


def get_task_publisher(request: Request) -> TaskPublisher:
    return request.app.state.task_publisher


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


# ---------------------------------------------------------------------------
# 2. Request-scoped services
# ---------------------------------------------------------------------------

def get_ingestion_service(
    records:    Annotated[DocumentRecordStore, Depends(get_record_store)],
    storage:    Annotated[S3StorageService, Depends(get_storage)],
    rasterizer: Annotated[PdfRasterizer, Depends(get_rasterizer)],
    dispatcher: Annotated[BackgroundDispatcher, Depends(get_dispatcher)],
    publisher:  Annotated[TaskPublisher, Depends(get_task_publisher)],
) -> IngestionService:
    return IngestionService(records, storage, rasterizer, dispatcher, publisher)


def get_page_image_service(
    records: Annotated[DocumentRecordStore, Depends(get_record_store)],
    storage: Annotated[S3StorageService, Depends(get_storage)],
    http:    Annotated[httpx.AsyncClient, Depends(get_http_client)],
) -> PageImageService:
    return PageImageService(records, storage, http)


def get_example_service(
    records: Annotated[DocumentRecordStore, Depends(get_record_store)],
    cfg:     Annotated[Settings, Depends(get_settings)],
) -> ExampleService:
    return ExampleService(records, cfg.examples_dir)


def get_export_client(
    cfg:  Annotated[Settings, Depends(get_settings)],
    http: Annotated[httpx.AsyncClient, Depends(get_http_client)],
) -> ExportClient:
    return ExportClient(cfg, http)


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

CurrentUser    = Annotated[TokenPayload,        Depends(get_current_user)]
RecordStore    = Annotated[DocumentRecordStore, Depends(get_record_store)]
Ingestion      = Annotated[IngestionService,    Depends(get_ingestion_service)]
PageImages     = Annotated[PageImageService,    Depends(get_page_image_service)]
Exporter       = Annotated[ExportClient,        Depends(get_export_client)]
Examples       = Annotated[ExampleService,      Depends(get_example_service)]
AppSettings    = Annotated[Settings,            Depends(get_settings)]
