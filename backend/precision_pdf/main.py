"""
FastAPI Application — Entry Point

Precision PDF document API

Architecture:
  - All routes are versioned under /api/v1/
  - Authentication is JWT-based (OIDC provider, RS256) enforced per-route
  - Backend clients (DB engine, record store, S3, HTTP client, background
    dispatcher) are built ONCE in the lifespan hook, kept on app.state and
    injected through auth/dependencies.py
  - Structured JSON error responses on all 4xx/5xx

Middleware stack (innermost → outermost):
  1. Request ID + logging — X-Request-ID on every response, one log line per request
  2. CORS — restrict to configured origins
  3. Gzip — compress responses > 1 KB
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from precision_pdf.api.v1.documents import router as documents_router
from precision_pdf.api.v1.examples import router as examples_router
from precision_pdf.api.v1.export import router as export_router
from precision_pdf.auth.token import jwks_cache
from precision_pdf.core.config import settings
from precision_pdf.core.errors import DocumentError
from precision_pdf.db.repository import SqlDocumentRecordStore
from precision_pdf.db.session import check_db_health, create_engine, create_session_factory
from precision_pdf.processing.rasterizer import PdfRasterizer
from precision_pdf.schemas.documents import DocumentErrors, ErrorDetail, ErrorResponse
from precision_pdf.services.dispatch import BackgroundDispatcher
from precision_pdf.services.ingestion import TaskPublisher
from precision_pdf.storage.s3 import S3StorageService

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

_SHUTDOWN_DRAIN_SECONDS = 30.0


# ---------------------------------------------------------------------------
# Application lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: build every process-wide client and check DB connectivity.
    Shutdown: drain in-flight handoffs, close the HTTP client, dispose the engine.
    """
    logger.info("Starting Precision PDF API | env=%s", settings.app_env)

    engine = create_engine(settings)
    db_health = await check_db_health(engine)
    if db_health["status"] != "ok":
        logger.critical("Database health check failed at startup: %s", db_health)
        await engine.dispose()
        raise RuntimeError(f"DB unavailable: {db_health}")

    app.state.engine         = engine
    app.state.record_store   = SqlDocumentRecordStore(create_session_factory(engine))
    app.state.storage        = S3StorageService(settings)
    app.state.rasterizer     = PdfRasterizer()
    app.state.dispatcher     = BackgroundDispatcher()
    app.state.task_publisher = TaskPublisher()
    app.state.http_client    = httpx.AsyncClient(timeout=30.0)

    logger.info("Database: connected")
    logger.info("Auth issuer: %s", settings.auth_issuer)
    logger.info("S3 bucket: %s", settings.s3_bucket)

    yield

    logger.info("Shutting down Precision PDF API")
    await app.state.dispatcher.drain(timeout=_SHUTDOWN_DRAIN_SECONDS)
    await app.state.http_client.aclose()
    await engine.dispose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Precision PDF",
        description=(
            "Document upload, page preview and AI extraction API. "
            "Uploads are validated, stored, rasterized and handed to extraction asynchronously."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order: last added = outermost)
    # ----------------------------------------------------------------

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    allowed_origins = (
        ["*"] if settings.app_env == "development"
        else ["https://app.precisionpdf.io"]
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )

    # ----------------------------------------------------------------
    # Request ID + structured logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms | request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request_id,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(DocumentError)
    async def document_error_handler(request: Request, exc: DocumentError):
        """Domain errors carry their own status and ErrorResponse body."""
        request_id = getattr(request.state, "request_id", None)
        cause = getattr(exc, "cause", "")
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            "Request failed | path=%s status=%d code=%s request_id=%s cause=%s",
            request.url.path, exc.status_code, exc.error_code, request_id, cause or "-",
        )
        body = exc.body.model_copy(update={"request_id": request_id})
        headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == status.HTTP_401_UNAUTHORIZED else None
        return JSONResponse(
            status_code=exc.status_code,
            content=body.model_dump(mode="json"),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert Pydantic/FastAPI validation errors to structured ErrorResponse."""
        details = [
            ErrorDetail(
                field=" → ".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=details,
            request_id=getattr(request.state, "request_id", None),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose raw error text."""
        request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=DocumentErrors.internal_error(request_id).model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router, prefix="/api/v1")
    app.include_router(examples_router,  prefix="/api/v1")
    app.include_router(export_router,    prefix="/api/v1")

    # static example page images; the page-image route redirects here
    if Path(settings.examples_dir).is_dir():
        app.mount("/examples", StaticFiles(directory=settings.examples_dir), name="examples")

    # ----------------------------------------------------------------
    # Health & readiness endpoints (no auth: used by load balancer)
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness probe",
        description="Returns 200 if the process is alive. No external checks.",
    )
    async def health() -> dict:
        return {"status": "ok", "service": "precision-pdf-api"}

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness probe",
        description="Returns 200 only if the database is reachable.",
    )
    async def readiness(request: Request) -> JSONResponse:
        db_status = await check_db_health(request.app.state.engine)
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={
                "status":       "ready",
                "database":     db_status,
                "jwks":         jwks_cache.stats(),
                "pending_handoffs": request.app.state.dispatcher.pending,
            },
        )

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "precision_pdf.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
