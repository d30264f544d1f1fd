"""
Domain error taxonomy.

Every error raised by the services carries the HTTP status it maps to and a
structured ErrorResponse body. main.py registers a single exception handler
for DocumentError, so services never import FastAPI's HTTPException.

    ValidationError  400      malformed / disallowed input, never retried
    AuthError        401/403  missing credentials or not the owner
    NotFoundError    404      unknown document or page image
    StorageError     500      blob write/read failed
    UpstreamError    varies   extraction / export / blob-fetch backend failed
"""

from __future__ import annotations

from fastapi import status

from precision_pdf.schemas.documents import DocumentErrors, ErrorResponse


class DocumentError(Exception):
    """Base class — subclasses set the default status code."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, body: ErrorResponse, status_code: int | None = None) -> None:
        super().__init__(body.message)
        self.body = body
        if status_code is not None:
            self.status_code = status_code

    @property
    def error_code(self) -> str:
        return self.body.error_code


class ValidationError(DocumentError):
    status_code = status.HTTP_400_BAD_REQUEST


class AuthError(DocumentError):
    status_code = status.HTTP_401_UNAUTHORIZED

    @classmethod
    def unauthorized(cls) -> "AuthError":
        return cls(DocumentErrors.unauthorized())


class NotFoundError(DocumentError):
    status_code = status.HTTP_404_NOT_FOUND


class StorageError(DocumentError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, cause: str) -> None:
        # cause is for logs only; the client body is generic
        super().__init__(DocumentErrors.storage_error())
        self.cause = cause

    def __str__(self) -> str:
        return self.cause


class UpstreamError(DocumentError):
    """
    A downstream service call failed.
    upstream_status is the backend's HTTP status when one was received.
    """

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        body:            ErrorResponse,
        upstream_status: int | None = None,
        cause:           str = "",
    ) -> None:
        super().__init__(body, status_code=upstream_status or status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.upstream_status = upstream_status
        self.cause = cause


class InvalidTransition(Exception):
    """A record-store write would break the document state machine."""
