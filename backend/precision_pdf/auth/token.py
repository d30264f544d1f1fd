"""
JWT Token Verification — OIDC-Compatible

The identity provider signs RS256 access tokens with a rotating key set.
Public keys are fetched from <issuer>/.well-known/jwks.json and cached
(TTL: 1 hour). An unknown kid forces one refresh, which handles key
rotation transparently.

The only claim this service needs is `sub`: it becomes the document
owner id. Failures raise AuthError (401), never HTTPException, so they share
the ErrorResponse envelope with every other error.

Usage in routes:
    @router.get("/documents")
    async def list_docs(user: CurrentUser): ...

Tests build JWTDecoder with an explicit issuer/audience/cache instead of
monkeypatching globals.
"""

from __future__ import annotations

import logging
import time

import httpx
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwk, jwt
from pydantic import BaseModel

from precision_pdf.core.config import settings
from precision_pdf.core.errors import AuthError
from precision_pdf.schemas.documents import DocumentErrors

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Verified token payload
# ---------------------------------------------------------------------------

class TokenPayload(BaseModel):
    """Parsed, validated JWT claims — passed to route handlers."""
    sub:   str          # provider user ID == document owner id
    email: str = ""
    exp:   int
    iss:   str


# ---------------------------------------------------------------------------
# JWKS cache (in-memory, TTL-based)
# ---------------------------------------------------------------------------

class _JWKSCache:
    """
    Module-level singleton shared across requests.

      - Caches each issuer's JWKS for _TTL seconds.
      - On a kid miss: force-refreshes once.
      - JWKS endpoint failures surface as 401 (the client cannot fix them,
        but the request is still unauthenticated).
    """

    _TTL: int = 3600

    def __init__(self) -> None:
        self._store: dict[str, tuple[dict, float]] = {}   # issuer → (jwks, fetched_at)

    async def get_signing_key(self, token: str, issuer: str | None = None) -> object:
        """Resolve the public key for the token's kid."""
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise AuthError.unauthorized() from exc

        kid    = header.get("kid")
        issuer = issuer or settings.auth_issuer

        for attempt in range(2):
            if attempt == 1:
                self._store.pop(issuer, None)   # force refresh on second attempt

            jwks = await self._fetch(issuer)

            for key_data in jwks.get("keys", []):
                if key_data.get("kid") == kid:
                    return jwk.construct(key_data, algorithm=key_data.get("alg", "RS256"))

        logger.warning("No signing key | issuer=%s kid=%r", issuer, kid)
        raise AuthError.unauthorized()

    async def _fetch(self, issuer: str) -> dict:
        """Fetch JWKS from the well-known endpoint with TTL-based caching."""
        now    = time.monotonic()
        cached = self._store.get(issuer)

        if cached and (now - cached[1]) < self._TTL:
            return cached[0]

        uri = f"{issuer.rstrip('/')}/.well-known/jwks.json"
        try:
            async with httpx.AsyncClient(timeout=10.0) as http:
                resp = await http.get(uri)
                resp.raise_for_status()
                jwks = resp.json()
        except httpx.HTTPStatusError as exc:
            logger.error("JWKS fetch failed | issuer=%s status=%d", issuer, exc.response.status_code)
            raise AuthError.unauthorized() from exc
        except httpx.RequestError as exc:
            logger.error("JWKS fetch network error | issuer=%s error=%s", issuer, exc)
            raise AuthError.unauthorized() from exc

        self._store[issuer] = (jwks, now)
        logger.debug("JWKS refreshed | issuer=%s keys=%d", issuer, len(jwks.get("keys", [])))
        return jwks

    def clear(self) -> None:
        """Flush the entire cache."""
        self._store.clear()

    def stats(self) -> dict:
        """Cache diagnostics for the readiness endpoint."""
        now = time.monotonic()
        return {
            issuer: {
                "age_seconds":   round(now - fetched_at),
                "ttl_remaining": max(0, round(self._TTL - (now - fetched_at))),
                "key_count":     len(jwks.get("keys", [])),
            }
            for issuer, (jwks, fetched_at) in self._store.items()
        }


jwks_cache = _JWKSCache()


# ---------------------------------------------------------------------------
# JWT decoder: class-based FastAPI dependency
# ---------------------------------------------------------------------------

class JWTDecoder:
    """
    Resolves to a verified TokenPayload.

        decoder = JWTDecoder(issuer="https://test.auth.example.com/", audience="test-api")
        user: TokenPayload = Depends(decoder)
    """

    def __init__(
        self,
        issuer:   str | None = None,
        audience: str | None = None,
        cache:    _JWKSCache | None = None,
    ) -> None:
        self._issuer   = issuer   or settings.auth_issuer
        self._audience = audience or settings.auth_audience
        self._cache    = cache    or jwks_cache

    async def __call__(
        self,
        request:     Request,
        credentials: HTTPAuthorizationCredentials | None = Depends(HTTPBearer(auto_error=False)),
    ) -> TokenPayload:
        request_id = request.headers.get("X-Request-ID", "-")
        if credentials is None or not credentials.credentials:
            raise AuthError.unauthorized()
        token = credentials.credentials

        signing_key = await self._cache.get_signing_key(token, issuer=self._issuer)

        try:
            claims = jwt.decode(
                token,
                signing_key,
                algorithms=["RS256"],
                audience=self._audience,
                issuer=self._issuer,
                options={"verify_exp": True, "require_exp": True},
            )
        except ExpiredSignatureError:
            logger.info("Expired token | request_id=%s", request_id)
            raise AuthError(DocumentErrors.token_expired())
        except JWTError as exc:
            logger.warning("JWT decode error | request_id=%s error=%s", request_id, exc)
            raise AuthError.unauthorized()

        sub = claims.get("sub")
        if not sub:
            logger.warning("Token missing sub claim | request_id=%s", request_id)
            raise AuthError.unauthorized()

        return TokenPayload(
            sub=str(sub),
            email=claims.get("email", ""),
            exp=claims["exp"],
            iss=claims["iss"],
        )


default_decoder = JWTDecoder()


async def get_current_user(
    request:     Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(HTTPBearer(auto_error=False)),
) -> TokenPayload:
    """Default auth dependency; tests override this one."""
    return await default_decoder(request, credentials)
