"""Clerk JWT verification middleware for FastAPI.

Validates the session token on every request (except public routes),
extracts claims, and sets ``request.state.auth`` with the authenticated
user context that downstream route handlers consume via ``get_current_user``.

The token is read from ``Authorization: Bearer`` or, for top-level browser
navigations such as the OAuth redirect round-trip, from Clerk's
``__session`` cookie.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

import jwt as pyjwt
from fastapi import Request, Response
from jwt import PyJWKClient
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.config import Settings, get_settings
from src.dependencies import AuthContext

logger = logging.getLogger("healthhub.auth")

SESSION_COOKIE = "__session"

# Paths that do not require authentication
PUBLIC_PATHS: set[str] = {
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
    # Protected by its own bearer secret
    "/api/v1/cron/fitbit-sync",
}

# Paths where an anonymous caller is let through with no ``request.state.auth``;
# the handler decides how to respond (the OAuth callback redirects instead of 401)
OPTIONAL_AUTH_PATHS: set[str] = {
    "/api/v1/fitbit/callback",
}


def _is_public(path: str) -> bool:
    return path in PUBLIC_PATHS or path.startswith("/docs") or path.startswith("/redoc")


def _unauthorized(detail: str) -> Response:
    return Response(
        content=f'{{"detail":"{detail}"}}',
        status_code=401,
        media_type="application/json",
    )


def _extract_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.removeprefix("Bearer ").strip() or None
    return request.cookies.get(SESSION_COOKIE) or None


def _parse_uuid(value: Any) -> uuid.UUID | None:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        logger.warning("Ignoring malformed healthhub_user_id claim")
        return None


class ClerkAuthMiddleware(BaseHTTPMiddleware):
    """Verify Clerk-issued JWTs and populate request.state.auth."""

    def __init__(self, app: Any, settings: Settings | None = None) -> None:
        super().__init__(app)
        self._settings = settings or get_settings()
        self._jwks_client = PyJWKClient(
            self._settings.clerk_jwks_url,
            cache_keys=True,
            lifespan=3600,
        )

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if _is_public(path):
            return await call_next(request)

        # OPTIONS requests pass through (CORS preflight)
        if request.method == "OPTIONS":
            return await call_next(request)

        optional = path in OPTIONAL_AUTH_PATHS
        token = _extract_token(request)
        if not token:
            if optional:
                return await call_next(request)
            return _unauthorized("Missing or invalid Authorization header")

        try:
            payload = self._decode(token)
        except pyjwt.ExpiredSignatureError:
            if optional:
                return await call_next(request)
            return _unauthorized("Token expired")
        except pyjwt.PyJWTError as exc:
            logger.warning("JWT validation failed: %s", exc)
            if optional:
                return await call_next(request)
            return _unauthorized("Invalid token")

        request.state.auth = AuthContext(
            user_id=payload.get("sub", ""),
            # Custom claim set via Clerk session token template
            healthhub_user_id=_parse_uuid(payload.get("healthhub_user_id")),
            email=payload.get("email"),
            session_id=payload.get("sid"),
        )

        return await call_next(request)

    def _decode(self, token: str) -> dict[str, Any]:
        signing_key = self._jwks_client.get_signing_key_from_jwt(token)
        return pyjwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            options={"verify_aud": False},  # Clerk tokens use azp, not aud
        )
