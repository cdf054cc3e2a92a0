"""Authentication middleware for FastAPI."""

import logging
from typing import Any, Callable, Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from reelvault.common.constants import AUTH_HEADER, USER_HEADER
from reelvault.server.errors import ValidationError
from reelvault.server.quota.models import normalize_user_id

logger = logging.getLogger("reelvault.server.auth")


class TokenAuthMiddleware(BaseHTTPMiddleware):
    """Token-based authentication middleware.

    The identity provider in front of the service verifies the end user and
    forwards the user id in ``X-User-Id``; this middleware checks the
    shared ``X-API-Token`` of that trusted caller and stores the normalised
    user id on ``request.state.user_id``.
    """

    def __init__(
        self,
        app: Any,
        valid_tokens: list[str],
        exclude_paths: Optional[list[str]] = None,
        anonymous_paths: Optional[list[str]] = None,
    ) -> None:
        super().__init__(app)
        self.valid_tokens = set(valid_tokens)
        self.exclude_paths = exclude_paths or [
            "/api/health",
            "/api/info",
            "/docs",
            "/openapi.json",
            "/redoc",
        ]
        # Token required, but no end user behind the request
        self.anonymous_paths = anonymous_paths or ["/api/admin"]

    async def dispatch(self, request: Request, call_next: Callable) -> JSONResponse:  # type: ignore[override]
        """Process request and validate token."""
        path = request.url.path

        # Skip authentication for excluded paths
        for exclude in self.exclude_paths:
            if path.startswith(exclude):
                return await call_next(request)

        # Skip authentication for OPTIONS requests (CORS preflight)
        if request.method == "OPTIONS":
            return await call_next(request)

        # Resolve current tokens (may have been hot-reloaded)
        _settings = getattr(request.app.state, "settings", None)
        active_tokens = set(_settings.auth_tokens) if _settings else self.valid_tokens
        anonymous = any(path.startswith(p) for p in self.anonymous_paths)
        if anonymous and _settings:
            active_tokens |= set(_settings.admin_tokens)

        if active_tokens:
            api_token = request.headers.get(AUTH_HEADER)
            if not api_token or api_token not in active_tokens:
                return JSONResponse(
                    status_code=401,
                    content={"error": "unauthorized", "message": f"Provide a valid {AUTH_HEADER} header"},
                )

        if anonymous:
            return await call_next(request)

        try:
            request.state.user_id = normalize_user_id(request.headers.get(USER_HEADER, ""))
        except ValidationError:
            return JSONResponse(
                status_code=401,
                content={"error": "unauthorized", "message": f"Missing or invalid {USER_HEADER} header"},
            )

        return await call_next(request)


def get_user_id(request: Request) -> str:
    """FastAPI dependency: the caller's user id.

    Falls back to the header when the middleware is not installed
    (auth disabled).
    """
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return user_id  # type: ignore[no-any-return]
    try:
        return normalize_user_id(request.headers.get(USER_HEADER, ""))
    except ValidationError:
        raise HTTPException(401, f"Missing or invalid {USER_HEADER} header")
