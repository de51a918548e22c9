"""HTTP middleware: request gatekeeping, whitelist CORS and security headers."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Final

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from cid_portal.core.errors import SecurityError
from cid_portal.services.gatekeeper import RequestGatekeeper

logger = logging.getLogger(__name__)

SECURITY_HEADERS: Final[dict[str, str]] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}
HSTS_HEADER: Final[str] = "max-age=31536000; includeSubDomains; preload"

CORS_METHODS: Final[tuple[str, ...]] = ("GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS")
CORS_HEADERS: Final[tuple[str, ...]] = (
    "Content-Type",
    "Authorization",
    "X-Requested-With",
    "Accept",
    "Origin",
)
CORS_EXPOSED_HEADERS: Final[tuple[str, ...]] = ("Content-Length", "Content-Type", "X-Session-Warning")


def error_response(exc: SecurityError, *, expose_internal: bool = True) -> JSONResponse:
    """Render a :class:`SecurityError` as ``{"message", "code"}`` JSON."""
    payload = exc.to_payload()
    if exc.status_code >= 500 and not expose_internal:
        payload = {"message": "Internal server error", "code": exc.code}
    return JSONResponse(payload, status_code=exc.status_code, headers=exc.headers or None)


class GatekeeperMiddleware(BaseHTTPMiddleware):
    """Reject untrusted requests before routing and stamp security headers.

    Runs outermost so Host, method, HTTPS and Origin rejections never reach
    CORS handling or any route.
    """

    def __init__(self, app: ASGIApp, *, gatekeeper: RequestGatekeeper) -> None:
        super().__init__(app)
        self.gatekeeper = gatekeeper

    def _apply_headers(self, request: Request, response: Response) -> Response:
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        if self.gatekeeper.inspector.is_secure(request):
            response.headers.setdefault("Strict-Transport-Security", HSTS_HEADER)
        return response

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        try:
            self.gatekeeper.inspect(request)
        except SecurityError as exc:
            logger.warning(
                "Gatekeeper rejected %s %s: %s", request.method, request.url.path, exc.code
            )
            return self._apply_headers(
                request,
                error_response(exc, expose_internal=not self.gatekeeper.config.is_production),
            )
        response = await call_next(request)
        return self._apply_headers(request, response)


class WhitelistCORSMiddleware(CORSMiddleware):
    """CORS handling that consults the origin :class:`Whitelist` instead of a static list.

    Never answers with a wildcard ``Access-Control-Allow-Origin``.
    """

    def __init__(self, app: ASGIApp, *, gatekeeper: RequestGatekeeper, **kwargs: Any) -> None:
        kwargs.setdefault("allow_methods", CORS_METHODS)
        kwargs.setdefault("allow_headers", CORS_HEADERS)
        kwargs.setdefault("expose_headers", CORS_EXPOSED_HEADERS)
        kwargs.setdefault("allow_credentials", True)
        kwargs.setdefault("max_age", 600)
        super().__init__(app, allow_origins=(), **kwargs)
        self.gatekeeper = gatekeeper

    def is_allowed_origin(self, origin: str) -> bool:
        return self.gatekeeper.origin_allowed(origin)


__all__ = [
    "GatekeeperMiddleware",
    "SECURITY_HEADERS",
    "WhitelistCORSMiddleware",
    "error_response",
]
