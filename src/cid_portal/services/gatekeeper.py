# src/cid_portal/services/gatekeeper.py
"""Pre-routing request checks: Host, method, transport and Origin."""

from __future__ import annotations

import re
from typing import Final
from urllib.parse import urlsplit

from starlette.requests import HTTPConnection

from cid_portal.core.connection import ConnectionSecurityInspector
from cid_portal.core.context import RequestContext
from cid_portal.core.errors import SecurityPolicyError
from cid_portal.core.settings import Settings
from cid_portal.core.whitelist import Whitelist, strip_port
from cid_portal.services.audit import AuditSink, Severity, Status

ALLOWED_METHODS: Final[frozenset[str]] = frozenset(
    {"GET", "POST", "PUT", "DELETE", "PATCH", "HEAD"}
)
BLOCKED_METHODS: Final[frozenset[str]] = frozenset({"TRACE", "TRACK", "CONNECT"})
CREDENTIAL_PATHS: Final[frozenset[str]] = frozenset(
    {"/api/login", "/api/auth/login", "/api/register", "/api/auth/register"}
)
HOST_PATTERN: Final = re.compile(r"^[a-zA-Z0-9.-]+(?::\d{1,5})?$")
LOCAL_ORIGIN_HOSTS: Final[frozenset[str]] = frozenset({"localhost", "127.0.0.1"})


class RequestGatekeeper:
    """Apply the request policy before any route runs.

    Each ``check_*`` method raises :class:`SecurityPolicyError` on rejection
    after writing the reason to the audit log.
    """

    def __init__(
        self,
        config: Settings,
        hosts: Whitelist,
        origins: Whitelist,
        inspector: ConnectionSecurityInspector,
        audit: AuditSink,
    ) -> None:
        self._config = config
        self._hosts = hosts
        self._origins = origins
        self._inspector = inspector
        self._audit = audit

    @property
    def config(self) -> Settings:
        return self._config

    @property
    def inspector(self) -> ConnectionSecurityInspector:
        return self._inspector

    @property
    def origins(self) -> Whitelist:
        return self._origins

    def _reject(
        self,
        event: str,
        severity: Severity,
        context: RequestContext,
        details: dict[str, object],
        *,
        message: str,
        code: str,
        status_code: int,
    ) -> SecurityPolicyError:
        self._audit.record(event, severity, Status.FAILURE, details, context)
        return SecurityPolicyError(message, code=code, status_code=status_code)

    def check_host(self, request: HTTPConnection, context: RequestContext) -> None:
        """Validate ``Host`` and any ``X-Forwarded-Host``/``X-Real-Host`` header."""
        host = request.headers.get("host", "").strip()
        if not host:
            raise self._reject(
                "MISSING_HOST_HEADER",
                Severity.HIGH,
                context,
                {"reason": "Host header is required"},
                message="Host header is required",
                code="INVALID_HOST_HEADER",
                status_code=400,
            )
        if not HOST_PATTERN.match(host) and "localhost" not in host.lower():
            raise self._reject(
                "MALFORMED_HOST_HEADER",
                Severity.HIGH,
                context,
                {"host": host[:255]},
                message="Malformed host header",
                code="INVALID_HOST_HEADER",
                status_code=400,
            )

        bare_host = strip_port(host)
        if not self._hosts.matches(bare_host):
            raise self._reject(
                "UNTRUSTED_HOST_HEADER",
                Severity.CRITICAL,
                context,
                {"host": bare_host},
                message="Invalid host header",
                code="UNTRUSTED_HOST",
                status_code=403,
            )

        for header in ("x-forwarded-host", "x-real-host"):
            value = request.headers.get(header)
            if not value:
                continue
            # proxies may append a chain; the first hop is what the client asked for
            forwarded = strip_port(value.split(",")[0])
            if forwarded.lower() == bare_host.lower() or self._hosts.matches(forwarded):
                continue
            raise self._reject(
                "UNTRUSTED_FORWARDED_HOST",
                Severity.CRITICAL,
                context,
                {"header": header, "forwardedHost": forwarded, "host": bare_host},
                message="Invalid forwarded host header",
                code="UNTRUSTED_HOST",
                status_code=403,
            )

    def check_method(self, request: HTTPConnection, context: RequestContext) -> None:
        method = str(request.scope.get("method", "")).upper()
        if method in ALLOWED_METHODS:
            return
        if method == "OPTIONS":
            if request.headers.get("origin"):
                return
            raise self._reject(
                "BLOCKED_OPTIONS_METHOD",
                Severity.HIGH,
                context,
                {"method": method},
                message="Method Not Allowed",
                code="METHOD_NOT_ALLOWED",
                status_code=405,
            )
        event = "BLOCKED_HTTP_METHOD" if method in BLOCKED_METHODS else "BLOCKED_UNKNOWN_METHOD"
        raise self._reject(
            event,
            Severity.HIGH,
            context,
            {"method": method},
            message="This HTTP method is not supported for security reasons",
            code="METHOD_NOT_ALLOWED",
            status_code=405,
        )

    def check_https(self, request: HTTPConnection, context: RequestContext) -> None:
        """Refuse credential submissions over plain HTTP outside development."""
        if request.url.path.rstrip("/") not in CREDENTIAL_PATHS:
            return
        if self._inspector.is_secure(request):
            return
        if self._config.is_development or self._config.allow_http_sessions:
            return
        raise self._reject(
            "HTTPS_REQUIRED",
            Severity.HIGH,
            context,
            {"path": request.url.path},
            message="HTTPS is required for authentication",
            code="HTTPS_REQUIRED",
            status_code=403,
        )

    def origin_allowed(self, origin: str) -> bool:
        """Return whether ``origin`` may receive CORS headers."""
        parts = urlsplit(origin)
        if parts.scheme not in {"http", "https"} or not parts.hostname:
            return False
        if (
            not self._config.is_development
            and parts.scheme != "https"
            and parts.hostname not in LOCAL_ORIGIN_HOSTS
        ):
            return False
        return self._origins.matches(origin.rstrip("/"))

    def check_origin(self, request: HTTPConnection, context: RequestContext) -> bool:
        """Validate the ``Origin`` header.

        Returns:
            True when the origin is whitelisted and CORS headers may be sent.
            False when there is no Origin or it is the server's own origin.

        Raises:
            SecurityPolicyError: ``CORS_ORIGIN_REJECTED`` for any other origin.
        """
        origin = request.headers.get("origin")
        if not origin:
            if self._config.is_production:
                self._audit.record(
                    "CORS_NO_ORIGIN",
                    Severity.LOW,
                    Status.WARNING,
                    {"reason": "Request without origin header"},
                    context,
                )
            return False
        if self.origin_allowed(origin):
            return True

        parts = urlsplit(origin)
        host = request.headers.get("host", "")
        if parts.netloc and parts.netloc.lower() == host.lower():
            return False

        reason = "Origin not in whitelist"
        if parts.scheme not in {"http", "https"} or not parts.hostname:
            reason = "Malformed origin"
        elif parts.scheme != "https" and not self._config.is_development:
            reason = "HTTP origin blocked in production"
        raise self._reject(
            "CORS_ORIGIN_BLOCKED",
            Severity.CRITICAL,
            context,
            {"origin": origin[:255], "reason": reason},
            message="Origin not allowed",
            code="CORS_ORIGIN_REJECTED",
            status_code=403,
        )

    def inspect(self, request: HTTPConnection) -> bool:
        """Run every check in order; return whether CORS headers may be sent."""
        context = self._inspector.context(request)
        self.check_host(request, context)
        self.check_method(request, context)
        self.check_https(request, context)
        return self.check_origin(request, context)


__all__ = ["ALLOWED_METHODS", "CREDENTIAL_PATHS", "RequestGatekeeper"]
