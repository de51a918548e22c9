# src/cid_portal/core/connection.py
"""Single source of truth for "is this connection secure?" decisions."""

from __future__ import annotations

import ipaddress
import logging

from starlette.requests import HTTPConnection

from cid_portal.core.context import RequestContext
from cid_portal.core.settings import Settings

logger = logging.getLogger(__name__)


class ConnectionSecurityInspector:
    """Inspect a request's transport and client identity.

    Proxy headers (``X-Forwarded-Proto``, ``X-Forwarded-Ssl``,
    ``Front-End-Https``, ``X-Forwarded-For``) are honoured only when
    ``TRUST_PROXY`` is enabled.
    """

    def __init__(self, config: Settings) -> None:
        self._config = config

    def is_secure(self, request: HTTPConnection) -> bool:
        if request.url.scheme in {"https", "wss"}:
            return True
        if not self._config.trust_proxy:
            return False
        headers = request.headers
        forwarded_proto = headers.get("x-forwarded-proto", "")
        if forwarded_proto.split(",")[0].strip().lower() == "https":
            return True
        if headers.get("x-forwarded-ssl", "").lower() == "on":
            return True
        return headers.get("front-end-https", "").lower() == "on"

    def cookie_secure(self, request: HTTPConnection) -> bool:
        """Return the Secure attribute for cookies set on this response."""
        return self.is_secure(request)

    def may_set_session_cookie(self, request: HTTPConnection) -> bool:
        """Return False when a production session would travel over plain HTTP.

        ``ALLOW_INSECURE_COOKIES`` and ``ALLOW_HTTP_SESSIONS`` both lift the
        restriction, as does any non-production environment.
        """
        if self.is_secure(request):
            return True
        if not self._config.is_production:
            return True
        return self._config.allow_insecure_cookies or self._config.allow_http_sessions

    def client_ip(self, request: HTTPConnection) -> str:
        if self._config.trust_proxy:
            forwarded_for = request.headers.get("x-forwarded-for")
            if forwarded_for:
                first = forwarded_for.split(",")[0].strip()
                if first:
                    return first
            real_ip = request.headers.get("x-real-ip")
            if real_ip:
                return real_ip.strip()
        if request.client is not None and request.client.host:
            return request.client.host
        return "unknown"

    @staticmethod
    def user_agent(request: HTTPConnection) -> str:
        return request.headers.get("user-agent", "unknown")

    def context(
        self,
        request: HTTPConnection,
        *,
        session_id: str | None = None,
        username: str | None = None,
    ) -> RequestContext:
        """Build the audit context for ``request``."""
        return RequestContext(
            ip_address=self.client_ip(request),
            method=request.scope.get("method"),
            url=str(request.url.path),
            user_agent=self.user_agent(request),
            referrer=request.headers.get("referer"),
            session_id=session_id,
            username=username,
        )

    @staticmethod
    def is_local_address(ip: str) -> bool:
        try:
            address = ipaddress.ip_address(ip)
        except ValueError:
            return ip == "localhost"
        return address.is_loopback or address.is_private


__all__ = ["ConnectionSecurityInspector"]
