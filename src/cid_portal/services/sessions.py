"""Session lifecycle management.

Sessions exist only after a successful login or registration. The session id
and a per-login token travel in an HS256-signed cookie; the record itself
lives in a :class:`~cid_portal.services.store.KeyValueStore`. Once a session id is
terminated (logout, timeout, binding mismatch, rotation) it is placed on a
blacklist and any later request carrying it is refused with
``SESSION_REPLAY_BLOCKED``.
"""

from __future__ import annotations

import hmac
import json
import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any, NamedTuple

from jose import jws
from jose.exceptions import JWSError
from starlette.requests import HTTPConnection
from starlette.responses import Response

from cid_portal.core.connection import ConnectionSecurityInspector
from cid_portal.core.context import RequestContext
from cid_portal.core.errors import (
    AuthenticationError,
    ReplayError,
    SecurityPolicyError,
    SessionExpiredError,
)
from cid_portal.core.settings import Settings
from cid_portal.services.audit import AuditSink, Severity, Status
from cid_portal.services.store import KeyValueStore

logger = logging.getLogger(__name__)

COOKIE_SIGNING_ALGORITHM = "HS256"
WARNING_HEADER = "X-Session-Warning"


@dataclass
class SessionRecord:
    """Server-side state of one authenticated browser session."""

    session_id: str
    created_at: float
    last_activity: float
    ip_address: str
    user_agent: str
    login_token: str
    user_id: int
    username: str
    role: str
    cookie_expires_at: float

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionRecord:
        return cls(**data)


class SessionCookie(NamedTuple):
    """Verified claims of the session cookie."""

    session_id: str
    login_token: str


@dataclass(frozen=True)
class SessionCheck:
    """Outcome of a successful validation."""

    record: SessionRecord
    time_remaining: int
    is_warning: bool


class SessionManager:
    """Create, validate, rotate and destroy sessions."""

    def __init__(
        self,
        config: Settings,
        sessions: KeyValueStore,
        blacklist: KeyValueStore,
        inspector: ConnectionSecurityInspector,
        audit: AuditSink,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._sessions = sessions
        self._blacklist = blacklist
        self._inspector = inspector
        self._audit = audit
        self._clock = clock

    @property
    def cookie_name(self) -> str:
        return self._config.session_cookie_name

    @property
    def _record_ttl(self) -> float:
        # keep idle records long enough to report SESSION_TIMEOUT instead of "unknown"
        return self._config.session_timeout_seconds * 2

    # --- cookie signing ----------------------------------------------------------
    def sign(self, session_id: str, login_token: str = "") -> str:
        return jws.sign(
            {"sid": session_id, "tok": login_token},
            self._config.session_secret,
            algorithm=COOKIE_SIGNING_ALGORITHM,
        )

    def _claims(self, cookie_value: str) -> SessionCookie | None:
        try:
            payload = jws.verify(
                cookie_value,
                self._config.session_secret,
                algorithms=[COOKIE_SIGNING_ALGORITHM],
            )
            claims = json.loads(payload)
        except (JWSError, ValueError):
            return None
        if not isinstance(claims, dict):
            return None
        session_id, login_token = claims.get("sid"), claims.get("tok", "")
        if not isinstance(session_id, str) or not isinstance(login_token, str):
            return None
        return SessionCookie(session_id=session_id, login_token=login_token)

    def unsign(self, cookie_value: str) -> str | None:
        claims = self._claims(cookie_value)
        return claims.session_id if claims else None

    def cookie_from(self, request: HTTPConnection) -> SessionCookie | None:
        """Return the verified cookie claims carried by ``request``, if any."""
        raw = request.cookies.get(self.cookie_name)
        if not raw:
            return None
        claims = self._claims(raw)
        if claims is None:
            logger.warning("Rejected session cookie with invalid signature")
        return claims

    def session_id_from(self, request: HTTPConnection) -> str | None:
        """Return the verified session id carried by ``request``, if any."""
        claims = self.cookie_from(request)
        return claims.session_id if claims else None

    def set_cookie(self, response: Response, request: HTTPConnection, record: SessionRecord) -> None:
        """Attach the session cookie.

        Raises:
            SecurityPolicyError: A production session would be issued over
                plain HTTP without an explicit override.
        """
        if not self._inspector.may_set_session_cookie(request):
            raise SecurityPolicyError(
                "Sessions require a secure connection",
                code="HTTPS_REQUIRED",
            )
        response.set_cookie(
            self.cookie_name,
            self.sign(record.session_id, record.login_token),
            max_age=max(0, int(record.cookie_expires_at - self._clock())),
            path=self._config.cookie_path,
            domain=self._config.cookie_domain,
            secure=self._inspector.cookie_secure(request),
            httponly=True,
            samesite=self._config.cookie_samesite.lower(),  # type: ignore[arg-type]
        )

    def clear_cookie(self, response: Response, request: HTTPConnection) -> None:
        response.delete_cookie(
            self.cookie_name,
            path=self._config.cookie_path,
            domain=self._config.cookie_domain,
            secure=self._inspector.cookie_secure(request),
            httponly=True,
            samesite=self._config.cookie_samesite.lower(),  # type: ignore[arg-type]
        )

    # --- lifecycle ---------------------------------------------------------------
    def _save(self, record: SessionRecord) -> None:
        self._sessions.set(record.session_id, asdict(record), ttl_seconds=self._record_ttl)

    def load(self, session_id: str) -> SessionRecord | None:
        data = self._sessions.get(session_id)
        return SessionRecord.from_dict(data) if data is not None else None

    def is_blacklisted(self, session_id: str) -> bool:
        return self._blacklist.contains(session_id)

    def blacklist(self, session_id: str, reason: str) -> None:
        self._blacklist.set(
            session_id,
            {"reason": reason, "blacklisted_at": self._clock()},
            ttl_seconds=self._config.session_blacklist_retention_seconds,
        )

    def destroy(self, session_id: str, reason: str) -> None:
        """Terminate a session: blacklist first, then drop the record."""
        self.blacklist(session_id, reason)
        self._sessions.delete(session_id)

    def establish(
        self,
        request: HTTPConnection,
        *,
        user_id: int,
        username: str,
        role: str,
        context: RequestContext | None = None,
    ) -> SessionRecord:
        """Issue a fresh session for a just-authenticated user.

        Any session id the client already holds is terminated so an id
        planted before authentication can never become privileged.
        """
        previous = self.session_id_from(request)
        if previous and not self.is_blacklisted(previous):
            self.destroy(previous, "rotated")

        now = self._clock()
        record = SessionRecord(
            session_id=secrets.token_urlsafe(32),
            created_at=now,
            last_activity=now,
            ip_address=self._inspector.client_ip(request),
            user_agent=self._inspector.user_agent(request),
            login_token=secrets.token_hex(16),
            user_id=user_id,
            username=username,
            role=role,
            cookie_expires_at=now + self._config.session_timeout_seconds,
        )
        self._save(record)
        self._audit.record(
            "SESSION_CREATED",
            Severity.LOW,
            Status.SUCCESS,
            {"rotatedPrevious": bool(previous)},
            (context or RequestContext()).with_identity(
                session_id=record.session_id[:12], username=username
            ),
        )
        return record

    def validate(
        self,
        session_id: str | None,
        request: HTTPConnection,
        *,
        touch: bool = True,
        context: RequestContext | None = None,
        login_token: str | None = None,
    ) -> SessionCheck:
        """Run the per-request session checks in order.

        Args:
            session_id: Verified id from the cookie, or None.
            request: Current request, used for IP/User-Agent binding.
            touch: Refresh ``last_activity`` once every check passes.
            context: Requester attributes for the audit trail.
            login_token: Token from the cookie; when given it must match the
                token issued with the session.

        Returns:
            The session and its remaining idle time before this request.

        Raises:
            ReplayError: The id was terminated earlier (``SESSION_REPLAY_BLOCKED``).
            AuthenticationError: No session, token mismatch, or binding
                mismatch in strict mode.
            SessionExpiredError: Idle longer than the session timeout.
        """
        if not session_id:
            raise AuthenticationError("Authentication required", code="NO_SESSION")
        context = (context or RequestContext()).with_identity(session_id=session_id[:12])

        if self.is_blacklisted(session_id):
            self._audit.record(
                "SESSION_REPLAY_ATTEMPT",
                Severity.CRITICAL,
                Status.FAILURE,
                {"reason": (self._blacklist.get(session_id) or {}).get("reason")},
                context,
            )
            raise ReplayError(
                "Session has been terminated",
                code="SESSION_REPLAY_BLOCKED",
            )

        record = self.load(session_id)
        if record is None:
            raise AuthenticationError("Invalid session", code="SESSION_INVALID")

        if login_token is not None and not hmac.compare_digest(login_token, record.login_token):
            self.destroy(session_id, "token_mismatch")
            self._audit.record(
                "SESSION_TOKEN_MISMATCH",
                Severity.CRITICAL,
                Status.FAILURE,
                None,
                context.with_identity(username=record.username),
            )
            raise AuthenticationError("Invalid session", code="SESSION_INVALID")

        now = self._clock()
        idle = now - record.last_activity
        timeout = self._config.session_timeout_seconds
        if idle > timeout:
            self.destroy(session_id, "timeout")
            self._audit.record(
                "SESSION_TIMEOUT",
                Severity.LOW,
                Status.INFO,
                {"idleSeconds": int(idle)},
                context.with_identity(username=record.username),
            )
            raise SessionExpiredError()

        if self._config.strict_binding:
            current_ip = self._inspector.client_ip(request)
            current_agent = self._inspector.user_agent(request)
            if current_ip != record.ip_address or current_agent != record.user_agent:
                self.destroy(session_id, "binding_mismatch")
                self._audit.record(
                    "SESSION_BINDING_MISMATCH",
                    Severity.CRITICAL,
                    Status.FAILURE,
                    {
                        "ipChanged": current_ip != record.ip_address,
                        "userAgentChanged": current_agent != record.user_agent,
                    },
                    context.with_identity(username=record.username),
                )
                raise AuthenticationError(
                    "Session is bound to a different client",
                    code="SESSION_BINDING_MISMATCH",
                )

        remaining = max(0, int(timeout - idle + 0.999))
        is_warning = remaining <= self._config.session_warning_seconds
        if touch:
            record.last_activity = now
            record.cookie_expires_at = now + timeout
            self._save(record)
        return SessionCheck(record=record, time_remaining=remaining, is_warning=is_warning)

    def apply_warning(self, response: Response, check: SessionCheck) -> None:
        if check.is_warning:
            response.headers[WARNING_HEADER] = str(check.time_remaining)

    def logout(self, session_id: str | None, context: RequestContext | None = None) -> bool:
        """Terminate ``session_id`` if it is live; return whether it was."""
        if not session_id or self.is_blacklisted(session_id):
            return False
        record = self.load(session_id)
        self.destroy(session_id, "logout")
        self._audit.record(
            "LOGOUT_SUCCESS",
            Severity.LOW,
            Status.SUCCESS,
            {"sessionDestroyed": True},
            (context or RequestContext()).with_identity(
                session_id=session_id[:12],
                username=record.username if record else None,
            ),
        )
        return record is not None

    def sweep(self) -> int:
        """Expire idle sessions and prune old blacklist entries."""
        now = self._clock()
        expired = 0
        for session_id, data in self._sessions.items():
            if now - data["last_activity"] > self._config.session_timeout_seconds:
                self.destroy(session_id, "timeout")
                expired += 1
        pruned = self._sessions.sweep() + self._blacklist.sweep()
        if expired or pruned:
            logger.info("Session sweep expired %s sessions, pruned %s entries", expired, pruned)
        return expired + pruned

    def stats(self) -> dict[str, int]:
        return {"activeSessions": len(self._sessions), "blacklisted": len(self._blacklist)}


__all__ = [
    "SessionCheck",
    "SessionCookie",
    "SessionManager",
    "SessionRecord",
    "WARNING_HEADER",
]
