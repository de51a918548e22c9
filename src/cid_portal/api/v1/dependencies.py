"""Shared API dependencies for sessions, authorization and service access."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Request, Response
from sqlalchemy.orm import Session

from cid_portal.core.context import RequestContext
from cid_portal.core.errors import AuthenticationError, AuthorizationError
from cid_portal.db.session import get_db
from cid_portal.models import User
from cid_portal.repositories.user_repo import UserRepository
from cid_portal.services.audit import Severity, Status
from cid_portal.services.registry import SecurityServices
from cid_portal.services.sessions import SessionCheck


def get_services(request: Request) -> SecurityServices:
    """Return the service graph attached to the running application."""
    return request.app.state.services


# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]
ServicesDep = Annotated[SecurityServices, Depends(get_services)]


def get_user_repo(db: SessionDep) -> UserRepository:
    return UserRepository(db)


def get_request_context(request: Request, services: ServicesDep) -> RequestContext:
    return services.inspector.context(request)


UserRepoDep = Annotated[UserRepository, Depends(get_user_repo)]
ContextDep = Annotated[RequestContext, Depends(get_request_context)]


@dataclass(frozen=True)
class AuthenticatedSession:
    """A validated session and the user it belongs to."""

    check: SessionCheck
    user: User
    context: RequestContext

    @property
    def session_id(self) -> str:
        return self.check.record.session_id


def _authenticate(
    request: Request,
    response: Response,
    services: SecurityServices,
    users: UserRepository,
    *,
    touch: bool,
) -> AuthenticatedSession:
    sessions = services.sessions
    cookie = sessions.cookie_from(request)
    session_id = cookie.session_id if cookie else None
    context = services.inspector.context(
        request, session_id=session_id[:12] if session_id else None
    )
    check = sessions.validate(
        session_id,
        request,
        touch=touch,
        context=context,
        login_token=cookie.login_token if cookie else None,
    )
    record = check.record
    context = context.with_identity(username=record.username)

    user = users.get_by_id(record.user_id)
    if user is None or not user.is_active:
        sessions.destroy(record.session_id, "account_unavailable")
        services.audit.record(
            "SESSION_USER_UNAVAILABLE",
            Severity.MEDIUM,
            Status.FAILURE,
            {"userId": record.user_id},
            context,
        )
        raise AuthenticationError("Account is no longer available", code="SESSION_INVALID")

    if touch and services.inspector.may_set_session_cookie(request):
        # rolling expiry: every authenticated request pushes the cookie out again
        sessions.set_cookie(response, request, record)
    sessions.apply_warning(response, check)
    return AuthenticatedSession(check=check, user=user, context=context)


def require_session(
    request: Request,
    response: Response,
    services: ServicesDep,
    users: UserRepoDep,
) -> AuthenticatedSession:
    """Validate the session cookie and refresh its activity timestamp.

    Raises:
        ReplayError: The session id was terminated earlier.
        SessionExpiredError: The session idled past the timeout.
        AuthenticationError: No session, unknown session or binding mismatch.
    """
    return _authenticate(request, response, services, users, touch=True)


def peek_session(
    request: Request,
    response: Response,
    services: ServicesDep,
    users: UserRepoDep,
) -> AuthenticatedSession:
    """Validate the session cookie without counting the request as activity."""
    return _authenticate(request, response, services, users, touch=False)


CurrentSessionDep = Annotated[AuthenticatedSession, Depends(require_session)]
PeekSessionDep = Annotated[AuthenticatedSession, Depends(peek_session)]


def require_admin(auth: CurrentSessionDep, services: ServicesDep) -> AuthenticatedSession:
    """Allow only ``admin`` and ``super_admin`` roles.

    Raises:
        AuthorizationError: The user lacks an administrative role.
    """
    if not auth.user.is_admin:
        services.audit.record(
            "ADMIN_ACCESS_DENIED",
            Severity.HIGH,
            Status.FAILURE,
            {"role": auth.user.role},
            auth.context,
        )
        raise AuthorizationError()
    return auth


AdminSessionDep = Annotated[AuthenticatedSession, Depends(require_admin)]


__all__ = [
    "AdminSessionDep",
    "AuthenticatedSession",
    "ContextDep",
    "CurrentSessionDep",
    "PeekSessionDep",
    "ServicesDep",
    "SessionDep",
    "UserRepoDep",
    "get_request_context",
    "get_services",
    "get_user_repo",
    "peek_session",
    "require_admin",
    "require_session",
]
