"""Authentication and session endpoints."""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone

from fastapi import APIRouter, Request, Response, status
from fastapi.responses import JSONResponse, RedirectResponse

from cid_portal.api.v1.dependencies import (
    ContextDep,
    CurrentSessionDep,
    PeekSessionDep,
    ServicesDep,
    UserRepoDep,
)
from cid_portal.core.context import RequestContext
from cid_portal.core.errors import (
    AuthenticationError,
    RateLimitError,
    SecurityPolicyError,
    ValidationError,
)
from cid_portal.core.sanitize import is_valid_email, password_policy_errors, sanitize_input
from cid_portal.models import User
from cid_portal.schemas.auth import (
    ExtendSessionResponse,
    LoginRequest,
    LogoutResponse,
    PublicKeyResponse,
    RegisterRequest,
    SessionStatus,
    UserSummary,
)
from cid_portal.services.audit import Severity, Status
from cid_portal.services.registry import SecurityServices

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])


def _require_session_transport(
    services: SecurityServices, request: Request, context: RequestContext
) -> None:
    if services.inspector.may_set_session_cookie(request):
        return
    services.audit.record(
        "INSECURE_SESSION_REFUSED", Severity.HIGH, Status.FAILURE, {}, context
    )
    raise SecurityPolicyError("Sessions require a secure connection", code="HTTPS_REQUIRED")


def _verify_captcha(
    services: SecurityServices,
    payload: LoginRequest,
    context: RequestContext,
) -> None:
    if not payload.captcha_session_id or not payload.captcha_input:
        raise ValidationError("CAPTCHA verification required", code="CAPTCHA_REQUIRED")
    valid = services.captcha.verify(
        payload.captcha_session_id,
        payload.captcha_input,
        client_ip=context.ip_address,
        consume=True,
        context=context,
    )
    if not valid:
        services.audit.record(
            "LOGIN_CAPTCHA_FAILED", Severity.MEDIUM, Status.FAILURE, {}, context
        )
        raise ValidationError("Invalid CAPTCHA. Please try again.", code="CAPTCHA_INVALID")


def _recover_password(
    services: SecurityServices,
    payload: LoginRequest,
    context: RequestContext,
) -> str:
    """Return the plaintext password carried by ``payload``.

    Raises:
        DecryptionError: The envelope cannot be decrypted.
        ExpiredCredentialError: The envelope is older than the freshness window.
        ReplayError: The envelope's nonce was already used.
        ValidationError: A plaintext password arrived while encryption is required.
    """
    password = payload.password or ""
    if not services.credentials.enabled:
        return password
    if not payload.password_encrypted:
        services.audit.record(
            "PLAINTEXT_CREDENTIAL_REJECTED", Severity.MEDIUM, Status.FAILURE, {}, context
        )
        raise ValidationError(
            "Password must be encrypted before submission",
            code="CREDENTIAL_ENCRYPTION_REQUIRED",
        )
    return services.credentials.decrypt(password, context)


def _summary(user: User) -> UserSummary:
    return UserSummary.model_validate(user)


@router.post("/login", response_model=UserSummary)
@router.post("/auth/login", response_model=UserSummary)
def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    services: ServicesDep,
    users: UserRepoDep,
    context: ContextDep,
) -> UserSummary:
    """Authenticate a user and issue a fresh session.

    Checks run in a fixed order: required fields, lockout, CAPTCHA (consumed),
    credential decryption, then the password itself.
    """
    username = sanitize_input(payload.username or "")
    context = context.with_identity(username=username or None)
    if not username or not payload.password:
        raise ValidationError("Username and password are required", code="MISSING_CREDENTIALS")

    lockout = services.lockout
    if lockout.is_locked(username):
        remaining = lockout.remaining_lock_seconds(username)
        services.audit.record(
            "LOGIN_BLOCKED_LOCKED",
            Severity.HIGH,
            Status.FAILURE,
            {"remainingSeconds": remaining},
            context,
        )
        raise RateLimitError(
            f"Account temporarily locked. Try again in {math.ceil(remaining / 60)} minutes.",
            code="ACCOUNT_LOCKED",
            retry_after=remaining,
        )

    _require_session_transport(services, request, context)
    _verify_captcha(services, payload, context)
    password = _recover_password(services, payload, context)

    user = users.get_by_username(username)
    reason = None
    if user is None:
        reason = "Unknown user"
    elif not user.is_active:
        reason = "Account disabled"
    elif not services.passwords.compare(password, user.password_hash):
        reason = "Invalid password"
    if reason is not None:
        lockout.record_attempt(username, False, context)
        services.audit.log_authentication(username, False, reason=reason, context=context)
        raise AuthenticationError("Invalid username or password", code="INVALID_CREDENTIALS")

    lockout.record_attempt(username, True, context)
    if services.passwords.needs_rehash(user.password_hash):
        users.update_password_hash(user, services.passwords.hash(password))
        logger.info("Upgraded password hash for user %s", user.id)

    record = services.sessions.establish(
        request, user_id=user.id, username=user.username, role=user.role, context=context
    )
    services.sessions.set_cookie(response, request, record)
    services.audit.log_authentication(
        user.username,
        True,
        details={"role": user.role},
        context=context.with_identity(session_id=record.session_id[:12]),
    )
    return _summary(user)


@router.post("/register", response_model=UserSummary, status_code=status.HTTP_201_CREATED)
@router.post("/auth/register", response_model=UserSummary, status_code=status.HTTP_201_CREATED)
def register(
    payload: RegisterRequest,
    request: Request,
    response: Response,
    services: ServicesDep,
    users: UserRepoDep,
    context: ContextDep,
) -> UserSummary:
    """Create an account and sign it in."""
    username = sanitize_input(payload.username or "")
    email = sanitize_input(payload.email or "")
    first_name = sanitize_input(payload.first_name or "")
    last_name = sanitize_input(payload.last_name or "")
    context = context.with_identity(username=username or None)
    if not all((username, email, payload.password, first_name, last_name)):
        raise ValidationError("All fields are required", code="MISSING_FIELDS")

    _require_session_transport(services, request, context)
    _verify_captcha(services, payload, context)
    password = _recover_password(services, payload, context)

    errors = password_policy_errors(password)
    if errors:
        services.audit.record(
            "REGISTRATION_WEAK_PASSWORD", Severity.LOW, Status.FAILURE, {}, context
        )
        raise ValidationError(
            "Password does not meet security requirements",
            code="WEAK_PASSWORD",
            details={"errors": errors},
        )
    if not is_valid_email(email):
        raise ValidationError("Invalid email format", code="INVALID_EMAIL")
    if users.get_by_username(username) is not None:
        services.audit.record(
            "REGISTRATION_USERNAME_EXISTS", Severity.LOW, Status.FAILURE, {}, context
        )
        raise ValidationError("Username already exists", code="USERNAME_TAKEN")

    user = users.create(
        username=username,
        password_hash=services.passwords.hash(password),
        email=email,
        first_name=first_name,
        last_name=last_name,
    )
    services.audit.record(
        "USER_REGISTERED", Severity.LOW, Status.SUCCESS, {"role": user.role}, context
    )
    record = services.sessions.establish(
        request, user_id=user.id, username=user.username, role=user.role, context=context
    )
    services.sessions.set_cookie(response, request, record)
    return _summary(user)


def _wants_json(request: Request) -> bool:
    accept = request.headers.get("accept", "").lower()
    return request.method == "POST" or "text/html" not in accept or "application/json" in accept


@router.post("/logout", response_model=LogoutResponse)
@router.get("/logout", response_model=LogoutResponse)
def logout(request: Request, services: ServicesDep, context: ContextDep) -> Response:
    """Terminate the current session and clear its cookie.

    Browser navigations (a GET accepting ``text/html`` but not JSON) are
    redirected home.
    """
    sessions = services.sessions
    session_id = sessions.session_id_from(request)
    destroyed = sessions.logout(session_id, context)

    result: Response
    if _wants_json(request):
        body = LogoutResponse(
            message="Logged out successfully",
            session_destroyed=destroyed,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        result = JSONResponse(body.model_dump(by_alias=True))
    else:
        result = RedirectResponse("/", status_code=status.HTTP_302_FOUND)
    sessions.clear_cookie(result, request)
    return result


@router.get("/auth/user", response_model=UserSummary)
def current_user(auth: CurrentSessionDep) -> UserSummary:
    return _summary(auth.user)


@router.get("/auth/session-status", response_model=SessionStatus)
def session_status(auth: PeekSessionDep) -> SessionStatus:
    """Report remaining idle time without extending the session."""
    check = auth.check
    return SessionStatus(
        valid=True,
        time_remaining=check.time_remaining,
        is_warning=check.is_warning,
        last_activity=int(check.record.last_activity * 1000),
        session_id=auth.session_id[:12],
    )


@router.post("/auth/extend-session", response_model=ExtendSessionResponse)
def extend_session(auth: CurrentSessionDep, services: ServicesDep) -> ExtendSessionResponse:
    services.audit.record("SESSION_EXTENDED", Severity.LOW, Status.INFO, {}, auth.context)
    return ExtendSessionResponse(
        success=True,
        message="Session extended",
        time_remaining=services.config.session_timeout_seconds,
    )


@router.get("/auth/public-key", response_model=PublicKeyResponse)
def public_key(services: ServicesDep) -> PublicKeyResponse:
    """Expose the public half of the credential transport key pair."""
    return PublicKeyResponse(
        public_key_pem=services.credentials.public_key_pem(),
        encryption_enabled=services.credentials.enabled,
    )
