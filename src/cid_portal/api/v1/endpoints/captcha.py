"""CAPTCHA issuance and preview-verification endpoints."""

from __future__ import annotations

from fastapi import APIRouter

from cid_portal.api.v1.dependencies import ContextDep, ServicesDep
from cid_portal.core.errors import RateLimitError
from cid_portal.schemas.captcha import (
    CaptchaRefreshRequest,
    CaptchaResponse,
    CaptchaVerifyRequest,
    CaptchaVerifyResponse,
)
from cid_portal.services.captcha import CaptchaChallenge

router = APIRouter(prefix="/captcha", tags=["captcha"])


def _issued(challenge: CaptchaChallenge | None, retry_after: int) -> CaptchaResponse:
    if challenge is None:
        raise RateLimitError(
            "Too many CAPTCHA requests. Please try again later.",
            code="CAPTCHA_RATE_LIMITED",
            retry_after=retry_after,
        )
    return CaptchaResponse(id=challenge.id, svg=challenge.svg)


@router.get("", response_model=CaptchaResponse)
def issue_captcha(services: ServicesDep, context: ContextDep) -> CaptchaResponse:
    """Issue a new challenge for the requesting IP."""
    challenge = services.captcha.generate(context.ip_address, context)
    return _issued(challenge, services.config.captcha_rate_window_seconds)


@router.post("/verify", response_model=CaptchaVerifyResponse)
def verify_captcha(
    payload: CaptchaVerifyRequest,
    services: ServicesDep,
    context: ContextDep,
) -> CaptchaVerifyResponse:
    """Check an answer without spending the challenge.

    The login endpoint performs the consuming check; this one only lets the
    form give live feedback.
    """
    valid = services.captcha.verify(
        payload.session_id or "",
        payload.user_input or "",
        client_ip=context.ip_address,
        consume=False,
        context=context,
    )
    return CaptchaVerifyResponse(valid=valid)


@router.post("/refresh", response_model=CaptchaResponse)
def refresh_captcha(
    payload: CaptchaRefreshRequest,
    services: ServicesDep,
    context: ContextDep,
) -> CaptchaResponse:
    challenge = services.captcha.refresh(payload.session_id, context.ip_address, context)
    return _issued(challenge, services.config.captcha_rate_window_seconds)
