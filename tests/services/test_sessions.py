# mypy: ignore-errors
# tests/services/test_sessions.py
"""Tests for the session lifecycle."""

from unittest.mock import MagicMock

import pytest
from starlette.responses import Response

from cid_portal.core.connection import ConnectionSecurityInspector
from cid_portal.core.errors import (
    AuthenticationError,
    ReplayError,
    SecurityPolicyError,
    SessionExpiredError,
)
from cid_portal.services.sessions import WARNING_HEADER, SessionManager
from tests.conftest import make_request


def _manager(settings, make_store, clock):
    return SessionManager(
        settings,
        make_store("sessions"),
        make_store("session-blacklist"),
        ConnectionSecurityInspector(settings),
        MagicMock(),
        clock=clock,
    )


@pytest.fixture()
def manager(test_settings, make_store, clock):
    return _manager(test_settings, make_store, clock)


def _establish(manager, request=None):
    return manager.establish(
        request or make_request(), user_id=1, username="officer", role="user"
    )


def _with_cookie(manager, session_id, **kwargs):
    headers = kwargs.pop("headers", {})
    headers["cookie"] = f"{manager.cookie_name}={manager.sign(session_id)}"
    return make_request(headers=headers, **kwargs)


def test_cookie_signature_round_trip(manager) -> None:
    signed = manager.sign("abc123")

    assert manager.unsign(signed) == "abc123"
    header, _, signature = signed.split(".")
    forged_payload = manager.sign("admin-session").split(".")[1]
    assert manager.unsign(f"{header}.{forged_payload}.{signature}") is None
    assert manager.unsign("garbage") is None


def test_session_id_from_cookie(manager) -> None:
    record = _establish(manager)

    assert manager.session_id_from(_with_cookie(manager, record.session_id)) == record.session_id
    assert manager.session_id_from(make_request()) is None


def test_cookie_carries_login_token(manager) -> None:
    record = _establish(manager)
    signed = manager.sign(record.session_id, record.login_token)
    request = make_request(headers={"cookie": f"{manager.cookie_name}={signed}"})

    cookie = manager.cookie_from(request)

    assert cookie.session_id == record.session_id
    assert cookie.login_token == record.login_token
    check = manager.validate(cookie.session_id, request, login_token=cookie.login_token)
    assert check.record.session_id == record.session_id


def test_wrong_login_token_invalidates_session(manager) -> None:
    record = _establish(manager)

    with pytest.raises(AuthenticationError) as excinfo:
        manager.validate(record.session_id, make_request(), login_token="0" * 32)
    assert excinfo.value.code == "SESSION_INVALID"
    events = [call.args[0] for call in manager._audit.record.call_args_list]
    assert "SESSION_TOKEN_MISMATCH" in events

    with pytest.raises(ReplayError):
        manager.validate(record.session_id, make_request(), login_token=record.login_token)


def test_validate_refreshes_activity(manager, clock) -> None:
    record = _establish(manager)
    clock.advance(100)

    check = manager.validate(record.session_id, make_request())

    assert check.time_remaining == 1100
    assert not check.is_warning
    assert manager.load(record.session_id).last_activity == clock.now


def test_peek_does_not_refresh_activity(manager, clock) -> None:
    record = _establish(manager)
    clock.advance(100)

    manager.validate(record.session_id, make_request(), touch=False)

    assert manager.load(record.session_id).last_activity == record.last_activity


def test_warning_window(manager, clock) -> None:
    record = _establish(manager)
    clock.advance(400)

    check = manager.validate(record.session_id, make_request())
    response = Response()
    manager.apply_warning(response, check)

    assert check.is_warning
    assert response.headers[WARNING_HEADER] == "800"


def test_logout_blocks_replay(manager) -> None:
    record = _establish(manager)

    assert manager.logout(record.session_id) is True
    with pytest.raises(ReplayError) as excinfo:
        manager.validate(record.session_id, make_request())
    assert excinfo.value.code == "SESSION_REPLAY_BLOCKED"
    assert manager.logout(record.session_id) is False


def test_timeout_destroys_and_blacklists(manager, clock) -> None:
    record = _establish(manager)
    clock.advance(1201)

    with pytest.raises(SessionExpiredError):
        manager.validate(record.session_id, make_request())
    with pytest.raises(ReplayError):
        manager.validate(record.session_id, make_request())


def test_missing_and_unknown_sessions(manager) -> None:
    with pytest.raises(AuthenticationError) as missing:
        manager.validate(None, make_request())
    with pytest.raises(AuthenticationError) as unknown:
        manager.validate("never-issued", make_request())

    assert missing.value.code == "NO_SESSION"
    assert unknown.value.code == "SESSION_INVALID"


def test_strict_binding_rejects_moved_session(test_settings, make_store, clock) -> None:
    settings = test_settings.model_copy(update={"strict_session_binding": True})
    manager = _manager(settings, make_store, clock)
    record = _establish(manager)

    with pytest.raises(AuthenticationError) as excinfo:
        manager.validate(record.session_id, make_request(client_ip="192.0.2.50"))

    assert excinfo.value.code == "SESSION_BINDING_MISMATCH"
    assert manager.is_blacklisted(record.session_id)


def test_relaxed_binding_allows_ip_change(manager) -> None:
    record = _establish(manager)

    check = manager.validate(
        record.session_id,
        make_request(client_ip="192.0.2.50", headers={"user-agent": "other"}),
    )

    assert check.record.session_id == record.session_id


def test_establish_rotates_existing_session(manager) -> None:
    first = _establish(manager)
    second = _establish(manager, _with_cookie(manager, first.session_id))

    assert second.session_id != first.session_id
    assert manager.is_blacklisted(first.session_id)
    assert manager.load(first.session_id) is None


def test_set_cookie_attributes(manager) -> None:
    record = _establish(manager)
    response = Response()

    manager.set_cookie(response, make_request(), record)

    cookie = response.headers["set-cookie"]
    assert cookie.startswith(f"{manager.cookie_name}=")
    assert "HttpOnly" in cookie
    assert "Secure" in cookie
    assert "samesite=lax" in cookie.lower()
    assert "Max-Age=" in cookie


def test_production_refuses_cookie_over_http(test_settings, make_store, clock) -> None:
    settings = test_settings.model_copy(update={"environment": "production"})
    manager = _manager(settings, make_store, clock)
    request = make_request(scheme="http")
    record = _establish(manager, request)

    with pytest.raises(SecurityPolicyError):
        manager.set_cookie(Response(), request, record)

    proxied = make_request(scheme="http", headers={"x-forwarded-proto": "https"})
    manager.set_cookie(Response(), proxied, record)


def test_sweep_expires_idle_sessions(manager, clock) -> None:
    idle = _establish(manager)
    clock.advance(1000)
    active = _establish(manager)
    clock.advance(300)

    assert manager.sweep() >= 1
    assert manager.load(idle.session_id) is None
    assert manager.is_blacklisted(idle.session_id)
    assert manager.load(active.session_id) is not None
