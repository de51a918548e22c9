# mypy: ignore-errors
# tests/v1/test_auth_api.py
"""End-to-end tests for login, registration, logout and session endpoints."""

import pytest
from fastapi.testclient import TestClient

from cid_portal.utils.credential_client import encrypt_password
from tests.conftest import CAPTCHA_ANSWER, DEFAULT_PASSWORD, issue_captcha, login_payload

COOKIE = "cid.session.id"
BROWSER_ACCEPT = (
    "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8"
)


def _register_payload(client, username="newofficer", password=DEFAULT_PASSWORD, **extra):
    payload = login_payload(
        client,
        username,
        password,
        email=f"{username}@tspolice.gov.in",
        firstName="New",
        lastName="Officer",
    )
    payload.update(extra)
    return payload


def test_login_issues_session_cookie(client, make_user, login) -> None:
    make_user("officer")

    response = login("officer")

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["username"] == "officer"
    assert body["role"] == "user"
    assert "password_hash" not in body
    assert client.cookies.get(COOKIE)
    set_cookie = response.headers["set-cookie"]
    assert "HttpOnly" in set_cookie
    assert "Secure" in set_cookie

    me = client.get("/api/auth/user")
    assert me.status_code == 200
    assert me.json()["username"] == "officer"


def test_login_alias_route(client, make_user, known_captcha) -> None:
    make_user("officer")

    response = client.post("/api/auth/login", json=login_payload(client, "officer"))

    assert response.status_code == 200


def test_wrong_password_and_unknown_user_look_identical(client, make_user, login) -> None:
    make_user("officer")

    wrong = login("officer", "Wr0ng!Password")
    unknown = login("ghost")

    assert wrong.status_code == unknown.status_code == 401
    assert wrong.json() == unknown.json() == {
        "message": "Invalid username or password",
        "code": "INVALID_CREDENTIALS",
    }
    assert COOKIE not in client.cookies


def test_inactive_user_cannot_login(client, make_user, login) -> None:
    make_user("retired", is_active=False)

    assert login("retired").json()["code"] == "INVALID_CREDENTIALS"


def test_missing_credentials(client, known_captcha) -> None:
    response = client.post("/api/login", json={"username": "officer"})

    assert response.status_code == 400
    assert response.json()["code"] == "MISSING_CREDENTIALS"


def test_captcha_is_required_and_checked(client, make_user, known_captcha) -> None:
    make_user("officer")

    missing = client.post("/api/login", json={"username": "officer", "password": DEFAULT_PASSWORD})
    wrong = client.post(
        "/api/login",
        json=login_payload(client, "officer", captchaInput="WRONG"),
    )

    assert missing.json()["code"] == "CAPTCHA_REQUIRED"
    assert wrong.status_code == 400
    assert wrong.json()["code"] == "CAPTCHA_INVALID"


def test_captcha_cannot_be_reused(client, make_user, known_captcha) -> None:
    make_user("officer")
    payload = login_payload(client, "officer")

    assert client.post("/api/login", json=payload).status_code == 200
    reused = client.post("/api/login", json=payload)

    assert reused.json()["code"] == "CAPTCHA_INVALID"


def test_lockout_then_admin_unlock(admin_client, make_user, login) -> None:
    make_user("officer")
    for _ in range(5):
        assert login("officer", "Wr0ng!Password").status_code == 401

    locked = login("officer")
    assert locked.status_code == 429
    assert locked.json()["code"] == "ACCOUNT_LOCKED"
    assert locked.headers["retry-after"] == "900"

    listing = admin_client.get("/api/admin/locked-accounts").json()
    assert [entry["username"] for entry in listing["lockedAccounts"]] == ["officer"]

    unlocked = admin_client.post("/api/admin/unlock-account", json={"username": "officer"})
    assert unlocked.json()["wasLocked"] is True

    assert login("officer").status_code == 200


def test_locked_account_does_not_spend_captcha(client, services, make_user, login) -> None:
    make_user("officer")
    for _ in range(5):
        login("officer", "Wr0ng!Password")
    captcha_id = issue_captcha(client)

    client.post(
        "/api/login",
        json={
            "username": "officer",
            "password": DEFAULT_PASSWORD,
            "captchaSessionId": captcha_id,
            "captchaInput": CAPTCHA_ANSWER,
        },
    )

    assert services.captcha.is_valid(captcha_id)


def test_logout_then_replay_is_blocked(client, make_user, login) -> None:
    make_user("officer")
    login("officer")
    stolen = client.cookies.get(COOKIE)

    logout = client.post("/api/logout")
    assert logout.status_code == 200
    assert logout.json()["sessionDestroyed"] is True
    assert COOKIE not in client.cookies

    replay = client.get("/api/auth/user", headers={"Cookie": f"{COOKIE}={stolen}"})

    assert replay.status_code == 401
    assert replay.json()["code"] == "SESSION_REPLAY_BLOCKED"
    assert f'{COOKIE}=""' in replay.headers["set-cookie"]


def test_browser_logout_redirects_home(client, make_user, login) -> None:
    make_user("officer")
    login("officer")

    response = client.get("/api/logout", headers={"Accept": BROWSER_ACCEPT}, follow_redirects=False)

    assert response.status_code == 302
    assert response.headers["location"] == "/"


@pytest.mark.parametrize("accept", ["*/*", "application/json", "application/json, text/html"])
def test_api_logout_returns_json(client, make_user, login, accept) -> None:
    make_user("officer")
    login("officer")

    response = client.get("/api/logout", headers={"Accept": accept}, follow_redirects=False)

    assert response.status_code == 200
    assert response.json()["sessionDestroyed"] is True


def test_logout_without_session(client) -> None:
    response = client.post("/api/logout")

    assert response.status_code == 200
    assert response.json()["sessionDestroyed"] is False


def test_idle_session_times_out(client, clock, make_user, login) -> None:
    make_user("officer")
    login("officer")
    clock.advance(1201)

    response = client.get("/api/auth/user")

    assert response.status_code == 401
    assert response.json()["code"] == "SESSION_TIMEOUT"


def test_activity_keeps_session_alive(client, clock, make_user, login) -> None:
    make_user("officer")
    login("officer")
    for _ in range(3):
        clock.advance(1000)
        assert client.get("/api/auth/user").status_code == 200


def test_warning_header_near_expiry(client, clock, make_user, login) -> None:
    make_user("officer")
    login("officer")

    assert "x-session-warning" not in client.get("/api/auth/user").headers
    clock.advance(400)
    response = client.get("/api/auth/user")

    assert response.headers["x-session-warning"] == "800"


def test_session_status_does_not_extend(client, clock, make_user, login) -> None:
    make_user("officer")
    login("officer")
    clock.advance(100)

    first = client.get("/api/auth/session-status").json()
    clock.advance(100)
    second = client.get("/api/auth/session-status").json()

    assert first["valid"] is True
    assert first["timeRemaining"] == 1100
    assert second["timeRemaining"] == 1000
    assert len(first["sessionId"]) == 12


def test_extend_session(client, clock, make_user, login) -> None:
    make_user("officer")
    login("officer")
    clock.advance(600)

    response = client.post("/api/auth/extend-session")

    assert response.json()["timeRemaining"] == 1200
    assert client.get("/api/auth/session-status").json()["timeRemaining"] == 1200


def test_session_requires_cookie(client) -> None:
    response = client.get("/api/auth/user")

    assert response.status_code == 401
    assert response.json()["code"] == "NO_SESSION"


def test_deactivated_user_loses_session(client, db_session, make_user, login) -> None:
    user = make_user("officer")
    login("officer")
    user.is_active = False
    db_session.commit()

    response = client.get("/api/auth/user")

    assert response.json()["code"] == "SESSION_INVALID"


def test_register_creates_plain_user(client, known_captcha) -> None:
    response = client.post("/api/register", json=_register_payload(client, role="super_admin"))

    assert response.status_code == 201, response.text
    assert response.json()["role"] == "user"
    assert client.get("/api/auth/user").json()["username"] == "newofficer"


def test_register_rejects_weak_password(client, known_captcha) -> None:
    response = client.post("/api/register", json=_register_payload(client, password="weak"))

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "WEAK_PASSWORD"
    assert len(body["errors"]) == 4


def test_register_rejects_duplicates_and_bad_email(client, make_user, known_captcha) -> None:
    make_user("taken")

    duplicate = client.post("/api/auth/register", json=_register_payload(client, "Taken"))
    bad_email = client.post(
        "/api/register", json=_register_payload(client, "fresh", email="not-an-email")
    )
    missing = client.post("/api/register", json={"username": "fresh"})

    assert duplicate.json()["code"] == "USERNAME_TAKEN"
    assert bad_email.json()["code"] == "INVALID_EMAIL"
    assert missing.json()["code"] == "MISSING_FIELDS"


def test_encrypted_login(client, clock, test_settings, make_user, login) -> None:
    test_settings.enable_password_encryption = True
    make_user("officer")
    key = client.get("/api/auth/public-key").json()
    assert key["encryptionEnabled"] is True

    envelope = encrypt_password(
        key["publicKeyPem"], DEFAULT_PASSWORD, timestamp_ms=int(clock.now * 1000)
    )
    accepted = login("officer", envelope, passwordEncrypted=True)
    replayed = login("officer", envelope, passwordEncrypted=True)
    plaintext = login("officer")

    assert accepted.status_code == 200, accepted.text
    assert replayed.status_code == 401
    assert replayed.json()["code"] == "CREDENTIAL_REPLAY"
    assert plaintext.json()["code"] == "CREDENTIAL_ENCRYPTION_REQUIRED"


def test_expired_envelope(client, clock, test_settings, make_user, login) -> None:
    test_settings.enable_password_encryption = True
    make_user("officer")
    pem = client.get("/api/auth/public-key").json()["publicKeyPem"]

    envelope = encrypt_password(pem, DEFAULT_PASSWORD, timestamp_ms=int(clock.now * 1000))
    clock.advance(301)
    response = login("officer", envelope, passwordEncrypted=True)

    assert response.status_code == 400
    assert response.json()["code"] == "CREDENTIAL_EXPIRED"


def test_plain_http_login_is_refused(app, make_user, known_captcha) -> None:
    make_user("officer")
    with TestClient(app, base_url="http://localhost") as insecure:
        payload = login_payload(insecure, "officer")
        response = insecure.post("/api/login", json=payload)

    assert response.status_code == 403
    assert response.json()["code"] == "HTTPS_REQUIRED"
