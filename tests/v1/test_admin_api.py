# mypy: ignore-errors
# tests/v1/test_admin_api.py
"""Tests for the administrative endpoints."""

import csv
import io

import pytest


@pytest.mark.parametrize(
    "method, path",
    [
        ("GET", "/api/admin/locked-accounts"),
        ("GET", "/api/admin/logs/stats"),
        ("POST", "/api/admin/unlock-all-accounts"),
        ("GET", "/api/admin/uploads/stats"),
    ],
)
def test_admin_routes_require_session(client, method, path) -> None:
    response = client.request(method, path)

    assert response.status_code == 401
    assert response.json()["code"] == "NO_SESSION"


def test_regular_user_is_forbidden(client, services, make_user, login) -> None:
    make_user("officer")
    login("officer")

    response = client.get("/api/admin/locked-accounts")

    assert response.status_code == 403
    assert response.json()["code"] == "FORBIDDEN"
    assert services.audit.search(event="ADMIN_ACCESS_DENIED")["total"] == 1


def test_unlock_all_accounts(admin_client, services) -> None:
    for name in ("alpha", "beta"):
        for _ in range(5):
            services.lockout.record_attempt(name, False)

    response = admin_client.post("/api/admin/unlock-all-accounts")

    assert response.json() == {"success": True, "unlocked": 2}
    assert admin_client.get("/api/admin/locked-accounts").json() == {
        "lockedAccounts": [],
        "count": 0,
    }


def test_unlock_account_that_was_not_locked(admin_client) -> None:
    response = admin_client.post("/api/admin/unlock-account", json={"username": "nobody"})

    assert response.status_code == 200
    assert response.json()["wasLocked"] is False


def test_log_stats(admin_client) -> None:
    stats = admin_client.get("/api/admin/logs/stats").json()

    assert stats["currentAuditNumber"] > 1
    assert set(stats["files"]) == {"audit", "security", "auth"}


def test_log_search(admin_client) -> None:
    response = admin_client.post(
        "/api/admin/logs/search",
        json={"event": "AUTHENTICATION_SUCCESS", "username": "chief", "limit": 5},
    )

    body = response.json()
    assert body["total"] == 1
    assert body["results"][0]["details"]["role"] == "admin"


def test_log_search_validates_criteria(admin_client) -> None:
    response = admin_client.post("/api/admin/logs/search", json={"severity": "URGENT"})

    assert response.status_code == 422


def test_auth_attempts(admin_client, services) -> None:
    services.lockout.record_attempt("officer", False)

    body = admin_client.get("/api/admin/logs/auth-attempts").json()

    assert body["statistics"]["totalFailedLogins"] == 1
    assert body["statistics"]["totalSuccessfulLogins"] == 1
    assert body["lockedAccounts"] == []


def test_export_csv(admin_client, services) -> None:
    response = admin_client.get("/api/admin/logs/export", params={"format": "csv"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert "attachment" in response.headers["content-disposition"]
    rows = list(csv.DictReader(io.StringIO(response.text)))
    assert "AUTHENTICATION_SUCCESS" in {row["event"] for row in rows}
    assert services.audit.search(event="ADMIN_LOGS_EXPORTED")["total"] == 1


def test_export_json(admin_client) -> None:
    response = admin_client.get("/api/admin/logs/export")

    entries = response.json()
    assert isinstance(entries, list)
    numbers = [entry["logNumber"] for entry in entries]
    assert numbers == sorted(numbers)


def test_export_rejects_unknown_format(admin_client) -> None:
    assert admin_client.get("/api/admin/logs/export", params={"format": "xml"}).status_code == 422


def test_generate_report(admin_client, services) -> None:
    body = admin_client.post("/api/admin/logs/generate-report").json()

    assert body["success"] is True
    assert (services.audit.paths["reports"] / body["report"]).exists()


def test_dashboard(admin_client) -> None:
    body = admin_client.get("/api/admin/logs/dashboard").json()

    assert {"audit", "authentication", "sessions", "captcha", "uploads", "recentCritical"} <= set(
        body
    )
    assert body["sessions"]["activeSessions"] == 1


def test_cleanup_logs(admin_client) -> None:
    response = admin_client.post("/api/admin/logs/cleanup", json={"olderThanDays": 30})

    assert response.json() == {"cleanedFiles": 0, "freedBytes": 0, "olderThanDays": 30}


def test_captcha_admin_endpoints(admin_client) -> None:
    stats = admin_client.get("/api/admin/captcha/stats").json()
    assert stats["rateLimitedIPs"] == 1

    cleared = admin_client.post("/api/admin/captcha/clear-rate-limits").json()
    assert cleared == {"success": True, "cleared": 1}
