"""Administrative endpoints: lockouts, audit logs and service statistics."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from cid_portal.api.v1.dependencies import AdminSessionDep, ServicesDep
from cid_portal.core.errors import ValidationError
from cid_portal.core.sanitize import sanitize_input
from cid_portal.schemas.admin import LogCleanupRequest, LogSearchRequest, UnlockAccountRequest
from cid_portal.services.audit import Severity, Status

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/locked-accounts")
def locked_accounts(auth: AdminSessionDep, services: ServicesDep) -> dict[str, Any]:
    locked = services.lockout.list_locked()
    return {"lockedAccounts": locked, "count": len(locked)}


@router.post("/unlock-account")
def unlock_account(
    payload: UnlockAccountRequest,
    auth: AdminSessionDep,
    services: ServicesDep,
) -> dict[str, Any]:
    """Lift the lockout on a single account."""
    username = sanitize_input(payload.username)
    if not username:
        raise ValidationError("Username is required", code="MISSING_FIELDS")
    was_locked = services.lockout.unlock(username)
    services.audit.record(
        "ADMIN_ACCOUNT_UNLOCKED",
        Severity.MEDIUM,
        Status.SUCCESS,
        {"target": username, "wasLocked": was_locked},
        auth.context,
    )
    return {
        "success": True,
        "message": f"Account {username} unlocked" if was_locked else f"Account {username} was not locked",
        "wasLocked": was_locked,
    }


@router.post("/unlock-all-accounts")
def unlock_all_accounts(auth: AdminSessionDep, services: ServicesDep) -> dict[str, Any]:
    """Incident-response override: clear every lockout at once."""
    count = services.lockout.unlock_all()
    services.audit.record(
        "ADMIN_ALL_ACCOUNTS_UNLOCKED",
        Severity.HIGH,
        Status.SUCCESS,
        {"unlocked": count},
        auth.context,
    )
    return {"success": True, "unlocked": count}


@router.get("/logs/stats")
def log_stats(auth: AdminSessionDep, services: ServicesDep) -> dict[str, Any]:
    return services.audit.stats()


@router.post("/logs/search")
def search_logs(
    criteria: LogSearchRequest,
    auth: AdminSessionDep,
    services: ServicesDep,
) -> dict[str, Any]:
    return services.audit.search(
        event=criteria.event,
        severity=criteria.severity,
        status=criteria.status,
        username=criteria.username,
        ip_address=criteria.ip_address,
        start=criteria.start_date,
        end=criteria.end_date,
        limit=criteria.limit,
    )


@router.get("/logs/auth-attempts")
def auth_attempts(auth: AdminSessionDep, services: ServicesDep) -> dict[str, Any]:
    return {
        "statistics": services.lockout.authentication_stats(),
        "lockedAccounts": services.lockout.list_locked(),
    }


@router.post("/logs/generate-report")
def generate_report(auth: AdminSessionDep, services: ServicesDep) -> dict[str, Any]:
    path = services.audit.generate_weekly_report(services.lockout.authentication_stats())
    return {"success": True, "message": "Security report generated", "report": path.name}


@router.get("/logs/dashboard")
def dashboard(auth: AdminSessionDep, services: ServicesDep) -> dict[str, Any]:
    """Aggregate the figures shown on the security dashboard."""
    return {
        "generatedAt": datetime.now(timezone.utc).isoformat(),
        "audit": services.audit.stats(),
        "authentication": services.lockout.authentication_stats(),
        "sessions": services.sessions.stats(),
        "captcha": services.captcha.stats(),
        "uploads": services.uploads.stats(),
        "recentCritical": services.audit.search(severity="CRITICAL", limit=10)["results"],
    }


@router.get("/logs/export")
def export_logs(
    auth: AdminSessionDep,
    services: ServicesDep,
    format: Literal["json", "csv"] = Query("json"),
    start_date: str | None = Query(None, alias="startDate"),
    end_date: str | None = Query(None, alias="endDate"),
) -> Response:
    exported = services.audit.export(format, start=start_date, end=end_date)
    services.audit.record(
        "ADMIN_LOGS_EXPORTED", Severity.MEDIUM, Status.SUCCESS, {"format": format}, auth.context
    )
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    disposition = {"Content-Disposition": f'attachment; filename="audit-export-{stamp}.{format}"'}
    if format == "csv":
        return PlainTextResponse(str(exported), media_type="text/csv", headers=disposition)
    return JSONResponse(exported, headers=disposition)


@router.post("/logs/cleanup")
def cleanup_logs(
    auth: AdminSessionDep,
    services: ServicesDep,
    payload: LogCleanupRequest | None = None,
) -> dict[str, Any]:
    older_than = payload.older_than_days if payload else 90
    result = services.audit.cleanup(older_than)
    services.audit.record("ADMIN_LOGS_CLEANED", Severity.MEDIUM, Status.SUCCESS, result, auth.context)
    return result


@router.get("/captcha/stats")
def captcha_stats(auth: AdminSessionDep, services: ServicesDep) -> dict[str, Any]:
    return services.captcha.stats()


@router.post("/captcha/clear-rate-limits")
def clear_captcha_rate_limits(auth: AdminSessionDep, services: ServicesDep) -> dict[str, Any]:
    cleared = services.captcha.clear_rate_limits()
    services.audit.record(
        "ADMIN_CAPTCHA_RATE_LIMITS_CLEARED",
        Severity.MEDIUM,
        Status.SUCCESS,
        {"cleared": cleared},
        auth.context,
    )
    return {"success": True, "cleared": cleared}
