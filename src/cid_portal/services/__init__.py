# src/cid_portal/services/__init__.py
"""Security services for the CID portal."""

from .audit import AuditLogger, Severity, Status
from .captcha import CaptchaService
from .credentials import CredentialTransportDecoder
from .gatekeeper import RequestGatekeeper
from .lockout import LockoutTracker
from .maintenance import MaintenanceJob, MaintenanceWorker
from .passwords import PasswordVerifier
from .registry import SecurityServices, build_services
from .sessions import SessionManager
from .uploads import UploadValidator

__all__ = [
    "AuditLogger",
    "CaptchaService",
    "CredentialTransportDecoder",
    "LockoutTracker",
    "MaintenanceJob",
    "MaintenanceWorker",
    "PasswordVerifier",
    "RequestGatekeeper",
    "SecurityServices",
    "SessionManager",
    "Severity",
    "Status",
    "UploadValidator",
    "build_services",
]
