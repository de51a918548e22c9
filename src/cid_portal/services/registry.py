"""Construction of the service graph from a :class:`Settings` instance."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from cid_portal.core.connection import ConnectionSecurityInspector
from cid_portal.core.settings import Settings
from cid_portal.core.whitelist import build_host_whitelist, build_origin_whitelist
from cid_portal.services.audit import AuditLogger
from cid_portal.services.captcha import CaptchaService
from cid_portal.services.credentials import CredentialTransportDecoder
from cid_portal.services.gatekeeper import RequestGatekeeper
from cid_portal.services.lockout import LockoutTracker
from cid_portal.services.maintenance import MaintenanceJob, MaintenanceWorker
from cid_portal.services.passwords import PasswordVerifier
from cid_portal.services.sessions import SessionManager
from cid_portal.services.store import KeyValueStore, create_store
from cid_portal.services.uploads import UploadValidator

logger = logging.getLogger(__name__)

UPLOAD_SWEEP_INTERVAL_SECONDS = 3600.0


@dataclass
class SecurityServices:
    """Every collaborator the API layer needs, built once per application."""

    config: Settings
    inspector: ConnectionSecurityInspector
    audit: AuditLogger
    gatekeeper: RequestGatekeeper
    captcha: CaptchaService
    credentials: CredentialTransportDecoder
    passwords: PasswordVerifier
    lockout: LockoutTracker
    sessions: SessionManager
    uploads: UploadValidator

    def initialize(self) -> None:
        """Prepare on-disk state: log directories, counter, key pair, upload dirs."""
        self.audit.initialize()
        self.credentials.initialize()
        self.uploads.initialize()

    def weekly_report(self) -> str:
        return str(self.audit.generate_weekly_report(self.lockout.authentication_stats()))

    def maintenance_jobs(self) -> list[MaintenanceJob]:
        config = self.config
        jobs = [
            MaintenanceJob("sessions", config.session_sweep_interval_seconds, self.sessions.sweep),
            MaintenanceJob("captcha", config.captcha_sweep_interval_seconds, self.captcha.sweep),
            MaintenanceJob("nonces", config.nonce_sweep_interval_seconds, self.credentials.sweep),
            MaintenanceJob("lockout", config.lockout_sweep_interval_seconds, self.lockout.purge_stale),
            MaintenanceJob("uploads", UPLOAD_SWEEP_INTERVAL_SECONDS, self.uploads.sweep),
            MaintenanceJob("log-rotation", config.log_rotation_interval_seconds, self.audit.rotate),
        ]
        if config.weekly_report_enabled:
            jobs.append(
                MaintenanceJob(
                    "weekly-report", config.weekly_report_interval_seconds, self.weekly_report
                )
            )
        return jobs

    def build_worker(self) -> MaintenanceWorker:
        return MaintenanceWorker(self.maintenance_jobs())


def build_services(
    config: Settings,
    *,
    clock: Callable[[], float] = time.time,
) -> SecurityServices:
    """Wire the security core for ``config``.

    Args:
        config: Application settings.
        clock: Wall-clock source shared by every service; tests inject a fake.

    Returns:
        A fully connected :class:`SecurityServices`.
    """
    inspector = ConnectionSecurityInspector(config)
    audit = AuditLogger(config, clock=clock)

    def store(namespace: str) -> KeyValueStore:
        return create_store(config, namespace, clock)

    services = SecurityServices(
        config=config,
        inspector=inspector,
        audit=audit,
        gatekeeper=RequestGatekeeper(
            config,
            build_host_whitelist(config),
            build_origin_whitelist(config),
            inspector,
            audit,
        ),
        captcha=CaptchaService(
            config, store("captcha"), store("captcha-rate"), audit, clock=clock
        ),
        credentials=CredentialTransportDecoder(config, store("nonces"), audit, clock=clock),
        passwords=PasswordVerifier(config.password_iterations),
        lockout=LockoutTracker(config, store("auth-attempts"), audit, clock=clock),
        sessions=SessionManager(
            config, store("sessions"), store("session-blacklist"), inspector, audit, clock=clock
        ),
        uploads=UploadValidator(config, store("upload-rate"), audit, clock=clock),
    )
    logger.info(
        "Security services built (environment=%s, store=%s, strict binding=%s)",
        config.environment,
        config.store_backend,
        config.strict_binding,
    )
    return services


__all__ = ["SecurityServices", "build_services"]
