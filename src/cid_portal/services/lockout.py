"""Account lockout tracking for repeated authentication failures."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any

from cid_portal.core.settings import Settings
from cid_portal.services.audit import AuditSink, RequestContext, Severity, Status
from cid_portal.services.store import KeyValueStore

logger = logging.getLogger(__name__)


@dataclass
class AuthAttemptRecord:
    """Per-identifier counters used for lockout decisions and reporting."""

    identifier: str
    attempts: int = 0
    successful_logins: int = 0
    failed_logins: int = 0
    last_attempt: float | None = None
    last_success: float | None = None
    last_failure: float | None = None
    locked_until: float | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuthAttemptRecord:
        return cls(**data)


class LockoutTracker:
    """Count failed attempts per identifier and enforce temporary lockout.

    ``attempts`` is the running failure streak; it drops to zero on any
    success. ``failed_logins``/``successful_logins`` are lifetime totals kept
    for reports.
    """

    def __init__(
        self,
        config: Settings,
        store: KeyValueStore,
        audit: AuditSink,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._store = store
        self._audit = audit
        self._clock = clock

    @property
    def _retention_seconds(self) -> float:
        return self._config.auth_record_retention_days * 86_400

    def _key(self, identifier: str) -> str:
        return identifier.strip().lower()

    def _record(self, key: str, data: dict[str, Any] | None) -> AuthAttemptRecord:
        if data is None:
            return AuthAttemptRecord(identifier=key)
        return AuthAttemptRecord.from_dict(data)

    def _load(self, identifier: str) -> AuthAttemptRecord:
        key = self._key(identifier)
        return self._record(key, self._store.get(key))

    def _lock_active(self, record: AuthAttemptRecord, now: float) -> bool:
        return record.locked_until is not None and record.locked_until > now

    def is_locked(self, identifier: str) -> bool:
        return self._lock_active(self._load(identifier), self._clock())

    def remaining_lock_seconds(self, identifier: str) -> int:
        record = self._load(identifier)
        now = self._clock()
        if not self._lock_active(record, now):
            return 0
        return int(record.locked_until - now + 0.999)  # type: ignore[operator]

    def record_attempt(
        self,
        identifier: str,
        success: bool,
        context: RequestContext | None = None,
    ) -> bool:
        """Record an authentication attempt.

        Args:
            identifier: Username (case-insensitive).
            success: Whether the credentials were accepted.
            context: Requester attributes for the audit trail.

        Returns:
            True if the identifier may keep attempting, False while it is locked.
        """
        now = self._clock()
        key = self._key(identifier)
        outcome: dict[str, Any] = {}

        def apply(data: dict[str, Any] | None) -> dict[str, Any]:
            record = self._record(key, data)
            outcome.update(allowed=True, locked_now=False, failures=0)
            record.last_attempt = now
            if self._lock_active(record, now):
                outcome["allowed"] = False
                return asdict(record)

            if record.locked_until is not None:
                # lock window elapsed; start a fresh streak
                record.locked_until = None
                record.attempts = 0

            if success:
                record.attempts = 0
                record.successful_logins += 1
                record.last_success = now
                return asdict(record)

            record.attempts += 1
            record.failed_logins += 1
            record.last_failure = now
            if record.attempts >= self._config.max_login_attempts:
                record.locked_until = now + self._config.lockout_seconds
                outcome.update(allowed=False, locked_now=True, failures=record.attempts)
            return asdict(record)

        self._store.update(key, apply, ttl_seconds=self._retention_seconds)
        if outcome["locked_now"]:
            logger.warning("Locked account %s after %s failures", key, outcome["failures"])
            self._audit.record(
                "ACCOUNT_LOCKED",
                Severity.HIGH,
                Status.WARNING,
                {
                    "identifier": key,
                    "failures": outcome["failures"],
                    "lockedForSeconds": self._config.lockout_seconds,
                },
                context,
            )
        return outcome["allowed"]

    def unlock(self, identifier: str) -> bool:
        """Clear the lock and failure streak for one identifier.

        Returns:
            True if the identifier was locked at the time of the call.
        """
        now = self._clock()
        outcome = {"was_locked": False}

        def clear(data: dict[str, Any] | None) -> dict[str, Any] | None:
            outcome["was_locked"] = False
            if data is None:
                return None
            record = AuthAttemptRecord.from_dict(data)
            outcome["was_locked"] = self._lock_active(record, now)
            record.locked_until = None
            record.attempts = 0
            return asdict(record)

        self._store.update(self._key(identifier), clear, ttl_seconds=self._retention_seconds)
        return outcome["was_locked"]

    def unlock_all(self) -> int:
        unlocked = 0
        for key, data in self._store.items():
            if data.get("locked_until") is None and not data.get("attempts"):
                continue
            if self.unlock(key):
                unlocked += 1
        return unlocked

    def list_locked(self) -> list[dict[str, Any]]:
        now = self._clock()
        locked: list[dict[str, Any]] = []
        for _, data in self._store.items():
            record = AuthAttemptRecord.from_dict(data)
            if self._lock_active(record, now):
                locked.append(
                    {
                        "username": record.identifier,
                        "failedAttempts": record.attempts,
                        "lockedUntil": record.locked_until,
                        "remainingSeconds": int(record.locked_until - now + 0.999),  # type: ignore[operator]
                    }
                )
        locked.sort(key=lambda item: item["remainingSeconds"], reverse=True)
        return locked

    def records(self) -> list[AuthAttemptRecord]:
        return [AuthAttemptRecord.from_dict(data) for _, data in self._store.items()]

    def purge_stale(self) -> int:
        """Drop records idle for longer than the retention window."""
        cutoff = self._clock() - self._retention_seconds
        removed = 0
        for key, data in self._store.items():
            last = data.get("last_attempt")
            if last is not None and last < cutoff:
                self._store.delete(key)
                removed += 1
        removed += self._store.sweep()
        if removed:
            logger.info("Purged %s stale authentication records", removed)
        return removed

    def authentication_stats(self) -> dict[str, Any]:
        now = self._clock()
        records = self.records()
        failing = sorted(
            (record for record in records if record.failed_logins > 0),
            key=lambda record: record.failed_logins,
            reverse=True,
        )
        return {
            "totalUsers": len(records),
            "totalSuccessfulLogins": sum(record.successful_logins for record in records),
            "totalFailedLogins": sum(record.failed_logins for record in records),
            "lockedAccounts": sum(1 for record in records if self._lock_active(record, now)),
            "topFailedUsers": [
                {
                    "username": record.identifier,
                    "failedLogins": record.failed_logins,
                    "lastFailure": record.last_failure,
                }
                for record in failing[:10]
            ],
        }


__all__ = ["AuthAttemptRecord", "LockoutTracker"]
