"""Audit and security event log.

Every security decision is appended to ``audit.log`` as one JSON object per
line. HIGH and CRITICAL events are duplicated to ``security.log`` and CRITICAL
events trigger the alert path. Authentication decisions are additionally
written to ``auth.log``.

Sequence numbers come from a counter file that is rewritten *before* a number
is handed out, so numbers never repeat or go backwards across restarts.
"""

from __future__ import annotations

import csv
import io
import json
import logging
import os
import sys
import time
from collections import Counter
from collections.abc import Callable, Iterable, Iterator
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Protocol

from cid_portal.core.connection import ConnectionSecurityInspector
from cid_portal.core.context import RequestContext
from cid_portal.core.errors import TransientSystemError, ValidationError
from cid_portal.core.settings import Settings

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("cid_portal.audit")

AlertNotifier = Callable[[dict[str, Any]], None]


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class Status(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    WARNING = "WARNING"
    INFO = "INFO"


_LOG_LEVELS = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.INFO,
    Severity.HIGH: logging.WARNING,
    Severity.CRITICAL: logging.CRITICAL,
}


class AuditSink(Protocol):
    """What the rest of the security core needs from the audit log."""

    def record(
        self,
        event: str,
        severity: Severity = Severity.LOW,
        status: Status = Status.INFO,
        details: dict[str, Any] | None = None,
        context: RequestContext | None = None,
    ) -> int: ...


def _country_for(ip: str) -> str:
    return "LOCAL" if ConnectionSecurityInspector.is_local_address(ip) else "UNKNOWN"


def _parse_timestamp(value: str | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as err:
        raise ValidationError(f"Invalid timestamp: {value}", code="INVALID_DATE") from err
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class AuditLogger:
    """Append-only, file-backed audit log with persistent sequence numbers."""

    EXPORT_COLUMNS = (
        "logNumber",
        "timestamp",
        "event",
        "severity",
        "status",
        "ipAddress",
        "username",
        "sessionId",
        "method",
        "url",
    )

    def __init__(
        self,
        config: Settings,
        *,
        clock: Callable[[], float] = time.time,
        notifiers: Iterable[AlertNotifier] = (),
    ) -> None:
        self._config = config
        self._clock = clock
        self._paths = config.audit_paths
        self._notifiers: list[AlertNotifier] = list(notifiers)
        self._lock = Lock()
        self._next_number: int | None = None

    @property
    def paths(self) -> dict[str, Path]:
        return dict(self._paths)

    def initialize(self) -> None:
        """Create log directories and load the persisted counter."""
        for key in ("audit", "security", "auth", "counter"):
            self._paths[key].parent.mkdir(parents=True, exist_ok=True)
        self._paths["reports"].mkdir(parents=True, exist_ok=True)
        with self._lock:
            self._next_number = self._load_counter()
        logger.info("Audit log ready, next log number %s", self._next_number)

    def add_notifier(self, notifier: AlertNotifier) -> None:
        self._notifiers.append(notifier)

    # --- sequence numbers --------------------------------------------------------
    def _last_logged_number(self) -> int:
        path = self._paths["audit"]
        if not path.exists():
            return 0
        last = 0
        with path.open("r", encoding="utf-8") as handle:
            for line in handle:
                try:
                    last = max(last, int(json.loads(line).get("logNumber", 0)))
                except (ValueError, AttributeError):
                    continue
        return last

    def _load_counter(self) -> int:
        counter_path = self._paths["counter"]
        stored = 1
        if counter_path.exists():
            try:
                stored = int(counter_path.read_text(encoding="utf-8").strip() or "1")
            except ValueError:
                logger.warning("Audit counter file %s is corrupt; rebuilding", counter_path)
                stored = 1
        # never hand out a number already present in the live log
        return max(stored, self._last_logged_number() + 1)

    def _persist_counter(self, value: int) -> None:
        counter_path = self._paths["counter"]
        counter_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = counter_path.with_name(counter_path.name + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            handle.write(str(value))
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, counter_path)

    def _reserve_number(self) -> int:
        if self._next_number is None:
            self._next_number = self._load_counter()
        number = self._next_number
        try:
            self._persist_counter(number + 1)
        except OSError as exc:
            logger.exception("Failed to persist audit counter")
            raise TransientSystemError("Audit log unavailable") from exc
        self._next_number = number + 1
        return number

    @property
    def current_number(self) -> int:
        """Return the next number that will be issued."""
        with self._lock:
            if self._next_number is None:
                self._next_number = self._load_counter()
            return self._next_number

    # --- writing -----------------------------------------------------------------
    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=UTC)

    def _append(self, path: Path, line: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")

    def record(
        self,
        event: str,
        severity: Severity = Severity.LOW,
        status: Status = Status.INFO,
        details: dict[str, Any] | None = None,
        context: RequestContext | None = None,
    ) -> int:
        """Append an audit entry and return its log number.

        Args:
            event: Upper-case event name, e.g. ``LOGIN_FAILED``.
            severity: LOW, MEDIUM, HIGH or CRITICAL.
            status: SUCCESS, FAILURE, WARNING or INFO.
            details: Arbitrary JSON-compatible structured details.
            context: Requester attributes.

        Returns:
            The sequence number assigned to the entry.

        Raises:
            TransientSystemError: If the counter or log file cannot be written.
        """
        severity = Severity(severity)
        status = Status(status)
        context = context or RequestContext()
        now = self._now()
        with self._lock:
            number = self._reserve_number()
            entry = {
                "logNumber": number,
                "timestamp": now.isoformat(),
                "date": now.date().isoformat(),
                "time": now.strftime("%H:%M:%S"),
                "event": event,
                "severity": severity.value,
                "status": status.value,
                "ipAddress": context.ip_address,
                "username": context.username,
                "sessionId": context.session_id,
                "method": context.method,
                "url": context.url,
                "userAgent": context.user_agent,
                "referrer": context.referrer,
                "processId": os.getpid(),
                "country": _country_for(context.ip_address),
                "details": details or {},
            }
            line = json.dumps(entry, default=str, separators=(",", ":"))
            try:
                self._append(self._paths["audit"], line)
                if severity in (Severity.HIGH, Severity.CRITICAL):
                    self._append(self._paths["security"], line)
            except OSError as exc:
                logger.exception("Failed to write audit entry #%s", number)
                raise TransientSystemError("Audit log unavailable") from exc

        audit_logger.log(
            _LOG_LEVELS[severity],
            "[AUDIT #%s] %s %s %s ip=%s",
            number,
            severity.value,
            status.value,
            event,
            context.ip_address,
        )
        if severity is Severity.CRITICAL:
            self._alert(entry)
        return number

    def _alert(self, entry: dict[str, Any]) -> None:
        print(
            f"SECURITY ALERT #{entry['logNumber']}: {entry['event']} "
            f"from {entry['ipAddress']} at {entry['timestamp']}",
            file=sys.stderr,
        )
        for notifier in self._notifiers:
            try:
                notifier(entry)
            except Exception:
                logger.exception("Alert notifier %r failed", notifier)

    def log_authentication(
        self,
        username: str,
        success: bool,
        *,
        reason: str | None = None,
        details: dict[str, Any] | None = None,
        context: RequestContext | None = None,
    ) -> int:
        """Record an authentication decision in both the audit and auth logs."""
        payload = dict(details or {})
        if reason:
            payload["reason"] = reason
        context = context or RequestContext()
        number = self.record(
            "AUTHENTICATION_SUCCESS" if success else "AUTHENTICATION_FAILURE",
            Severity.LOW if success else Severity.MEDIUM,
            Status.SUCCESS if success else Status.FAILURE,
            payload,
            context,
        )
        auth_line = json.dumps(
            {
                "logNumber": number,
                "timestamp": self._now().isoformat(),
                "username": username,
                "success": success,
                "ipAddress": context.ip_address,
                "userAgent": context.user_agent,
                "details": payload,
            },
            default=str,
            separators=(",", ":"),
        )
        with self._lock:
            try:
                self._append(self._paths["auth"], auth_line)
            except OSError as exc:
                logger.exception("Failed to write auth log entry #%s", number)
                raise TransientSystemError("Audit log unavailable") from exc
        return number

    # --- rotation ----------------------------------------------------------------
    def _rotated_files(self, path: Path) -> list[Path]:
        if not path.parent.exists():
            return []
        return sorted(
            candidate
            for candidate in path.parent.glob(f"{path.name}.*")
            if not candidate.name.endswith(".tmp")
        )

    def rotate(self) -> list[Path]:
        """Rotate every log file larger than the size ceiling.

        Returns:
            Paths of the newly rotated files.
        """
        rotated: list[Path] = []
        stamp = self._now().strftime("%Y%m%d-%H%M%S-%f")
        with self._lock:
            for key in ("audit", "security", "auth"):
                path = self._paths[key]
                if not path.exists() or path.stat().st_size <= self._config.max_log_size_bytes:
                    continue
                target = path.with_name(f"{path.name}.{stamp}")
                path.rename(target)
                rotated.append(target)
                logger.info("Rotated %s to %s", path, target.name)
                self._prune(path)
        return rotated

    def _prune(self, path: Path) -> None:
        rotations = self._rotated_files(path)
        excess = len(rotations) - self._config.max_log_files
        for stale in rotations[: max(0, excess)]:
            stale.unlink(missing_ok=True)
            logger.info("Deleted old log rotation %s", stale.name)

    def cleanup(self, older_than_days: int = 90) -> dict[str, Any]:
        """Delete rotated files whose modification time is older than the cutoff."""
        cutoff = self._clock() - older_than_days * 86_400
        cleaned = 0
        freed = 0
        with self._lock:
            for key in ("audit", "security", "auth"):
                for rotated in self._rotated_files(self._paths[key]):
                    stat = rotated.stat()
                    if stat.st_mtime < cutoff:
                        freed += stat.st_size
                        rotated.unlink(missing_ok=True)
                        cleaned += 1
        return {"cleanedFiles": cleaned, "freedBytes": freed, "olderThanDays": older_than_days}

    # --- querying ----------------------------------------------------------------
    def iter_entries(self, include_rotated: bool = True) -> Iterator[dict[str, Any]]:
        path = self._paths["audit"]
        files = self._rotated_files(path) if include_rotated else []
        if path.exists():
            files.append(path)
        for file_path in files:
            with file_path.open("r", encoding="utf-8") as handle:
                for line in handle:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        yield json.loads(line)
                    except json.JSONDecodeError:
                        logger.warning("Skipping malformed audit line in %s", file_path.name)

    def search(
        self,
        *,
        event: str | None = None,
        severity: str | None = None,
        status: str | None = None,
        username: str | None = None,
        ip_address: str | None = None,
        start: str | datetime | None = None,
        end: str | datetime | None = None,
        limit: int = 100,
    ) -> dict[str, Any]:
        """Return entries matching every supplied criterion, newest first."""
        start_dt = _parse_timestamp(start)
        end_dt = _parse_timestamp(end)
        matches: list[dict[str, Any]] = []
        for entry in self.iter_entries():
            if event and entry.get("event") != event:
                continue
            if severity and entry.get("severity") != severity.upper():
                continue
            if status and entry.get("status") != status.upper():
                continue
            if username and entry.get("username") != username:
                continue
            if ip_address and entry.get("ipAddress") != ip_address:
                continue
            if start_dt or end_dt:
                stamp = _parse_timestamp(entry.get("timestamp"))
                if stamp is None:
                    continue
                if start_dt and stamp < start_dt:
                    continue
                if end_dt and stamp > end_dt:
                    continue
            matches.append(entry)
        matches.sort(key=lambda item: item.get("logNumber", 0), reverse=True)
        return {"total": len(matches), "results": matches[: max(0, limit)]}

    def stats(self) -> dict[str, Any]:
        files: dict[str, Any] = {}
        for key in ("audit", "security", "auth"):
            path = self._paths[key]
            files[key] = {
                "path": str(path),
                "sizeBytes": path.stat().st_size if path.exists() else 0,
                "rotations": len(self._rotated_files(path)),
            }
        by_severity: Counter[str] = Counter(
            entry.get("severity", "UNKNOWN") for entry in self.iter_entries(include_rotated=False)
        )
        return {
            "currentAuditNumber": self.current_number,
            "totalLogged": self.current_number - 1,
            "bySeverity": dict(by_severity),
            "files": files,
            "maxLogSizeBytes": self._config.max_log_size_bytes,
            "maxLogFiles": self._config.max_log_files,
        }

    def export(
        self,
        fmt: str = "json",
        *,
        start: str | None = None,
        end: str | None = None,
    ) -> str | list[dict[str, Any]]:
        """Export entries in a time window as JSON records or CSV text."""
        if fmt not in {"json", "csv"}:
            raise ValidationError("Unsupported export format", code="INVALID_EXPORT_FORMAT")
        entries = self.search(start=start, end=end, limit=sys.maxsize)["results"]
        entries.reverse()
        if fmt == "json":
            return entries
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=self.EXPORT_COLUMNS, extrasaction="ignore")
        writer.writeheader()
        for entry in entries:
            writer.writerow(entry)
        return buffer.getvalue()

    # --- reports -----------------------------------------------------------------
    def generate_weekly_report(self, auth_stats: dict[str, Any]) -> Path:
        """Write the weekly security summary and return its path.

        Args:
            auth_stats: Output of ``LockoutTracker.authentication_stats()``.
        """
        end = self._now()
        start = end - timedelta(days=7)
        week = self.search(start=start, end=end, limit=sys.maxsize)["results"]
        summary = {
            "totalEvents": len(week),
            "bySeverity": dict(Counter(entry.get("severity") for entry in week)),
            "byStatus": dict(Counter(entry.get("status") for entry in week)),
            "topEvents": Counter(entry.get("event") for entry in week).most_common(10),
            "criticalEvents": sum(1 for entry in week if entry.get("severity") == "CRITICAL"),
        }
        recommendations = [
            f"Review account '{user['username']}': {user['failedLogins']} failed logins"
            for user in auth_stats.get("topFailedUsers", [])
            if user.get("failedLogins", 0) > 10
        ]
        if auth_stats.get("lockedAccounts"):
            recommendations.append(
                f"{auth_stats['lockedAccounts']} account(s) currently locked; verify with owners"
            )
        report = {
            "period": {"start": start.isoformat(), "end": end.isoformat()},
            "generatedAt": end.isoformat(),
            "summary": summary,
            "authenticationStats": auth_stats,
            "recommendations": recommendations,
        }
        reports_dir = self._paths["reports"]
        reports_dir.mkdir(parents=True, exist_ok=True)
        report_path = reports_dir / (
            f"security-report-{start.date().isoformat()}-{end.date().isoformat()}.json"
        )
        report_path.write_text(json.dumps(report, indent=2, default=str), encoding="utf-8")
        self.record(
            "WEEKLY_REPORT_GENERATED",
            Severity.LOW,
            Status.SUCCESS,
            {"report": report_path.name, "events": len(week)},
        )
        return report_path


__all__ = [
    "AlertNotifier",
    "AuditLogger",
    "AuditSink",
    "RequestContext",
    "Severity",
    "Status",
]
