# mypy: ignore-errors
# tests/services/test_audit.py
"""Tests for the audit log: numbering, routing, rotation and queries."""

import json
import os
from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest

from cid_portal.core.context import RequestContext
from cid_portal.core.errors import ValidationError
from cid_portal.services.audit import AuditLogger, Severity, Status


def _lines(path):
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


def test_log_numbers_increase_from_one(audit) -> None:
    first = audit.record("LOGIN_PAGE_VIEWED")
    second = audit.record("LOGIN_PAGE_VIEWED")

    assert (first, second) == (1, 2)
    entries = _lines(audit.paths["audit"])
    assert [entry["logNumber"] for entry in entries] == [1, 2]
    assert audit.paths["counter"].read_text() == "3"


def test_log_numbers_survive_restart(test_settings, clock, audit) -> None:
    audit.record("FIRST")
    audit.record("SECOND")

    restarted = AuditLogger(test_settings, clock=clock)
    restarted.initialize()

    assert restarted.record("THIRD") == 3


def test_log_numbers_never_repeat_when_counter_is_lost(test_settings, clock, audit) -> None:
    for _ in range(4):
        audit.record("EVENT")
    audit.paths["counter"].unlink()

    restarted = AuditLogger(test_settings, clock=clock)
    restarted.initialize()

    assert restarted.record("EVENT") == 5


def test_entry_carries_request_context(audit) -> None:
    context = RequestContext(
        ip_address="127.0.0.1",
        method="POST",
        url="/api/login",
        user_agent="browser",
        username="officer",
    )
    audit.record("LOGIN_ATTEMPT", Severity.MEDIUM, Status.FAILURE, {"reason": "test"}, context)

    entry = _lines(audit.paths["audit"])[0]
    assert entry["event"] == "LOGIN_ATTEMPT"
    assert entry["severity"] == "MEDIUM"
    assert entry["status"] == "FAILURE"
    assert entry["username"] == "officer"
    assert entry["country"] == "LOCAL"
    assert entry["details"] == {"reason": "test"}
    assert entry["processId"] == os.getpid()


def test_high_and_critical_events_reach_security_log(audit) -> None:
    audit.record("ROUTINE", Severity.LOW)
    audit.record("SUSPICIOUS", Severity.HIGH)
    audit.record("ATTACK", Severity.CRITICAL)

    events = [entry["event"] for entry in _lines(audit.paths["security"])]
    assert events == ["SUSPICIOUS", "ATTACK"]


def test_critical_events_alert_notifiers(audit) -> None:
    notifier = MagicMock()
    broken = MagicMock(side_effect=RuntimeError("mail relay down"))
    audit.add_notifier(broken)
    audit.add_notifier(notifier)

    audit.record("SESSION_REPLAY_ATTEMPT", Severity.CRITICAL, Status.FAILURE)
    audit.record("ROUTINE", Severity.HIGH)

    notifier.assert_called_once()
    assert notifier.call_args.args[0]["event"] == "SESSION_REPLAY_ATTEMPT"


def test_log_authentication_writes_auth_log(audit) -> None:
    number = audit.log_authentication("officer", False, reason="Invalid password")

    auth_entry = _lines(audit.paths["auth"])[0]
    audit_entry = _lines(audit.paths["audit"])[0]
    assert auth_entry["logNumber"] == number
    assert auth_entry["success"] is False
    assert auth_entry["details"] == {"reason": "Invalid password"}
    assert audit_entry["event"] == "AUTHENTICATION_FAILURE"


def test_search_filters_and_orders_newest_first(audit) -> None:
    audit.record("A", Severity.LOW, context=RequestContext(ip_address="10.0.0.1"))
    audit.record("B", Severity.HIGH, context=RequestContext(ip_address="10.0.0.2"))
    audit.record("A", Severity.HIGH, context=RequestContext(ip_address="10.0.0.2"))

    result = audit.search(severity="high")
    assert result["total"] == 2
    assert [entry["logNumber"] for entry in result["results"]] == [3, 2]

    assert audit.search(event="A", ip_address="10.0.0.1")["total"] == 1
    assert len(audit.search(limit=1)["results"]) == 1


def test_search_by_time_window(audit, clock) -> None:
    audit.record("OLD")
    clock.advance(3600)
    audit.record("NEW")

    start = datetime.fromtimestamp(clock.now - 60, tz=UTC)
    result = audit.search(start=start)
    assert [entry["event"] for entry in result["results"]] == ["NEW"]

    with pytest.raises(ValidationError):
        audit.search(start="not-a-date")


def test_export_csv_and_json(audit) -> None:
    audit.record("FIRST")
    audit.record("SECOND")

    records = audit.export("json")
    assert [entry["event"] for entry in records] == ["FIRST", "SECOND"]

    text = audit.export("csv")
    header, *rows = text.strip().splitlines()
    assert header.split(",")[:3] == ["logNumber", "timestamp", "event"]
    assert len(rows) == 2

    with pytest.raises(ValidationError):
        audit.export("xml")


def test_rotation_keeps_bounded_history(test_settings, clock) -> None:
    config = test_settings.model_copy(update={"max_log_size_bytes": 100, "max_log_files": 2})
    audit = AuditLogger(config, clock=clock)
    audit.initialize()

    for _ in range(4):
        audit.record("FILLER", details={"padding": "x" * 50})
        assert audit.rotate()
        clock.advance(1)

    rotated = sorted(audit.paths["audit"].parent.glob("audit.log.*"))
    assert len(rotated) == 2
    assert not audit.paths["audit"].exists()

    # numbering continues across rotated files
    assert audit.record("AFTER") == 5
    assert audit.search(event="FILLER")["total"] == 2


def test_cleanup_removes_old_rotations(audit, clock) -> None:
    stale = audit.paths["audit"].with_name("audit.log.20200101-000000-000000")
    fresh = audit.paths["audit"].with_name("audit.log.20990101-000000-000000")
    stale.write_text("{}\n")
    fresh.write_text("{}\n")
    old = clock.now - 100 * 86_400
    os.utime(stale, (old, old))

    result = audit.cleanup(older_than_days=90)

    assert result["cleanedFiles"] == 1
    assert not stale.exists()
    assert fresh.exists()


def test_weekly_report(audit) -> None:
    audit.record("ATTACK", Severity.CRITICAL)
    stats = {
        "lockedAccounts": 1,
        "topFailedUsers": [{"username": "officer", "failedLogins": 12}],
    }

    path = audit.generate_weekly_report(stats)

    report = json.loads(path.read_text())
    assert report["summary"]["criticalEvents"] == 1
    assert len(report["recommendations"]) == 2
    assert audit.search(event="WEEKLY_REPORT_GENERATED")["total"] == 1


def test_stats(audit) -> None:
    audit.record("A", Severity.HIGH)

    stats = audit.stats()

    assert stats["currentAuditNumber"] == 2
    assert stats["bySeverity"] == {"HIGH": 1}
    assert stats["files"]["security"]["sizeBytes"] > 0
