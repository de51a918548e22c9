# mypy: ignore-errors
# tests/services/test_maintenance.py
"""Tests for the background maintenance worker and service wiring."""

import asyncio
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from cid_portal.services.maintenance import MaintenanceJob, MaintenanceWorker
from tests.conftest import FakeClock


@pytest.mark.asyncio
async def test_run_pending_runs_due_jobs_only() -> None:
    clock = FakeClock(start=0.0)
    fast = MagicMock(return_value=3)
    slow = MagicMock(return_value=0)
    worker = MaintenanceWorker(
        [MaintenanceJob("fast", 10, fast), MaintenanceJob("slow", 100, slow)], clock=clock
    )

    assert await worker.run_pending() == ["fast", "slow"]
    clock.advance(10)
    assert await worker.run_pending() == ["fast"]
    assert fast.call_count == 2
    assert slow.call_count == 1


@pytest.mark.asyncio
async def test_failing_job_does_not_stop_others() -> None:
    broken = MagicMock(side_effect=OSError("disk full"))
    healthy = MagicMock(return_value=None)
    jobs = [MaintenanceJob("broken", 1, broken), MaintenanceJob("healthy", 1, healthy)]
    worker = MaintenanceWorker(jobs, clock=FakeClock(start=0.0))

    assert await worker.run_pending() == ["healthy"]
    assert jobs[0].failures == 1
    assert jobs[1].runs == 1


@pytest.mark.asyncio
async def test_worker_start_and_stop() -> None:
    action = MagicMock(return_value=None)
    worker = MaintenanceWorker([MaintenanceJob("tick", 0.01, action)])

    await worker.start()
    assert worker.running
    await asyncio.sleep(0.3)
    await worker.stop()

    assert not worker.running
    assert action.call_count >= 1


@pytest.mark.asyncio
async def test_worker_without_jobs_never_starts() -> None:
    worker = MaintenanceWorker([])

    await worker.start()

    assert not worker.running
    await worker.stop()


def test_maintenance_jobs_cover_every_store(services) -> None:
    names = [job.name for job in services.maintenance_jobs()]

    assert names == [
        "sessions",
        "captcha",
        "nonces",
        "lockout",
        "uploads",
        "log-rotation",
        "weekly-report",
    ]


def test_weekly_report_job_can_be_disabled(services) -> None:
    services.config.weekly_report_enabled = False

    assert "weekly-report" not in [job.name for job in services.maintenance_jobs()]


@pytest.mark.asyncio
async def test_every_job_runs_against_real_services(services) -> None:
    services.initialize()
    worker = MaintenanceWorker(services.maintenance_jobs(), clock=FakeClock(start=0.0))

    ran = await worker.run_pending()

    assert len(ran) == len(worker.jobs)
    assert all(job.failures == 0 for job in worker.jobs)


def test_weekly_report_is_written(services) -> None:
    services.initialize()

    report = Path(services.weekly_report())

    assert report.exists()
    assert report.parent == services.audit.paths["reports"]
