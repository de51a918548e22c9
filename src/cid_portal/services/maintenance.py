"""Periodic housekeeping for the security stores and audit files.

Each job runs on its own interval inside a single asyncio task. Jobs are
synchronous and idempotent; they run in a worker thread so file I/O never
blocks request handling.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class MaintenanceJob:
    """A named callable and the number of seconds between runs."""

    name: str
    interval: float
    action: Callable[[], Any]
    next_due: float = field(default=0.0)
    runs: int = 0
    failures: int = 0


class MaintenanceWorker:
    """Run :class:`MaintenanceJob` instances until stopped."""

    def __init__(
        self,
        jobs: list[MaintenanceJob],
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.jobs = jobs
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background loop; first runs happen one interval from now."""
        if not self.jobs or self.running:
            return
        now = self._clock()
        for job in self.jobs:
            job.next_due = now + job.interval
        self._stopping.clear()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None

    async def run_pending(self) -> list[str]:
        """Run every job whose interval has elapsed; return their names."""
        now = self._clock()
        ran: list[str] = []
        for job in self.jobs:
            if job.next_due > now:
                continue
            job.next_due = now + job.interval
            try:
                result = await asyncio.to_thread(job.action)
            except Exception:  # noqa: BLE001
                job.failures += 1
                logger.exception("Maintenance job %s failed", job.name)
                continue
            job.runs += 1
            ran.append(job.name)
            if result:
                logger.debug("Maintenance job %s: %s", job.name, result)
        return ran

    def _seconds_until_next(self) -> float:
        now = self._clock()
        soonest = min(job.next_due for job in self.jobs)
        return max(0.05, soonest - now)

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._seconds_until_next())
            except asyncio.TimeoutError:
                pass
            if self._stopping.is_set():
                break
            await self.run_pending()


__all__ = ["MaintenanceJob", "MaintenanceWorker"]
