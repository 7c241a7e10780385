"""Daily background jobs: attendance sync and the unclaimed-overtime sweep.

Both jobs share one ``SingleFlight`` guard, so a run never overlaps
another run, whether it was started by the timer, the HTTP trigger or the
job CLI. The guard pairs an in-process lock with a ``job_leases`` row, which
keeps a second API worker or a cron-started CLI out as well.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime, time, timedelta, timezone
from typing import AsyncIterator, Callable, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hrms_engine.attendance.models import JobLease
from hrms_engine.attendance.schemas import SweepResult, SyncResult
from hrms_engine.attendance.service import PunchReconciler
from hrms_engine.attendance.source import HttpPunchSource, PunchSource
from hrms_engine.common.clock import local_now
from hrms_engine.common.constants import ENGINE_JOBS_LEASE
from hrms_engine.common.exceptions import ExternalSourceException
from hrms_engine.config import settings
from hrms_engine.database import async_session_factory
from hrms_engine.overtime.sweeper import OvertimeSweeper

logger = logging.getLogger(__name__)


class DatabaseLease:
    """A named lease row; the holder keeps it until release or expiry."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        name: str = ENGINE_JOBS_LEASE,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        self.session_factory = session_factory
        self.name = name
        self.ttl = timedelta(seconds=ttl_seconds or settings.JOB_LEASE_SECONDS)
        self.holder = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

    async def acquire(self, job: str) -> bool:
        now = datetime.now(timezone.utc)
        async with self.session_factory() as db:
            async with db.begin():
                if await db.get(JobLease, self.name) is None:
                    try:
                        async with db.begin_nested():
                            db.add(JobLease(name=self.name))
                    except IntegrityError:
                        logger.debug("Lease row %s was created by another process", self.name)
                result = await db.execute(
                    update(JobLease)
                    .where(
                        JobLease.name == self.name,
                        or_(JobLease.holder.is_(None), JobLease.expires_at < now),
                    )
                    .values(
                        holder=self.holder,
                        job=job,
                        acquired_at=now,
                        expires_at=now + self.ttl,
                    )
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1

    async def release(self) -> None:
        async with self.session_factory() as db:
            async with db.begin():
                await db.execute(
                    update(JobLease)
                    .where(JobLease.name == self.name, JobLease.holder == self.holder)
                    .values(holder=None, job=None, expires_at=None)
                    .execution_options(synchronize_session=False)
                )


class SingleFlight:
    """At most one job at a time; a run that finds it busy is skipped."""

    def __init__(self, lease: Optional[DatabaseLease] = None) -> None:
        self._lock = asyncio.Lock()
        self.lease = lease
        self.current: Optional[str] = None

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @asynccontextmanager
    async def hold(self, job: str) -> AsyncIterator[bool]:
        if self._lock.locked():
            logger.warning("Skipping %s: %s is still running", job, self.current)
            yield False
            return
        async with self._lock:
            if self.lease is not None and not await self.lease.acquire(job):
                logger.warning("Skipping %s: another process holds the job lease", job)
                yield False
                return
            self.current = job
            try:
                yield True
            finally:
                self.current = None
                if self.lease is not None:
                    await self.lease.release()


class JobRunner:
    """Runs each job in its own session and transaction."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
        source_factory: Callable[[], PunchSource] = HttpPunchSource,
        guard: Optional[SingleFlight] = None,
    ) -> None:
        self.session_factory = session_factory
        self.source_factory = source_factory
        self.guard = guard or SingleFlight(DatabaseLease(session_factory))

    async def run_attendance_sync(
        self, *, now: Optional[datetime] = None,
    ) -> Optional[SyncResult]:
        """Returns None when skipped by the guard."""
        async with self.guard.hold("attendance sync") as acquired:
            if not acquired:
                return None
            source = self.source_factory()
            try:
                async with self.session_factory() as db:
                    async with db.begin():
                        return await PunchReconciler.sync(db, source, now=now)
            except ExternalSourceException as exc:
                logger.error("Attendance sync failed: %s", exc.detail)
                async with self.session_factory() as db:
                    async with db.begin():
                        await PunchReconciler.record_failure(db, exc.detail)
                raise

    async def run_overtime_sweep(
        self, *, today: Optional[date] = None,
    ) -> Optional[SweepResult]:
        """Returns None when skipped by the guard."""
        async with self.guard.hold("overtime sweep") as acquired:
            if not acquired:
                return None
            async with self.session_factory() as db:
                async with db.begin():
                    return await OvertimeSweeper.sweep(db, today=today)


# ── Timer loop ──────────────────────────────────────────────────────


def parse_clock(value: str) -> time:
    """'HH:MM' → time; raises ValueError on anything else."""
    return datetime.strptime(value.strip(), "%H:%M").time()


def seconds_until(at: time, now: datetime) -> float:
    """Seconds from *now* to the next local occurrence of *at*."""
    target = now.replace(hour=at.hour, minute=at.minute, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class DailyScheduler:
    """Start/stop daily asyncio tasks from the app lifespan."""

    def __init__(self, runner: JobRunner) -> None:
        self.runner = runner
        self._tasks: list[asyncio.Task] = []

    async def _loop(self, name: str, at: time, job: Callable) -> None:
        while True:
            delay = seconds_until(at, local_now())
            logger.info("Next %s in %.0f s", name, delay)
            await asyncio.sleep(delay)
            try:
                await job()
            except Exception:
                # Keep the loop alive for tomorrow's run
                logger.exception("Scheduled %s failed", name)

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(
                self._loop(
                    "attendance sync",
                    parse_clock(settings.ATTENDANCE_SYNC_AT),
                    self.runner.run_attendance_sync,
                ),
            ),
            asyncio.create_task(
                self._loop(
                    "overtime sweep",
                    parse_clock(settings.OVERTIME_SWEEP_AT),
                    self.runner.run_overtime_sweep,
                ),
            ),
        ]
        logger.info(
            "Scheduler started (sync at %s, sweep at %s)",
            settings.ATTENDANCE_SYNC_AT, settings.OVERTIME_SWEEP_AT,
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Scheduler stopped")
