"""Background jobs — single-flight guard, job runner and the daily timer."""

from __future__ import annotations

import asyncio
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

import hrms_engine.scheduler as scheduler_module
from hrms_engine.attendance.models import AttendanceRecord, JobLease, SyncMetadata
from hrms_engine.common.clock import local_tz
from hrms_engine.common.constants import ATTENDANCE_SYNC_JOB, ENGINE_JOBS_LEASE
from hrms_engine.common.exceptions import ExternalSourceException
from hrms_engine.core_hr.models import Employee
from hrms_engine.scheduler import DailyScheduler, SingleFlight, parse_clock, seconds_until
from tests.conftest import FakePunchSource, StubJobRunner, make_job_runner

NOW = datetime(2026, 3, 4, 1, 0, tzinfo=local_tz())
TODAY = date(2026, 3, 4)

PUNCHES = [
    {"UserID": "1001", "LogDate": "2026-03-03", "LogTime": "08:30", "Direction": "in"},
    {"UserID": "1001", "LogDate": "2026-03-03", "LogTime": "18:00", "Direction": "out"},
]


class TestSingleFlight:
    async def test_second_holder_is_refused(self):
        guard = SingleFlight()
        async with guard.hold("attendance sync") as first:
            assert first is True
            assert guard.busy
            assert guard.current == "attendance sync"
            async with guard.hold("overtime sweep") as second:
                assert second is False
        assert not guard.busy
        assert guard.current is None

    async def test_released_after_error(self):
        guard = SingleFlight()
        with pytest.raises(RuntimeError):
            async with guard.hold("attendance sync"):
                raise RuntimeError("boom")
        async with guard.hold("overtime sweep") as acquired:
            assert acquired is True


class TestJobRunner:
    async def test_sync_commits_in_its_own_session(self, db, org):
        await db.commit()
        runner = make_job_runner(FakePunchSource(PUNCHES))

        result = await runner.run_attendance_sync(now=NOW)

        assert result.folded == 1
        record = (await db.execute(select(AttendanceRecord))).scalars().one()
        assert record.employee_id == org["employee"].id
        assert record.ot_minutes == 90

    async def test_overlapping_run_is_skipped(self, db):
        await db.commit()
        gate = asyncio.Event()
        source = FakePunchSource(gate=gate)
        runner = make_job_runner(source)

        running = asyncio.create_task(runner.run_attendance_sync(now=NOW))
        while not source.calls:
            await asyncio.sleep(0.01)

        assert runner.guard.busy
        assert await runner.run_overtime_sweep(today=TODAY) is None
        assert await runner.run_attendance_sync(now=NOW) is None

        gate.set()
        result = await running
        assert result is not None
        assert not runner.guard.busy

    async def test_source_failure_is_recorded_and_raised(self, db):
        await db.commit()
        runner = make_job_runner(
            FakePunchSource(error=ExternalSourceException("fake-source", "HTTP 503")),
        )

        with pytest.raises(ExternalSourceException):
            await runner.run_attendance_sync(now=NOW)

        meta = await db.get(SyncMetadata, ATTENDANCE_SYNC_JOB)
        assert meta.last_status == "failed"
        assert meta.last_error == "fake-source: HTTP 503"
        assert meta.last_synced_at is None
        assert not runner.guard.busy

    async def test_unexpected_source_error_is_recorded(self, db):
        await db.commit()
        runner = make_job_runner(FakePunchSource(error=OSError("connection refused")))

        with pytest.raises(ExternalSourceException):
            await runner.run_attendance_sync(now=NOW)

        meta = await db.get(SyncMetadata, ATTENDANCE_SYNC_JOB)
        assert meta.last_status == "failed"
        assert meta.last_error == "fake-source: OSError: connection refused"

    async def test_sweep_commits_credit(self, db, org):
        db.add(
            AttendanceRecord(
                employee_id=org["employee"].id,
                work_date=date(2026, 2, 24),
                total_work_minutes=780,
                ot_minutes=300,
            )
        )
        await db.commit()

        result = await make_job_runner().run_overtime_sweep(today=TODAY)

        assert result.credited == 1
        employee = await db.get(Employee, org["employee"].id, populate_existing=True)
        assert employee.compensatory_balance_hours == Decimal("4")


class TestJobLease:
    async def test_runner_in_another_process_is_skipped(self, db):
        await db.commit()
        api_process = make_job_runner()
        cron_process = make_job_runner()
        assert api_process.guard is not cron_process.guard

        async with api_process.guard.hold("attendance sync") as acquired:
            assert acquired is True
            assert await cron_process.run_overtime_sweep(today=TODAY) is None

            lease = await db.get(JobLease, ENGINE_JOBS_LEASE, populate_existing=True)
            assert lease.holder == api_process.guard.lease.holder
            assert lease.job == "attendance sync"
            await db.commit()

        assert await cron_process.run_overtime_sweep(today=TODAY) is not None

    async def test_lease_is_released_after_run(self, db):
        await db.commit()
        runner = make_job_runner()

        assert await runner.run_overtime_sweep(today=TODAY) is not None

        lease = await db.get(JobLease, ENGINE_JOBS_LEASE, populate_existing=True)
        assert lease.holder is None
        assert lease.expires_at is None

    async def test_live_lease_held_elsewhere_blocks_sync(self, db):
        db.add(
            JobLease(
                name=ENGINE_JOBS_LEASE,
                holder="worker-2:4242:abcd1234",
                job="overtime sweep",
                acquired_at=datetime.now(timezone.utc),
                expires_at=datetime.now(timezone.utc) + timedelta(minutes=30),
            )
        )
        await db.commit()
        source = FakePunchSource(PUNCHES)

        assert await make_job_runner(source).run_attendance_sync(now=NOW) is None
        assert source.calls == []

    async def test_expired_lease_is_taken_over(self, db):
        db.add(
            JobLease(
                name=ENGINE_JOBS_LEASE,
                holder="crashed-host:1:deadbeef",
                job="attendance sync",
                acquired_at=datetime.now(timezone.utc) - timedelta(hours=3),
                expires_at=datetime.now(timezone.utc) - timedelta(hours=2),
            )
        )
        await db.commit()

        result = await make_job_runner().run_overtime_sweep(today=TODAY)

        assert result is not None
        lease = await db.get(JobLease, ENGINE_JOBS_LEASE, populate_existing=True)
        assert lease.holder is None


class TestClock:
    def test_parse_clock(self):
        assert parse_clock("01:00") == time(1, 0)
        assert parse_clock(" 23:45 ") == time(23, 45)

    @pytest.mark.parametrize("value", ["25:00", "1am", ""])
    def test_parse_clock_rejects_garbage(self, value):
        with pytest.raises(ValueError):
            parse_clock(value)

    def test_seconds_until_later_today(self):
        now = datetime(2026, 3, 4, 0, 30, tzinfo=local_tz())
        assert seconds_until(time(1, 0), now) == 1800

    def test_seconds_until_rolls_to_tomorrow(self):
        at_time = datetime(2026, 3, 4, 1, 0, tzinfo=local_tz())
        assert seconds_until(time(1, 0), at_time) == 24 * 3600
        later = datetime(2026, 3, 4, 2, 0, tzinfo=local_tz())
        assert seconds_until(time(1, 0), later) == 23 * 3600


class TestDailyScheduler:
    async def test_start_and_stop(self):
        sched = DailyScheduler(StubJobRunner())
        sched.start()
        sched.start()
        assert len(sched._tasks) == 2
        await sched.stop()
        assert sched._tasks == []

    async def test_loop_survives_a_failing_job(self, monkeypatch):
        monkeypatch.setattr(scheduler_module, "seconds_until", lambda at, now: 0)
        calls: list[int] = []
        done = asyncio.Event()

        async def job():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("source down")
            done.set()

        sched = DailyScheduler(StubJobRunner())
        task = asyncio.create_task(sched._loop("test job", time(1, 0), job))
        await asyncio.wait_for(done.wait(), timeout=1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(calls) >= 2
