"""Attendance service layer — punch reconciliation and attendance reads.

Business logic:
  - Normalise raw time-clock rows (int seconds, HH:MM, HH:MM:SS, ISO datetime)
  - Deduplicate punches in memory and against the raw punch store
  - Fold each employee-day into one AttendanceRecord (first punch in, last out)
  - Work and overtime minutes (all minutes on Sunday, beyond 8 h otherwise)
  - Incremental fetch window driven by the attendanceSync watermark
  - Unmatched punches kept for a retention window, then purged
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from hrms_engine.attendance.models import AttendanceRecord, RawPunch, SyncMetadata
from hrms_engine.attendance.schemas import (
    AttendanceRecordOut,
    SyncResult,
    UnclaimedOvertimeOut,
)
from hrms_engine.attendance.source import PunchRow, PunchSource
from hrms_engine.common.clock import local_now
from hrms_engine.common.constants import (
    ATTENDANCE_SYNC_JOB,
    MIN_CLAIMABLE_OT_MINUTES,
    TIME_FORMAT,
    AttendanceStatus,
    PunchDirection,
)
from hrms_engine.common.exceptions import AppException, ExternalSourceException
from hrms_engine.common.filters import apply_filters, scope_to_actor
from hrms_engine.common.pagination import PaginationMeta, PaginationParams, paginate
from hrms_engine.config import settings
from hrms_engine.core_hr.models import Employee
from hrms_engine.overtime.eligibility import claim_deadline, claim_window_open, is_sunday

logger = logging.getLogger(__name__)

_DIRECTIONS = {d.value: d for d in PunchDirection}


# ═════════════════════════════════════════════════════════════════════
# Normalisation
# ═════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class NormalisedPunch:
    external_user_id: str
    log_date: date
    log_time: str
    direction: PunchDirection

    @property
    def key(self) -> tuple[str, date, str, PunchDirection]:
        return (self.external_user_id, self.log_date, self.log_time, self.direction)


def _parse_log_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            return date.fromisoformat(text[:10])
        except ValueError:
            return None
    return None


def _parse_log_time(value: Any) -> Optional[str]:
    """Return the time of day as HH:MM:SS, or None if it cannot be read."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        if not 0 <= value < 24 * 3600:
            return None
        hours, rest = divmod(value, 3600)
        minutes, seconds = divmod(rest, 60)
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
    if isinstance(value, datetime):
        return value.strftime(TIME_FORMAT)
    if isinstance(value, time):
        return value.strftime(TIME_FORMAT)
    if isinstance(value, str):
        text = value.strip()
        if "T" in text or " " in text:
            try:
                return datetime.fromisoformat(text.replace("Z", "+00:00")).strftime(TIME_FORMAT)
            except ValueError:
                return None
        for fmt in (TIME_FORMAT, "%H:%M"):
            try:
                return datetime.strptime(text, fmt).strftime(TIME_FORMAT)
            except ValueError:
                continue
    return None


def normalise_punch(row: PunchRow) -> Optional[NormalisedPunch]:
    """Convert one source row into a NormalisedPunch; None when unusable."""
    user_id = row.get("UserID")
    user_id = str(user_id).strip() if user_id is not None else ""
    log_date = _parse_log_date(row.get("LogDate"))
    log_time = _parse_log_time(row.get("LogTime"))
    if not user_id or log_date is None or log_time is None:
        return None

    raw_direction = str(row.get("Direction") or PunchDirection.punch_out.value).strip().lower()
    direction = _DIRECTIONS.get(raw_direction, PunchDirection.punch_out)
    return NormalisedPunch(user_id, log_date, log_time, direction)


def _to_time(log_time: str) -> time:
    return datetime.strptime(log_time, TIME_FORMAT).time()


def compute_minutes(work_date: date, time_in: time, time_out: time) -> tuple[int, int]:
    """Return (total_work_minutes, ot_minutes) for one day."""
    start = datetime.combine(work_date, time_in)
    end = datetime.combine(work_date, time_out)
    total = max(int((end - start).total_seconds() // 60), 0)
    if is_sunday(work_date):
        return total, total
    return total, max(total - settings.STANDARD_WORK_MINUTES, 0)


# ═════════════════════════════════════════════════════════════════════
# PunchReconciler
# ═════════════════════════════════════════════════════════════════════


class PunchReconciler:
    """Fetch → dedupe → fold raw punches into daily attendance records."""

    @staticmethod
    async def _get_metadata(db: AsyncSession) -> SyncMetadata:
        result = await db.execute(
            select(SyncMetadata).where(SyncMetadata.name == ATTENDANCE_SYNC_JOB)
        )
        meta = result.scalars().first()
        if meta is None:
            meta = SyncMetadata(name=ATTENDANCE_SYNC_JOB)
            db.add(meta)
        return meta

    @staticmethod
    def _window(meta: SyncMetadata, now: datetime) -> tuple[date, date]:
        today = now.date()
        if meta.last_synced_at is None:
            return today - timedelta(days=1), today
        return min(meta.last_synced_at.date(), today), today

    @staticmethod
    async def _insert_new(
        db: AsyncSession,
        punches: Sequence[NormalisedPunch],
        result: SyncResult,
    ) -> None:
        unique: dict[tuple, NormalisedPunch] = {}
        for punch in punches:
            unique.setdefault(punch.key, punch)
        result.duplicates += len(punches) - len(unique)
        if not unique:
            return

        user_ids = {p.external_user_id for p in unique.values()}
        dates = [p.log_date for p in unique.values()]
        existing_rows = await db.execute(
            select(
                RawPunch.external_user_id,
                RawPunch.log_date,
                RawPunch.log_time,
                RawPunch.direction,
            ).where(
                RawPunch.external_user_id.in_(user_ids),
                RawPunch.log_date >= min(dates),
                RawPunch.log_date <= max(dates),
            )
        )
        existing = {tuple(row) for row in existing_rows.all()}

        for key, punch in unique.items():
            if key in existing:
                result.duplicates += 1
                continue
            db.add(
                RawPunch(
                    external_user_id=punch.external_user_id,
                    log_date=punch.log_date,
                    log_time=punch.log_time,
                    direction=punch.direction,
                    processed=False,
                )
            )
            result.inserted += 1
        await db.flush()

    @staticmethod
    async def _fold_group(
        db: AsyncSession,
        employee: Employee,
        work_date: date,
        punches: list[RawPunch],
    ) -> AttendanceRecord:
        punches.sort(key=lambda p: p.log_time)
        first_in = _to_time(punches[0].log_time)
        last_out = _to_time(punches[-1].log_time)

        record = (
            await db.execute(
                select(AttendanceRecord).where(
                    AttendanceRecord.employee_id == employee.id,
                    AttendanceRecord.work_date == work_date,
                )
            )
        ).scalars().first()

        if record is None:
            record = AttendanceRecord(
                employee_id=employee.id,
                work_date=work_date,
                source="biometric",
            )
            db.add(record)
        else:
            if record.time_in is not None:
                first_in = min(first_in, record.time_in)
            if record.time_out is not None:
                last_out = max(last_out, record.time_out)

        total, overtime = compute_minutes(work_date, first_in, last_out)
        record.time_in = first_in
        record.time_out = last_out
        record.status = AttendanceStatus.present
        record.total_work_minutes = total
        # Evaluated overtime has been claimed, swept or forfeited already
        if record.ot_evaluated_at is None:
            record.ot_minutes = overtime
        record.updated_at = datetime.now(timezone.utc)

        for punch in punches:
            punch.processed = True
        await db.flush()
        return record

    @staticmethod
    async def fold_pending(db: AsyncSession, result: SyncResult) -> None:
        """Fold every unprocessed raw punch whose user is on the roster."""
        pending = (
            await db.execute(select(RawPunch).where(RawPunch.processed.is_(False)))
        ).scalars().all()

        groups: dict[tuple[str, date], list[RawPunch]] = defaultdict(list)
        for punch in pending:
            groups[(punch.external_user_id, punch.log_date)].append(punch)
        if not groups:
            return

        user_ids = {user_id for user_id, _ in groups}
        roster = (
            await db.execute(
                select(Employee).where(Employee.biometric_user_id.in_(user_ids))
            )
        ).scalars().all()
        by_user = {emp.biometric_user_id: emp for emp in roster}

        for (user_id, work_date), punches in sorted(groups.items()):
            employee = by_user.get(user_id)
            if employee is None:
                logger.warning("No employee found for time-clock user %s (%s)", user_id, work_date)
                result.unmatched += 1
                continue
            employee_code = employee.employee_code
            try:
                async with db.begin_nested():
                    await PunchReconciler._fold_group(db, employee, work_date, punches)
                result.folded += 1
            except SQLAlchemyError:
                logger.exception(
                    "Failed to fold punches for %s on %s", employee_code, work_date,
                )
                result.failed += 1

    @staticmethod
    async def purge_unmatched(db: AsyncSession, today: date, result: SyncResult) -> None:
        """Drop unprocessed punches older than UNMATCHED_PUNCH_RETENTION_DAYS."""
        cutoff = today - timedelta(days=settings.UNMATCHED_PUNCH_RETENTION_DAYS)
        purged = await db.execute(
            delete(RawPunch).where(
                RawPunch.processed.is_(False),
                RawPunch.log_date < cutoff,
            )
        )
        result.purged = purged.rowcount or 0
        if result.purged:
            logger.warning(
                "Purged %d unmatched punch(es) dated before %s", result.purged, cutoff,
            )

    @staticmethod
    async def sync(
        db: AsyncSession,
        source: PunchSource,
        *,
        now: Optional[datetime] = None,
    ) -> SyncResult:
        """Run one incremental reconciliation against *source*.

        Raises ExternalSourceException, before anything is written, when the
        source fails or does not answer within PUNCH_SOURCE_TIMEOUT_SECONDS.
        """
        now = now or local_now()
        meta = await PunchReconciler._get_metadata(db)
        from_date, to_date = PunchReconciler._window(meta, now)
        result = SyncResult(from_date=from_date, to_date=to_date)
        logger.info("Syncing attendance from %s to %s", from_date, to_date)

        source_name = getattr(source, "name", type(source).__name__)
        try:
            rows = await asyncio.wait_for(
                source.fetch(from_date, to_date),
                timeout=settings.PUNCH_SOURCE_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as exc:
            raise ExternalSourceException(
                source_name,
                f"no answer within {settings.PUNCH_SOURCE_TIMEOUT_SECONDS}s",
            ) from exc
        except AppException:
            raise
        except Exception as exc:
            raise ExternalSourceException(
                source_name, f"{type(exc).__name__}: {exc}",
            ) from exc

        result.fetched = len(rows)
        punches: list[NormalisedPunch] = []
        for row in rows:
            punch = normalise_punch(row)
            if punch is None:
                logger.warning("Dropping unreadable punch row: %r", row)
                result.dropped += 1
                continue
            punches.append(punch)

        await PunchReconciler._insert_new(db, punches, result)
        await PunchReconciler.fold_pending(db, result)
        await PunchReconciler.purge_unmatched(db, now.date(), result)

        await db.execute(delete(RawPunch).where(RawPunch.processed.is_(True)))
        meta.last_synced_at = now
        meta.last_status = "failed" if result.failed else "ok"
        meta.last_error = None
        meta.updated_at = datetime.now(timezone.utc)
        await db.flush()

        logger.info(
            "Attendance sync done: fetched=%d inserted=%d duplicates=%d folded=%d "
            "unmatched=%d purged=%d failed=%d",
            result.fetched, result.inserted, result.duplicates,
            result.folded, result.unmatched, result.purged, result.failed,
        )
        return result

    @staticmethod
    async def record_failure(db: AsyncSession, error: str) -> None:
        """Persist a failed run on the watermark row without moving it."""
        meta = await PunchReconciler._get_metadata(db)
        meta.last_status = "failed"
        meta.last_error = error[:2000]
        meta.updated_at = datetime.now(timezone.utc)
        await db.flush()


# ═════════════════════════════════════════════════════════════════════
# AttendanceService (reads)
# ═════════════════════════════════════════════════════════════════════


class AttendanceService:
    """Role-scoped attendance reads."""

    @staticmethod
    async def list_records(
        db: AsyncSession,
        actor: Employee,
        pagination: PaginationParams,
        *,
        employee_id: Optional[uuid.UUID] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> tuple[list[AttendanceRecordOut], PaginationMeta]:
        query = select(AttendanceRecord).order_by(
            AttendanceRecord.work_date.desc(), AttendanceRecord.employee_id,
        )
        query = scope_to_actor(query, actor, AttendanceRecord.employee_id)
        query = apply_filters(
            query,
            AttendanceRecord,
            {
                "employee_id": employee_id,
                "work_date__from": from_date,
                "work_date__to": to_date,
            },
        )
        rows, meta = await paginate(db, query, pagination)
        return [AttendanceRecordOut.model_validate(r) for r in rows], meta

    @staticmethod
    async def list_unclaimed_overtime(
        db: AsyncSession,
        employee_id: uuid.UUID,
        *,
        now: Optional[datetime] = None,
    ) -> list[UnclaimedOvertimeOut]:
        """Overtime days of *employee_id* that can still be claimed."""
        now = now or local_now()
        earliest = now.date() - timedelta(days=1)
        records: Iterable[AttendanceRecord] = (
            await db.execute(
                select(AttendanceRecord)
                .where(
                    AttendanceRecord.employee_id == employee_id,
                    AttendanceRecord.ot_minutes >= MIN_CLAIMABLE_OT_MINUTES,
                    AttendanceRecord.ot_evaluated_at.is_(None),
                    AttendanceRecord.work_date >= earliest,
                )
                .order_by(AttendanceRecord.work_date)
            )
        ).scalars().all()

        return [
            UnclaimedOvertimeOut(
                attendance_record_id=r.id,
                work_date=r.work_date,
                ot_minutes=r.ot_minutes,
                claim_deadline=claim_deadline(r.work_date),
            )
            for r in records
            if claim_window_open(r.work_date, now)
        ]
