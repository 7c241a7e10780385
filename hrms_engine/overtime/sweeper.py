"""Unclaimed-overtime sweeper.

Runs daily. Every attendance record whose overtime was neither claimed nor
evaluated before its claim deadline is converted into compensatory credit
(4 h or 8 h buckets) or forfeited, then zeroed.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from hrms_engine.approvals.models import OvertimeClaim
from hrms_engine.attendance.models import AttendanceRecord
from hrms_engine.attendance.schemas import SweepResult
from hrms_engine.common.clock import local_today
from hrms_engine.common.constants import MIN_CLAIMABLE_OT_MINUTES, CompensatorySource
from hrms_engine.common.exceptions import AppException, ValidationException
from hrms_engine.core_hr.models import Department, Employee
from hrms_engine.ledger.service import LedgerService
from hrms_engine.overtime.eligibility import (
    compensatory_bucket,
    is_eligible_department,
    is_sunday,
    last_sweepable_date,
)

logger = logging.getLogger(__name__)


class OvertimeSweeper:
    """Evaluate overtime whose claim window has closed."""

    @staticmethod
    async def _has_claim(db: AsyncSession, record: AttendanceRecord) -> bool:
        # Any claim settles the day, a rejected one included
        result = await db.execute(
            select(OvertimeClaim.id).where(
                OvertimeClaim.employee_id == record.employee_id,
                OvertimeClaim.ot_date == record.work_date,
            )
        )
        return result.first() is not None

    @staticmethod
    async def _evaluate(
        db: AsyncSession,
        record: AttendanceRecord,
        department_name: Optional[str],
        result: SweepResult,
        today: date,
    ) -> None:
        if await OvertimeSweeper._has_claim(db, record):
            result.claimed += 1
        else:
            hours = compensatory_bucket(record.ot_minutes)
            creditable = is_eligible_department(department_name) or is_sunday(record.work_date)
            if hours and creditable:
                try:
                    async with db.begin_nested():
                        await LedgerService.credit_compensatory(
                            db,
                            record.employee_id,
                            Decimal(hours),
                            record.work_date,
                            CompensatorySource.overtime_sweep,
                            today=today,
                        )
                    result.credited += 1
                    result.credited_hours += hours
                except ValidationException as exc:
                    logger.warning(
                        "Forfeiting %d OT minutes for employee %s on %s: %s",
                        record.ot_minutes, record.employee_id, record.work_date, exc.detail,
                    )
                    result.forfeited += 1
            else:
                result.forfeited += 1

        record.ot_minutes = 0
        record.ot_evaluated_at = datetime.now(timezone.utc)
        record.updated_at = datetime.now(timezone.utc)
        await db.flush()

    @staticmethod
    async def sweep(db: AsyncSession, *, today: Optional[date] = None) -> SweepResult:
        today = today or local_today()
        cutoff = last_sweepable_date(today)
        result = SweepResult()

        rows = (
            await db.execute(
                select(AttendanceRecord, Department.name)
                .join(Employee, Employee.id == AttendanceRecord.employee_id)
                .outerjoin(Department, Department.id == Employee.department_id)
                .where(
                    AttendanceRecord.ot_minutes >= MIN_CLAIMABLE_OT_MINUTES,
                    AttendanceRecord.ot_evaluated_at.is_(None),
                    AttendanceRecord.work_date <= cutoff,
                )
                .order_by(AttendanceRecord.work_date, AttendanceRecord.employee_id)
            )
        ).all()
        logger.info("Sweeping %d unclaimed overtime record(s) up to %s", len(rows), cutoff)

        for record, department_name in rows:
            record_id = record.id
            try:
                async with db.begin_nested():
                    await OvertimeSweeper._evaluate(db, record, department_name, result, today)
                result.evaluated += 1
            except (SQLAlchemyError, AppException):
                logger.exception("Failed to sweep overtime record %s", record_id)
                result.failed += 1

        logger.info(
            "Overtime sweep done: evaluated=%d credited=%d (%d h) claimed=%d "
            "forfeited=%d failed=%d",
            result.evaluated, result.credited, result.credited_hours,
            result.claimed, result.forfeited, result.failed,
        )
        return result
