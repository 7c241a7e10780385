"""Attendance router — records, claimable overtime and manual job triggers.

All endpoints require authentication. Job triggers are Admin / CEO only
and share the scheduler's single-flight guard.
"""


import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from hrms_engine.attendance.schemas import (
    AttendanceRecordOut,
    SweepResult,
    SyncResult,
    UnclaimedOvertimeOut,
)
from hrms_engine.attendance.service import AttendanceService
from hrms_engine.auth.dependencies import get_current_user, require_role
from hrms_engine.common.constants import LoginType
from hrms_engine.common.exceptions import ConflictError
from hrms_engine.common.pagination import PaginatedResponse, PaginationParams
from hrms_engine.common.rate_limit import limiter
from hrms_engine.core_hr.models import Employee
from hrms_engine.database import get_db
from hrms_engine.scheduler import JobRunner

router = APIRouter(prefix="", tags=["attendance"])


def _jobs(request: Request) -> JobRunner:
    return request.app.state.jobs


# ── GET / ───────────────────────────────────────────────────────────

@router.get("", response_model=PaginatedResponse[AttendanceRecordOut])
async def list_records(
    employee_id: Optional[uuid.UUID] = Query(None),
    from_date: Optional[date] = Query(None),
    to_date: Optional[date] = Query(None),
    pagination: PaginationParams = Depends(),
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Daily records visible to the caller, newest first."""
    data, meta = await AttendanceService.list_records(
        db, employee, pagination,
        employee_id=employee_id, from_date=from_date, to_date=to_date,
    )
    return PaginatedResponse(data=data, meta=meta)


# ── GET /unclaimed-overtime ─────────────────────────────────────────

@router.get("/unclaimed-overtime", response_model=list[UnclaimedOvertimeOut])
async def unclaimed_overtime(
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Caller's overtime days still inside the claim window."""
    return await AttendanceService.list_unclaimed_overtime(db, employee.id)


# ── POST /sync ──────────────────────────────────────────────────────

@router.post("/sync", response_model=SyncResult)
@limiter.limit("5/minute")
async def trigger_sync(
    request: Request,
    employee: Employee = Depends(require_role(LoginType.admin, LoginType.ceo)),
):
    """Run the punch reconciler now."""
    result = await _jobs(request).run_attendance_sync()
    if result is None:
        raise ConflictError("Another attendance job is already running.")
    return result


# ── POST /sweep-overtime ────────────────────────────────────────────

@router.post("/sweep-overtime", response_model=SweepResult)
@limiter.limit("5/minute")
async def trigger_sweep(
    request: Request,
    employee: Employee = Depends(require_role(LoginType.admin, LoginType.ceo)),
):
    """Run the unclaimed-overtime sweeper now."""
    result = await _jobs(request).run_overtime_sweep()
    if result is None:
        raise ConflictError("Another attendance job is already running.")
    return result
