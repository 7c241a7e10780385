"""Attendance Pydantic v2 schemas — records, sync and sweep reports."""

from __future__ import annotations

import uuid
from datetime import date, datetime, time
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from hrms_engine.common.constants import AttendanceStatus


class AttendanceRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    employee_id: uuid.UUID
    work_date: date
    time_in: Optional[time] = None
    time_out: Optional[time] = None
    total_work_minutes: int
    ot_minutes: int
    status: AttendanceStatus
    source: Optional[str] = None
    ot_evaluated_at: Optional[datetime] = None


class UnclaimedOvertimeOut(BaseModel):
    """Overtime still inside its claim window."""

    attendance_record_id: uuid.UUID
    work_date: date
    ot_minutes: int
    claim_deadline: datetime


class SyncResult(BaseModel):
    """Outcome of one reconciler run."""

    from_date: date
    to_date: date
    fetched: int = 0
    dropped: int = Field(0, description="Rows that could not be normalised")
    duplicates: int = 0
    inserted: int = 0
    folded: int = Field(0, description="Employee-days written to attendance")
    unmatched: int = Field(0, description="Employee-days with no roster match")
    purged: int = Field(0, description="Unmatched punches dropped past retention")
    failed: int = 0


class SweepResult(BaseModel):
    """Outcome of one unclaimed-overtime sweep."""

    evaluated: int = 0
    credited: int = 0
    credited_hours: int = 0
    claimed: int = 0
    forfeited: int = 0
    failed: int = 0
