"""Approval Pydantic v2 schemas — submissions, decisions and request views.

Naming conventions:
  - *Create / *In  → request bodies (write)
  - *Out           → response bodies (read)

Only structural checks live here; policy checks (date order, balances,
claim windows) are raised by ApprovalService as domain errors.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from hrms_engine.common.constants import (
    Decision,
    HalfDaySession,
    LeaveType,
    LoginType,
    OvertimeTrack,
    RequestKind,
    RequestState,
    StageStatus,
)


# ═════════════════════════════════════════════════════════════════════
# Submissions
# ═════════════════════════════════════════════════════════════════════


class HalfDayIn(BaseModel):
    leave_date: date
    session: HalfDaySession


class FullDayIn(BaseModel):
    start_date: date
    end_date: date


class LeaveRequestCreate(BaseModel):
    """Exactly one of ``half_day`` / ``full_day`` must be given."""

    leave_type: LeaveType
    half_day: Optional[HalfDayIn] = None
    full_day: Optional[FullDayIn] = None
    reason: str = Field(..., min_length=1, max_length=2000)
    charge_given_to: Optional[str] = Field(None, max_length=150)
    emergency_contact: Optional[str] = Field(None, max_length=50)
    compensatory_entry_id: Optional[uuid.UUID] = None


class OvertimeClaimCreate(BaseModel):
    ot_date: date
    hours: Decimal = Field(..., max_digits=4, decimal_places=2)
    project_details: str = Field(..., min_length=1, max_length=2000)


class OutdoorDutyCreate(BaseModel):
    date_out: date
    time_out: time
    date_in: date
    time_in: time
    purpose: str = Field(..., min_length=1, max_length=2000)
    place_visited: str = Field(..., min_length=1, max_length=255)


class DecisionIn(BaseModel):
    decision: Decision
    remarks: Optional[str] = Field(None, max_length=2000)


# ═════════════════════════════════════════════════════════════════════
# Views
# ═════════════════════════════════════════════════════════════════════


class ApprovalRequestOut(BaseModel):
    """Any request kind; payload fields of other kinds stay null."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    kind: RequestKind
    employee_id: uuid.UUID
    submitted_by: uuid.UUID
    department_id: Optional[uuid.UUID] = None
    hod_status: StageStatus
    admin_status: StageStatus
    ceo_status: StageStatus
    state: RequestState
    awaiting_role: Optional[LoginType] = None
    ledger_applied_at: Optional[datetime] = None
    decided_at: Optional[datetime] = None
    decided_by: Optional[uuid.UUID] = None
    remarks: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    # Leave
    leave_type: Optional[LeaveType] = None
    half_day_session: Optional[HalfDaySession] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    total_days: Optional[Decimal] = None
    reason: Optional[str] = None
    charge_given_to: Optional[str] = None
    emergency_contact: Optional[str] = None
    compensatory_entry_id: Optional[uuid.UUID] = None

    # Overtime claim
    ot_date: Optional[date] = None
    ot_hours: Optional[Decimal] = None
    project_details: Optional[str] = None
    track: Optional[OvertimeTrack] = None
    compensatory_hours: Optional[Decimal] = None
    payment_amount: Optional[Decimal] = None

    # Outdoor duty
    date_out: Optional[date] = None
    time_out: Optional[time] = None
    date_in: Optional[date] = None
    time_in: Optional[time] = None
    purpose: Optional[str] = None
    place_visited: Optional[str] = None
