"""Enums and constants shared by the attendance, ledger and approval modules."""

from __future__ import annotations

import enum
from decimal import Decimal


# ── Employee / Roles ────────────────────────────────────────────────

class LoginType(str, enum.Enum):
    employee = "Employee"
    hod = "HOD"
    admin = "Admin"
    ceo = "CEO"


# Higher rank may pre-approve every stage at or below it
ROLE_RANK: dict[LoginType, int] = {
    LoginType.employee: 0,
    LoginType.hod: 1,
    LoginType.admin: 2,
    LoginType.ceo: 3,
}


class EmployeeType(str, enum.Enum):
    intern = "Intern"
    confirmed = "Confirmed"
    contractual = "Contractual"
    probation = "Probation"


# ── Ledger ──────────────────────────────────────────────────────────

class CompensatoryStatus(str, enum.Enum):
    available = "Available"
    consumed = "Consumed"
    expired = "Expired"


class CompensatorySource(str, enum.Enum):
    overtime_claim = "overtime_claim"
    overtime_sweep = "overtime_sweep"
    manual = "manual"


FULL_DAY_HOURS = Decimal("8")


# ── Attendance ──────────────────────────────────────────────────────

class PunchDirection(str, enum.Enum):
    punch_in = "in"
    punch_out = "out"


class AttendanceStatus(str, enum.Enum):
    present = "Present"
    absent = "Absent"


SUNDAY = 6  # date.weekday()
MIN_CLAIMABLE_OT_MINUTES = 60


# ── Requests / Approvals ────────────────────────────────────────────

class RequestKind(str, enum.Enum):
    leave = "leave"
    overtime_claim = "overtime_claim"
    outdoor_duty = "outdoor_duty"


class StageStatus(str, enum.Enum):
    pending = "Pending"
    approved = "Approved"
    rejected = "Rejected"
    acknowledged = "Acknowledged"


class RequestState(str, enum.Enum):
    created = "created"
    stage1_pending = "stage1_pending"
    stage2_pending = "stage2_pending"
    stage3_pending = "stage3_pending"
    approved = "approved"
    rejected = "rejected"
    acknowledged = "acknowledged"


TERMINAL_STATES = frozenset(
    {RequestState.approved, RequestState.rejected, RequestState.acknowledged}
)


class Decision(str, enum.Enum):
    approve = "approve"
    reject = "reject"
    acknowledge = "acknowledge"


class LeaveType(str, enum.Enum):
    casual = "Casual"
    compensatory = "Compensatory"
    leave_without_pay = "LeaveWithoutPay"


# Leave types drawn from paid_leave_balance
PAID_LEAVE_TYPES = frozenset({LeaveType.casual})


class HalfDaySession(str, enum.Enum):
    forenoon = "forenoon"
    afternoon = "afternoon"


class OvertimeTrack(str, enum.Enum):
    compensatory = "compensatory"
    payment = "payment"


# ── Notifications ───────────────────────────────────────────────────

class NotificationType(str, enum.Enum):
    info = "info"
    action_required = "action_required"
    approval = "approval"
    alert = "alert"


# ── Misc constants ──────────────────────────────────────────────────

TIME_FORMAT = "%H:%M:%S"
MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50
ATTENDANCE_SYNC_JOB = "attendanceSync"
ENGINE_JOBS_LEASE = "engineJobs"
