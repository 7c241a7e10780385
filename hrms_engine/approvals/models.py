"""Approval ORM models: ApprovalRequest and its Leave / OvertimeClaim /
OutdoorDuty payloads, stored single-table on ``approval_requests``.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from hrms_engine.common.constants import (
    HalfDaySession,
    LeaveType,
    OvertimeTrack,
    RequestKind,
    RequestState,
    StageStatus,
)
from hrms_engine.database import Base, enum_type


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _stage_column() -> Mapped[StageStatus]:
    return mapped_column(
        enum_type(StageStatus, "stage_status"),
        nullable=False,
        default=StageStatus.pending,
    )


# ═════════════════════════════════════════════════════════════════════
# ApprovalRequest (base)
# ═════════════════════════════════════════════════════════════════════


class ApprovalRequest(Base):
    """A request moving through the HOD / Admin / CEO approval stages."""

    __tablename__ = "approval_requests"
    __table_args__ = (
        sa.Index("ix_approval_requests_employee_kind", "employee_id", "kind"),
        sa.Index("ix_approval_requests_state", "state"),
        sa.Index("ix_approval_requests_department", "department_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    kind: Mapped[RequestKind] = mapped_column(
        enum_type(RequestKind, "request_kind"), nullable=False,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"), nullable=False,
    )
    submitted_by: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"), nullable=False,
    )
    department_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("departments.id"),
    )

    # ── Stages ──────────────────────────────────────────────────────
    hod_status: Mapped[StageStatus] = _stage_column()
    admin_status: Mapped[StageStatus] = _stage_column()
    ceo_status: Mapped[StageStatus] = _stage_column()
    state: Mapped[RequestState] = mapped_column(
        enum_type(RequestState, "request_state"),
        nullable=False,
        default=RequestState.created,
    )

    # Set once, when the terminal ledger mutation has run
    ledger_applied_at: Mapped[Optional[datetime]] = mapped_column(
        sa.DateTime(timezone=True),
    )
    decided_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    decided_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"),
    )
    remarks: Mapped[Optional[str]] = mapped_column(sa.Text)

    version_id: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow,
    )

    __mapper_args__ = {
        "polymorphic_on": kind,
        "version_id_col": version_id,
    }

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id} {self.state.value}>"


# ═════════════════════════════════════════════════════════════════════
# Payloads
# ═════════════════════════════════════════════════════════════════════


class LeaveRequest(ApprovalRequest):
    __mapper_args__ = {
        "polymorphic_identity": RequestKind.leave,
        "polymorphic_load": "inline",
    }

    leave_type: Mapped[Optional[LeaveType]] = mapped_column(
        enum_type(LeaveType, "leave_type"), nullable=True,
    )
    half_day_session: Mapped[Optional[HalfDaySession]] = mapped_column(
        enum_type(HalfDaySession, "half_day_session"), nullable=True,
    )
    start_date: Mapped[Optional[date]] = mapped_column(sa.Date, nullable=True)
    end_date: Mapped[Optional[date]] = mapped_column(sa.Date, nullable=True)
    total_days: Mapped[Optional[Decimal]] = mapped_column(sa.Numeric(4, 1), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    charge_given_to: Mapped[Optional[str]] = mapped_column(sa.String(150), nullable=True)
    emergency_contact: Mapped[Optional[str]] = mapped_column(sa.String(50), nullable=True)
    compensatory_entry_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("compensatory_entries.id"), nullable=True,
    )

    @property
    def compensatory_hours_needed(self) -> Decimal:
        return Decimal(self.total_days or 0) * 8


class OvertimeClaim(ApprovalRequest):
    __mapper_args__ = {
        "polymorphic_identity": RequestKind.overtime_claim,
        "polymorphic_load": "inline",
    }

    ot_date: Mapped[Optional[date]] = mapped_column(sa.Date, nullable=True)
    ot_hours: Mapped[Optional[Decimal]] = mapped_column(sa.Numeric(4, 2), nullable=True)
    project_details: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    track: Mapped[Optional[OvertimeTrack]] = mapped_column(
        enum_type(OvertimeTrack, "overtime_track"), nullable=True,
    )
    attendance_record_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("attendance_records.id"), nullable=True,
    )
    compensatory_hours: Mapped[Optional[Decimal]] = mapped_column(
        sa.Numeric(4, 1), nullable=True,
    )
    payment_amount: Mapped[Optional[Decimal]] = mapped_column(
        sa.Numeric(10, 2), nullable=True,
    )


class OutdoorDuty(ApprovalRequest):
    __mapper_args__ = {
        "polymorphic_identity": RequestKind.outdoor_duty,
        "polymorphic_load": "inline",
    }

    date_out: Mapped[Optional[date]] = mapped_column(sa.Date, nullable=True)
    time_out: Mapped[Optional[time]] = mapped_column(sa.Time, nullable=True)
    date_in: Mapped[Optional[date]] = mapped_column(sa.Date, nullable=True)
    time_in: Mapped[Optional[time]] = mapped_column(sa.Time, nullable=True)
    purpose: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    place_visited: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)
