"""Attendance ORM models: RawPunch, AttendanceRecord, SyncMetadata, JobLease."""

from __future__ import annotations

import uuid
from datetime import date, datetime, time, timezone
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from hrms_engine.common.constants import AttendanceStatus, PunchDirection
from hrms_engine.database import Base, enum_type


class RawPunch(Base):
    """A single time-clock event, kept only until it has been folded."""

    __tablename__ = "raw_punches"
    __table_args__ = (
        sa.UniqueConstraint(
            "external_user_id", "log_date", "log_time", "direction",
            name="uq_raw_punch_event",
        ),
        sa.Index("ix_raw_punches_unprocessed", "processed", "external_user_id", "log_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    external_user_id: Mapped[str] = mapped_column(sa.String(50), nullable=False)
    log_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    # Local clock face, HH:MM:SS
    log_time: Mapped[str] = mapped_column(sa.String(8), nullable=False)
    direction: Mapped[PunchDirection] = mapped_column(
        enum_type(PunchDirection, "punch_direction"),
        nullable=False,
        default=PunchDirection.punch_out,
    )
    processed: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


class AttendanceRecord(Base):
    """One aggregate row per employee per day."""

    __tablename__ = "attendance_records"
    __table_args__ = (
        sa.UniqueConstraint("employee_id", "work_date", name="uq_attendance_emp_date"),
        sa.CheckConstraint("ot_minutes >= 0", name="ck_attendance_ot_non_negative"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"), nullable=False
    )
    work_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    time_in: Mapped[Optional[time]] = mapped_column(sa.Time)
    time_out: Mapped[Optional[time]] = mapped_column(sa.Time)
    total_work_minutes: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    ot_minutes: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    status: Mapped[AttendanceStatus] = mapped_column(
        enum_type(AttendanceStatus, "attendance_status"),
        nullable=False,
        default=AttendanceStatus.present,
    )
    source: Mapped[str] = mapped_column(sa.String(50), default="biometric")
    # Set once the day's overtime has been claimed, swept or forfeited
    ot_evaluated_at: Mapped[Optional[datetime]] = mapped_column(
        sa.DateTime(timezone=True)
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


class SyncMetadata(Base):
    """Watermark and last outcome of an incremental sync job."""

    __tablename__ = "sync_metadata"

    name: Mapped[str] = mapped_column(sa.String(50), primary_key=True)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(
        sa.DateTime(timezone=True)
    )
    last_status: Mapped[Optional[str]] = mapped_column(sa.String(20))
    last_error: Mapped[Optional[str]] = mapped_column(sa.Text)
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


class JobLease(Base):
    """Cross-process lease held by whichever process is running an engine job."""

    __tablename__ = "job_leases"

    name: Mapped[str] = mapped_column(sa.String(50), primary_key=True)
    holder: Mapped[Optional[str]] = mapped_column(sa.String(120))
    job: Mapped[Optional[str]] = mapped_column(sa.String(50))
    acquired_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    expires_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
