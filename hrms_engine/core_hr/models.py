"""Core HR ORM models: Department, Employee.

The employee row doubles as the leave ledger: paid / unpaid balances and the
compensatory total live here and are mutated only through LedgerService.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hrms_engine.common.constants import EmployeeType, LoginType
from hrms_engine.database import Base, enum_type


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════
# Department
# ═════════════════════════════════════════════════════════════════════


class Department(Base):
    """Organisational department; its name decides the overtime track."""

    __tablename__ = "departments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(sa.String(150), unique=True, nullable=False)
    code: Mapped[Optional[str]] = mapped_column(sa.String(20), unique=True)
    is_active: Mapped[bool] = mapped_column(
        sa.Boolean, default=True, server_default=sa.text("TRUE"),
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow,
    )

    # ── Relationships ───────────────────────────────────────────────
    employees: Mapped[list[Employee]] = relationship(
        back_populates="department", foreign_keys="Employee.department_id",
    )

    def __repr__(self) -> str:
        return f"<Department {self.name!r} ({self.code})>"


# ═════════════════════════════════════════════════════════════════════
# Employee
# ═════════════════════════════════════════════════════════════════════


class Employee(Base):
    """Employee roster entry plus the per-employee leave ledger."""

    __tablename__ = "employees"
    __table_args__ = (
        sa.CheckConstraint("paid_leave_balance >= 0", name="ck_paid_balance_non_negative"),
        sa.CheckConstraint("unpaid_leave_taken >= 0", name="ck_unpaid_taken_non_negative"),
        sa.CheckConstraint(
            "compensatory_balance_hours >= 0", name="ck_comp_balance_non_negative",
        ),
    )

    # ── Primary key ─────────────────────────────────────────────────
    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # ── Identifiers ─────────────────────────────────────────────────
    employee_code: Mapped[str] = mapped_column(
        sa.String(20), unique=True, nullable=False,
    )
    # Time-clock user id as reported by the biometric device
    biometric_user_id: Mapped[Optional[str]] = mapped_column(
        sa.String(50), unique=True,
    )
    email: Mapped[str] = mapped_column(
        sa.String(255), unique=True, nullable=False,
    )

    # ── Name ────────────────────────────────────────────────────────
    first_name: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(sa.String(100), nullable=False)

    # ── Organisation ────────────────────────────────────────────────
    login_type: Mapped[LoginType] = mapped_column(
        enum_type(LoginType, "login_type"),
        nullable=False,
        default=LoginType.employee,
    )
    employee_type: Mapped[EmployeeType] = mapped_column(
        enum_type(EmployeeType, "employee_type"),
        nullable=False,
        default=EmployeeType.confirmed,
    )
    department_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("departments.id"),
    )
    reporting_manager_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"),
    )
    date_of_joining: Mapped[Optional[date]] = mapped_column(sa.Date)
    is_active: Mapped[bool] = mapped_column(
        sa.Boolean, default=True, server_default=sa.text("TRUE"),
    )

    # ── Ledger ──────────────────────────────────────────────────────
    paid_leave_balance: Mapped[Decimal] = mapped_column(
        sa.Numeric(5, 1), nullable=False, default=Decimal("0"),
    )
    unpaid_leave_taken: Mapped[Decimal] = mapped_column(
        sa.Numeric(5, 1), nullable=False, default=Decimal("0"),
    )
    compensatory_balance_hours: Mapped[Decimal] = mapped_column(
        sa.Numeric(5, 1), nullable=False, default=Decimal("0"),
    )
    last_paid_leave_reset_at: Mapped[Optional[date]] = mapped_column(sa.Date)
    last_monthly_leave_credit_at: Mapped[Optional[date]] = mapped_column(sa.Date)

    # ── Optimistic lock ─────────────────────────────────────────────
    version_id: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=1)

    # ── Timestamps ──────────────────────────────────────────────────
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow,
    )

    __mapper_args__ = {"version_id_col": version_id}

    # ── Relationships ───────────────────────────────────────────────
    department: Mapped[Optional[Department]] = relationship(
        back_populates="employees", foreign_keys=[department_id],
    )

    def __repr__(self) -> str:
        return f"<Employee {self.employee_code} {self.login_type.value}>"
