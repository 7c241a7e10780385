"""Ledger ORM models: CompensatoryEntry."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from hrms_engine.common.constants import CompensatorySource, CompensatoryStatus
from hrms_engine.database import Base, enum_type


class CompensatoryEntry(Base):
    """Compensatory-leave credit earned from overtime on a given work date."""

    __tablename__ = "compensatory_entries"
    __table_args__ = (
        sa.CheckConstraint("hours > 0", name="ck_comp_entry_hours_positive"),
        sa.Index("ix_comp_entries_employee_status", "employee_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"), nullable=False,
    )
    work_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    hours: Mapped[Decimal] = mapped_column(sa.Numeric(4, 1), nullable=False)
    status: Mapped[CompensatoryStatus] = mapped_column(
        enum_type(CompensatoryStatus, "compensatory_status"),
        nullable=False,
        default=CompensatoryStatus.available,
    )
    source: Mapped[CompensatorySource] = mapped_column(
        enum_type(CompensatorySource, "compensatory_source"),
        nullable=False,
    )
    source_request_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
    )
    consumed_by_request_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
    )
    consumed_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    expired_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<CompensatoryEntry {self.work_date} {self.hours}h {self.status.value}>"
