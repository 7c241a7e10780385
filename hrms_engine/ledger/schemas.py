"""Ledger Pydantic v2 schemas — read models for balances and credits."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict

from hrms_engine.common.constants import CompensatorySource, CompensatoryStatus


class CompensatoryEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    work_date: date
    hours: Decimal
    status: CompensatoryStatus
    source: CompensatorySource
    consumed_by_request_id: Optional[uuid.UUID] = None
    consumed_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    created_at: datetime


class LedgerOut(BaseModel):
    """Balances of one employee after lazy accrual and expiry."""

    model_config = ConfigDict(from_attributes=True)

    employee_id: uuid.UUID
    paid_leave_balance: Decimal
    unpaid_leave_taken: Decimal
    compensatory_balance_hours: Decimal
    last_paid_leave_reset_at: Optional[date] = None
    last_monthly_leave_credit_at: Optional[date] = None
    entries: list[CompensatoryEntryOut] = []
