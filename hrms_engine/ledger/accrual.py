"""Lazy paid-leave accrual.

Accrual is evaluated whenever the ledger is touched rather than by a
calendar job, so it is a pure function of today's date, the employee type
and the two watermarks stored on the employee row. Calling it twice on the
same day, or after any number of missed days, gives the same result as a
single call.

Confirmed employees:
    the balance is reset to the annual allotment on the first touch of each
    calendar year.
Interns, contractual and probation employees:
    the monthly credit is added once for every calendar month elapsed since
    the last credit; an employee that was never credited gets one credit
    for the current month.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

from hrms_engine.common.constants import EmployeeType
from hrms_engine.config import settings


@dataclass(frozen=True)
class AccrualResult:
    balance: Decimal
    last_reset: Optional[date]
    last_monthly_credit: Optional[date]
    credited: Decimal


def _months_between(earlier: date, later: date) -> int:
    return (later.year - earlier.year) * 12 + (later.month - earlier.month)


def compute_accrual(
    today: date,
    employee_type: EmployeeType,
    balance: Decimal,
    last_reset: Optional[date],
    last_monthly_credit: Optional[date],
    *,
    annual_allotment: Optional[int] = None,
    monthly_credit: Optional[int] = None,
) -> AccrualResult:
    """Return the balance and watermarks after accruing up to *today*.

    ``credited`` is the signed difference applied to the balance; a yearly
    reset can lower the balance when the carried-over amount exceeds the
    allotment.
    """
    allotment = Decimal(
        settings.ANNUAL_PAID_LEAVE_ALLOTMENT if annual_allotment is None else annual_allotment
    )
    per_month = Decimal(
        settings.MONTHLY_PAID_LEAVE_CREDIT if monthly_credit is None else monthly_credit
    )

    if employee_type == EmployeeType.confirmed:
        if last_reset is not None and last_reset.year >= today.year:
            return AccrualResult(balance, last_reset, last_monthly_credit, Decimal("0"))
        return AccrualResult(
            balance=allotment,
            last_reset=today,
            last_monthly_credit=last_monthly_credit,
            credited=allotment - balance,
        )

    if last_monthly_credit is None:
        months = 1
    else:
        months = max(_months_between(last_monthly_credit, today), 0)

    if months == 0:
        return AccrualResult(balance, last_reset, last_monthly_credit, Decimal("0"))

    credited = per_month * months
    return AccrualResult(
        balance=balance + credited,
        last_reset=last_reset,
        last_monthly_credit=today,
        credited=credited,
    )
