"""Overtime policy: claim window, conversion track and payment amount."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from hrms_engine.common.clock import local_now, local_tz
from hrms_engine.common.constants import SUNDAY, OvertimeTrack
from hrms_engine.config import settings

FULL_DAY_BUCKET_MINUTES = 8 * 60
HALF_DAY_BUCKET_MINUTES = 4 * 60


def is_sunday(day: date) -> bool:
    return day.weekday() == SUNDAY


def is_eligible_department(department_name: Optional[str]) -> bool:
    """Departments on the compensatory track (case-insensitive match)."""
    if not department_name:
        return False
    return department_name.strip().lower() in settings.ot_eligible_departments


def overtime_track(department_name: Optional[str], ot_date: date) -> Optional[OvertimeTrack]:
    """Track a claim for *ot_date* would take, or None if it cannot be claimed.

    Non-eligible departments are paid, and only for work on a Sunday.
    """
    if is_eligible_department(department_name):
        return OvertimeTrack.compensatory
    if is_sunday(ot_date):
        return OvertimeTrack.payment
    return None


def claim_deadline(ot_date: date) -> datetime:
    """23:59:59 local time on the day after the overtime."""
    return datetime.combine(ot_date + timedelta(days=1), time(23, 59, 59), tzinfo=local_tz())


def claim_window_open(ot_date: date, now: Optional[datetime] = None) -> bool:
    return (now or local_now()) <= claim_deadline(ot_date)


def last_sweepable_date(today: date) -> date:
    """Latest overtime date whose claim window has closed by the start of *today*."""
    return today - timedelta(days=2)


def compensatory_bucket(ot_minutes: int) -> int:
    """Hours of compensatory credit for unclaimed overtime: 8, 4 or 0."""
    if ot_minutes >= FULL_DAY_BUCKET_MINUTES:
        return 8
    if ot_minutes >= HALF_DAY_BUCKET_MINUTES:
        return 4
    return 0


def overtime_payment(hours: Decimal) -> Decimal:
    """Payment-track amount: hours × hourly rate × multiplier."""
    amount = (
        Decimal(hours)
        * Decimal(str(settings.OT_HOURLY_RATE))
        * Decimal(str(settings.OT_PAY_MULTIPLIER))
    )
    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
