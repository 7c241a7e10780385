"""Ledger service layer — paid, unpaid and compensatory balances.

Business logic:
  - Lazy accrual and compensatory expiry on every ledger touch
  - Paid-leave deduction with balance check and zero floor
  - Unpaid-leave accounting
  - Compensatory credit (40 h ceiling) and exact-hours consumption
  - Consecutive paid-leave cap across approved requests

Every mutating operation locks the employee row first, so the
check-then-mutate sequence is one atomic step inside the caller's
transaction.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from hrms_engine.approvals.models import LeaveRequest
from hrms_engine.common.audit import create_audit_entry
from hrms_engine.common.clock import local_today
from hrms_engine.common.constants import (
    PAID_LEAVE_TYPES,
    CompensatorySource,
    CompensatoryStatus,
    RequestState,
)
from hrms_engine.common.exceptions import (
    ConflictError,
    InsufficientBalanceException,
    NotFoundException,
    ValidationException,
)
from hrms_engine.config import settings
from hrms_engine.core_hr.models import Employee
from hrms_engine.ledger.accrual import compute_accrual
from hrms_engine.ledger.models import CompensatoryEntry
from hrms_engine.ledger.schemas import CompensatoryEntryOut, LedgerOut

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


def _as_decimal(value) -> Decimal:
    if value is None:
        return _ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _date_range(start: date, end: date) -> list[date]:
    return [start + timedelta(days=i) for i in range((end - start).days + 1)]


# ═════════════════════════════════════════════════════════════════════
# LedgerService
# ═════════════════════════════════════════════════════════════════════


class LedgerService:
    """Async ledger operations on the employee balance columns."""

    # ─────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _lock_employee(db: AsyncSession, employee_id: uuid.UUID) -> Employee:
        result = await db.execute(
            select(Employee)
            .where(Employee.id == employee_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        employee = result.scalars().first()
        if employee is None:
            raise NotFoundException("Employee", employee_id)
        return employee

    @staticmethod
    async def _flush(db: AsyncSession) -> None:
        try:
            await db.flush()
        except StaleDataError as exc:
            raise ConflictError(
                "The employee ledger was changed concurrently; retry the operation.",
            ) from exc

    @staticmethod
    async def _available_hours(db: AsyncSession, employee_id: uuid.UUID) -> Decimal:
        result = await db.execute(
            select(func.coalesce(func.sum(CompensatoryEntry.hours), 0)).where(
                CompensatoryEntry.employee_id == employee_id,
                CompensatoryEntry.status == CompensatoryStatus.available,
            )
        )
        return _as_decimal(result.scalar_one())

    @staticmethod
    async def _sync_compensatory_total(db: AsyncSession, employee: Employee) -> None:
        await LedgerService._flush(db)
        employee.compensatory_balance_hours = await LedgerService._available_hours(
            db, employee.id,
        )

    @staticmethod
    def _apply_accrual(employee: Employee, today: date) -> Decimal:
        result = compute_accrual(
            today,
            employee.employee_type,
            _as_decimal(employee.paid_leave_balance),
            employee.last_paid_leave_reset_at,
            employee.last_monthly_leave_credit_at,
        )
        employee.paid_leave_balance = result.balance
        employee.last_paid_leave_reset_at = result.last_reset
        employee.last_monthly_leave_credit_at = result.last_monthly_credit
        if result.credited:
            logger.info(
                "Accrued %s paid leave day(s) for %s (balance now %s)",
                result.credited, employee.employee_code, result.balance,
            )
        return result.credited

    @staticmethod
    async def _expire_entries(
        db: AsyncSession, employee: Employee, today: date,
    ) -> int:
        if settings.COMPENSATORY_EXPIRY_DAYS is None:
            return 0
        cutoff = today - timedelta(days=settings.COMPENSATORY_EXPIRY_DAYS)
        result = await db.execute(
            select(CompensatoryEntry).where(
                CompensatoryEntry.employee_id == employee.id,
                CompensatoryEntry.status == CompensatoryStatus.available,
                CompensatoryEntry.work_date < cutoff,
            )
        )
        stale = result.scalars().all()
        now = datetime.now(timezone.utc)
        for entry in stale:
            entry.status = CompensatoryStatus.expired
            entry.expired_at = now
        if stale:
            logger.info(
                "Expired %d compensatory entr(y/ies) for %s",
                len(stale), employee.employee_code,
            )
            await LedgerService._sync_compensatory_total(db, employee)
        return len(stale)

    @staticmethod
    async def _touch(
        db: AsyncSession,
        employee_id: uuid.UUID,
        today: Optional[date] = None,
    ) -> Employee:
        """Lock the employee, then bring accrual and expiry up to date."""
        today = today or local_today()
        employee = await LedgerService._lock_employee(db, employee_id)
        LedgerService._apply_accrual(employee, today)
        await LedgerService._expire_entries(db, employee, today)
        return employee

    # ─────────────────────────────────────────────────────────────────
    # Accrual / expiry
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def accrue(
        db: AsyncSession,
        employee_id: uuid.UUID,
        *,
        today: Optional[date] = None,
    ) -> Employee:
        """Apply any pending accrual; safe to call any number of times."""
        employee = await LedgerService._touch(db, employee_id, today)
        await LedgerService._flush(db)
        return employee

    @staticmethod
    async def expire_compensatory(
        db: AsyncSession,
        employee_id: uuid.UUID,
        *,
        today: Optional[date] = None,
    ) -> int:
        """Mark Available entries older than the expiry window as Expired."""
        employee = await LedgerService._lock_employee(db, employee_id)
        expired = await LedgerService._expire_entries(db, employee, today or local_today())
        await LedgerService._flush(db)
        return expired

    # ─────────────────────────────────────────────────────────────────
    # Paid / unpaid leave
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def check_paid_balance(
        db: AsyncSession,
        employee_id: uuid.UUID,
        days: Decimal,
        *,
        today: Optional[date] = None,
    ) -> Decimal:
        """Raise InsufficientBalanceException unless *days* can be deducted."""
        employee = await LedgerService._touch(db, employee_id, today)
        balance = _as_decimal(employee.paid_leave_balance)
        if days > balance:
            raise InsufficientBalanceException("paid leave", balance, days)
        return balance

    @staticmethod
    async def deduct(
        db: AsyncSession,
        employee_id: uuid.UUID,
        days: Decimal,
        *,
        request_id: Optional[uuid.UUID] = None,
        actor_id: Optional[uuid.UUID] = None,
        today: Optional[date] = None,
    ) -> Employee:
        """Subtract *days* from the paid-leave balance."""
        if days <= 0:
            raise ValidationException({"days": ["Days to deduct must be positive."]})

        employee = await LedgerService._touch(db, employee_id, today)
        old_balance = _as_decimal(employee.paid_leave_balance)
        if days > old_balance:
            raise InsufficientBalanceException("paid leave", old_balance, days)

        new_balance = old_balance - days
        if new_balance < 0:
            logger.warning(
                "Paid leave balance for %s would go negative (%s - %s); clamping to 0",
                employee.employee_code, old_balance, days,
            )
            new_balance = _ZERO
        employee.paid_leave_balance = new_balance
        employee.updated_at = datetime.now(timezone.utc)
        await LedgerService._flush(db)

        await create_audit_entry(
            db,
            action="deduct",
            entity_type="employee_ledger",
            entity_id=employee.id,
            actor_id=actor_id,
            old_values={"paid_leave_balance": str(old_balance)},
            new_values={
                "paid_leave_balance": str(new_balance),
                "request_id": str(request_id) if request_id else None,
            },
        )
        return employee

    @staticmethod
    async def credit_unpaid(
        db: AsyncSession,
        employee_id: uuid.UUID,
        days: Decimal,
        *,
        request_id: Optional[uuid.UUID] = None,
        actor_id: Optional[uuid.UUID] = None,
    ) -> Employee:
        """Record *days* of leave without pay."""
        if days <= 0:
            raise ValidationException({"days": ["Unpaid days must be positive."]})

        employee = await LedgerService._lock_employee(db, employee_id)
        old_taken = _as_decimal(employee.unpaid_leave_taken)
        employee.unpaid_leave_taken = old_taken + days
        employee.updated_at = datetime.now(timezone.utc)
        await LedgerService._flush(db)

        await create_audit_entry(
            db,
            action="credit_unpaid",
            entity_type="employee_ledger",
            entity_id=employee.id,
            actor_id=actor_id,
            old_values={"unpaid_leave_taken": str(old_taken)},
            new_values={
                "unpaid_leave_taken": str(employee.unpaid_leave_taken),
                "request_id": str(request_id) if request_id else None,
            },
        )
        return employee

    @staticmethod
    async def check_consecutive_paid(
        db: AsyncSession,
        employee_id: uuid.UUID,
        start: date,
        end: date,
        *,
        exclude_request_id: Optional[uuid.UUID] = None,
    ) -> None:
        """Reject a paid-leave range that would create too long a run.

        Approved paid-leave ranges are unioned with the candidate range; the
        run of consecutive covered days that contains the candidate may not
        exceed MAX_CONSECUTIVE_PAID_DAYS.
        """
        query = select(LeaveRequest.start_date, LeaveRequest.end_date).where(
            LeaveRequest.employee_id == employee_id,
            LeaveRequest.state == RequestState.approved,
            LeaveRequest.leave_type.in_(list(PAID_LEAVE_TYPES)),
        )
        if exclude_request_id is not None:
            query = query.where(LeaveRequest.id != exclude_request_id)

        covered: set[date] = set(_date_range(start, end))
        for row_start, row_end in (await db.execute(query)).all():
            covered.update(_date_range(row_start, row_end))

        run_start = start
        while run_start - timedelta(days=1) in covered:
            run_start -= timedelta(days=1)
        run_end = end
        while run_end + timedelta(days=1) in covered:
            run_end += timedelta(days=1)

        run_length = (run_end - run_start).days + 1
        limit = settings.MAX_CONSECUTIVE_PAID_DAYS
        if run_length > limit:
            raise ValidationException({
                "start_date": [
                    f"Paid leave cannot exceed {limit} consecutive days "
                    f"({run_start.isoformat()} to {run_end.isoformat()} would be "
                    f"{run_length} days)."
                ],
            })

    # ─────────────────────────────────────────────────────────────────
    # Compensatory leave
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def check_compensatory_ceiling(
        db: AsyncSession,
        employee_id: uuid.UUID,
        hours: Decimal,
        *,
        today: Optional[date] = None,
    ) -> Decimal:
        """Raise ValidationException if crediting *hours* would pass the ceiling."""
        employee = await LedgerService._touch(db, employee_id, today)
        available = await LedgerService._available_hours(db, employee.id)
        ceiling = Decimal(settings.COMPENSATORY_CEILING_HOURS)
        if available + hours > ceiling:
            raise ValidationException({
                "hours": [
                    f"Compensatory balance would exceed the {ceiling} h ceiling "
                    f"(available {available} h, crediting {hours} h)."
                ],
            })
        return available

    @staticmethod
    async def credit_compensatory(
        db: AsyncSession,
        employee_id: uuid.UUID,
        hours: Decimal,
        work_date: date,
        source: CompensatorySource,
        *,
        request_id: Optional[uuid.UUID] = None,
        actor_id: Optional[uuid.UUID] = None,
        today: Optional[date] = None,
    ) -> CompensatoryEntry:
        """Append an Available compensatory entry, enforcing the ceiling."""
        if hours <= 0:
            raise ValidationException({"hours": ["Compensatory hours must be positive."]})

        await LedgerService.check_compensatory_ceiling(db, employee_id, hours, today=today)
        employee = await LedgerService._lock_employee(db, employee_id)

        entry = CompensatoryEntry(
            employee_id=employee.id,
            work_date=work_date,
            hours=hours,
            status=CompensatoryStatus.available,
            source=source,
            source_request_id=request_id,
        )
        db.add(entry)
        old_total = _as_decimal(employee.compensatory_balance_hours)
        await LedgerService._sync_compensatory_total(db, employee)
        employee.updated_at = datetime.now(timezone.utc)
        await LedgerService._flush(db)

        await create_audit_entry(
            db,
            action="credit_compensatory",
            entity_type="employee_ledger",
            entity_id=employee.id,
            actor_id=actor_id,
            old_values={"compensatory_balance_hours": str(old_total)},
            new_values={
                "compensatory_balance_hours": str(employee.compensatory_balance_hours),
                "entry_id": str(entry.id),
                "work_date": work_date.isoformat(),
                "source": source.value,
            },
        )
        return entry

    @staticmethod
    async def get_compensatory_entry(
        db: AsyncSession,
        employee_id: uuid.UUID,
        entry_id: uuid.UUID,
        hours: Decimal,
    ) -> CompensatoryEntry:
        """Return the entry if it can pay for exactly *hours* of leave."""
        result = await db.execute(
            select(CompensatoryEntry).where(CompensatoryEntry.id == entry_id)
        )
        entry = result.scalars().first()
        if entry is None or entry.employee_id != employee_id:
            raise NotFoundException("CompensatoryEntry", entry_id)
        if entry.status != CompensatoryStatus.available:
            raise ValidationException({
                "compensatory_entry_id": [
                    f"Compensatory entry is {entry.status.value}, not Available."
                ],
            })
        if _as_decimal(entry.hours) != hours:
            raise ValidationException({
                "compensatory_entry_id": [
                    f"Compensatory entry holds {entry.hours} h but the leave needs {hours} h."
                ],
            })
        return entry

    @staticmethod
    async def consume_compensatory(
        db: AsyncSession,
        employee_id: uuid.UUID,
        entry_id: uuid.UUID,
        hours: Decimal,
        request_id: uuid.UUID,
        *,
        actor_id: Optional[uuid.UUID] = None,
        today: Optional[date] = None,
    ) -> CompensatoryEntry:
        """Mark an Available entry Consumed by an approved compensatory leave."""
        employee = await LedgerService._touch(db, employee_id, today)
        entry = await LedgerService.get_compensatory_entry(db, employee.id, entry_id, hours)

        entry.status = CompensatoryStatus.consumed
        entry.consumed_by_request_id = request_id
        entry.consumed_at = datetime.now(timezone.utc)
        old_total = _as_decimal(employee.compensatory_balance_hours)
        await LedgerService._sync_compensatory_total(db, employee)
        employee.updated_at = datetime.now(timezone.utc)
        await LedgerService._flush(db)

        await create_audit_entry(
            db,
            action="consume_compensatory",
            entity_type="employee_ledger",
            entity_id=employee.id,
            actor_id=actor_id,
            old_values={"compensatory_balance_hours": str(old_total)},
            new_values={
                "compensatory_balance_hours": str(employee.compensatory_balance_hours),
                "entry_id": str(entry.id),
                "request_id": str(request_id),
            },
        )
        return entry

    # ─────────────────────────────────────────────────────────────────
    # Read
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def get_ledger(
        db: AsyncSession,
        employee_id: uuid.UUID,
        *,
        today: Optional[date] = None,
    ) -> LedgerOut:
        employee = await LedgerService._touch(db, employee_id, today)
        await LedgerService._flush(db)

        entries = (
            await db.execute(
                select(CompensatoryEntry)
                .where(CompensatoryEntry.employee_id == employee.id)
                .order_by(CompensatoryEntry.work_date.desc())
            )
        ).scalars().all()

        return LedgerOut(
            employee_id=employee.id,
            paid_leave_balance=employee.paid_leave_balance,
            unpaid_leave_taken=employee.unpaid_leave_taken,
            compensatory_balance_hours=employee.compensatory_balance_hours,
            last_paid_leave_reset_at=employee.last_paid_leave_reset_at,
            last_monthly_leave_credit_at=employee.last_monthly_leave_credit_at,
            entries=[CompensatoryEntryOut.model_validate(e) for e in entries],
        )
