"""Ledger router — paid, unpaid and compensatory balances."""


import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from hrms_engine.auth.dependencies import get_current_user, require_role
from hrms_engine.common.constants import LoginType
from hrms_engine.common.exceptions import ForbiddenException
from hrms_engine.core_hr.models import Employee
from hrms_engine.database import get_db
from hrms_engine.ledger.schemas import LedgerOut
from hrms_engine.ledger.service import LedgerService

router = APIRouter(prefix="", tags=["ledger"])


# ── GET /me ─────────────────────────────────────────────────────────

@router.get("/me", response_model=LedgerOut)
async def my_ledger(
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Caller's balances, with any pending accrual applied."""
    return await LedgerService.get_ledger(db, employee.id)


# ── GET /{employee_id} ──────────────────────────────────────────────

@router.get("/{employee_id}", response_model=LedgerOut)
async def employee_ledger(
    employee_id: uuid.UUID,
    employee: Employee = Depends(
        require_role(LoginType.hod, LoginType.admin, LoginType.ceo)
    ),
    db: AsyncSession = Depends(get_db),
):
    """Another employee's balances. HODs are limited to their department."""
    if employee.login_type == LoginType.hod and employee_id != employee.id:
        target = await db.get(Employee, employee_id)
        if target is None or target.department_id != employee.department_id:
            raise ForbiddenException("HODs can only view ledgers in their own department.")
    return await LedgerService.get_ledger(db, employee_id)
