"""Requests router — submit leave / overtime / outdoor duty, decide, list.

All endpoints require authentication. Stage ownership is checked by the
state machine, not here.
"""


import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from hrms_engine.approvals.schemas import (
    ApprovalRequestOut,
    DecisionIn,
    LeaveRequestCreate,
    OutdoorDutyCreate,
    OvertimeClaimCreate,
)
from hrms_engine.approvals.service import ApprovalService
from hrms_engine.auth.dependencies import get_current_user, require_role
from hrms_engine.common.constants import LoginType, RequestKind, RequestState
from hrms_engine.common.pagination import PaginatedResponse, PaginationParams
from hrms_engine.core_hr.models import Employee
from hrms_engine.database import get_db

router = APIRouter(prefix="", tags=["requests"])


# ── POST /leave ─────────────────────────────────────────────────────

@router.post("/leave", response_model=ApprovalRequestOut, status_code=201)
async def submit_leave(
    body: LeaveRequestCreate,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Apply for leave. Validates balance, consecutive-day cap and overlap."""
    return await ApprovalService.submit_leave(db, employee, body)


# ── POST /overtime ──────────────────────────────────────────────────

@router.post("/overtime", response_model=ApprovalRequestOut, status_code=201)
async def submit_overtime_claim(
    body: OvertimeClaimCreate,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Claim recorded overtime before its deadline."""
    return await ApprovalService.submit_overtime_claim(db, employee, body)


# ── POST /outdoor-duty ──────────────────────────────────────────────

@router.post("/outdoor-duty", response_model=ApprovalRequestOut, status_code=201)
async def submit_outdoor_duty(
    body: OutdoorDutyCreate,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await ApprovalService.submit_outdoor_duty(db, employee, body)


# ── PUT /{id}/decision ──────────────────────────────────────────────

@router.put("/{request_id}/decision", response_model=ApprovalRequestOut)
async def decide(
    request_id: uuid.UUID,
    body: DecisionIn,
    employee: Employee = Depends(
        require_role(LoginType.hod, LoginType.admin, LoginType.ceo)
    ),
    db: AsyncSession = Depends(get_db),
):
    """Approve, reject or acknowledge the stage awaiting the caller's role."""
    return await ApprovalService.act(db, request_id, employee, body)


# ── GET / ───────────────────────────────────────────────────────────

@router.get("", response_model=PaginatedResponse[ApprovalRequestOut])
async def list_requests(
    kind: Optional[RequestKind] = Query(None),
    state: Optional[RequestState] = Query(None),
    employee_id: Optional[uuid.UUID] = Query(None),
    pagination: PaginationParams = Depends(),
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Requests visible to the caller: own, department (HOD) or all."""
    data, meta = await ApprovalService.list_requests(
        db, employee, pagination, kind=kind, state=state, employee_id=employee_id,
    )
    return PaginatedResponse(data=data, meta=meta)


# ── GET /{id} ───────────────────────────────────────────────────────

@router.get("/{request_id}", response_model=ApprovalRequestOut)
async def get_request(
    request_id: uuid.UUID,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await ApprovalService.get_request(db, request_id, employee)
