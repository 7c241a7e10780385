"""Approval service layer — submissions, stage decisions and terminal effects.

Business logic:
  - Leave / overtime claim / outdoor duty submission with policy checks
  - Role-conditional stage skipping at creation (see approvals.workflow)
  - Stage decisions serialized by row lock plus version counter
  - Exactly-once ledger mutation on terminal approval, in the same
    savepoint as the state change
  - Approver-pool and outcome notifications, best-effort
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from hrms_engine.approvals.models import (
    ApprovalRequest,
    LeaveRequest,
    OutdoorDuty,
    OvertimeClaim,
)
from hrms_engine.approvals.schemas import (
    ApprovalRequestOut,
    DecisionIn,
    LeaveRequestCreate,
    OutdoorDutyCreate,
    OvertimeClaimCreate,
)
from hrms_engine.approvals.workflow import (
    StageSpec,
    current_stage,
    open_request,
    plan_transition,
)
from hrms_engine.attendance.models import AttendanceRecord
from hrms_engine.common.audit import create_audit_entry
from hrms_engine.common.clock import local_now, local_today
from hrms_engine.common.constants import (
    FULL_DAY_HOURS,
    MIN_CLAIMABLE_OT_MINUTES,
    CompensatorySource,
    LeaveType,
    LoginType,
    OvertimeTrack,
    RequestKind,
    RequestState,
)
from hrms_engine.common.exceptions import (
    ConflictError,
    ForbiddenException,
    NotFoundException,
    ValidationException,
)
from hrms_engine.common.filters import apply_filters, scope_to_actor
from hrms_engine.common.pagination import PaginationMeta, PaginationParams, paginate
from hrms_engine.core_hr.models import Department, Employee
from hrms_engine.ledger.service import LedgerService
from hrms_engine.notifications.service import (
    DatabaseNotificationSink,
    NotificationPort,
    notify_approvers,
    notify_outcome,
)
from hrms_engine.overtime.eligibility import (
    claim_deadline,
    overtime_payment,
    overtime_track,
)

logger = logging.getLogger(__name__)

_HALF_DAY = Decimal("0.5")
_MAX_OT_HOURS = Decimal("24")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _stage_snapshot(request: ApprovalRequest) -> dict[str, Any]:
    return {
        "state": request.state.value,
        "hod_status": request.hod_status.value,
        "admin_status": request.admin_status.value,
        "ceo_status": request.ceo_status.value,
    }


# ═════════════════════════════════════════════════════════════════════
# ApprovalService
# ═════════════════════════════════════════════════════════════════════


class ApprovalService:
    """Async request operations for all three request kinds."""

    # ─────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _department_name(db: AsyncSession, employee: Employee) -> Optional[str]:
        if employee.department_id is None:
            return None
        result = await db.execute(
            select(Department.name).where(Department.id == employee.department_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _require_department(employee: Employee) -> None:
        if employee.department_id is None:
            raise ValidationException({
                "department": ["Employee must belong to a department to submit requests."],
            })

    @staticmethod
    async def _approver_ids(
        db: AsyncSession,
        stage: StageSpec,
        department_id: Optional[uuid.UUID],
    ) -> list[uuid.UUID]:
        query = select(Employee.id).where(
            Employee.login_type == stage.role,
            Employee.is_active.is_(True),
        )
        if stage.role == LoginType.hod:
            query = query.where(Employee.department_id == department_id)
        return list((await db.execute(query)).scalars().all())

    @staticmethod
    def _to_out(request: ApprovalRequest) -> ApprovalRequestOut:
        out = ApprovalRequestOut.model_validate(request)
        stage = current_stage(request.kind, request.state)
        out.awaiting_role = stage.role if stage else None
        return out

    @staticmethod
    async def _lock_request(db: AsyncSession, request_id: uuid.UUID) -> ApprovalRequest:
        result = await db.execute(
            select(ApprovalRequest)
            .where(ApprovalRequest.id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        request = result.scalars().first()
        if request is None:
            raise NotFoundException("ApprovalRequest", request_id)
        return request

    @staticmethod
    async def _notify_after_change(
        db: AsyncSession,
        notifier: NotificationPort,
        request: ApprovalRequest,
        remarks: Optional[str] = None,
    ) -> None:
        if request.state in (
            RequestState.approved, RequestState.acknowledged, RequestState.rejected,
        ):
            await notify_outcome(db, notifier, request, remarks)
            return
        stage = current_stage(request.kind, request.state)
        if stage is None:
            return
        approvers = await ApprovalService._approver_ids(db, stage, request.department_id)
        if not approvers:
            logger.warning(
                "No active %s found to review request %s", stage.role.value, request.id,
            )
        await notify_approvers(db, notifier, request, approvers, stage.role.value)

    # ─────────────────────────────────────────────────────────────────
    # Terminal effects
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _apply_leave(
        db: AsyncSession, request: LeaveRequest, actor_id: Optional[uuid.UUID], today: date,
    ) -> None:
        if request.leave_type == LeaveType.casual:
            await LedgerService.check_consecutive_paid(
                db,
                request.employee_id,
                request.start_date,
                request.end_date,
                exclude_request_id=request.id,
            )
            await LedgerService.deduct(
                db, request.employee_id, request.total_days,
                request_id=request.id, actor_id=actor_id, today=today,
            )
        elif request.leave_type == LeaveType.leave_without_pay:
            await LedgerService.credit_unpaid(
                db, request.employee_id, request.total_days,
                request_id=request.id, actor_id=actor_id,
            )
        elif request.leave_type == LeaveType.compensatory:
            await LedgerService.consume_compensatory(
                db,
                request.employee_id,
                request.compensatory_entry_id,
                request.compensatory_hours_needed,
                request.id,
                actor_id=actor_id,
                today=today,
            )

    @staticmethod
    async def _apply_overtime(
        db: AsyncSession, claim: OvertimeClaim, actor_id: Optional[uuid.UUID], today: date,
    ) -> None:
        if claim.track == OvertimeTrack.compensatory:
            await LedgerService.credit_compensatory(
                db,
                claim.employee_id,
                claim.ot_hours,
                claim.ot_date,
                CompensatorySource.overtime_claim,
                request_id=claim.id,
                actor_id=actor_id,
                today=today,
            )
            claim.compensatory_hours = claim.ot_hours
        else:
            claim.payment_amount = overtime_payment(claim.ot_hours)

        record = (
            await db.execute(
                select(AttendanceRecord).where(
                    AttendanceRecord.employee_id == claim.employee_id,
                    AttendanceRecord.work_date == claim.ot_date,
                )
            )
        ).scalars().first()
        if record is not None:
            record.ot_minutes = 0
            record.ot_evaluated_at = _now()
            record.updated_at = _now()

    @staticmethod
    async def _apply_terminal(
        db: AsyncSession,
        request: ApprovalRequest,
        actor_id: Optional[uuid.UUID],
        today: date,
    ) -> None:
        """Run the kind-specific ledger mutation once per request."""
        if request.ledger_applied_at is not None:
            logger.warning("Ledger effect for request %s already applied; skipping", request.id)
            return

        if isinstance(request, LeaveRequest):
            await ApprovalService._apply_leave(db, request, actor_id, today)
        elif isinstance(request, OvertimeClaim):
            await ApprovalService._apply_overtime(db, request, actor_id, today)
        # Outdoor duty has no ledger effect

        request.ledger_applied_at = _now()

    @staticmethod
    async def _open(
        db: AsyncSession,
        request: ApprovalRequest,
        submitter: Employee,
        notifier: Optional[NotificationPort],
        today: date,
    ) -> ApprovalRequestOut:
        """Apply role skipping, persist, and fire terminal effects if closed."""
        plan = open_request(request.kind, submitter.login_type)
        for field, status in plan.statuses.items():
            setattr(request, field, status)
        request.state = plan.state
        request.employee_id = submitter.id
        request.submitted_by = submitter.id
        request.department_id = submitter.department_id

        async with db.begin_nested():
            db.add(request)
            await db.flush()
            if plan.is_terminal:
                request.decided_at = _now()
                request.decided_by = submitter.id
                await ApprovalService._apply_terminal(db, request, submitter.id, today)
                await db.flush()

        await create_audit_entry(
            db,
            action="submit",
            entity_type="approval_request",
            entity_id=request.id,
            actor_id=submitter.id,
            new_values={"kind": request.kind.value, **_stage_snapshot(request)},
        )
        logger.info(
            "%s %s submitted by %s → %s",
            request.kind.value, request.id, submitter.employee_code, request.state.value,
        )

        await ApprovalService._notify_after_change(
            db, notifier or DatabaseNotificationSink(db), request,
        )
        return ApprovalService._to_out(request)

    # ─────────────────────────────────────────────────────────────────
    # Submission
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def submit_leave(
        db: AsyncSession,
        submitter: Employee,
        data: LeaveRequestCreate,
        *,
        notifier: Optional[NotificationPort] = None,
        today: Optional[date] = None,
    ) -> ApprovalRequestOut:
        today = today or local_today()
        ApprovalService._require_department(submitter)

        if (data.half_day is None) == (data.full_day is None):
            raise ValidationException({
                "half_day": ["Provide either a half-day date or a full-day range, not both."],
            })

        if data.half_day is not None:
            start = end = data.half_day.leave_date
            session = data.half_day.session
            total_days = _HALF_DAY
        else:
            start, end = data.full_day.start_date, data.full_day.end_date
            session = None
            if end < start:
                raise ValidationException({
                    "full_day.end_date": ["End date cannot be before start date."],
                })
            total_days = Decimal((end - start).days + 1)

        if data.leave_type == LeaveType.casual:
            await LedgerService.check_paid_balance(db, submitter.id, total_days, today=today)
            await LedgerService.check_consecutive_paid(db, submitter.id, start, end)
        elif data.leave_type == LeaveType.compensatory:
            if data.compensatory_entry_id is None:
                raise ValidationException({
                    "compensatory_entry_id": ["Compensatory leave must reference an entry."],
                })
            hours = total_days * FULL_DAY_HOURS
            if hours > FULL_DAY_HOURS:
                raise ValidationException({
                    "full_day": ["Compensatory leave covers a half day (4 h) or one full day (8 h)."],
                })
            await LedgerService.expire_compensatory(db, submitter.id, today=today)
            await LedgerService.get_compensatory_entry(
                db, submitter.id, data.compensatory_entry_id, hours,
            )
            in_use = await db.execute(
                select(LeaveRequest.id).where(
                    LeaveRequest.compensatory_entry_id == data.compensatory_entry_id,
                    LeaveRequest.state != RequestState.rejected,
                )
            )
            if in_use.first() is not None:
                raise ConflictError(
                    "Compensatory entry is already referenced by another leave request.",
                )

        overlap = await db.execute(
            select(LeaveRequest.id).where(
                LeaveRequest.employee_id == submitter.id,
                LeaveRequest.state != RequestState.rejected,
                LeaveRequest.start_date <= end,
                LeaveRequest.end_date >= start,
            )
        )
        if overlap.first() is not None:
            raise ConflictError(
                f"A leave request already covers part of {start.isoformat()} to {end.isoformat()}.",
            )

        request = LeaveRequest(
            kind=RequestKind.leave,
            leave_type=data.leave_type,
            half_day_session=session,
            start_date=start,
            end_date=end,
            total_days=total_days,
            reason=data.reason,
            charge_given_to=data.charge_given_to,
            emergency_contact=data.emergency_contact,
            compensatory_entry_id=data.compensatory_entry_id,
        )
        return await ApprovalService._open(db, request, submitter, notifier, today)

    @staticmethod
    async def submit_overtime_claim(
        db: AsyncSession,
        submitter: Employee,
        data: OvertimeClaimCreate,
        *,
        notifier: Optional[NotificationPort] = None,
        now: Optional[datetime] = None,
    ) -> ApprovalRequestOut:
        now = now or local_now()
        ApprovalService._require_department(submitter)

        if not Decimal("0") < data.hours <= _MAX_OT_HOURS:
            raise ValidationException({"hours": ["Hours must be greater than 0 and at most 24."]})
        if data.ot_date > now.date():
            raise ValidationException({"ot_date": ["Overtime cannot be claimed for a future date."]})
        if now > claim_deadline(data.ot_date):
            raise ValidationException({
                "ot_date": ["Overtime must be claimed by 23:59 on the day after it was worked."],
            })

        department_name = await ApprovalService._department_name(db, submitter)
        track = overtime_track(department_name, data.ot_date)
        if track is None:
            raise ValidationException({
                "ot_date": [
                    "Overtime claims for non-eligible departments are only allowed for Sundays."
                ],
            })

        record = (
            await db.execute(
                select(AttendanceRecord).where(
                    AttendanceRecord.employee_id == submitter.id,
                    AttendanceRecord.work_date == data.ot_date,
                )
            )
        ).scalars().first()
        if (
            record is None
            or record.ot_evaluated_at is not None
            or record.ot_minutes < MIN_CLAIMABLE_OT_MINUTES
        ):
            raise ValidationException({"ot_date": ["No overtime recorded for this date."]})
        recorded_hours = Decimal(record.ot_minutes) / 60
        if data.hours > recorded_hours:
            raise ValidationException({
                "hours": [
                    f"Claimed hours ({data.hours}) exceed recorded overtime "
                    f"({recorded_hours:.1f})."
                ],
            })

        existing = await db.execute(
            select(OvertimeClaim.id).where(
                OvertimeClaim.employee_id == submitter.id,
                OvertimeClaim.ot_date == data.ot_date,
                OvertimeClaim.state != RequestState.rejected,
            )
        )
        if existing.first() is not None:
            raise ConflictError(f"An overtime claim for {data.ot_date.isoformat()} already exists.")

        if track == OvertimeTrack.compensatory:
            await LedgerService.check_compensatory_ceiling(
                db, submitter.id, data.hours, today=now.date(),
            )

        claim = OvertimeClaim(
            kind=RequestKind.overtime_claim,
            ot_date=data.ot_date,
            ot_hours=data.hours,
            project_details=data.project_details,
            track=track,
            attendance_record_id=record.id,
        )
        return await ApprovalService._open(db, claim, submitter, notifier, now.date())

    @staticmethod
    async def submit_outdoor_duty(
        db: AsyncSession,
        submitter: Employee,
        data: OutdoorDutyCreate,
        *,
        notifier: Optional[NotificationPort] = None,
        today: Optional[date] = None,
    ) -> ApprovalRequestOut:
        today = today or local_today()
        ApprovalService._require_department(submitter)

        if data.date_in < data.date_out:
            raise ValidationException({"date_in": ["Return date cannot be before the date out."]})
        if data.date_in == data.date_out and data.time_in <= data.time_out:
            raise ValidationException({
                "time_in": ["Return time must be after the time out on the same day."],
            })

        duty = OutdoorDuty(
            kind=RequestKind.outdoor_duty,
            date_out=data.date_out,
            time_out=data.time_out,
            date_in=data.date_in,
            time_in=data.time_in,
            purpose=data.purpose,
            place_visited=data.place_visited,
        )
        return await ApprovalService._open(db, duty, submitter, notifier, today)

    # ─────────────────────────────────────────────────────────────────
    # Decisions
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def act(
        db: AsyncSession,
        request_id: uuid.UUID,
        actor: Employee,
        data: DecisionIn,
        *,
        notifier: Optional[NotificationPort] = None,
        today: Optional[date] = None,
    ) -> ApprovalRequestOut:
        """Apply *actor*'s decision to the request's current stage."""
        today = today or local_today()
        request = await ApprovalService._lock_request(db, request_id)

        if actor.login_type == LoginType.hod and request.department_id != actor.department_id:
            raise ForbiddenException("HODs can only act on requests from their own department.")

        statuses = {
            "hod_status": request.hod_status,
            "admin_status": request.admin_status,
            "ceo_status": request.ceo_status,
        }
        plan = plan_transition(
            request.kind, request.state, statuses, actor.login_type, data.decision,
        )
        old_values = _stage_snapshot(request)

        try:
            async with db.begin_nested():
                setattr(request, plan.stage.field, plan.stage_status)
                request.state = plan.next_state
                request.updated_at = _now()
                if data.remarks:
                    request.remarks = data.remarks
                if plan.is_terminal:
                    request.decided_at = _now()
                    request.decided_by = actor.id
                if plan.is_success:
                    await ApprovalService._apply_terminal(db, request, actor.id, today)
                await db.flush()
        except StaleDataError as exc:
            raise ConflictError(
                "The request was changed by someone else; reload and try again.",
            ) from exc

        await create_audit_entry(
            db,
            action=data.decision.value,
            entity_type="approval_request",
            entity_id=request.id,
            actor_id=actor.id,
            old_values=old_values,
            new_values={**_stage_snapshot(request), "remarks": data.remarks},
        )
        logger.info(
            "%s %s: %s by %s (%s) → %s",
            request.kind.value, request.id, data.decision.value,
            actor.employee_code, actor.login_type.value, request.state.value,
        )

        await ApprovalService._notify_after_change(
            db, notifier or DatabaseNotificationSink(db), request, data.remarks,
        )
        return ApprovalService._to_out(request)

    # ─────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def get_request(
        db: AsyncSession,
        request_id: uuid.UUID,
        actor: Employee,
    ) -> ApprovalRequestOut:
        query = scope_to_actor(
            select(ApprovalRequest).where(ApprovalRequest.id == request_id),
            actor,
            ApprovalRequest.employee_id,
            ApprovalRequest.department_id,
        )
        request = (await db.execute(query)).scalars().first()
        if request is None:
            raise NotFoundException("ApprovalRequest", request_id)
        return ApprovalService._to_out(request)

    @staticmethod
    async def list_requests(
        db: AsyncSession,
        actor: Employee,
        pagination: PaginationParams,
        *,
        kind: Optional[RequestKind] = None,
        state: Optional[RequestState] = None,
        employee_id: Optional[uuid.UUID] = None,
    ) -> tuple[list[ApprovalRequestOut], PaginationMeta]:
        query = select(ApprovalRequest).order_by(ApprovalRequest.created_at.desc())
        query = scope_to_actor(
            query, actor, ApprovalRequest.employee_id, ApprovalRequest.department_id,
        )
        query = apply_filters(
            query,
            ApprovalRequest,
            {"kind": kind, "state": state, "employee_id": employee_id},
        )
        rows, meta = await paginate(db, query, pagination)
        return [ApprovalService._to_out(r) for r in rows], meta
