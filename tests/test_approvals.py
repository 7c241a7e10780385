"""Approval service — submissions, stage decisions, terminal ledger effects.

Tests run against SQLite via the shared conftest.py fixtures.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, time
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hrms_engine.approvals.models import ApprovalRequest
from hrms_engine.approvals.schemas import (
    DecisionIn,
    FullDayIn,
    HalfDayIn,
    LeaveRequestCreate,
    OutdoorDutyCreate,
    OvertimeClaimCreate,
)
from hrms_engine.approvals.service import ApprovalService
from hrms_engine.attendance.models import AttendanceRecord
from hrms_engine.common.audit import AuditTrail
from hrms_engine.common.clock import local_tz
from hrms_engine.common.constants import (
    CompensatorySource,
    CompensatoryStatus,
    Decision,
    HalfDaySession,
    LeaveType,
    LoginType,
    OvertimeTrack,
    RequestKind,
    RequestState,
    StageStatus,
)
from hrms_engine.common.exceptions import (
    ConflictError,
    ForbiddenException,
    InsufficientBalanceException,
    NotFoundException,
    ValidationException,
)
from hrms_engine.common.pagination import PaginationParams
from hrms_engine.core_hr.models import Employee
from hrms_engine.ledger.models import CompensatoryEntry
from hrms_engine.ledger.service import LedgerService
from hrms_engine.notifications.models import Notification
from tests.conftest import RecordingNotifier, seed_employee

TODAY = date(2026, 3, 4)  # Wednesday
APPROVE = DecisionIn(decision=Decision.approve)


# ═════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════


def _casual(start: date, end: date | None = None) -> LeaveRequestCreate:
    return LeaveRequestCreate(
        leave_type=LeaveType.casual,
        full_day=FullDayIn(start_date=start, end_date=end or start),
        reason="Personal work",
    )


def _local(year, month, day, hour=10, minute=0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=local_tz())


async def _seed_attendance(
    db: AsyncSession, employee, work_date: date, ot_minutes: int,
) -> AttendanceRecord:
    record = AttendanceRecord(
        employee_id=employee.id,
        work_date=work_date,
        time_in=time(9, 0),
        time_out=time(18, 0),
        total_work_minutes=480 + ot_minutes,
        ot_minutes=ot_minutes,
    )
    db.add(record)
    await db.flush()
    return record


async def _run_chain(db, org, request_id, roles_and_decisions, notifier=None):
    out = None
    for role, decision in roles_and_decisions:
        out = await ApprovalService.act(
            db, request_id, org[role], DecisionIn(decision=decision),
            notifier=notifier or RecordingNotifier(), today=TODAY,
        )
    return out


LEAVE_CHAIN = [("hod", Decision.approve), ("admin", Decision.approve), ("ceo", Decision.approve)]
OT_CHAIN = [("hod", Decision.approve), ("ceo", Decision.approve), ("admin", Decision.acknowledge)]


# ═════════════════════════════════════════════════════════════════════
# Leave
# ═════════════════════════════════════════════════════════════════════


class TestLeaveLifecycle:
    async def test_full_chain_deducts_exactly_once(self, db, org):
        notifier = RecordingNotifier()
        out = await ApprovalService.submit_leave(
            db, org["employee"], _casual(date(2026, 3, 9), date(2026, 3, 10)),
            notifier=notifier, today=TODAY,
        )
        assert out.state == RequestState.stage1_pending
        assert out.awaiting_role == LoginType.hod
        assert out.total_days == Decimal("2")
        assert notifier.recipients() == [org["hod"].id]

        out = await ApprovalService.act(
            db, out.id, org["hod"], APPROVE, notifier=notifier, today=TODAY,
        )
        assert out.state == RequestState.stage2_pending
        assert out.hod_status == StageStatus.approved
        assert notifier.recipients()[-1] == org["admin"].id
        assert org["employee"].paid_leave_balance == Decimal("12")

        out = await _run_chain(db, org, out.id, LEAVE_CHAIN[1:], notifier)
        assert out.state == RequestState.approved
        assert out.ledger_applied_at is not None
        assert out.decided_by == org["ceo"].id
        assert org["employee"].paid_leave_balance == Decimal("10")
        assert notifier.recipients()[-1] == org["employee"].id

        with pytest.raises(ForbiddenException):
            await ApprovalService.act(db, out.id, org["ceo"], APPROVE, today=TODAY)

        deductions = (
            await db.execute(
                select(func.count()).select_from(AuditTrail).where(AuditTrail.action == "deduct")
            )
        ).scalar_one()
        assert deductions == 1
        assert org["employee"].paid_leave_balance == Decimal("10")

    async def test_lost_update_on_final_stage_is_conflict(self, db, org, monkeypatch):
        out = await ApprovalService.submit_leave(
            db, org["employee"], _casual(date(2026, 3, 9)), today=TODAY,
        )
        await _run_chain(db, org, out.id, LEAVE_CHAIN[:2])

        lock_request = ApprovalService._lock_request

        async def lock_then_commit_elsewhere(session, request_id):
            request = await lock_request(session, request_id)
            # A second approver's write lands between our read and our write
            table = ApprovalRequest.__table__
            await session.execute(
                update(table)
                .where(table.c.id == request_id)
                .values(version_id=table.c.version_id + 1)
            )
            return request

        monkeypatch.setattr(
            ApprovalService, "_lock_request", staticmethod(lock_then_commit_elsewhere),
        )
        with pytest.raises(ConflictError):
            await ApprovalService.act(db, out.id, org["ceo"], APPROVE, today=TODAY)
        monkeypatch.undo()

        request = await db.get(ApprovalRequest, out.id, populate_existing=True)
        assert request.state == RequestState.stage3_pending
        assert request.ledger_applied_at is None
        employee = await db.get(Employee, org["employee"].id, populate_existing=True)
        assert employee.paid_leave_balance == Decimal("12")

        out = await ApprovalService.act(db, out.id, org["ceo"], APPROVE, today=TODAY)
        assert out.state == RequestState.approved

        deductions = (
            await db.execute(
                select(func.count()).select_from(AuditTrail).where(AuditTrail.action == "deduct")
            )
        ).scalar_one()
        assert deductions == 1
        employee = await db.get(Employee, org["employee"].id, populate_existing=True)
        assert employee.paid_leave_balance == Decimal("11")

    async def test_admin_before_hod_is_forbidden(self, db, org):
        out = await ApprovalService.submit_leave(
            db, org["employee"], _casual(date(2026, 3, 9)), today=TODAY,
        )
        with pytest.raises(ForbiddenException):
            await ApprovalService.act(db, out.id, org["admin"], APPROVE, today=TODAY)

        await ApprovalService.act(db, out.id, org["hod"], APPROVE, today=TODAY)
        out = await ApprovalService.act(db, out.id, org["admin"], APPROVE, today=TODAY)
        assert out.state == RequestState.stage3_pending

    async def test_hod_own_leave_skips_hod_stage(self, db, org):
        out = await ApprovalService.submit_leave(
            db, org["hod"], _casual(date(2026, 3, 9)), today=TODAY,
        )
        assert out.hod_status == StageStatus.approved
        assert out.state == RequestState.stage2_pending
        assert out.awaiting_role == LoginType.admin

        with pytest.raises(ForbiddenException):
            await ApprovalService.act(db, out.id, org["hod"], APPROVE, today=TODAY)
        out = await ApprovalService.act(db, out.id, org["admin"], APPROVE, today=TODAY)
        assert out.state == RequestState.stage3_pending

    async def test_ceo_own_leave_is_approved_and_deducted_at_submission(self, db, org):
        out = await ApprovalService.submit_leave(
            db, org["ceo"], _casual(date(2026, 3, 9)), today=TODAY,
        )
        assert out.state == RequestState.approved
        assert out.ledger_applied_at is not None
        assert org["ceo"].paid_leave_balance == Decimal("11")

    async def test_hod_of_other_department_cannot_act(self, db, org):
        out = await ApprovalService.submit_leave(
            db, org["employee"], _casual(date(2026, 3, 9)), today=TODAY,
        )
        with pytest.raises(ForbiddenException):
            await ApprovalService.act(db, out.id, org["other_hod"], APPROVE, today=TODAY)

    async def test_reject_closes_without_ledger_change(self, db, org):
        notifier = RecordingNotifier()
        out = await ApprovalService.submit_leave(
            db, org["employee"], _casual(date(2026, 3, 9)), today=TODAY,
        )
        out = await ApprovalService.act(
            db, out.id, org["hod"],
            DecisionIn(decision=Decision.reject, remarks="Month-end closing"),
            notifier=notifier, today=TODAY,
        )
        assert out.state == RequestState.rejected
        assert out.hod_status == StageStatus.rejected
        assert out.ledger_applied_at is None
        assert out.remarks == "Month-end closing"
        assert org["employee"].paid_leave_balance == Decimal("12")
        assert "Month-end closing" in notifier.sent[-1]["message"]

        with pytest.raises(ForbiddenException):
            await ApprovalService.act(db, out.id, org["admin"], APPROVE, today=TODAY)

    async def test_unknown_request(self, db, org):
        with pytest.raises(NotFoundException):
            await ApprovalService.act(db, uuid.uuid4(), org["hod"], APPROVE, today=TODAY)


class TestLeaveSubmissionRules:
    async def test_insufficient_balance_is_rejected_and_balance_kept(self, db, org):
        emp = await seed_employee(
            db, department_id=org["production"].id, paid_leave_balance=Decimal("2"),
        )
        with pytest.raises(InsufficientBalanceException):
            await ApprovalService.submit_leave(
                db, emp, _casual(date(2026, 3, 9), date(2026, 3, 11)), today=TODAY,
            )
        assert emp.paid_leave_balance == Decimal("2")

    async def test_half_day_counts_half(self, db, org):
        data = LeaveRequestCreate(
            leave_type=LeaveType.casual,
            half_day=HalfDayIn(leave_date=date(2026, 3, 9), session=HalfDaySession.afternoon),
            reason="Doctor",
        )
        out = await ApprovalService.submit_leave(db, org["employee"], data, today=TODAY)
        assert out.total_days == Decimal("0.5")
        assert out.half_day_session == HalfDaySession.afternoon
        assert out.start_date == out.end_date == date(2026, 3, 9)

    async def test_half_and_full_day_together_is_invalid(self, db, org):
        data = LeaveRequestCreate(
            leave_type=LeaveType.casual,
            half_day=HalfDayIn(leave_date=date(2026, 3, 9), session=HalfDaySession.forenoon),
            full_day=FullDayIn(start_date=date(2026, 3, 9), end_date=date(2026, 3, 9)),
            reason="Both",
        )
        with pytest.raises(ValidationException):
            await ApprovalService.submit_leave(db, org["employee"], data, today=TODAY)

    async def test_end_before_start_is_invalid(self, db, org):
        with pytest.raises(ValidationException):
            await ApprovalService.submit_leave(
                db, org["employee"], _casual(date(2026, 3, 10), date(2026, 3, 9)), today=TODAY,
            )

    async def test_overlap_with_live_request_conflicts(self, db, org):
        await ApprovalService.submit_leave(
            db, org["employee"], _casual(date(2026, 3, 9), date(2026, 3, 10)), today=TODAY,
        )
        with pytest.raises(ConflictError):
            await ApprovalService.submit_leave(
                db, org["employee"], _casual(date(2026, 3, 10)), today=TODAY,
            )

    async def test_employee_without_department_cannot_submit(self, db, org):
        loner = await seed_employee(db)
        with pytest.raises(ValidationException):
            await ApprovalService.submit_leave(db, loner, _casual(date(2026, 3, 9)), today=TODAY)

    async def test_leave_without_pay_counts_unpaid_days(self, db, org):
        data = LeaveRequestCreate(
            leave_type=LeaveType.leave_without_pay,
            full_day=FullDayIn(start_date=date(2026, 3, 16), end_date=date(2026, 3, 20)),
            reason="Travel",
        )
        out = await ApprovalService.submit_leave(db, org["admin"], data, today=TODAY)
        assert out.state == RequestState.stage3_pending

        out = await ApprovalService.act(db, out.id, org["ceo"], APPROVE, today=TODAY)
        assert out.state == RequestState.approved
        assert org["admin"].unpaid_leave_taken == Decimal("5")
        assert org["admin"].paid_leave_balance == Decimal("12")


class TestCompensatoryLeave:
    async def test_full_day_consumes_eight_hour_entry(self, db, org):
        entry = await LedgerService.credit_compensatory(
            db, org["employee"].id, Decimal("8"), date(2026, 3, 1),
            CompensatorySource.overtime_sweep, today=TODAY,
        )
        data = LeaveRequestCreate(
            leave_type=LeaveType.compensatory,
            full_day=FullDayIn(start_date=date(2026, 3, 12), end_date=date(2026, 3, 12)),
            reason="Comp off",
            compensatory_entry_id=entry.id,
        )
        out = await ApprovalService.submit_leave(db, org["employee"], data, today=TODAY)
        assert entry.status == CompensatoryStatus.available

        out = await _run_chain(db, org, out.id, LEAVE_CHAIN)
        assert out.state == RequestState.approved

        entry = (
            await db.execute(
                select(CompensatoryEntry)
                .where(CompensatoryEntry.id == entry.id)
                .execution_options(populate_existing=True)
            )
        ).scalars().one()
        assert entry.status == CompensatoryStatus.consumed
        assert entry.consumed_by_request_id == out.id
        assert org["employee"].compensatory_balance_hours == Decimal("0")
        assert org["employee"].paid_leave_balance == Decimal("12")

    async def test_half_day_needs_four_hour_entry(self, db, org):
        entry = await LedgerService.credit_compensatory(
            db, org["employee"].id, Decimal("8"), date(2026, 3, 1),
            CompensatorySource.manual, today=TODAY,
        )
        data = LeaveRequestCreate(
            leave_type=LeaveType.compensatory,
            half_day=HalfDayIn(leave_date=date(2026, 3, 12), session=HalfDaySession.forenoon),
            reason="Comp off",
            compensatory_entry_id=entry.id,
        )
        with pytest.raises(ValidationException):
            await ApprovalService.submit_leave(db, org["employee"], data, today=TODAY)

    async def test_entry_cannot_back_two_live_requests(self, db, org):
        entry = await LedgerService.credit_compensatory(
            db, org["employee"].id, Decimal("8"), date(2026, 3, 1),
            CompensatorySource.manual, today=TODAY,
        )

        def _request(day: date) -> LeaveRequestCreate:
            return LeaveRequestCreate(
                leave_type=LeaveType.compensatory,
                full_day=FullDayIn(start_date=day, end_date=day),
                reason="Comp off",
                compensatory_entry_id=entry.id,
            )

        await ApprovalService.submit_leave(
            db, org["employee"], _request(date(2026, 3, 12)), today=TODAY,
        )
        with pytest.raises(ConflictError):
            await ApprovalService.submit_leave(
                db, org["employee"], _request(date(2026, 3, 19)), today=TODAY,
            )

    async def test_missing_entry_id_is_invalid(self, db, org):
        data = LeaveRequestCreate(
            leave_type=LeaveType.compensatory,
            full_day=FullDayIn(start_date=date(2026, 3, 12), end_date=date(2026, 3, 12)),
            reason="Comp off",
        )
        with pytest.raises(ValidationException):
            await ApprovalService.submit_leave(db, org["employee"], data, today=TODAY)


# ═════════════════════════════════════════════════════════════════════
# Overtime claims
# ═════════════════════════════════════════════════════════════════════


class TestOvertimeClaims:
    async def test_eligible_department_claim_credits_compensatory(self, db, org):
        record = await _seed_attendance(db, org["employee"], date(2026, 3, 3), 300)
        out = await ApprovalService.submit_overtime_claim(
            db, org["employee"],
            OvertimeClaimCreate(
                ot_date=date(2026, 3, 3), hours=Decimal("5"), project_details="Line 2 retool",
            ),
            now=_local(2026, 3, 4, 10),
        )
        assert out.track == OvertimeTrack.compensatory
        assert out.state == RequestState.stage1_pending

        out = await _run_chain(db, org, out.id, OT_CHAIN[:2])
        assert out.state == RequestState.stage3_pending
        assert out.awaiting_role == LoginType.admin
        assert out.ledger_applied_at is None

        out = await _run_chain(db, org, out.id, OT_CHAIN[2:])
        assert out.state == RequestState.acknowledged
        assert out.admin_status == StageStatus.acknowledged
        assert out.compensatory_hours == Decimal("5")
        assert org["employee"].compensatory_balance_hours == Decimal("5")
        assert record.ot_minutes == 0
        assert record.ot_evaluated_at is not None

        entry = (
            await db.execute(
                select(CompensatoryEntry).where(
                    CompensatoryEntry.employee_id == org["employee"].id
                )
            )
        ).scalars().one()
        assert entry.source == CompensatorySource.overtime_claim
        assert entry.source_request_id == out.id

    async def test_sunday_claim_of_other_department_is_paid(self, db, org):
        await _seed_attendance(db, org["marketer"], date(2026, 3, 1), 240)
        out = await ApprovalService.submit_overtime_claim(
            db, org["marketer"],
            OvertimeClaimCreate(
                ot_date=date(2026, 3, 1), hours=Decimal("4"), project_details="Launch event",
            ),
            now=_local(2026, 3, 2, 9),
        )
        assert out.track == OvertimeTrack.payment

        # The marketing HOD owns stage one for this department
        org["hod"] = org["other_hod"]
        out = await _run_chain(db, org, out.id, OT_CHAIN)
        assert out.state == RequestState.acknowledged
        assert out.payment_amount == Decimal("3000.00")
        assert org["marketer"].compensatory_balance_hours == Decimal("0")

    async def test_weekday_claim_of_other_department_is_invalid(self, db, org):
        await _seed_attendance(db, org["marketer"], date(2026, 3, 3), 120)
        with pytest.raises(ValidationException):
            await ApprovalService.submit_overtime_claim(
                db, org["marketer"],
                OvertimeClaimCreate(
                    ot_date=date(2026, 3, 3), hours=Decimal("2"), project_details="Copy",
                ),
                now=_local(2026, 3, 3, 20),
            )

    async def test_claim_after_deadline_is_invalid(self, db, org):
        await _seed_attendance(db, org["employee"], date(2026, 3, 3), 300)
        with pytest.raises(ValidationException):
            await ApprovalService.submit_overtime_claim(
                db, org["employee"],
                OvertimeClaimCreate(
                    ot_date=date(2026, 3, 3), hours=Decimal("5"), project_details="Late",
                ),
                now=_local(2026, 3, 5, 0, 1),
            )

    async def test_hours_beyond_recorded_overtime_are_invalid(self, db, org):
        await _seed_attendance(db, org["employee"], date(2026, 3, 3), 300)
        with pytest.raises(ValidationException):
            await ApprovalService.submit_overtime_claim(
                db, org["employee"],
                OvertimeClaimCreate(
                    ot_date=date(2026, 3, 3), hours=Decimal("6"), project_details="Too much",
                ),
                now=_local(2026, 3, 4),
            )

    async def test_no_recorded_overtime_is_invalid(self, db, org):
        with pytest.raises(ValidationException):
            await ApprovalService.submit_overtime_claim(
                db, org["employee"],
                OvertimeClaimCreate(
                    ot_date=date(2026, 3, 3), hours=Decimal("1"), project_details="None",
                ),
                now=_local(2026, 3, 4),
            )

    async def test_second_claim_for_same_day_conflicts(self, db, org):
        await _seed_attendance(db, org["employee"], date(2026, 3, 3), 300)
        claim = OvertimeClaimCreate(
            ot_date=date(2026, 3, 3), hours=Decimal("2"), project_details="Part one",
        )
        await ApprovalService.submit_overtime_claim(
            db, org["employee"], claim, now=_local(2026, 3, 4),
        )
        with pytest.raises(ConflictError):
            await ApprovalService.submit_overtime_claim(
                db, org["employee"], claim, now=_local(2026, 3, 4, 11),
            )

    async def test_zero_hours_is_invalid(self, db, org):
        await _seed_attendance(db, org["employee"], date(2026, 3, 3), 300)
        with pytest.raises(ValidationException):
            await ApprovalService.submit_overtime_claim(
                db, org["employee"],
                OvertimeClaimCreate(
                    ot_date=date(2026, 3, 3), hours=Decimal("0"), project_details="Nothing",
                ),
                now=_local(2026, 3, 4),
            )


# ═════════════════════════════════════════════════════════════════════
# Outdoor duty
# ═════════════════════════════════════════════════════════════════════


class TestOutdoorDuty:
    async def test_return_before_departure_is_invalid(self, db, org):
        data = OutdoorDutyCreate(
            date_out=date(2026, 3, 9), time_out=time(14, 0),
            date_in=date(2026, 3, 9), time_in=time(11, 0),
            purpose="Vendor visit", place_visited="Bhiwandi",
        )
        with pytest.raises(ValidationException):
            await ApprovalService.submit_outdoor_duty(db, org["employee"], data, today=TODAY)

    async def test_chain_is_hod_ceo_admin(self, db, org):
        data = OutdoorDutyCreate(
            date_out=date(2026, 3, 9), time_out=time(10, 0),
            date_in=date(2026, 3, 10), time_in=time(9, 0),
            purpose="Site audit", place_visited="Pune",
        )
        out = await ApprovalService.submit_outdoor_duty(db, org["employee"], data, today=TODAY)
        out = await ApprovalService.act(db, out.id, org["hod"], APPROVE, today=TODAY)
        assert out.awaiting_role == LoginType.ceo
        out = await ApprovalService.act(db, out.id, org["ceo"], APPROVE, today=TODAY)
        assert out.awaiting_role == LoginType.admin
        out = await ApprovalService.act(db, out.id, org["admin"], APPROVE, today=TODAY)
        assert out.state == RequestState.approved
        assert out.kind == RequestKind.outdoor_duty


# ═════════════════════════════════════════════════════════════════════
# Notifications and reads
# ═════════════════════════════════════════════════════════════════════


class TestNotificationsAndReads:
    async def test_failing_notifier_does_not_undo_transition(self, db, org):
        out = await ApprovalService.submit_leave(
            db, org["employee"], _casual(date(2026, 3, 9)),
            notifier=RecordingNotifier(fail=True), today=TODAY,
        )
        out = await ApprovalService.act(
            db, out.id, org["hod"], APPROVE,
            notifier=RecordingNotifier(fail=True), today=TODAY,
        )
        assert out.state == RequestState.stage2_pending

    async def test_default_sink_writes_inbox_rows(self, db, org):
        out = await ApprovalService.submit_leave(
            db, org["employee"], _casual(date(2026, 3, 9)), today=TODAY,
        )
        rows = (
            await db.execute(select(Notification).where(Notification.entity_id == out.id))
        ).scalars().all()
        assert [n.recipient_id for n in rows] == [org["hod"].id]

    async def test_visibility_by_role(self, db, org):
        own = await ApprovalService.submit_leave(
            db, org["employee"], _casual(date(2026, 3, 9)), today=TODAY,
        )
        await ApprovalService.submit_leave(
            db, org["marketer"], _casual(date(2026, 3, 9)), today=TODAY,
        )

        with pytest.raises(NotFoundException):
            await ApprovalService.get_request(db, own.id, org["marketer"])
        assert (await ApprovalService.get_request(db, own.id, org["hod"])).id == own.id

        params = PaginationParams(page=1, page_size=50)
        hod_view, meta = await ApprovalService.list_requests(db, org["hod"], params)
        assert [r.id for r in hod_view] == [own.id]
        assert meta.total == 1

        _, meta = await ApprovalService.list_requests(db, org["admin"], params)
        assert meta.total == 2

        _, meta = await ApprovalService.list_requests(
            db, org["admin"], params, kind=RequestKind.overtime_claim,
        )
        assert meta.total == 0
