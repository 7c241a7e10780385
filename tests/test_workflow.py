"""Approval state machine — role skipping, stage ordering, legal decisions."""

from __future__ import annotations

import pytest

from hrms_engine.approvals.workflow import current_stage, open_request, plan_transition
from hrms_engine.common.constants import (
    Decision,
    LoginType,
    RequestKind,
    RequestState,
    StageStatus,
)
from hrms_engine.common.exceptions import ForbiddenException, ValidationException

P, A, R, K = (
    StageStatus.pending,
    StageStatus.approved,
    StageStatus.rejected,
    StageStatus.acknowledged,
)


def _statuses(hod, admin, ceo) -> dict:
    return {"hod_status": hod, "admin_status": admin, "ceo_status": ceo}


# ═════════════════════════════════════════════════════════════════════
# Opening
# ═════════════════════════════════════════════════════════════════════


class TestOpenRequest:
    def test_employee_starts_at_first_stage(self):
        plan = open_request(RequestKind.leave, LoginType.employee)
        assert plan.state == RequestState.stage1_pending
        assert plan.statuses == _statuses(P, P, P)
        assert not plan.is_terminal

    def test_hod_skips_own_stage(self):
        plan = open_request(RequestKind.leave, LoginType.hod)
        assert plan.statuses == _statuses(A, P, P)
        assert plan.state == RequestState.stage2_pending
        assert current_stage(RequestKind.leave, plan.state).role == LoginType.admin

    def test_admin_leave_waits_for_ceo(self):
        plan = open_request(RequestKind.leave, LoginType.admin)
        assert plan.statuses == _statuses(A, A, P)
        assert plan.state == RequestState.stage3_pending

    def test_ceo_leave_is_closed_immediately(self):
        plan = open_request(RequestKind.leave, LoginType.ceo)
        assert plan.state == RequestState.approved
        assert plan.is_terminal

    def test_ceo_overtime_claim_is_acknowledged(self):
        plan = open_request(RequestKind.overtime_claim, LoginType.ceo)
        assert plan.statuses == _statuses(A, K, A)
        assert plan.state == RequestState.acknowledged

    def test_admin_outdoor_duty_waits_for_ceo_at_stage_two(self):
        plan = open_request(RequestKind.outdoor_duty, LoginType.admin)
        assert plan.state == RequestState.stage2_pending
        assert current_stage(RequestKind.outdoor_duty, plan.state).role == LoginType.ceo


# ═════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════


class TestPlanTransition:
    def test_leave_chain_hod_admin_ceo(self):
        statuses = _statuses(P, P, P)
        step = plan_transition(
            RequestKind.leave, RequestState.stage1_pending, statuses,
            LoginType.hod, Decision.approve,
        )
        assert step.next_state == RequestState.stage2_pending
        assert step.next_stage.role == LoginType.admin

        statuses["hod_status"] = A
        step = plan_transition(
            RequestKind.leave, RequestState.stage2_pending, statuses,
            LoginType.admin, Decision.approve,
        )
        assert step.next_state == RequestState.stage3_pending

        statuses["admin_status"] = A
        step = plan_transition(
            RequestKind.leave, RequestState.stage3_pending, statuses,
            LoginType.ceo, Decision.approve,
        )
        assert step.next_state == RequestState.approved
        assert step.is_terminal and step.is_success

    def test_overtime_chain_ends_with_admin_acknowledgement(self):
        step = plan_transition(
            RequestKind.overtime_claim, RequestState.stage2_pending, _statuses(A, P, P),
            LoginType.ceo, Decision.approve,
        )
        assert step.next_stage.role == LoginType.admin
        assert step.next_state == RequestState.stage3_pending

        step = plan_transition(
            RequestKind.overtime_claim, RequestState.stage3_pending, _statuses(A, P, A),
            LoginType.admin, Decision.acknowledge,
        )
        assert step.stage_status == K
        assert step.next_state == RequestState.acknowledged
        assert step.is_success

    def test_admin_before_hod_is_forbidden(self):
        with pytest.raises(ForbiddenException):
            plan_transition(
                RequestKind.leave, RequestState.stage1_pending, _statuses(P, P, P),
                LoginType.admin, Decision.approve,
            )

    def test_reject_closes_request(self):
        step = plan_transition(
            RequestKind.outdoor_duty, RequestState.stage1_pending, _statuses(P, P, P),
            LoginType.hod, Decision.reject,
        )
        assert step.next_state == RequestState.rejected
        assert step.stage_status == R
        assert step.is_terminal and not step.is_success

    def test_acknowledge_is_illegal_on_decide_stage(self):
        with pytest.raises(ValidationException):
            plan_transition(
                RequestKind.leave, RequestState.stage1_pending, _statuses(P, P, P),
                LoginType.hod, Decision.acknowledge,
            )

    def test_reject_is_illegal_on_acknowledge_stage(self):
        with pytest.raises(ValidationException):
            plan_transition(
                RequestKind.overtime_claim, RequestState.stage3_pending, _statuses(A, P, A),
                LoginType.admin, Decision.reject,
            )

    @pytest.mark.parametrize(
        "state", [RequestState.approved, RequestState.rejected, RequestState.acknowledged],
    )
    def test_terminal_requests_accept_no_action(self, state):
        with pytest.raises(ForbiddenException):
            plan_transition(
                RequestKind.leave, state, _statuses(A, A, A), LoginType.ceo, Decision.approve,
            )
