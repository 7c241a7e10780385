"""Approval state machine: stage chains, role skipping and legal transitions.

Each request kind has a fixed chain of three stages. A stage is owned by
one role and is either a *decide* stage (approve / reject) or an
*acknowledge* stage (acknowledge only). Stages owned by a role at or below
the submitter's rank are skipped at creation.

This module is pure: it plans transitions and never touches the database.
``ApprovalService`` applies the plans.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

from hrms_engine.common.constants import (
    ROLE_RANK,
    TERMINAL_STATES,
    Decision,
    LoginType,
    RequestKind,
    RequestState,
    StageStatus,
)
from hrms_engine.common.exceptions import ForbiddenException, ValidationException


class StageMode(str, enum.Enum):
    decide = "decide"
    acknowledge = "acknowledge"


@dataclass(frozen=True)
class StageSpec:
    role: LoginType
    field: str
    mode: StageMode = StageMode.decide

    @property
    def legal_decisions(self) -> frozenset[Decision]:
        if self.mode == StageMode.acknowledge:
            return frozenset({Decision.acknowledge})
        return frozenset({Decision.approve, Decision.reject})

    @property
    def done_status(self) -> StageStatus:
        if self.mode == StageMode.acknowledge:
            return StageStatus.acknowledged
        return StageStatus.approved


_HOD = StageSpec(LoginType.hod, "hod_status")
_ADMIN = StageSpec(LoginType.admin, "admin_status")
_CEO = StageSpec(LoginType.ceo, "ceo_status")

CHAINS: dict[RequestKind, tuple[StageSpec, ...]] = {
    RequestKind.leave: (_HOD, _ADMIN, _CEO),
    RequestKind.overtime_claim: (
        _HOD,
        _CEO,
        StageSpec(LoginType.admin, "admin_status", StageMode.acknowledge),
    ),
    RequestKind.outdoor_duty: (_HOD, _CEO, _ADMIN),
}

_PENDING_STATES = (
    RequestState.stage1_pending,
    RequestState.stage2_pending,
    RequestState.stage3_pending,
)


@dataclass(frozen=True)
class OpeningPlan:
    """Stage statuses and state for a freshly submitted request."""

    statuses: dict[str, StageStatus]
    state: RequestState

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


@dataclass(frozen=True)
class TransitionPlan:
    """Result of a legal action on the current stage."""

    stage: StageSpec
    stage_status: StageStatus
    next_state: RequestState
    next_stage: Optional[StageSpec]

    @property
    def is_terminal(self) -> bool:
        return self.next_state in TERMINAL_STATES

    @property
    def is_success(self) -> bool:
        return self.next_state in (RequestState.approved, RequestState.acknowledged)


def _closing_state(stage: StageSpec) -> RequestState:
    if stage.mode == StageMode.acknowledge:
        return RequestState.acknowledged
    return RequestState.approved


def open_request(kind: RequestKind, submitter_role: LoginType) -> OpeningPlan:
    """Pre-mark every stage the submitter outranks or equals."""
    chain = CHAINS[kind]
    rank = ROLE_RANK[submitter_role]
    statuses: dict[str, StageStatus] = {}
    first_open: Optional[int] = None

    for index, stage in enumerate(chain):
        if ROLE_RANK[stage.role] <= rank:
            statuses[stage.field] = stage.done_status
        else:
            statuses[stage.field] = StageStatus.pending
            if first_open is None:
                first_open = index

    if first_open is None:
        state = _closing_state(chain[-1])
    else:
        state = _PENDING_STATES[first_open]
    return OpeningPlan(statuses=statuses, state=state)


def current_stage(kind: RequestKind, state: RequestState) -> Optional[StageSpec]:
    """Stage awaiting action, or None for a terminal request."""
    if state not in _PENDING_STATES:
        return None
    return CHAINS[kind][_PENDING_STATES.index(state)]


def _next_open(
    chain: tuple[StageSpec, ...], after: int, statuses: dict[str, StageStatus],
) -> Optional[int]:
    for index in range(after + 1, len(chain)):
        if statuses.get(chain[index].field) == StageStatus.pending:
            return index
    return None


def plan_transition(
    kind: RequestKind,
    state: RequestState,
    statuses: dict[str, StageStatus],
    actor_role: LoginType,
    decision: Decision,
) -> TransitionPlan:
    """Validate *actor_role* taking *decision* now and return the outcome.

    Raises ForbiddenException when the request is closed or the actor does
    not own the current stage, ValidationException when the decision is
    not legal for that stage.
    """
    if state in TERMINAL_STATES:
        raise ForbiddenException(f"Request is already {state.value}; no further action allowed.")

    stage = current_stage(kind, state)
    if stage is None:
        raise ForbiddenException(f"Request in state {state.value} cannot be acted on.")
    if actor_role != stage.role:
        raise ForbiddenException(
            f"This request is awaiting {stage.role.value} action; "
            f"{actor_role.value} cannot act on it now."
        )
    if decision not in stage.legal_decisions:
        allowed = ", ".join(sorted(d.value for d in stage.legal_decisions))
        raise ValidationException({
            "decision": [f"'{decision.value}' is not allowed at this stage (allowed: {allowed})."],
        })

    if decision == Decision.reject:
        return TransitionPlan(stage, StageStatus.rejected, RequestState.rejected, None)

    chain = CHAINS[kind]
    index = _PENDING_STATES.index(state)
    done = stage.done_status
    following = _next_open(chain, index, {**statuses, stage.field: done})
    if following is None:
        return TransitionPlan(stage, done, _closing_state(stage), None)
    return TransitionPlan(stage, done, _PENDING_STATES[following], chain[following])
