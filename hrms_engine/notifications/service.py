"""Notification port, the database sink, and best-effort dispatch helpers."""

from __future__ import annotations

import logging
import uuid
from typing import Iterable, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from hrms_engine.common.constants import NotificationType, RequestKind, RequestState
from hrms_engine.notifications.models import Notification

logger = logging.getLogger(__name__)

KIND_LABELS = {
    RequestKind.leave: "Leave request",
    RequestKind.overtime_claim: "Overtime claim",
    RequestKind.outdoor_duty: "Outdoor duty request",
}


# ── Port ────────────────────────────────────────────────────────────


class NotificationPort(Protocol):
    """Delivery channel for engine notifications."""

    async def notify(
        self,
        recipient_id: uuid.UUID,
        message: str,
        *,
        title: str,
        type: NotificationType = NotificationType.info,
        entity_type: Optional[str] = None,
        entity_id: Optional[uuid.UUID] = None,
    ) -> None:
        ...


# ── Core service ────────────────────────────────────────────────────


class NotificationService:
    """Async notification operations."""

    @staticmethod
    async def create_notification(
        db: AsyncSession,
        *,
        recipient_id: uuid.UUID,
        type: NotificationType = NotificationType.info,
        title: str,
        message: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[uuid.UUID] = None,
    ) -> Notification:
        """Create a new notification and flush to DB."""
        notification = Notification(
            recipient_id=recipient_id,
            type=type,
            title=title,
            message=message,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        db.add(notification)
        await db.flush()
        return notification


class DatabaseNotificationSink:
    """Default port implementation: one inbox row per notification."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def notify(
        self,
        recipient_id: uuid.UUID,
        message: str,
        *,
        title: str,
        type: NotificationType = NotificationType.info,
        entity_type: Optional[str] = None,
        entity_id: Optional[uuid.UUID] = None,
    ) -> None:
        await NotificationService.create_notification(
            self.db,
            recipient_id=recipient_id,
            type=type,
            title=title,
            message=message,
            entity_type=entity_type,
            entity_id=entity_id,
        )


# ── Cross-module helper dispatchers ─────────────────────────────────
# Failures are logged and swallowed: a notification must never undo the
# state change that triggered it.


async def dispatch(
    db: AsyncSession,
    notifier: NotificationPort,
    recipients: Iterable[uuid.UUID],
    message: str,
    *,
    title: str,
    type: NotificationType = NotificationType.info,
    entity_type: Optional[str] = None,
    entity_id: Optional[uuid.UUID] = None,
) -> int:
    """Send one notification per recipient, each in its own savepoint.

    Returns the number delivered.
    """
    delivered = 0
    for recipient_id in dict.fromkeys(recipients):
        try:
            async with db.begin_nested():
                await notifier.notify(
                    recipient_id,
                    message,
                    title=title,
                    type=type,
                    entity_type=entity_type,
                    entity_id=entity_id,
                )
            delivered += 1
        except Exception:
            logger.exception(
                "Notification %r to %s failed (entity %s/%s)",
                title, recipient_id, entity_type, entity_id,
            )
    return delivered


async def notify_approvers(
    db: AsyncSession,
    notifier: NotificationPort,
    request,  # hrms_engine.approvals.models.ApprovalRequest
    approver_ids: Iterable[uuid.UUID],
    stage_role: str,
) -> int:
    """Tell the next stage's approver pool that a request awaits them."""
    label = KIND_LABELS[request.kind]
    return await dispatch(
        db,
        notifier,
        approver_ids,
        f"{label} {request.id} is awaiting {stage_role} review.",
        title=f"{label} pending",
        type=NotificationType.action_required,
        entity_type="approval_request",
        entity_id=request.id,
    )


async def notify_outcome(
    db: AsyncSession,
    notifier: NotificationPort,
    request,  # hrms_engine.approvals.models.ApprovalRequest
    remarks: Optional[str] = None,
) -> int:
    """Tell the employee how their request ended."""
    label = KIND_LABELS[request.kind]
    if request.state == RequestState.rejected:
        title = f"{label} rejected"
        message = f"Your {label.lower()} was rejected."
        if remarks:
            message += f" Reason: {remarks}"
        kind = NotificationType.alert
    else:
        title = f"{label} {request.state.value}"
        message = f"Your {label.lower()} has been {request.state.value}."
        kind = NotificationType.approval

    return await dispatch(
        db,
        notifier,
        [request.employee_id],
        message,
        title=title,
        type=kind,
        entity_type="approval_request",
        entity_id=request.id,
    )
