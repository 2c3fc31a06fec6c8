"""Audit records and notification decisions for appointment transitions."""

from collections.abc import Mapping
from datetime import datetime
from typing import Any

import structlog

from app.schemas.appointments import AppointmentStatus, PaymentStatus, Transition
from app.schemas.notifications import NotificationEvent, PlannedNotification
from app.schemas.users import Actor, Role
from app.services.appointment_store import AppointmentStore

logger = structlog.get_logger(__name__)


def notifications_for(
    transition: Transition,
    appointment: Mapping[str, Any],
    from_status: AppointmentStatus,
    actor: Actor,
) -> list[PlannedNotification]:
    """
    Decide who is told about a transition.

    Args:
        transition: Transition that was applied
        appointment: Appointment as read before the transition
        from_status: Status before the transition
        actor: Who performed the transition

    Returns:
        Notifications to deliver once the transition is committed
    """
    client = (Role.CLIENT, appointment["client_id"])
    practitioner = (Role.PRACTITIONER, appointment["practitioner_id"])
    staff = (Role.ADMIN, None)

    def to(event: NotificationEvent, *recipients: tuple[Role, Any]) -> list[PlannedNotification]:
        return [
            PlannedNotification(recipient_role=role, recipient_id=recipient_id, event_type=event)
            for role, recipient_id in recipients
        ]

    planned: list[PlannedNotification] = []

    if transition == Transition.CONFIRM_PAYMENT:
        planned = to(NotificationEvent.APPOINTMENT_CONFIRMED, client, practitioner)
    elif transition == Transition.MARK_COMPLETED:
        planned = to(NotificationEvent.APPOINTMENT_COMPLETED, client)
    elif transition == Transition.VALIDATE:
        planned = to(NotificationEvent.APPOINTMENT_VALIDATED, practitioner)
        if from_status == AppointmentStatus.ISSUE_REPORTED:
            planned += to(NotificationEvent.DISPUTE_RESOLVED, staff)
    elif transition == Transition.REPORT_PROBLEM:
        planned = to(NotificationEvent.PROBLEM_REPORTED, staff, practitioner)
    elif transition == Transition.RESOLVE_DISPUTE:
        planned = to(NotificationEvent.DISPUTE_RESOLVED, client, practitioner)
    elif transition == Transition.CANCEL:
        planned = to(NotificationEvent.APPOINTMENT_CANCELLED, client, practitioner)
        if not actor.is_admin and appointment["payment_status"] == PaymentStatus.PAID.value:
            planned += to(NotificationEvent.REFUND_DECISION_REQUIRED, staff)

    # Nobody is notified about their own action
    return [n for n in planned if not _is_actor(n, actor)]


def _is_actor(notification: PlannedNotification, actor: Actor) -> bool:
    if notification.recipient_role != actor.role:
        return False
    if actor.role == Role.CLIENT:
        return notification.recipient_id == actor.user_id
    if actor.role == Role.PRACTITIONER:
        return notification.recipient_id == actor.practitioner_id
    return False


class AuditEmitter:
    """Writes the transition log entry inside the transition's transaction."""

    def __init__(self, store: AppointmentStore):
        """Initialize emitter with the appointment store."""
        self.store = store

    async def record_transition(
        self,
        appointment: Mapping[str, Any],
        transition: Transition,
        from_status: AppointmentStatus,
        to_status: AppointmentStatus,
        actor: Actor,
        occurred_at: datetime,
        reason: str | None = None,
    ) -> dict[str, Any]:
        """Append exactly one audit record for a transition."""
        event = await self.store.record_event(
            appointment_id=appointment["id"],
            transition=transition,
            from_status=from_status,
            to_status=to_status,
            actor=actor,
            occurred_at=occurred_at,
            reason=reason,
        )

        logger.info(
            "appointment_transition",
            appointment_id=str(appointment["id"]),
            unique_code=appointment.get("unique_code"),
            transition=transition.value,
            from_status=from_status.value,
            to_status=to_status.value,
            actor_id=str(actor.user_id),
            actor_role=actor.role.value,
        )
        return event
