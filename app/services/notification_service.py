"""Outbound appointment notifications via Firebase Cloud Messaging."""

import asyncio
from collections.abc import Iterable
from datetime import UTC, datetime
from uuid import UUID, uuid4

import structlog
from firebase_admin import messaging
from sqlalchemy import desc, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.notifications import notifications
from app.schemas.notifications import (
    NotificationEvent,
    NotificationResponse,
    NotificationStatus,
    PlannedNotification,
)
from app.schemas.users import Role

logger = structlog.get_logger(__name__)

MESSAGES: dict[NotificationEvent, tuple[str, str]] = {
    NotificationEvent.APPOINTMENT_CONFIRMED: (
        "Appointment confirmed",
        "Your appointment {code} is confirmed.",
    ),
    NotificationEvent.APPOINTMENT_COMPLETED: (
        "Session completed",
        "Your session {code} was marked as completed. Please validate it or report a problem.",
    ),
    NotificationEvent.APPOINTMENT_VALIDATED: (
        "Session validated",
        "The client validated session {code}. Your payment has been released.",
    ),
    NotificationEvent.PROBLEM_REPORTED: (
        "Problem reported",
        "A problem was reported on appointment {code}. Payment is on hold.",
    ),
    NotificationEvent.DISPUTE_RESOLVED: (
        "Dispute resolved",
        "The dispute on appointment {code} has been resolved.",
    ),
    NotificationEvent.APPOINTMENT_CANCELLED: (
        "Appointment cancelled",
        "Appointment {code} has been cancelled.",
    ),
    NotificationEvent.REFUND_DECISION_REQUIRED: (
        "Refund decision required",
        "Paid appointment {code} was cancelled. Decide whether to refund it.",
    ),
}


def topic_for(recipient_role: Role, recipient_id: UUID | None = None) -> str:
    """FCM topic a recipient is subscribed to."""
    topic = f"{settings.notification_topic_prefix}-{recipient_role.value}"
    if recipient_id is not None:
        topic = f"{topic}-{recipient_id}"
    return topic


class NotificationService:
    """Best-effort delivery of appointment notifications.

    Nothing in here raises: a lost notification is recoverable from the
    staff dashboards, a failed transition is not.
    """

    @staticmethod
    async def send_push_notification(
        topic: str,
        title: str,
        body: str,
        data: dict[str, str] | None = None,
    ) -> str:
        """
        Send a push notification to an FCM topic.

        Args:
            topic: FCM topic name
            title: Notification title
            body: Notification body
            data: Optional data payload

        Returns:
            FCM message ID

        Raises:
            TimeoutError: If FCM does not answer within the notification timeout

        The timeout only stops waiting: the worker thread keeps its HTTP call
        until the Firebase app's own httpTimeout, so a send reported as
        failed here may still reach the topic. initialize_firebase sets that
        httpTimeout to the same value to bound the overlap.
        """
        message = messaging.Message(
            notification=messaging.Notification(
                title=title,
                body=body,
            ),
            data=data or {},
            topic=topic,
            android=messaging.AndroidConfig(priority="high"),
        )
        return await asyncio.wait_for(
            asyncio.to_thread(messaging.send, message),
            timeout=settings.notification_timeout_seconds,
        )

    @staticmethod
    async def notify(
        db: AsyncSession,
        recipient_role: Role,
        appointment_id: UUID,
        event_type: NotificationEvent,
        recipient_id: UUID | None = None,
        unique_code: str | None = None,
    ) -> NotificationStatus:
        """
        Record and deliver one notification.

        Args:
            db: Database session
            recipient_role: Role of the recipient
            appointment_id: Appointment the notification is about
            event_type: What happened
            recipient_id: Individual recipient, None for the whole role
            unique_code: Appointment code shown in the message

        Returns:
            Final delivery status
        """
        notification_id = uuid4()
        try:
            await db.execute(
                insert(notifications).values(
                    id=notification_id,
                    appointment_id=appointment_id,
                    recipient_role=recipient_role.value,
                    recipient_id=recipient_id,
                    event_type=event_type.value,
                    status=NotificationStatus.PENDING.value,
                )
            )
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.warning(
                "notification_record_failed",
                appointment_id=str(appointment_id),
                event_type=event_type.value,
                error=str(e),
            )
            return NotificationStatus.FAILED

        title, body = MESSAGES[event_type]
        topic = topic_for(recipient_role, recipient_id)

        try:
            message_id = await NotificationService.send_push_notification(
                topic=topic,
                title=title,
                body=body.format(code=unique_code or ""),
                data={
                    "appointment_id": str(appointment_id),
                    "event_type": event_type.value,
                },
            )
            final_status = NotificationStatus.SENT
            failure_reason = None
            logger.info(
                "notification_sent",
                appointment_id=str(appointment_id),
                event_type=event_type.value,
                topic=topic,
                message_id=message_id,
            )
        except Exception as e:
            final_status = NotificationStatus.FAILED
            failure_reason = str(e) or e.__class__.__name__
            logger.warning(
                "notification_delivery_failed",
                appointment_id=str(appointment_id),
                event_type=event_type.value,
                topic=topic,
                error=failure_reason,
            )

        try:
            await db.execute(
                update(notifications)
                .where(notifications.c.id == notification_id)
                .values(
                    status=final_status.value,
                    failure_reason=failure_reason,
                    sent_at=datetime.now(UTC) if final_status == NotificationStatus.SENT else None,
                )
            )
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.warning(
                "notification_status_update_failed",
                notification_id=str(notification_id),
                error=str(e),
            )

        return final_status

    @staticmethod
    async def dispatch(
        db: AsyncSession,
        appointment_id: UUID,
        planned: Iterable[PlannedNotification],
        unique_code: str | None = None,
    ) -> None:
        """Deliver the notifications decided for a committed transition."""
        for item in planned:
            await NotificationService.notify(
                db=db,
                recipient_role=item.recipient_role,
                appointment_id=appointment_id,
                event_type=item.event_type,
                recipient_id=item.recipient_id,
                unique_code=unique_code,
            )

    @staticmethod
    async def list_for_appointment(
        db: AsyncSession,
        appointment_id: UUID,
    ) -> list[NotificationResponse]:
        """List notifications sent about an appointment, newest first."""
        result = await db.execute(
            select(notifications)
            .where(notifications.c.appointment_id == appointment_id)
            .order_by(desc(notifications.c.created_at))
        )
        return [
            NotificationResponse.model_validate(dict(row._mapping)) for row in result.fetchall()
        ]
