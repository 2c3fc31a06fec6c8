"""Notification schemas."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field

from app.schemas.users import Role


class NotificationEvent(str, Enum):
    """Appointment events that produce outbound notifications."""

    APPOINTMENT_CONFIRMED = "appointment_confirmed"
    APPOINTMENT_COMPLETED = "appointment_completed"
    APPOINTMENT_VALIDATED = "appointment_validated"
    PROBLEM_REPORTED = "problem_reported"
    DISPUTE_RESOLVED = "dispute_resolved"
    APPOINTMENT_CANCELLED = "appointment_cancelled"
    REFUND_DECISION_REQUIRED = "refund_decision_required"


class NotificationStatus(str, Enum):
    """Delivery status of a notification."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class PlannedNotification(BaseModel):
    """A notification decided by a transition, delivered after commit."""

    recipient_role: Role
    # Client user ID or practitioner ID; None addresses the whole role
    recipient_id: UUID | None = None
    event_type: NotificationEvent


class NotificationResponse(BaseModel):
    """Schema for a notification log entry."""

    id: UUID
    appointment_id: UUID
    recipient_role: Role
    recipient_id: UUID | None = None
    event_type: NotificationEvent
    status: NotificationStatus
    failure_reason: str | None = Field(default=None)
    created_at: datetime
    sent_at: datetime | None = None

    model_config = {"from_attributes": True}
