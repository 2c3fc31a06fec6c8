"""Notification log for outbound appointment notifications."""

from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Table,
    Text,
    Uuid,
    func,
)

from app.models.base import metadata

notifications = Table(
    "notifications",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column(
        "appointment_id",
        Uuid,
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("recipient_role", String(20), nullable=False),
    # Null for role-wide alerts (e.g. all staff)
    Column("recipient_id", Uuid, nullable=True),
    Column("event_type", String(50), nullable=False),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("failure_reason", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("sent_at", DateTime(timezone=True), nullable=True),
    CheckConstraint(
        "recipient_role IN ('client', 'practitioner', 'admin')",
        name="notifications_recipient_role_check",
    ),
    CheckConstraint(
        "status IN ('pending', 'sent', 'failed')",
        name="notifications_status_check",
    ),
    Index("idx_notifications_appointment_id", "appointment_id"),
    Index("idx_notifications_status", "status"),
)
