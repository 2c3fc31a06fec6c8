"""Appointment related tables using SQLAlchemy Core."""

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    Uuid,
    func,
    text,
)

from app.models.base import metadata

services = Table(
    "services",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("name", Text, nullable=False),
    Column("category", Text, nullable=True),
    Column("duration_minutes", Integer, nullable=False, server_default=text("60")),
    # 9999 means "quote on request"
    Column("price", Numeric(10, 2), nullable=False),
    Column("is_active", Boolean, nullable=False, server_default=text("true")),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    CheckConstraint("price >= 0", name="services_price_check"),
)

appointments = Table(
    "appointments",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    # Short code quoted by support and on invoices
    Column("unique_code", String(12), nullable=False, unique=True),
    # Parties
    Column("client_id", Uuid, ForeignKey("users.id"), nullable=False),
    Column("practitioner_id", Uuid, ForeignKey("practitioners.id"), nullable=False),
    Column("beneficiary_id", Uuid, ForeignKey("beneficiaries.id"), nullable=True),
    # Commercial
    Column("service_id", Uuid, ForeignKey("services.id"), nullable=False),
    Column("custom_price", Numeric(10, 2), nullable=True),
    # Schedule
    Column("start_time", DateTime(timezone=True), nullable=False),
    Column("end_time", DateTime(timezone=True), nullable=False),
    # Status management
    Column("status", Text, nullable=False, server_default="pending"),
    Column("payment_status", Text, nullable=False, server_default="unpaid"),
    # Details
    Column("notes", Text, nullable=True),
    Column("meeting_link", Text, nullable=True),
    Column("problem_description", Text, nullable=True),
    Column("cancellation_reason", Text, nullable=True),
    # Lifecycle timestamps
    Column("confirmed_at", DateTime(timezone=True), nullable=True),
    Column("completed_at", DateTime(timezone=True), nullable=True),
    Column("contested_at", DateTime(timezone=True), nullable=True),
    Column("dispute_resolved_at", DateTime(timezone=True), nullable=True),
    Column("validated_at", DateTime(timezone=True), nullable=True),
    Column("cancelled_at", DateTime(timezone=True), nullable=True),
    # Audit fields
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    # Constraints
    CheckConstraint(
        "status IN ('pending', 'confirmed', 'completed', 'issue_reported', 'validated', "
        "'cancelled')",
        name="appointments_status_check",
    ),
    CheckConstraint(
        "payment_status IN ('unpaid', 'paid', 'frozen', 'released', 'refunded')",
        name="appointments_payment_status_check",
    ),
    CheckConstraint("end_time > start_time", name="appointments_time_range_check"),
    Index("ix_appointments_client_id", "client_id"),
    Index("ix_appointments_practitioner_id", "practitioner_id"),
    Index("ix_appointments_status", "status"),
    Index("ix_appointments_start_time", "start_time"),
)

appointment_comments = Table(
    "appointment_comments",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column(
        "appointment_id",
        Uuid,
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("author_id", Uuid, ForeignKey("users.id"), nullable=True),
    Column("content", Text, nullable=False),
    # Private notes are only visible to the practitioner and staff
    Column("is_private", Boolean, nullable=False, server_default=text("false")),
    Column("kind", String(20), nullable=False, server_default="normal"),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    CheckConstraint(
        "kind IN ('normal', 'dispute_report')",
        name="appointment_comments_kind_check",
    ),
    CheckConstraint(
        "NOT (kind = 'dispute_report' AND is_private)",
        name="appointment_comments_dispute_public_check",
    ),
    Index("ix_appointment_comments_appointment_id", "appointment_id"),
)

# Append-only transition log
appointment_events = Table(
    "appointment_events",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column(
        "appointment_id",
        Uuid,
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("transition", String(30), nullable=False),
    Column("from_status", Text, nullable=False),
    Column("to_status", Text, nullable=False),
    Column("actor_id", Uuid, nullable=False),
    Column("actor_role", Text, nullable=False),
    Column("reason", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("ix_appointment_events_appointment_id", "appointment_id"),
)

practitioner_payouts = Table(
    "practitioner_payouts",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    # One release per appointment
    Column(
        "appointment_id",
        Uuid,
        ForeignKey("appointments.id"),
        nullable=False,
        unique=True,
    ),
    Column("practitioner_id", Uuid, ForeignKey("practitioners.id"), nullable=False),
    Column("amount", Numeric(10, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("status", String(20), nullable=False, server_default="eligible"),
    Column("created_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("amount >= 0", name="practitioner_payouts_amount_check"),
)
