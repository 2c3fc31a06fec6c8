"""Database models."""

from app.models.appointments import (
    appointment_comments,
    appointment_events,
    appointments,
    practitioner_payouts,
    services,
)
from app.models.base import metadata
from app.models.notifications import notifications
from app.models.users import beneficiaries, practitioners, users

__all__ = [
    "appointment_comments",
    "appointment_events",
    "appointments",
    "beneficiaries",
    "metadata",
    "notifications",
    "practitioner_payouts",
    "practitioners",
    "services",
    "users",
]
