"""User and actor schemas."""

from datetime import date
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class Role(str, Enum):
    """Account role enumeration."""

    CLIENT = "client"
    PRACTITIONER = "practitioner"
    ADMIN = "admin"


class Actor(BaseModel):
    """Identity performing an operation.

    Always passed explicitly into the service layer; nothing below the
    HTTP dependencies looks up a "current user" on its own.
    """

    model_config = ConfigDict(frozen=True)

    user_id: UUID
    role: Role
    # Set when the user has a practitioner profile
    practitioner_id: UUID | None = None

    @property
    def is_admin(self) -> bool:
        """Check if the actor is staff."""
        return self.role == Role.ADMIN


class ClientSummary(BaseModel):
    """Client identity embedded in appointment projections."""

    id: UUID
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None


class PractitionerSummary(BaseModel):
    """Practitioner identity embedded in appointment projections."""

    id: UUID
    user_id: UUID
    pseudo: str | None = None
    first_name: str | None = None
    last_name: str | None = None


class BeneficiarySummary(BaseModel):
    """Beneficiary identity; birth date and contact are redactable."""

    id: UUID
    first_name: str
    last_name: str
    birth_date: date | None = None
    email: str | None = None
    phone: str | None = None
