"""Appointment schemas for request/response validation."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from app.schemas.users import BeneficiarySummary, ClientSummary, PractitionerSummary, Role


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    ISSUE_REPORTED = "issue_reported"
    VALIDATED = "validated"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Payment status enumeration."""

    UNPAID = "unpaid"
    PAID = "paid"
    FROZEN = "frozen"
    RELEASED = "released"
    REFUNDED = "refunded"


class Transition(str, Enum):
    """Operations that move an appointment between statuses."""

    CONFIRM_PAYMENT = "confirm_payment"
    MARK_COMPLETED = "mark_completed"
    VALIDATE = "validate"
    REPORT_PROBLEM = "report_problem"
    RESOLVE_DISPUTE = "resolve_dispute"
    CANCEL = "cancel"


class CommentKind(str, Enum):
    """Comment kind enumeration."""

    NORMAL = "normal"
    DISPUTE_REPORT = "dispute_report"


class DisputeOutcome(str, Enum):
    """Staff decision closing a dispute."""

    VALIDATED = "validated"
    CANCELLED = "cancelled"


class AppointmentCreate(BaseModel):
    """Schema for booking a new appointment."""

    practitioner_id: UUID
    service_id: UUID
    start_time: datetime
    end_time: datetime
    beneficiary_id: UUID | None = None
    # Only honoured for admins booking on behalf of a client
    client_id: UUID | None = None
    custom_price: Decimal | None = Field(None, gt=0, max_digits=10, decimal_places=2)
    notes: str | None = Field(None, max_length=1000)
    meeting_link: str | None = Field(None, max_length=500)

    @field_validator("end_time")
    @classmethod
    def validate_end_time(cls, v: datetime, info: Any) -> datetime:
        """Validate end time is after start time."""
        if "start_time" in info.data and v <= info.data["start_time"]:
            raise ValueError("End time must be after start time")
        return v


class ValidateRequest(BaseModel):
    """Schema for validating a completed appointment."""

    comment: str | None = Field(None, max_length=2000)


class ReportProblemRequest(BaseModel):
    """Schema for contesting a completed appointment.

    Blank descriptions are rejected by the service so the error is the
    same whichever client calls it.
    """

    description: str = Field(..., max_length=5000)


class CancelRequest(BaseModel):
    """Schema for cancelling an appointment."""

    reason: str | None = Field(None, max_length=1000)
    # Refund decision, admin only
    refund: bool | None = None


class ResolveDisputeRequest(BaseModel):
    """Schema for staff resolution of a dispute."""

    outcome: DisputeOutcome
    refund: bool = False
    note: str | None = Field(None, max_length=2000)


class CustomPriceUpdate(BaseModel):
    """Schema for setting or clearing a practitioner override price."""

    custom_price: Decimal | None = Field(None, gt=0, max_digits=10, decimal_places=2)


class ServiceSummary(BaseModel):
    """Service embedded in appointment projections."""

    id: UUID
    name: str
    category: str | None = None
    duration_minutes: int
    price: Decimal
    price_display: str


class AppointmentResponse(BaseModel):
    """Schema for the raw appointment record."""

    id: UUID
    unique_code: str
    client_id: UUID
    practitioner_id: UUID
    beneficiary_id: UUID | None = None
    service_id: UUID
    custom_price: Decimal | None = None
    start_time: datetime
    end_time: datetime
    status: AppointmentStatus
    payment_status: PaymentStatus
    notes: str | None = None
    meeting_link: str | None = None
    problem_description: str | None = None
    cancellation_reason: str | None = None
    confirmed_at: datetime | None = None
    completed_at: datetime | None = None
    contested_at: datetime | None = None
    dispute_resolved_at: datetime | None = None
    validated_at: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class AppointmentDetailResponse(AppointmentResponse):
    """Appointment joined with its parties and service."""

    client: ClientSummary
    practitioner: PractitionerSummary
    service: ServiceSummary
    beneficiary: BeneficiarySummary | None = None
    effective_price: Decimal | None = None
    price_display: str


class AppointmentListResponse(BaseModel):
    """Schema for paginated appointment list response."""

    total: int
    page: int
    page_size: int
    items: list[AppointmentDetailResponse]


class AppointmentFilters(BaseModel):
    """Schema for appointment filtering."""

    status: AppointmentStatus | None = None
    practitioner_id: UUID | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)


class CommentCreate(BaseModel):
    """Schema for adding a comment."""

    content: str = Field(..., min_length=1, max_length=5000)
    is_private: bool = False


class CommentResponse(BaseModel):
    """Schema for an appointment comment."""

    id: UUID
    appointment_id: UUID
    author_id: UUID | None = None
    content: str
    is_private: bool
    kind: CommentKind
    created_at: datetime

    model_config = {"from_attributes": True}


class AppointmentEventResponse(BaseModel):
    """Schema for an audit trail entry."""

    id: UUID
    appointment_id: UUID
    transition: Transition
    from_status: AppointmentStatus
    to_status: AppointmentStatus
    actor_id: UUID
    actor_role: Role
    reason: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}
