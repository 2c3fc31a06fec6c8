"""Appointment endpoints."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Query, status

from app.dependencies import AppointmentServiceDep, CurrentActor
from app.schemas.appointments import (
    AppointmentCreate,
    AppointmentDetailResponse,
    AppointmentEventResponse,
    AppointmentFilters,
    AppointmentListResponse,
    AppointmentStatus,
    CancelRequest,
    CommentCreate,
    CommentResponse,
    CustomPriceUpdate,
    ReportProblemRequest,
    ResolveDisputeRequest,
    ValidateRequest,
)
from app.schemas.notifications import NotificationResponse

router = APIRouter()


@router.post(
    "/",
    response_model=AppointmentDetailResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Appointments"],
    summary="Book appointment",
)
async def book_appointment(
    data: AppointmentCreate,
    actor: CurrentActor,
    service: AppointmentServiceDep,
) -> AppointmentDetailResponse:
    """
    Book a new appointment.

    Clients book for themselves; staff book on behalf of a client.
    """
    return await service.book_appointment(actor, data)


@router.get(
    "/",
    response_model=AppointmentListResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="List appointments",
)
async def list_appointments(
    actor: CurrentActor,
    service: AppointmentServiceDep,
    status_filter: AppointmentStatus | None = Query(None, alias="status"),
    practitioner_id: UUID | None = Query(None),
    from_date: datetime | None = Query(None),
    to_date: datetime | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
) -> AppointmentListResponse:
    """
    List appointments visible to the authenticated user with filtering.

    Args:
        actor: Authenticated user
        service: Appointment service
        status_filter: Filter by status
        practitioner_id: Filter by practitioner ID
        from_date: Filter by start date
        to_date: Filter by end date
        page: Page number
        page_size: Items per page

    Returns:
        Paginated list of appointments
    """
    filters = AppointmentFilters(
        status=status_filter,
        practitioner_id=practitioner_id,
        from_date=from_date,
        to_date=to_date,
        page=page,
        page_size=page_size,
    )

    return await service.list_appointments(actor, filters)


@router.get(
    "/{appointment_id}",
    response_model=AppointmentDetailResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Get appointment by ID",
)
async def get_appointment(
    appointment_id: UUID,
    actor: CurrentActor,
    service: AppointmentServiceDep,
) -> AppointmentDetailResponse:
    """Get a specific appointment by ID."""
    return await service.get_appointment(appointment_id, actor)


@router.post(
    "/{appointment_id}/confirm-payment",
    response_model=AppointmentDetailResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Confirm payment",
)
async def confirm_payment(
    appointment_id: UUID,
    actor: CurrentActor,
    service: AppointmentServiceDep,
) -> AppointmentDetailResponse:
    """Record that payment was captured and confirm the appointment (staff only)."""
    return await service.confirm_payment(appointment_id, actor)


@router.post(
    "/{appointment_id}/complete",
    response_model=AppointmentDetailResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Mark appointment as completed",
)
async def mark_completed(
    appointment_id: UUID,
    actor: CurrentActor,
    service: AppointmentServiceDep,
) -> AppointmentDetailResponse:
    """
    Mark a confirmed session as delivered.

    Args:
        appointment_id: Appointment ID
        actor: Assigned practitioner or staff
        service: Appointment service

    Returns:
        Updated appointment
    """
    return await service.mark_completed(appointment_id, actor)


@router.post(
    "/{appointment_id}/validate",
    response_model=AppointmentDetailResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Validate appointment",
)
async def validate_appointment(
    appointment_id: UUID,
    actor: CurrentActor,
    service: AppointmentServiceDep,
    data: ValidateRequest | None = None,
) -> AppointmentDetailResponse:
    """
    Validate a completed session, releasing payment to the practitioner.

    Args:
        appointment_id: Appointment ID
        actor: Client of the appointment or staff
        service: Appointment service
        data: Optional validation comment

    Returns:
        Updated appointment
    """
    return await service.validate(appointment_id, actor, comment=data.comment if data else None)


@router.post(
    "/{appointment_id}/report-problem",
    response_model=AppointmentDetailResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Report a problem",
)
async def report_problem(
    appointment_id: UUID,
    data: ReportProblemRequest,
    actor: CurrentActor,
    service: AppointmentServiceDep,
) -> AppointmentDetailResponse:
    """
    Contest a completed session. Payment is frozen until the dispute is resolved.

    Args:
        appointment_id: Appointment ID
        data: Problem description
        actor: Client of the appointment
        service: Appointment service

    Returns:
        Updated appointment
    """
    return await service.report_problem(appointment_id, actor, data.description)


@router.post(
    "/{appointment_id}/resolve",
    response_model=AppointmentDetailResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Resolve dispute",
)
async def resolve_dispute(
    appointment_id: UUID,
    data: ResolveDisputeRequest,
    actor: CurrentActor,
    service: AppointmentServiceDep,
) -> AppointmentDetailResponse:
    """Close an open dispute by staff decision."""
    return await service.resolve_dispute(
        appointment_id,
        actor,
        outcome=data.outcome,
        refund=data.refund,
        note=data.note,
    )


@router.post(
    "/{appointment_id}/cancel",
    response_model=AppointmentDetailResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Cancel appointment",
)
async def cancel_appointment(
    appointment_id: UUID,
    actor: CurrentActor,
    service: AppointmentServiceDep,
    data: CancelRequest | None = None,
) -> AppointmentDetailResponse:
    """
    Cancel a pending or confirmed appointment. The record is kept.

    Args:
        appointment_id: Appointment ID
        actor: Client, practitioner or staff
        service: Appointment service
        data: Optional reason and staff refund decision

    Returns:
        Updated appointment
    """
    data = data or CancelRequest()
    return await service.cancel(appointment_id, actor, reason=data.reason, refund=data.refund)


@router.put(
    "/{appointment_id}/custom-price",
    response_model=AppointmentDetailResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Set custom price",
)
async def update_custom_price(
    appointment_id: UUID,
    data: CustomPriceUpdate,
    actor: CurrentActor,
    service: AppointmentServiceDep,
) -> AppointmentDetailResponse:
    """Set or clear the price agreed for an appointment."""
    return await service.update_custom_price(appointment_id, actor, data.custom_price)


@router.get(
    "/{appointment_id}/comments",
    response_model=list[CommentResponse],
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="List comments",
)
async def list_comments(
    appointment_id: UUID,
    actor: CurrentActor,
    service: AppointmentServiceDep,
) -> list[CommentResponse]:
    """List comments on an appointment. Private notes are hidden from clients."""
    return await service.list_comments(appointment_id, actor)


@router.post(
    "/{appointment_id}/comments",
    response_model=CommentResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Appointments"],
    summary="Add comment",
)
async def add_comment(
    appointment_id: UUID,
    data: CommentCreate,
    actor: CurrentActor,
    service: AppointmentServiceDep,
) -> CommentResponse:
    """Add a comment to an appointment."""
    return await service.add_comment(appointment_id, actor, data)


@router.delete(
    "/{appointment_id}/comments/{comment_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Appointments"],
    summary="Delete comment",
)
async def delete_comment(
    appointment_id: UUID,
    comment_id: UUID,
    actor: CurrentActor,
    service: AppointmentServiceDep,
) -> None:
    """Delete a comment (staff only)."""
    await service.delete_comment(appointment_id, comment_id, actor)


@router.get(
    "/{appointment_id}/events",
    response_model=list[AppointmentEventResponse],
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Get audit trail",
)
async def list_events(
    appointment_id: UUID,
    actor: CurrentActor,
    service: AppointmentServiceDep,
) -> list[AppointmentEventResponse]:
    """List the status transitions recorded for an appointment."""
    return await service.list_events(appointment_id, actor)


@router.get(
    "/{appointment_id}/notifications",
    response_model=list[NotificationResponse],
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Get notification log",
)
async def list_notifications(
    appointment_id: UUID,
    actor: CurrentActor,
    service: AppointmentServiceDep,
) -> list[NotificationResponse]:
    """List notifications sent about an appointment, with delivery status (staff only)."""
    return await service.list_notifications(appointment_id, actor)
