"""Appointment service for booking and lifecycle transitions."""

from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import (
    AppException,
    EmptyDescriptionException,
    ForbiddenException,
    PaymentReleaseFailedException,
    PreconditionFailedException,
    ValidationException,
)
from app.core.redis_client import CacheManager
from app.database import AsyncSessionLocal
from app.schemas.appointments import (
    AppointmentCreate,
    AppointmentDetailResponse,
    AppointmentEventResponse,
    AppointmentFilters,
    AppointmentListResponse,
    AppointmentStatus,
    CommentCreate,
    CommentKind,
    CommentResponse,
    DisputeOutcome,
    PaymentStatus,
    Transition,
)
from app.schemas.notifications import NotificationResponse, PlannedNotification
from app.schemas.users import Actor, Role
from app.services.appointment_codes import generate_appointment_code
from app.services.appointment_store import AppointmentStore, utc
from app.services.audit_service import AuditEmitter, notifications_for
from app.services.authorization import (
    can_decide_refund,
    ensure_can_transition,
    ensure_can_view,
    is_practitioner_of,
)
from app.services.notification_service import NotificationService
from app.services.payment_service import LedgerPaymentGateway, PaymentGateway
from app.services.pricing import effective_price, validate_custom_price
from app.services.projection_service import AppointmentProjector
from app.services.state_machine import target_status

logger = structlog.get_logger(__name__)

SideEffect = Callable[[datetime], Awaitable[None]]
# Appointment ID, unique code and recipients of a committed transition
PendingDelivery = tuple[UUID, str, list[PlannedNotification]]

# Statuses in which the agreed price may still change
PRICE_EDITABLE_STATUSES = [AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED]
CODE_ATTEMPTS = 3


class AppointmentService:
    """Service for managing appointments.

    Every transition reads the appointment, checks the actor and the
    lifecycle table, then writes the new status conditionally on the status
    it read. The status write, its side effects and the audit record are
    committed together. Notifications are queued on commit and sent by
    deliver_notifications once the caller has its answer.
    """

    def __init__(
        self,
        db: AsyncSession,
        cache_manager: CacheManager | None = None,
        payment_gateway: PaymentGateway | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        """Initialize service with database session and collaborators."""
        self.db = db
        self.store = AppointmentStore(db)
        self.audit = AuditEmitter(self.store)
        self.payments = payment_gateway or LedgerPaymentGateway(db)
        self.projector = AppointmentProjector(db, cache_manager)
        self.session_factory = session_factory or AsyncSessionLocal
        self.pending_deliveries: list[PendingDelivery] = []

    async def _apply_transition(
        self,
        appointment: dict[str, Any],
        actor: Actor,
        transition: Transition,
        new_status: AppointmentStatus,
        fields: dict[str, Any],
        occurred_at: datetime,
        reason: str | None = None,
        side_effects: list[SideEffect] | None = None,
    ) -> AppointmentDetailResponse:
        """
        Write a transition atomically and queue its notifications.

        Raises:
            PreconditionFailedException: If the status changed since it was read
        """
        from_status = AppointmentStatus(appointment["status"])

        try:
            updated = await self.store.update_appointment_status(
                appointment["id"],
                expected_status=from_status,
                new_status=new_status,
                fields={**fields, "updated_at": occurred_at},
            )
            if not updated:
                raise PreconditionFailedException(
                    "The appointment was changed by someone else, refresh it and try again"
                )

            for side_effect in side_effects or []:
                await side_effect(occurred_at)

            await self.audit.record_transition(
                appointment,
                transition=transition,
                from_status=from_status,
                to_status=new_status,
                actor=actor,
                occurred_at=occurred_at,
                reason=reason,
            )
            await self.store.commit()
        except Exception:
            await self.store.rollback()
            logger.info(
                "appointment_transition_rejected",
                appointment_id=str(appointment["id"]),
                transition=transition.value,
                from_status=from_status.value,
            )
            raise

        self.projector.invalidate(appointment["id"])

        self.pending_deliveries.append(
            (
                appointment["id"],
                appointment["unique_code"],
                notifications_for(transition, appointment, from_status, actor),
            )
        )

        return await self.projector.get(appointment["id"], actor)

    async def deliver_notifications(self) -> None:
        """
        Send the notifications queued by committed transitions.

        Runs on a session of its own, after the response has been sent when
        scheduled as a background task. Delivery failures are recorded on
        the notification rows and never raised.
        """
        pending, self.pending_deliveries = self.pending_deliveries, []
        if not pending:
            return

        async with self.session_factory() as session:
            for appointment_id, unique_code, planned in pending:
                await NotificationService.dispatch(
                    session,
                    appointment_id,
                    planned,
                    unique_code=unique_code,
                )

    def _comment_effect(
        self,
        appointment_id: UUID,
        author: Actor,
        content: str,
        kind: CommentKind = CommentKind.NORMAL,
    ) -> SideEffect:
        async def append(occurred_at: datetime) -> None:
            await self.store.append_comment(
                appointment_id,
                author_id=author.user_id,
                content=content,
                is_private=False,
                kind=kind,
                created_at=occurred_at,
            )

        return append

    def _release_effect(self, appointment: Mapping[str, Any]) -> SideEffect:
        async def release(occurred_at: datetime) -> None:
            service = await self.store.get_service(appointment["service_id"])
            amount = effective_price(appointment["custom_price"], service["price"])
            try:
                await self.payments.release_payment(appointment, amount)
            except AppException:
                raise
            except Exception as e:
                logger.error(
                    "payment_release_failed",
                    appointment_id=str(appointment["id"]),
                    error=str(e),
                )
                raise PaymentReleaseFailedException() from e

        return release

    async def book_appointment(
        self,
        actor: Actor,
        data: AppointmentCreate,
    ) -> AppointmentDetailResponse:
        """
        Book a new appointment.

        Clients book for themselves, optionally for one of their
        beneficiaries. Admins book on behalf of a client and may agree a
        custom price up front.

        Args:
            actor: Who is booking
            data: Appointment booking data

        Returns:
            Created appointment

        Raises:
            ForbiddenException: If the actor may not book this appointment
            NotFoundException: If a referenced record does not exist
            ValidationException: If the booking data is inconsistent
            PriceBelowFloorException: If the custom price is below the service price
        """
        if actor.role == Role.PRACTITIONER:
            raise ForbiddenException("Practitioners cannot book appointments")

        if actor.is_admin:
            if data.client_id is None:
                raise ValidationException("client_id is required when booking for a client")
            client_id = data.client_id
        else:
            if data.client_id is not None and data.client_id != actor.user_id:
                raise ForbiddenException("Clients can only book for themselves")
            if data.custom_price is not None:
                raise ForbiddenException("Only staff can agree a custom price")
            client_id = actor.user_id

        start_time = utc(data.start_time).astimezone(UTC)
        end_time = utc(data.end_time).astimezone(UTC)
        now = datetime.now(UTC)
        if start_time <= now:
            raise ValidationException("Appointments must be booked in the future")

        client = await self.store.get_user(client_id)
        if client["role"] != Role.CLIENT.value or not client["is_active"]:
            raise ValidationException("Appointments can only be booked for an active client")

        practitioner = await self.store.get_practitioner(data.practitioner_id)
        if not practitioner["is_active"]:
            raise ValidationException("This practitioner is not taking appointments")

        service = await self.store.get_service(data.service_id)
        if not service["is_active"]:
            raise ValidationException("This service is no longer offered")

        if data.beneficiary_id is not None:
            beneficiary = await self.store.get_beneficiary(data.beneficiary_id)
            if beneficiary["owner_id"] != client_id:
                raise ForbiddenException("The beneficiary does not belong to this client")

        validate_custom_price(data.custom_price, service["price"])

        values = {
            "client_id": client_id,
            "practitioner_id": data.practitioner_id,
            "beneficiary_id": data.beneficiary_id,
            "service_id": data.service_id,
            "custom_price": data.custom_price,
            "start_time": start_time,
            "end_time": end_time,
            "notes": data.notes,
            "meeting_link": data.meeting_link,
            "status": AppointmentStatus.PENDING.value,
            "payment_status": PaymentStatus.UNPAID.value,
            "created_at": now,
            "updated_at": now,
        }

        for attempt in range(1, CODE_ATTEMPTS + 1):
            values["unique_code"] = generate_appointment_code()
            try:
                appointment_id = await self.store.insert_appointment(values)
                await self.store.commit()
                break
            except IntegrityError:
                await self.store.rollback()
                logger.warning("appointment_code_collision", attempt=attempt)
                if attempt == CODE_ATTEMPTS:
                    raise
            except Exception:
                await self.store.rollback()
                raise

        logger.info(
            "appointment_booked",
            appointment_id=str(appointment_id),
            unique_code=values["unique_code"],
            client_id=str(client_id),
            practitioner_id=str(data.practitioner_id),
            booked_by=str(actor.user_id),
        )

        return await self.projector.get(appointment_id, actor)

    async def get_appointment(
        self,
        appointment_id: UUID,
        actor: Actor,
    ) -> AppointmentDetailResponse:
        """
        Get appointment by ID as seen by the actor.

        Raises:
            NotFoundException: If appointment not found
            ForbiddenException: If actor doesn't have access
        """
        return await self.projector.get(appointment_id, actor)

    async def list_appointments(
        self,
        actor: Actor,
        filters: AppointmentFilters,
    ) -> AppointmentListResponse:
        """List appointments visible to the actor."""
        return await self.projector.list_appointments(actor, filters)

    async def confirm_payment(
        self,
        appointment_id: UUID,
        actor: Actor,
    ) -> AppointmentDetailResponse:
        """
        Acknowledge the upstream payment capture of a pending appointment.

        Raises:
            NotFoundException: If appointment not found
            ForbiddenException: If actor is not staff
            PreconditionFailedException: If appointment is not pending
        """
        appointment = await self.store.get_appointment(appointment_id)
        ensure_can_transition(actor, appointment, Transition.CONFIRM_PAYMENT)
        new_status = target_status(Transition.CONFIRM_PAYMENT, appointment["status"])

        now = datetime.now(UTC)
        return await self._apply_transition(
            appointment,
            actor,
            Transition.CONFIRM_PAYMENT,
            new_status,
            fields={"payment_status": PaymentStatus.PAID.value, "confirmed_at": now},
            occurred_at=now,
        )

    async def mark_completed(
        self,
        appointment_id: UUID,
        actor: Actor,
    ) -> AppointmentDetailResponse:
        """
        Mark a confirmed session as delivered.

        Raises:
            NotFoundException: If appointment not found
            ForbiddenException: If actor is neither the practitioner nor staff
            PreconditionFailedException: If appointment is not confirmed or has not started
        """
        appointment = await self.store.get_appointment(appointment_id)
        ensure_can_transition(actor, appointment, Transition.MARK_COMPLETED)
        new_status = target_status(Transition.MARK_COMPLETED, appointment["status"])

        now = datetime.now(UTC)
        if appointment["start_time"] > now:
            raise PreconditionFailedException(
                "An appointment cannot be marked as completed before it starts"
            )

        return await self._apply_transition(
            appointment,
            actor,
            Transition.MARK_COMPLETED,
            new_status,
            fields={"completed_at": now},
            occurred_at=now,
        )

    async def validate(
        self,
        appointment_id: UUID,
        actor: Actor,
        comment: str | None = None,
    ) -> AppointmentDetailResponse:
        """
        Validate a completed or contested session and release payment.

        Args:
            appointment_id: Appointment ID
            actor: Client of the appointment or staff
            comment: Optional public comment left with the validation

        Raises:
            NotFoundException: If appointment not found
            ForbiddenException: If actor may not validate
            PreconditionFailedException: If appointment is not completed or contested
            PaymentReleaseFailedException: If payment could not be released
        """
        appointment = await self.store.get_appointment(appointment_id)
        ensure_can_transition(actor, appointment, Transition.VALIDATE)
        from_status = AppointmentStatus(appointment["status"])
        new_status = target_status(Transition.VALIDATE, from_status)

        now = datetime.now(UTC)
        fields: dict[str, Any] = {
            "payment_status": PaymentStatus.RELEASED.value,
            "validated_at": now,
        }
        if from_status == AppointmentStatus.ISSUE_REPORTED:
            fields["dispute_resolved_at"] = now

        side_effects = []
        if comment and comment.strip():
            side_effects.append(self._comment_effect(appointment_id, actor, comment.strip()))
        side_effects.append(self._release_effect(appointment))

        return await self._apply_transition(
            appointment,
            actor,
            Transition.VALIDATE,
            new_status,
            fields=fields,
            occurred_at=now,
            side_effects=side_effects,
        )

    async def report_problem(
        self,
        appointment_id: UUID,
        actor: Actor,
        description: str,
    ) -> AppointmentDetailResponse:
        """
        Contest a completed session and freeze its payment.

        Raises:
            NotFoundException: If appointment not found
            ForbiddenException: If actor is not the client
            PreconditionFailedException: If not completed or already contested
            EmptyDescriptionException: If description is blank
        """
        appointment = await self.store.get_appointment(appointment_id)
        ensure_can_transition(actor, appointment, Transition.REPORT_PROBLEM)

        description = (description or "").strip()
        if not description:
            raise EmptyDescriptionException()

        if appointment["contested_at"] is not None:
            raise PreconditionFailedException(
                "A problem has already been reported for this appointment"
            )
        new_status = target_status(Transition.REPORT_PROBLEM, appointment["status"])

        now = datetime.now(UTC)
        return await self._apply_transition(
            appointment,
            actor,
            Transition.REPORT_PROBLEM,
            new_status,
            fields={
                "payment_status": PaymentStatus.FROZEN.value,
                "problem_description": description,
                "contested_at": now,
            },
            occurred_at=now,
            reason=description,
            side_effects=[
                self._comment_effect(
                    appointment_id, actor, description, kind=CommentKind.DISPUTE_REPORT
                )
            ],
        )

    async def resolve_dispute(
        self,
        appointment_id: UUID,
        actor: Actor,
        outcome: DisputeOutcome,
        refund: bool = False,
        note: str | None = None,
    ) -> AppointmentDetailResponse:
        """
        Close a dispute by staff decision.

        A validated outcome releases payment to the practitioner. A cancelled
        outcome either refunds the client or retains the payment without a
        payout.

        Raises:
            NotFoundException: If appointment not found
            ForbiddenException: If actor is not staff
            PreconditionFailedException: If there is no open dispute
            ValidationException: If a refund is requested with a validated outcome
            PaymentReleaseFailedException: If payment could not be released
        """
        appointment = await self.store.get_appointment(appointment_id)
        ensure_can_transition(actor, appointment, Transition.RESOLVE_DISPUTE)
        new_status = target_status(
            Transition.RESOLVE_DISPUTE, appointment["status"], AppointmentStatus(outcome.value)
        )

        now = datetime.now(UTC)
        fields: dict[str, Any] = {"dispute_resolved_at": now}
        side_effects = []
        if note and note.strip():
            side_effects.append(self._comment_effect(appointment_id, actor, note.strip()))

        if outcome == DisputeOutcome.VALIDATED:
            if refund:
                raise ValidationException("A validated appointment cannot be refunded")
            fields["payment_status"] = PaymentStatus.RELEASED.value
            fields["validated_at"] = now
            side_effects.append(self._release_effect(appointment))
        else:
            fields["payment_status"] = (
                PaymentStatus.REFUNDED.value if refund else PaymentStatus.PAID.value
            )
            fields["cancelled_at"] = now
            fields["cancellation_reason"] = note.strip() if note and note.strip() else None

        return await self._apply_transition(
            appointment,
            actor,
            Transition.RESOLVE_DISPUTE,
            new_status,
            fields=fields,
            occurred_at=now,
            reason=note,
            side_effects=side_effects,
        )

    async def cancel(
        self,
        appointment_id: UUID,
        actor: Actor,
        reason: str | None = None,
        refund: bool | None = None,
    ) -> AppointmentDetailResponse:
        """
        Cancel a pending or confirmed appointment.

        The record is kept. For a paid appointment only staff decide the
        payment disposition: ``refund=True`` refunds the client, anything
        else keeps the payment captured and staff are asked to decide.

        Raises:
            NotFoundException: If appointment not found
            ForbiddenException: If actor may not cancel or decide a refund
            AlreadyTerminalException: If appointment is already validated or cancelled
            PreconditionFailedException: If the session was already delivered
        """
        appointment = await self.store.get_appointment(appointment_id)
        ensure_can_transition(actor, appointment, Transition.CANCEL)
        if refund and not can_decide_refund(actor):
            raise ForbiddenException("Only staff can decide a refund")
        new_status = target_status(Transition.CANCEL, appointment["status"])

        payment_status = PaymentStatus(appointment["payment_status"])
        if refund:
            if payment_status != PaymentStatus.PAID:
                raise ValidationException("Only a paid appointment can be refunded")
            payment_status = PaymentStatus.REFUNDED

        now = datetime.now(UTC)
        reason = reason.strip() if reason and reason.strip() else None
        return await self._apply_transition(
            appointment,
            actor,
            Transition.CANCEL,
            new_status,
            fields={
                "payment_status": payment_status.value,
                "cancelled_at": now,
                "cancellation_reason": reason,
            },
            occurred_at=now,
            reason=reason,
        )

    async def update_custom_price(
        self,
        appointment_id: UUID,
        actor: Actor,
        custom_price: Decimal | None,
    ) -> AppointmentDetailResponse:
        """
        Set or clear the agreed price of an appointment.

        Raises:
            NotFoundException: If appointment not found
            ForbiddenException: If actor is neither the practitioner nor staff
            PreconditionFailedException: If the appointment is past confirmation
            PriceBelowFloorException: If the price is below the service price
        """
        appointment = await self.store.get_appointment(appointment_id)
        if not (actor.is_admin or is_practitioner_of(actor, appointment)):
            raise ForbiddenException("Only the practitioner or staff can change the price")

        if AppointmentStatus(appointment["status"]) not in PRICE_EDITABLE_STATUSES:
            raise PreconditionFailedException(
                "The price can only change before the session is completed"
            )

        service = await self.store.get_service(appointment["service_id"])
        validate_custom_price(custom_price, service["price"])

        try:
            updated = await self.store.update_fields(
                appointment_id, PRICE_EDITABLE_STATUSES, {"custom_price": custom_price}
            )
            if not updated:
                raise PreconditionFailedException(
                    "The appointment was changed by someone else, refresh it and try again"
                )
            await self.store.commit()
        except Exception:
            await self.store.rollback()
            raise

        logger.info(
            "appointment_price_updated",
            appointment_id=str(appointment_id),
            custom_price=str(custom_price) if custom_price is not None else None,
            actor_id=str(actor.user_id),
        )

        self.projector.invalidate(appointment_id)
        return await self.projector.get(appointment_id, actor)

    async def list_comments(
        self,
        appointment_id: UUID,
        actor: Actor,
    ) -> list[CommentResponse]:
        """List comments on an appointment; private notes are hidden from clients."""
        appointment = await self.store.get_appointment(appointment_id)
        ensure_can_view(actor, appointment)

        rows = await self.store.list_comments(
            appointment_id, include_private=actor.role != Role.CLIENT
        )
        return [CommentResponse.model_validate(row) for row in rows]

    async def add_comment(
        self,
        appointment_id: UUID,
        actor: Actor,
        data: CommentCreate,
    ) -> CommentResponse:
        """
        Add a comment to an appointment.

        Raises:
            NotFoundException: If appointment not found
            ForbiddenException: If actor may not see the appointment or post private notes
            ValidationException: If the comment is blank
        """
        appointment = await self.store.get_appointment(appointment_id)
        ensure_can_view(actor, appointment)

        if data.is_private and actor.role == Role.CLIENT:
            raise ForbiddenException("Clients cannot post private notes")

        content = data.content.strip()
        if not content:
            raise ValidationException("Comment cannot be empty")

        try:
            row = await self.store.append_comment(
                appointment_id,
                author_id=actor.user_id,
                content=content,
                is_private=data.is_private,
            )
            await self.store.commit()
        except Exception:
            await self.store.rollback()
            raise

        logger.info(
            "appointment_comment_added",
            appointment_id=str(appointment_id),
            comment_id=str(row["id"]),
            is_private=data.is_private,
        )
        return CommentResponse.model_validate(row)

    async def delete_comment(
        self,
        appointment_id: UUID,
        comment_id: UUID,
        actor: Actor,
    ) -> None:
        """
        Delete a comment.

        Raises:
            ForbiddenException: If actor is not staff
            NotFoundException: If the comment does not exist on this appointment
        """
        if not actor.is_admin:
            raise ForbiddenException("Only staff can delete comments")

        await self.store.get_comment(appointment_id, comment_id)

        try:
            await self.store.delete_comment(comment_id)
            await self.store.commit()
        except Exception:
            await self.store.rollback()
            raise

        logger.info(
            "appointment_comment_deleted",
            appointment_id=str(appointment_id),
            comment_id=str(comment_id),
            actor_id=str(actor.user_id),
        )

    async def list_events(
        self,
        appointment_id: UUID,
        actor: Actor,
    ) -> list[AppointmentEventResponse]:
        """List the audit trail of an appointment."""
        appointment = await self.store.get_appointment(appointment_id)
        ensure_can_view(actor, appointment)

        rows = await self.store.list_events(appointment_id)
        return [AppointmentEventResponse.model_validate(row) for row in rows]

    async def list_notifications(
        self,
        appointment_id: UUID,
        actor: Actor,
    ) -> list[NotificationResponse]:
        """List the outbound notification log of an appointment (staff only)."""
        if not actor.is_admin:
            raise ForbiddenException("Only staff can read the notification log")

        await self.store.get_appointment(appointment_id)
        return await NotificationService.list_for_appointment(self.db, appointment_id)
