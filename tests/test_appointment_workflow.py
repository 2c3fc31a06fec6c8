"""Tests for appointment transitions through the service layer."""

import time
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    AlreadyTerminalException,
    EmptyDescriptionException,
    ForbiddenException,
    NotFoundException,
    PaymentReleaseFailedException,
    PreconditionFailedException,
    PriceBelowFloorException,
    TransientStoreException,
    ValidationException,
)
from app.models import (
    appointment_comments,
    appointment_events,
    appointments,
    notifications,
    practitioner_payouts,
)
from app.schemas.appointments import (
    AppointmentCreate,
    AppointmentStatus,
    CommentCreate,
    CommentKind,
    DisputeOutcome,
    PaymentStatus,
)
from app.schemas.notifications import NotificationEvent, NotificationStatus
from app.schemas.users import Actor, Role
from app.services.appointment_codes import is_valid_appointment_code
from app.services.appointment_service import AppointmentService


class FailingGateway:
    """Payment gateway that refuses every release."""

    def __init__(self, error: Exception):
        self.error = error
        self.calls = 0

    async def release_payment(self, appointment: Mapping[str, Any], amount: Decimal | None) -> None:
        self.calls += 1
        raise self.error


async def _row(db: AsyncSession, appointment_id: UUID) -> Any:
    result = await db.execute(select(appointments).where(appointments.c.id == appointment_id))
    return result.fetchone()


async def _count(db: AsyncSession, table: Any, appointment_id: UUID) -> int:
    result = await db.execute(
        select(func.count()).select_from(table).where(table.c.appointment_id == appointment_id)
    )
    return result.scalar() or 0


async def _events(db: AsyncSession, appointment_id: UUID) -> list[Any]:
    result = await db.execute(
        select(appointment_events)
        .where(appointment_events.c.appointment_id == appointment_id)
        .order_by(appointment_events.c.created_at)
    )
    return result.fetchall()


# Completion


@pytest.mark.asyncio
async def test_practitioner_marks_confirmed_session_completed(
    db_session: AsyncSession,
    make_appointment,
    practitioner_actor: Actor,
) -> None:
    """A confirmed session that has started can be completed by its practitioner."""
    appointment_id = await make_appointment(status="confirmed", payment_status="paid")

    detail = await AppointmentService(db_session).mark_completed(appointment_id, practitioner_actor)

    assert detail.status == AppointmentStatus.COMPLETED
    assert detail.payment_status == PaymentStatus.PAID
    assert detail.completed_at is not None

    events = await _events(db_session, appointment_id)
    assert len(events) == 1
    assert events[0].transition == "mark_completed"
    assert events[0].from_status == "confirmed"
    assert events[0].to_status == "completed"
    assert events[0].actor_id == practitioner_actor.user_id


@pytest.mark.asyncio
async def test_mark_completed_on_pending_fails(
    db_session: AsyncSession,
    make_appointment,
    practitioner_actor: Actor,
) -> None:
    """An unpaid pending appointment cannot be completed."""
    appointment_id = await make_appointment(status="pending")

    with pytest.raises(PreconditionFailedException):
        await AppointmentService(db_session).mark_completed(appointment_id, practitioner_actor)

    assert (await _row(db_session, appointment_id)).status == "pending"
    assert await _count(db_session, appointment_events, appointment_id) == 0


@pytest.mark.asyncio
async def test_mark_completed_twice_fails(
    db_session: AsyncSession,
    make_appointment,
    practitioner_actor: Actor,
) -> None:
    """Completion is not idempotent and writes a single audit record."""
    appointment_id = await make_appointment(status="confirmed", payment_status="paid")
    service = AppointmentService(db_session)

    await service.mark_completed(appointment_id, practitioner_actor)
    with pytest.raises(PreconditionFailedException):
        await service.mark_completed(appointment_id, practitioner_actor)

    assert await _count(db_session, appointment_events, appointment_id) == 1


@pytest.mark.asyncio
async def test_mark_completed_before_start_fails(
    db_session: AsyncSession,
    make_appointment,
    practitioner_actor: Actor,
) -> None:
    """A session that has not started cannot be delivered."""
    appointment_id = await make_appointment(
        status="confirmed",
        payment_status="paid",
        start_time=datetime.now(UTC) + timedelta(days=1),
    )

    with pytest.raises(PreconditionFailedException):
        await AppointmentService(db_session).mark_completed(appointment_id, practitioner_actor)

    assert (await _row(db_session, appointment_id)).status == "confirmed"


@pytest.mark.asyncio
async def test_only_assigned_practitioner_or_staff_complete(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
    other_practitioner_actor: Actor,
    admin_actor: Actor,
) -> None:
    """Clients and other practitioners cannot complete a session."""
    appointment_id = await make_appointment(status="confirmed", payment_status="paid")
    service = AppointmentService(db_session)

    for actor in (client_actor, other_practitioner_actor):
        with pytest.raises(ForbiddenException):
            await service.mark_completed(appointment_id, actor)

    assert (await _row(db_session, appointment_id)).status == "confirmed"

    detail = await service.mark_completed(appointment_id, admin_actor)
    assert detail.status == AppointmentStatus.COMPLETED


# Validation


@pytest.mark.asyncio
async def test_client_validates_completed_session(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
    practitioner_actor: Actor,
) -> None:
    """Validation releases the payment and keeps the client's comment."""
    appointment_id = await make_appointment(status="completed", payment_status="paid")

    detail = await AppointmentService(db_session).validate(
        appointment_id, client_actor, comment="Very insightful session"
    )

    assert detail.status == AppointmentStatus.VALIDATED
    assert detail.payment_status == PaymentStatus.RELEASED
    assert detail.validated_at is not None

    result = await db_session.execute(
        select(practitioner_payouts).where(practitioner_payouts.c.appointment_id == appointment_id)
    )
    payouts = result.fetchall()
    assert len(payouts) == 1
    assert payouts[0].amount == Decimal("150.00")
    assert payouts[0].practitioner_id == practitioner_actor.practitioner_id
    assert payouts[0].status == "eligible"

    result = await db_session.execute(
        select(appointment_comments).where(appointment_comments.c.appointment_id == appointment_id)
    )
    comments = result.fetchall()
    assert len(comments) == 1
    assert comments[0].content == "Very insightful session"
    assert comments[0].is_private is False
    assert comments[0].author_id == client_actor.user_id


@pytest.mark.asyncio
async def test_validate_uses_custom_price(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
) -> None:
    """The released amount is the agreed price."""
    appointment_id = await make_appointment(
        status="completed", payment_status="paid", custom_price=Decimal("200.00")
    )

    await AppointmentService(db_session).validate(appointment_id, client_actor)

    result = await db_session.execute(
        select(practitioner_payouts.c.amount).where(
            practitioner_payouts.c.appointment_id == appointment_id
        )
    )
    assert result.scalar() == Decimal("200.00")


@pytest.mark.asyncio
async def test_practitioner_cannot_validate_own_session(
    db_session: AsyncSession,
    make_appointment,
    practitioner_actor: Actor,
    other_client_actor: Actor,
) -> None:
    """Only the paying client or staff can validate."""
    appointment_id = await make_appointment(status="completed", payment_status="paid")
    service = AppointmentService(db_session)

    for actor in (practitioner_actor, other_client_actor):
        with pytest.raises(ForbiddenException):
            await service.validate(appointment_id, actor)

    row = await _row(db_session, appointment_id)
    assert row.status == "completed"
    assert row.payment_status == "paid"
    assert await _count(db_session, practitioner_payouts, appointment_id) == 0


@pytest.mark.asyncio
async def test_validate_before_completion_fails(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
) -> None:
    """A confirmed session must be completed first."""
    appointment_id = await make_appointment(status="confirmed", payment_status="paid")

    with pytest.raises(PreconditionFailedException):
        await AppointmentService(db_session).validate(appointment_id, client_actor)


@pytest.mark.asyncio
async def test_payment_failure_rolls_back_validation(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
) -> None:
    """If the money is not released nothing of the validation is kept."""
    appointment_id = await make_appointment(status="completed", payment_status="paid")
    gateway = FailingGateway(PaymentReleaseFailedException("Payout provider unavailable"))
    service = AppointmentService(db_session, payment_gateway=gateway)

    with pytest.raises(PaymentReleaseFailedException):
        await service.validate(appointment_id, client_actor, comment="Thanks")

    assert gateway.calls == 1
    row = await _row(db_session, appointment_id)
    assert row.status == "completed"
    assert row.payment_status == "paid"
    assert row.validated_at is None
    assert await _count(db_session, appointment_events, appointment_id) == 0
    assert await _count(db_session, appointment_comments, appointment_id) == 0
    assert await _count(db_session, notifications, appointment_id) == 0


@pytest.mark.asyncio
async def test_unexpected_gateway_error_is_payment_failure(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
) -> None:
    """Gateway crashes are reported as a failed release."""
    appointment_id = await make_appointment(status="completed", payment_status="paid")
    service = AppointmentService(db_session, payment_gateway=FailingGateway(RuntimeError("boom")))

    with pytest.raises(PaymentReleaseFailedException):
        await service.validate(appointment_id, client_actor)

    assert (await _row(db_session, appointment_id)).status == "completed"


@pytest.mark.asyncio
async def test_validate_quote_without_price_fails(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
    quote_service_id: UUID,
) -> None:
    """A session priced on request cannot be paid out before a price is agreed."""
    appointment_id = await make_appointment(
        status="completed", payment_status="paid", service_id=quote_service_id
    )

    with pytest.raises(PaymentReleaseFailedException):
        await AppointmentService(db_session).validate(appointment_id, client_actor)

    assert (await _row(db_session, appointment_id)).status == "completed"
    assert await _count(db_session, practitioner_payouts, appointment_id) == 0


@pytest.mark.asyncio
async def test_validate_quote_with_agreed_price(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
    quote_service_id: UUID,
) -> None:
    """Once a price is agreed for a quote service it is paid out."""
    appointment_id = await make_appointment(
        status="completed",
        payment_status="paid",
        service_id=quote_service_id,
        custom_price=Decimal("480.00"),
    )

    detail = await AppointmentService(db_session).validate(appointment_id, client_actor)

    assert detail.status == AppointmentStatus.VALIDATED
    assert detail.price_display == "480.00 €"
    assert detail.service.price_display == "on request"


@pytest.mark.asyncio
async def test_second_validation_fails(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
    admin_actor: Actor,
) -> None:
    """A validated appointment is closed; payment is released once."""
    appointment_id = await make_appointment(status="completed", payment_status="paid")
    service = AppointmentService(db_session)

    await service.validate(appointment_id, client_actor)
    with pytest.raises(PreconditionFailedException):
        await service.validate(appointment_id, admin_actor)

    assert await _count(db_session, practitioner_payouts, appointment_id) == 1
    assert await _count(db_session, appointment_events, appointment_id) == 1


@pytest.mark.asyncio
async def test_racing_validations_only_one_wins(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A writer that read a stale status loses the conditional write."""
    appointment_id = await make_appointment(status="completed", payment_status="paid")
    service = AppointmentService(db_session)
    read_appointment = service.store.get_appointment

    async def stale_read(requested_id: UUID) -> dict[str, Any]:
        snapshot = await read_appointment(requested_id)
        # Another request validates between our read and our write
        await db_session.execute(
            update(appointments)
            .where(appointments.c.id == requested_id)
            .values(status="validated", payment_status="released")
        )
        await db_session.commit()
        return snapshot

    monkeypatch.setattr(service.store, "get_appointment", stale_read)

    with pytest.raises(PreconditionFailedException):
        await service.validate(appointment_id, client_actor)

    assert await _count(db_session, practitioner_payouts, appointment_id) == 0
    assert await _count(db_session, appointment_events, appointment_id) == 0


@pytest.mark.asyncio
async def test_conditional_status_write(
    db_session: AsyncSession,
    make_appointment,
) -> None:
    """Only the first of two writers expecting the same status succeeds."""
    appointment_id = await make_appointment(status="completed", payment_status="paid")
    service = AppointmentService(db_session)

    first = await service.store.update_appointment_status(
        appointment_id, AppointmentStatus.COMPLETED, AppointmentStatus.VALIDATED
    )
    second = await service.store.update_appointment_status(
        appointment_id, AppointmentStatus.COMPLETED, AppointmentStatus.ISSUE_REPORTED
    )
    await service.store.commit()

    assert first is True
    assert second is False
    assert (await _row(db_session, appointment_id)).status == "validated"


# Contestation


@pytest.mark.asyncio
async def test_client_reports_problem(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
    practitioner_actor: Actor,
    session_factory,
) -> None:
    """Contesting freezes the payment and records a public dispute report."""
    appointment_id = await make_appointment(status="completed", payment_status="paid")

    service = AppointmentService(db_session, session_factory=session_factory)
    detail = await service.report_problem(
        appointment_id, client_actor, "  The session was cut short after 10 minutes.  "
    )
    await service.deliver_notifications()

    assert detail.status == AppointmentStatus.ISSUE_REPORTED
    assert detail.payment_status == PaymentStatus.FROZEN
    assert detail.problem_description == "The session was cut short after 10 minutes."
    assert detail.contested_at is not None

    result = await db_session.execute(
        select(appointment_comments).where(appointment_comments.c.appointment_id == appointment_id)
    )
    comments = result.fetchall()
    assert len(comments) == 1
    assert comments[0].kind == CommentKind.DISPUTE_REPORT.value
    assert comments[0].is_private is False

    events = await _events(db_session, appointment_id)
    assert len(events) == 1
    assert events[0].reason == "The session was cut short after 10 minutes."

    result = await db_session.execute(
        select(notifications).where(notifications.c.appointment_id == appointment_id)
    )
    sent = {(row.recipient_role, row.recipient_id, row.event_type) for row in result.fetchall()}
    assert sent == {
        ("admin", None, NotificationEvent.PROBLEM_REPORTED.value),
        (
            "practitioner",
            practitioner_actor.practitioner_id,
            NotificationEvent.PROBLEM_REPORTED.value,
        ),
    }


@pytest.mark.asyncio
@pytest.mark.parametrize("description", ["", "   ", "\n\t"])
async def test_blank_problem_description_is_rejected(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
    description: str,
) -> None:
    """A contestation must say what went wrong."""
    appointment_id = await make_appointment(status="completed", payment_status="paid")

    with pytest.raises(EmptyDescriptionException):
        await AppointmentService(db_session).report_problem(
            appointment_id, client_actor, description
        )

    row = await _row(db_session, appointment_id)
    assert row.status == "completed"
    assert row.payment_status == "paid"


@pytest.mark.asyncio
async def test_only_client_can_report_problem(
    db_session: AsyncSession,
    make_appointment,
    practitioner_actor: Actor,
    admin_actor: Actor,
    other_client_actor: Actor,
) -> None:
    """Neither the practitioner, staff nor another client can contest."""
    appointment_id = await make_appointment(status="completed", payment_status="paid")
    service = AppointmentService(db_session)

    for actor in (practitioner_actor, admin_actor, other_client_actor):
        with pytest.raises(ForbiddenException):
            await service.report_problem(appointment_id, actor, "Not satisfied")

    assert (await _row(db_session, appointment_id)).status == "completed"


@pytest.mark.asyncio
async def test_problem_reported_only_once(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
) -> None:
    """An appointment that was already contested cannot be contested again."""
    appointment_id = await make_appointment(
        status="completed",
        payment_status="paid",
        contested_at=datetime.now(UTC) - timedelta(days=1),
    )

    with pytest.raises(PreconditionFailedException):
        await AppointmentService(db_session).report_problem(
            appointment_id, client_actor, "Still not satisfied"
        )


@pytest.mark.asyncio
async def test_report_then_validate(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
) -> None:
    """The client can settle their own dispute by validating."""
    appointment_id = await make_appointment(status="completed", payment_status="paid")
    service = AppointmentService(db_session)

    await service.report_problem(appointment_id, client_actor, "Audio issues")
    detail = await service.validate(appointment_id, client_actor, comment="Sorted out by phone")

    assert detail.status == AppointmentStatus.VALIDATED
    assert detail.payment_status == PaymentStatus.RELEASED
    assert detail.dispute_resolved_at is not None
    assert await _count(db_session, practitioner_payouts, appointment_id) == 1

    transitions = [event.transition for event in await _events(db_session, appointment_id)]
    assert transitions == ["report_problem", "validate"]


@pytest.mark.asyncio
async def test_staff_resolve_dispute_in_practitioner_favour(
    db_session: AsyncSession,
    make_appointment,
    admin_actor: Actor,
) -> None:
    """A validated outcome pays the practitioner."""
    appointment_id = await make_appointment(
        status="issue_reported",
        payment_status="frozen",
        contested_at=datetime.now(UTC),
    )

    detail = await AppointmentService(db_session).resolve_dispute(
        appointment_id, admin_actor, DisputeOutcome.VALIDATED, note="Session was delivered"
    )

    assert detail.status == AppointmentStatus.VALIDATED
    assert detail.payment_status == PaymentStatus.RELEASED
    assert detail.dispute_resolved_at is not None
    assert await _count(db_session, practitioner_payouts, appointment_id) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("refund", "expected_payment"),
    [(True, PaymentStatus.REFUNDED), (False, PaymentStatus.PAID)],
)
async def test_staff_resolve_dispute_by_cancelling(
    db_session: AsyncSession,
    make_appointment,
    admin_actor: Actor,
    refund: bool,
    expected_payment: PaymentStatus,
) -> None:
    """A cancelled outcome refunds the client or retains the payment."""
    appointment_id = await make_appointment(
        status="issue_reported",
        payment_status="frozen",
        contested_at=datetime.now(UTC),
    )

    detail = await AppointmentService(db_session).resolve_dispute(
        appointment_id, admin_actor, DisputeOutcome.CANCELLED, refund=refund, note="No show"
    )

    assert detail.status == AppointmentStatus.CANCELLED
    assert detail.payment_status == expected_payment
    assert detail.cancelled_at is not None
    assert detail.cancellation_reason == "No show"
    assert await _count(db_session, practitioner_payouts, appointment_id) == 0


@pytest.mark.asyncio
async def test_resolve_dispute_rules(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
    admin_actor: Actor,
) -> None:
    """Only staff resolve, a validated outcome is never refunded."""
    appointment_id = await make_appointment(
        status="issue_reported",
        payment_status="frozen",
        contested_at=datetime.now(UTC),
    )
    service = AppointmentService(db_session)

    with pytest.raises(ForbiddenException):
        await service.resolve_dispute(appointment_id, client_actor, DisputeOutcome.CANCELLED)

    with pytest.raises(ValidationException):
        await service.resolve_dispute(
            appointment_id, admin_actor, DisputeOutcome.VALIDATED, refund=True
        )

    assert (await _row(db_session, appointment_id)).status == "issue_reported"


@pytest.mark.asyncio
async def test_resolve_without_dispute_fails(
    db_session: AsyncSession,
    make_appointment,
    admin_actor: Actor,
) -> None:
    """There must be an open dispute to resolve."""
    appointment_id = await make_appointment(status="completed", payment_status="paid")

    with pytest.raises(PreconditionFailedException):
        await AppointmentService(db_session).resolve_dispute(
            appointment_id, admin_actor, DisputeOutcome.CANCELLED
        )


# Payment confirmation and cancellation


@pytest.mark.asyncio
async def test_staff_confirm_payment(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
    admin_actor: Actor,
) -> None:
    """Captured payment confirms the appointment."""
    appointment_id = await make_appointment(start_time=datetime.now(UTC) + timedelta(days=2))
    service = AppointmentService(db_session)

    with pytest.raises(ForbiddenException):
        await service.confirm_payment(appointment_id, client_actor)

    detail = await service.confirm_payment(appointment_id, admin_actor)

    assert detail.status == AppointmentStatus.CONFIRMED
    assert detail.payment_status == PaymentStatus.PAID
    assert detail.confirmed_at is not None


@pytest.mark.asyncio
async def test_client_cancels_unpaid_appointment(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
) -> None:
    """Cancellation keeps the record with its reason."""
    appointment_id = await make_appointment(start_time=datetime.now(UTC) + timedelta(days=2))

    detail = await AppointmentService(db_session).cancel(
        appointment_id, client_actor, reason="Schedule conflict"
    )

    assert detail.status == AppointmentStatus.CANCELLED
    assert detail.payment_status == PaymentStatus.UNPAID
    assert detail.cancellation_reason == "Schedule conflict"
    assert detail.cancelled_at is not None
    assert await _row(db_session, appointment_id) is not None


@pytest.mark.asyncio
async def test_client_cannot_decide_refund(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
    practitioner_actor: Actor,
) -> None:
    """Refund decisions are reserved to staff."""
    appointment_id = await make_appointment(status="confirmed", payment_status="paid")
    service = AppointmentService(db_session)

    for actor in (client_actor, practitioner_actor):
        with pytest.raises(ForbiddenException):
            await service.cancel(appointment_id, actor, refund=True)

    assert (await _row(db_session, appointment_id)).status == "confirmed"


@pytest.mark.asyncio
async def test_client_cancel_declining_refund_is_allowed(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
) -> None:
    """Saying no to a refund is not a refund decision."""
    appointment_id = await make_appointment(status="confirmed", payment_status="paid")

    detail = await AppointmentService(db_session).cancel(appointment_id, client_actor, refund=False)

    assert detail.status == AppointmentStatus.CANCELLED
    assert detail.payment_status == PaymentStatus.PAID


@pytest.mark.asyncio
async def test_paid_cancellation_by_practitioner_retains_payment(
    db_session: AsyncSession,
    make_appointment,
    practitioner_actor: Actor,
    session_factory,
) -> None:
    """Staff are asked to decide what happens to a captured payment."""
    appointment_id = await make_appointment(status="confirmed", payment_status="paid")

    service = AppointmentService(db_session, session_factory=session_factory)
    detail = await service.cancel(appointment_id, practitioner_actor)
    await service.deliver_notifications()

    assert detail.status == AppointmentStatus.CANCELLED
    assert detail.payment_status == PaymentStatus.PAID

    result = await db_session.execute(
        select(notifications.c.event_type).where(
            notifications.c.appointment_id == appointment_id,
            notifications.c.recipient_role == Role.ADMIN.value,
        )
    )
    assert result.scalars().all() == [NotificationEvent.REFUND_DECISION_REQUIRED.value]


@pytest.mark.asyncio
async def test_staff_cancel_with_refund(
    db_session: AsyncSession,
    make_appointment,
    admin_actor: Actor,
) -> None:
    """Staff may refund a paid appointment when cancelling it."""
    appointment_id = await make_appointment(status="confirmed", payment_status="paid")

    detail = await AppointmentService(db_session).cancel(
        appointment_id, admin_actor, reason="Practitioner unavailable", refund=True
    )

    assert detail.payment_status == PaymentStatus.REFUNDED


@pytest.mark.asyncio
async def test_refund_requires_payment(
    db_session: AsyncSession,
    make_appointment,
    admin_actor: Actor,
) -> None:
    """Nothing can be refunded on an unpaid appointment."""
    appointment_id = await make_appointment()

    with pytest.raises(ValidationException):
        await AppointmentService(db_session).cancel(appointment_id, admin_actor, refund=True)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "payment_status"),
    [("validated", "released"), ("cancelled", "unpaid")],
)
async def test_cancel_closed_appointment(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
    status: str,
    payment_status: str,
) -> None:
    """Closed appointments report themselves as closed."""
    appointment_id = await make_appointment(status=status, payment_status=payment_status)

    with pytest.raises(AlreadyTerminalException):
        await AppointmentService(db_session).cancel(appointment_id, client_actor)


@pytest.mark.asyncio
async def test_cancel_completed_session_fails(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
) -> None:
    """A delivered session is validated or contested, not cancelled."""
    appointment_id = await make_appointment(status="completed", payment_status="paid")

    with pytest.raises(PreconditionFailedException):
        await AppointmentService(db_session).cancel(appointment_id, client_actor)


# Notifications and audit


@pytest.mark.asyncio
async def test_notification_failure_keeps_transition(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
    fcm_send,
    session_factory,
) -> None:
    """A push outage is logged and recorded, the contestation stands."""
    fcm_send.side_effect = Exception("FCM unavailable")
    appointment_id = await make_appointment(status="completed", payment_status="paid")

    service = AppointmentService(db_session, session_factory=session_factory)
    detail = await service.report_problem(
        appointment_id, client_actor, "Practitioner never joined"
    )
    await service.deliver_notifications()

    assert detail.status == AppointmentStatus.ISSUE_REPORTED
    assert fcm_send.call_count == 2

    result = await db_session.execute(
        select(notifications).where(notifications.c.appointment_id == appointment_id)
    )
    rows = result.fetchall()
    assert len(rows) == 2
    assert {row.status for row in rows} == {NotificationStatus.FAILED.value}
    assert all(row.failure_reason == "FCM unavailable" for row in rows)


@pytest.mark.asyncio
async def test_slow_push_does_not_delay_the_transition(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
    fcm_send,
    session_factory,
) -> None:
    """The transition answers before FCM does; delivery follows on its own session."""

    def slow_send(message: Any) -> str:
        time.sleep(1.0)
        return "projects/test/messages/1"

    fcm_send.side_effect = slow_send
    appointment_id = await make_appointment(status="completed", payment_status="paid")
    service = AppointmentService(db_session, session_factory=session_factory)

    started = time.perf_counter()
    detail = await service.report_problem(appointment_id, client_actor, "Practitioner never joined")
    elapsed = time.perf_counter() - started

    assert detail.status == AppointmentStatus.ISSUE_REPORTED
    assert elapsed < 1.0
    assert fcm_send.call_count == 0
    assert len(service.pending_deliveries) == 1

    await service.deliver_notifications()

    assert fcm_send.call_count == 2
    assert service.pending_deliveries == []
    result = await db_session.execute(
        select(notifications.c.status).where(notifications.c.appointment_id == appointment_id)
    )
    assert result.scalars().all() == [NotificationStatus.SENT.value] * 2


@pytest.mark.asyncio
async def test_notifications_are_sent_to_topics(
    db_session: AsyncSession,
    make_appointment,
    practitioner_actor: Actor,
    client_actor: Actor,
    fcm_send,
    session_factory,
) -> None:
    """Successful delivery is recorded as sent."""
    appointment_id = await make_appointment(status="confirmed", payment_status="paid")

    service = AppointmentService(db_session, session_factory=session_factory)
    await service.mark_completed(appointment_id, practitioner_actor)
    await service.deliver_notifications()

    message = fcm_send.call_args.args[0]
    assert message.topic == f"consultations-client-{client_actor.user_id}"
    assert message.data["event_type"] == NotificationEvent.APPOINTMENT_COMPLETED.value

    result = await db_session.execute(
        select(notifications.c.status, notifications.c.sent_at).where(
            notifications.c.appointment_id == appointment_id
        )
    )
    row = result.fetchone()
    assert row.status == NotificationStatus.SENT.value
    assert row.sent_at is not None


@pytest.mark.asyncio
async def test_full_lifecycle_audit_trail(
    db_session: AsyncSession,
    make_appointment,
    admin_actor: Actor,
    practitioner_actor: Actor,
    client_actor: Actor,
) -> None:
    """Each successful transition leaves exactly one audit record."""
    appointment_id = await make_appointment(start_time=datetime.now(UTC) - timedelta(minutes=5))
    service = AppointmentService(db_session)

    await service.confirm_payment(appointment_id, admin_actor)
    await service.mark_completed(appointment_id, practitioner_actor)
    await service.validate(appointment_id, client_actor)

    events = await service.list_events(appointment_id, client_actor)

    assert [(e.transition.value, e.from_status.value, e.to_status.value) for e in events] == [
        ("confirm_payment", "pending", "confirmed"),
        ("mark_completed", "confirmed", "completed"),
        ("validate", "completed", "validated"),
    ]
    assert [e.actor_role for e in events] == [Role.ADMIN, Role.PRACTITIONER, Role.CLIENT]


@pytest.mark.asyncio
async def test_store_outage_is_transient(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Database unavailability is reported as retryable."""
    appointment_id = await make_appointment(status="completed", payment_status="paid")
    service = AppointmentService(db_session)

    async def unavailable(*args: Any, **kwargs: Any) -> None:
        raise OperationalError("SELECT", {}, ConnectionRefusedError("connection refused"))

    monkeypatch.setattr(db_session, "execute", unavailable)

    with pytest.raises(TransientStoreException):
        await service.validate(appointment_id, client_actor)


def _fail_audit_writes(db_session: AsyncSession, monkeypatch: pytest.MonkeyPatch) -> None:
    execute = db_session.execute

    async def execute_unless_audit(statement: Any, *args: Any, **kwargs: Any) -> Any:
        if getattr(statement, "table", None) is appointment_events:
            raise OperationalError("INSERT", {}, ConnectionResetError("connection reset"))
        return await execute(statement, *args, **kwargs)

    monkeypatch.setattr(db_session, "execute", execute_unless_audit)


@pytest.mark.asyncio
async def test_validation_without_audit_record_is_rolled_back(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Status, payout and comment are discarded when the audit log cannot be written."""
    appointment_id = await make_appointment(status="completed", payment_status="paid")
    service = AppointmentService(db_session)
    _fail_audit_writes(db_session, monkeypatch)

    with pytest.raises(TransientStoreException):
        await service.validate(appointment_id, client_actor, comment="Very helpful, thanks")

    monkeypatch.undo()
    row = await _row(db_session, appointment_id)
    assert row.status == "completed"
    assert row.payment_status == "paid"
    assert await _count(db_session, practitioner_payouts, appointment_id) == 0
    assert await _count(db_session, appointment_comments, appointment_id) == 0
    assert await _count(db_session, appointment_events, appointment_id) == 0
    assert service.pending_deliveries == []


@pytest.mark.asyncio
async def test_contestation_without_audit_record_is_rolled_back(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A dispute report is not kept when its audit entry fails."""
    appointment_id = await make_appointment(status="completed", payment_status="paid")
    service = AppointmentService(db_session)
    _fail_audit_writes(db_session, monkeypatch)

    with pytest.raises(TransientStoreException):
        await service.report_problem(appointment_id, client_actor, "Practitioner never joined")

    monkeypatch.undo()
    row = await _row(db_session, appointment_id)
    assert row.status == "completed"
    assert row.payment_status == "paid"
    assert row.problem_description is None
    assert await _count(db_session, appointment_comments, appointment_id) == 0
    assert await _count(db_session, appointment_events, appointment_id) == 0
    assert service.pending_deliveries == []


# Booking and pricing


def _booking(
    practitioner: Actor,
    service_id: UUID,
    start_time: datetime | None = None,
    **fields: Any,
) -> AppointmentCreate:
    start_time = start_time or datetime.now(UTC) + timedelta(days=2)
    return AppointmentCreate(
        practitioner_id=practitioner.practitioner_id,
        service_id=service_id,
        start_time=start_time,
        end_time=start_time + timedelta(hours=1),
        **fields,
    )


@pytest.mark.asyncio
async def test_client_books_for_beneficiary(
    db_session: AsyncSession,
    client_actor: Actor,
    practitioner_actor: Actor,
    service_id: UUID,
    beneficiary_id: UUID,
) -> None:
    """A booking starts pending and unpaid with a support code."""
    detail = await AppointmentService(db_session).book_appointment(
        client_actor,
        _booking(practitioner_actor, service_id, beneficiary_id=beneficiary_id),
    )

    assert detail.status == AppointmentStatus.PENDING
    assert detail.payment_status == PaymentStatus.UNPAID
    assert is_valid_appointment_code(detail.unique_code)
    assert detail.client_id == client_actor.user_id
    assert detail.beneficiary is not None
    assert detail.beneficiary.first_name == "Alice"
    assert await _count(db_session, appointment_events, detail.id) == 0


@pytest.mark.asyncio
async def test_booking_rules(
    db_session: AsyncSession,
    client_actor: Actor,
    other_client_actor: Actor,
    practitioner_actor: Actor,
    admin_actor: Actor,
    service_id: UUID,
    beneficiary_id: UUID,
) -> None:
    """Who may book, for whom and when."""
    service = AppointmentService(db_session)

    with pytest.raises(ForbiddenException):
        await service.book_appointment(practitioner_actor, _booking(practitioner_actor, service_id))

    with pytest.raises(ValidationException):
        await service.book_appointment(
            client_actor,
            _booking(practitioner_actor, service_id, datetime.now(UTC) - timedelta(hours=1)),
        )

    with pytest.raises(ForbiddenException):
        await service.book_appointment(
            other_client_actor,
            _booking(practitioner_actor, service_id, beneficiary_id=beneficiary_id),
        )

    with pytest.raises(ForbiddenException):
        await service.book_appointment(
            client_actor,
            _booking(practitioner_actor, service_id, custom_price=Decimal("200.00")),
        )

    with pytest.raises(ValidationException):
        await service.book_appointment(admin_actor, _booking(practitioner_actor, service_id))

    with pytest.raises(NotFoundException):
        await service.book_appointment(client_actor, _booking(practitioner_actor, uuid4()))


@pytest.mark.asyncio
async def test_staff_booking_enforces_price_floor(
    db_session: AsyncSession,
    client_actor: Actor,
    practitioner_actor: Actor,
    admin_actor: Actor,
    service_id: UUID,
    quote_service_id: UUID,
) -> None:
    """Custom prices may not undercut the list price, except for quotes."""
    service = AppointmentService(db_session)

    with pytest.raises(PriceBelowFloorException):
        await service.book_appointment(
            admin_actor,
            _booking(
                practitioner_actor,
                service_id,
                client_id=client_actor.user_id,
                custom_price=Decimal("100.00"),
            ),
        )

    detail = await service.book_appointment(
        admin_actor,
        _booking(
            practitioner_actor,
            quote_service_id,
            client_id=client_actor.user_id,
            custom_price=Decimal("50.00"),
        ),
    )
    assert detail.effective_price == Decimal("50.00")


@pytest.mark.asyncio
async def test_update_custom_price(
    db_session: AsyncSession,
    make_appointment,
    practitioner_actor: Actor,
    client_actor: Actor,
) -> None:
    """The practitioner may raise the price before the session is delivered."""
    appointment_id = await make_appointment(start_time=datetime.now(UTC) + timedelta(days=1))
    service = AppointmentService(db_session)

    detail = await service.update_custom_price(
        appointment_id, practitioner_actor, Decimal("200.00")
    )
    assert detail.effective_price == Decimal("200.00")

    with pytest.raises(PriceBelowFloorException):
        await service.update_custom_price(appointment_id, practitioner_actor, Decimal("100.00"))

    with pytest.raises(ForbiddenException):
        await service.update_custom_price(appointment_id, client_actor, Decimal("300.00"))

    detail = await service.update_custom_price(appointment_id, practitioner_actor, None)
    assert detail.custom_price is None
    assert detail.effective_price == Decimal("150.00")


@pytest.mark.asyncio
async def test_price_is_locked_after_completion(
    db_session: AsyncSession,
    make_appointment,
    admin_actor: Actor,
) -> None:
    """The amount paid out cannot change once the session is delivered."""
    appointment_id = await make_appointment(status="completed", payment_status="paid")

    with pytest.raises(PreconditionFailedException):
        await AppointmentService(db_session).update_custom_price(
            appointment_id, admin_actor, Decimal("500.00")
        )


# Comments


@pytest.mark.asyncio
async def test_private_notes_are_hidden_from_client(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
    practitioner_actor: Actor,
    other_client_actor: Actor,
) -> None:
    """Clients see public comments only and cannot write private ones."""
    appointment_id = await make_appointment()
    service = AppointmentService(db_session)

    await service.add_comment(
        appointment_id,
        practitioner_actor,
        CommentCreate(content="Client seemed anxious", is_private=True),
    )
    await service.add_comment(appointment_id, client_actor, CommentCreate(content="See you soon"))

    with pytest.raises(ForbiddenException):
        await service.add_comment(
            appointment_id, client_actor, CommentCreate(content="Note to self", is_private=True)
        )

    with pytest.raises(ValidationException):
        await service.add_comment(appointment_id, client_actor, CommentCreate(content="   "))

    with pytest.raises(ForbiddenException):
        await service.list_comments(appointment_id, other_client_actor)

    client_view = await service.list_comments(appointment_id, client_actor)
    practitioner_view = await service.list_comments(appointment_id, practitioner_actor)

    assert [c.content for c in client_view] == ["See you soon"]
    assert len(practitioner_view) == 2


@pytest.mark.asyncio
async def test_only_staff_delete_comments(
    db_session: AsyncSession,
    make_appointment,
    client_actor: Actor,
    admin_actor: Actor,
) -> None:
    """Comment deletion is a moderation action."""
    appointment_id = await make_appointment()
    service = AppointmentService(db_session)
    comment = await service.add_comment(
        appointment_id, client_actor, CommentCreate(content="Wrong appointment")
    )

    with pytest.raises(ForbiddenException):
        await service.delete_comment(appointment_id, comment.id, client_actor)

    await service.delete_comment(appointment_id, comment.id, admin_actor)
    assert await service.list_comments(appointment_id, admin_actor) == []

    with pytest.raises(NotFoundException):
        await service.delete_comment(appointment_id, comment.id, admin_actor)
