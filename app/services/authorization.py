"""Who may see and act on an appointment.

The service layer calls these checks before every transition. HTTP
dependencies only establish identity.
"""

from collections.abc import Mapping
from typing import Any

from app.core.exceptions import ForbiddenException
from app.schemas.appointments import Transition
from app.schemas.users import Actor, Role

# Transitions a non-admin may trigger, by relationship to the appointment
CLIENT_TRANSITIONS = frozenset({Transition.VALIDATE, Transition.REPORT_PROBLEM, Transition.CANCEL})
PRACTITIONER_TRANSITIONS = frozenset({Transition.MARK_COMPLETED, Transition.CANCEL})
# Only the client may contest, not even staff
CLIENT_ONLY_TRANSITIONS = frozenset({Transition.REPORT_PROBLEM})


def is_client_of(actor: Actor, appointment: Mapping[str, Any]) -> bool:
    """Check if the actor is the paying client of the appointment."""
    return actor.role == Role.CLIENT and appointment["client_id"] == actor.user_id


def is_practitioner_of(actor: Actor, appointment: Mapping[str, Any]) -> bool:
    """Check if the actor is the practitioner assigned to the appointment."""
    return (
        actor.role == Role.PRACTITIONER
        and actor.practitioner_id is not None
        and appointment["practitioner_id"] == actor.practitioner_id
    )


def can_view(actor: Actor, appointment: Mapping[str, Any]) -> bool:
    """Check if the actor may read the appointment."""
    if actor.is_admin:
        return True
    return is_client_of(actor, appointment) or is_practitioner_of(actor, appointment)


def can_transition(actor: Actor, appointment: Mapping[str, Any], transition: Transition) -> bool:
    """Check if the actor may trigger a transition on the appointment."""
    if actor.is_admin:
        return transition not in CLIENT_ONLY_TRANSITIONS
    if is_client_of(actor, appointment):
        return transition in CLIENT_TRANSITIONS
    if is_practitioner_of(actor, appointment):
        return transition in PRACTITIONER_TRANSITIONS
    return False


def can_decide_refund(actor: Actor) -> bool:
    """Payment disposition of a paid appointment is a staff decision."""
    return actor.is_admin


def ensure_can_view(actor: Actor, appointment: Mapping[str, Any]) -> None:
    """Raise ForbiddenException unless the actor may read the appointment."""
    if not can_view(actor, appointment):
        raise ForbiddenException("Access denied to this appointment")


def ensure_can_transition(
    actor: Actor,
    appointment: Mapping[str, Any],
    transition: Transition,
) -> None:
    """Raise ForbiddenException unless the actor may trigger the transition."""
    if not can_transition(actor, appointment, transition):
        raise ForbiddenException(f"You are not allowed to {transition.value.replace('_', ' ')}")
