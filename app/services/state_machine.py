"""Appointment lifecycle rules.

Every status change goes through ``target_status``; the table below is the
only place that lists legal edges.
"""

from app.core.exceptions import AlreadyTerminalException, PreconditionFailedException
from app.schemas.appointments import AppointmentStatus, Transition

S = AppointmentStatus

ALLOWED_TRANSITIONS: dict[Transition, dict[AppointmentStatus, frozenset[AppointmentStatus]]] = {
    Transition.CONFIRM_PAYMENT: {S.PENDING: frozenset({S.CONFIRMED})},
    Transition.MARK_COMPLETED: {S.CONFIRMED: frozenset({S.COMPLETED})},
    Transition.VALIDATE: {
        S.COMPLETED: frozenset({S.VALIDATED}),
        S.ISSUE_REPORTED: frozenset({S.VALIDATED}),
    },
    Transition.REPORT_PROBLEM: {S.COMPLETED: frozenset({S.ISSUE_REPORTED})},
    Transition.RESOLVE_DISPUTE: {S.ISSUE_REPORTED: frozenset({S.VALIDATED, S.CANCELLED})},
    Transition.CANCEL: {
        S.PENDING: frozenset({S.CANCELLED}),
        S.CONFIRMED: frozenset({S.CANCELLED}),
    },
}

TERMINAL_STATUSES = frozenset({S.VALIDATED, S.CANCELLED})

_PRECONDITION_MESSAGES = {
    Transition.CONFIRM_PAYMENT: "Only a pending appointment can be confirmed",
    Transition.MARK_COMPLETED: "Only a confirmed appointment can be marked as completed",
    Transition.VALIDATE: "The appointment must be marked as completed before validation",
    Transition.REPORT_PROBLEM: "A problem can only be reported once, on a completed appointment",
    Transition.RESOLVE_DISPUTE: "The appointment has no open dispute",
    Transition.CANCEL: "A completed appointment can no longer be cancelled",
}


def is_terminal(status: AppointmentStatus | str) -> bool:
    """Check if no further transition is possible from a status."""
    return AppointmentStatus(status) in TERMINAL_STATUSES


def available_transitions(status: AppointmentStatus | str) -> list[Transition]:
    """List transitions that have an edge out of a status."""
    current = AppointmentStatus(status)
    return [transition for transition, edges in ALLOWED_TRANSITIONS.items() if current in edges]


def target_status(
    transition: Transition,
    current: AppointmentStatus | str,
    requested: AppointmentStatus | None = None,
) -> AppointmentStatus:
    """
    Resolve the status a transition leads to from the current status.

    Args:
        transition: Requested transition
        current: Current appointment status
        requested: Target for transitions with several outcomes (dispute resolution)

    Returns:
        The new status

    Raises:
        AlreadyTerminalException: If cancelling a validated or cancelled appointment
        PreconditionFailedException: If there is no such edge from the current status
    """
    current = AppointmentStatus(current)
    targets = ALLOWED_TRANSITIONS[transition].get(current)

    if targets is None:
        if transition == Transition.CANCEL and current in TERMINAL_STATUSES:
            raise AlreadyTerminalException(f"Appointment is already {current.value}")
        raise PreconditionFailedException(
            f"{_PRECONDITION_MESSAGES[transition]} (current status: {current.value})"
        )

    if requested is None:
        if len(targets) != 1:
            raise PreconditionFailedException(f"A target status is required for {transition.value}")
        return next(iter(targets))

    if requested not in targets:
        raise PreconditionFailedException(
            f"{transition.value} cannot lead from {current.value} to {requested.value}"
        )
    return requested
