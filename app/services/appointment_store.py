"""Persistence for appointments, comments and the transition log."""

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from functools import wraps
from typing import Any, ParamSpec, TypeVar
from uuid import UUID, uuid4

import structlog
from sqlalchemy import and_, delete, insert, select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundException, TransientStoreException
from app.models.appointments import (
    appointment_comments,
    appointment_events,
    appointments,
    services,
)
from app.models.users import beneficiaries, practitioners, users
from app.schemas.appointments import AppointmentStatus, CommentKind, Transition
from app.schemas.users import Actor

logger = structlog.get_logger(__name__)

P = ParamSpec("P")
R = TypeVar("R")


def translate_store_errors(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
    """Report infrastructure failures as TransientStoreException."""

    @wraps(func)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        try:
            return await func(*args, **kwargs)
        except (OperationalError, InterfaceError, PoolTimeoutError, TimeoutError) as e:
            logger.error("store_unavailable", operation=func.__name__, error=str(e))
            raise TransientStoreException() from e

    return wrapper


def utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from the store."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def row_to_dict(row: Any) -> dict[str, Any]:
    """Convert a result row to a dict with timezone aware datetimes."""
    return {
        key: utc(value) if isinstance(value, datetime) else value
        for key, value in row._mapping.items()
    }


class AppointmentStore:
    """SQLAlchemy Core access to the appointment tables.

    Methods only stage changes in the session; committing is the caller's
    decision so that a transition and its side effects land together.
    """

    def __init__(self, db: AsyncSession):
        """Initialize store with database session."""
        self.db = db

    @translate_store_errors
    async def get_appointment(self, appointment_id: UUID) -> dict[str, Any]:
        """
        Get appointment by ID.

        Raises:
            NotFoundException: If appointment not found
        """
        result = await self.db.execute(
            select(appointments).where(appointments.c.id == appointment_id)
        )
        row = result.fetchone()

        if not row:
            raise NotFoundException("Appointment not found")

        return row_to_dict(row)

    async def _get_one(self, table: Any, row_id: UUID, label: str) -> dict[str, Any]:
        result = await self.db.execute(select(table).where(table.c.id == row_id))
        row = result.fetchone()

        if not row:
            raise NotFoundException(f"{label} not found")

        return row_to_dict(row)

    @translate_store_errors
    async def get_service(self, service_id: UUID) -> dict[str, Any]:
        """Get a service by ID."""
        return await self._get_one(services, service_id, "Service")

    @translate_store_errors
    async def get_practitioner(self, practitioner_id: UUID) -> dict[str, Any]:
        """Get a practitioner profile by ID."""
        return await self._get_one(practitioners, practitioner_id, "Practitioner")

    @translate_store_errors
    async def get_beneficiary(self, beneficiary_id: UUID) -> dict[str, Any]:
        """Get a beneficiary by ID."""
        return await self._get_one(beneficiaries, beneficiary_id, "Beneficiary")

    @translate_store_errors
    async def get_user(self, user_id: UUID) -> dict[str, Any]:
        """Get a user by ID."""
        return await self._get_one(users, user_id, "User")

    @translate_store_errors
    async def insert_appointment(self, values: dict[str, Any]) -> UUID:
        """Insert a new appointment and return its ID."""
        values = dict(values)
        appointment_id = values.pop("id", None) or uuid4()
        await self.db.execute(insert(appointments).values(id=appointment_id, **values))
        return appointment_id

    @translate_store_errors
    async def update_appointment_status(
        self,
        appointment_id: UUID,
        expected_status: AppointmentStatus,
        new_status: AppointmentStatus,
        fields: dict[str, Any] | None = None,
    ) -> bool:
        """
        Conditionally move an appointment to a new status.

        The update only applies if the stored status still equals
        ``expected_status``; a concurrent writer that got there first makes
        this return False.

        Args:
            appointment_id: Appointment ID
            expected_status: Status the caller read and checked
            new_status: Status to write
            fields: Extra columns written with the status

        Returns:
            True if the row was updated
        """
        values = dict(fields or {})
        values["status"] = new_status.value
        values.setdefault("updated_at", datetime.now(UTC))

        stmt = (
            update(appointments)
            .where(
                and_(
                    appointments.c.id == appointment_id,
                    appointments.c.status == expected_status.value,
                )
            )
            .values(**values)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    @translate_store_errors
    async def update_fields(
        self,
        appointment_id: UUID,
        allowed_statuses: list[AppointmentStatus],
        fields: dict[str, Any],
    ) -> bool:
        """Update non-status columns while the appointment is in one of the given statuses."""
        stmt = (
            update(appointments)
            .where(
                and_(
                    appointments.c.id == appointment_id,
                    appointments.c.status.in_([s.value for s in allowed_statuses]),
                )
            )
            .values(updated_at=datetime.now(UTC), **fields)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    @translate_store_errors
    async def append_comment(
        self,
        appointment_id: UUID,
        author_id: UUID | None,
        content: str,
        is_private: bool = False,
        kind: CommentKind = CommentKind.NORMAL,
        created_at: datetime | None = None,
    ) -> dict[str, Any]:
        """Append a comment to an appointment."""
        values = {
            "id": uuid4(),
            "appointment_id": appointment_id,
            "author_id": author_id,
            "content": content,
            "is_private": is_private,
            "kind": kind.value,
            "created_at": created_at or datetime.now(UTC),
        }
        await self.db.execute(insert(appointment_comments).values(**values))
        return values

    @translate_store_errors
    async def get_comment(self, appointment_id: UUID, comment_id: UUID) -> dict[str, Any]:
        """Get a comment of an appointment."""
        stmt = select(appointment_comments).where(
            and_(
                appointment_comments.c.id == comment_id,
                appointment_comments.c.appointment_id == appointment_id,
            )
        )
        result = await self.db.execute(stmt)
        row = result.fetchone()

        if not row:
            raise NotFoundException("Comment not found")

        return row_to_dict(row)

    @translate_store_errors
    async def list_comments(
        self,
        appointment_id: UUID,
        include_private: bool,
    ) -> list[dict[str, Any]]:
        """List comments of an appointment, oldest first."""
        conditions = [appointment_comments.c.appointment_id == appointment_id]
        if not include_private:
            conditions.append(appointment_comments.c.is_private.is_(False))

        stmt = (
            select(appointment_comments)
            .where(and_(*conditions))
            .order_by(appointment_comments.c.created_at.asc())
        )
        result = await self.db.execute(stmt)
        return [row_to_dict(row) for row in result.fetchall()]

    @translate_store_errors
    async def delete_comment(self, comment_id: UUID) -> None:
        """Delete a comment."""
        await self.db.execute(
            delete(appointment_comments).where(appointment_comments.c.id == comment_id)
        )

    @translate_store_errors
    async def record_event(
        self,
        appointment_id: UUID,
        transition: Transition,
        from_status: AppointmentStatus,
        to_status: AppointmentStatus,
        actor: Actor,
        occurred_at: datetime,
        reason: str | None = None,
    ) -> dict[str, Any]:
        """Append an entry to the transition log."""
        values = {
            "id": uuid4(),
            "appointment_id": appointment_id,
            "transition": transition.value,
            "from_status": from_status.value,
            "to_status": to_status.value,
            "actor_id": actor.user_id,
            "actor_role": actor.role.value,
            "reason": reason,
            "created_at": occurred_at,
        }
        await self.db.execute(insert(appointment_events).values(**values))
        return values

    @translate_store_errors
    async def list_events(self, appointment_id: UUID) -> list[dict[str, Any]]:
        """List the transition log of an appointment, oldest first."""
        stmt = (
            select(appointment_events)
            .where(appointment_events.c.appointment_id == appointment_id)
            .order_by(appointment_events.c.created_at.asc())
        )
        result = await self.db.execute(stmt)
        return [row_to_dict(row) for row in result.fetchall()]

    @translate_store_errors
    async def commit(self) -> None:
        """Commit staged changes."""
        await self.db.commit()

    async def rollback(self) -> None:
        """Discard staged changes."""
        await self.db.rollback()
