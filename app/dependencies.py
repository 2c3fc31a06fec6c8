"""FastAPI dependencies."""

from typing import Annotated
from uuid import UUID

from fastapi import BackgroundTasks, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.redis_client import CacheManager, get_cache_manager
from app.core.security import decode_access_token
from app.database import get_db, get_session_factory
from app.models.users import practitioners, users
from app.schemas.users import Actor, Role
from app.services.appointment_service import AppointmentService

# Security
security = HTTPBearer()


def _credentials_error(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user_id(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> UUID:
    """
    Extract and validate user ID from JWT token.

    Raises:
        HTTPException: If token is invalid or expired
    """
    claims = decode_access_token(credentials.credentials)

    if claims is None:
        raise _credentials_error()

    return claims.sub


async def get_current_actor(
    user_id: Annotated[UUID, Depends(get_current_user_id)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> Actor:
    """
    Resolve the authenticated user into the actor passed to the services.

    Raises:
        HTTPException: If user not found or inactive
    """
    result = await db.execute(
        select(
            users.c.id,
            users.c.role,
            users.c.is_active,
            practitioners.c.id.label("practitioner_id"),
        )
        .select_from(users.outerjoin(practitioners, practitioners.c.user_id == users.c.id))
        .where(users.c.id == user_id)
    )
    row = result.fetchone()

    if not row:
        raise _credentials_error("User not found")

    if not row.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated",
        )

    role = Role(row.role)
    return Actor(
        user_id=row.id,
        role=role,
        practitioner_id=row.practitioner_id if role == Role.PRACTITIONER else None,
    )


# Type aliases for dependency injection
DatabaseSession = Annotated[AsyncSession, Depends(get_db)]
CurrentActor = Annotated[Actor, Depends(get_current_actor)]
CacheManagerDep = Annotated[CacheManager, Depends(get_cache_manager)]


async def get_appointment_service(
    db: DatabaseSession,
    cache: CacheManagerDep,
    background_tasks: BackgroundTasks,
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
) -> AppointmentService:
    """Appointment service whose notifications are sent after the response."""
    service = AppointmentService(db, cache, session_factory=session_factory)
    background_tasks.add_task(service.deliver_notifications)
    return service


AppointmentServiceDep = Annotated[AppointmentService, Depends(get_appointment_service)]
