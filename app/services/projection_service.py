"""Read-side assembly of appointments with their parties and service."""

from typing import Any
from uuid import UUID

from sqlalchemy import and_, func, select, true
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import NotFoundException
from app.core.redis_client import CacheManager
from app.models.appointments import appointments, services
from app.models.users import beneficiaries, practitioners, users
from app.schemas.appointments import (
    AppointmentDetailResponse,
    AppointmentFilters,
    AppointmentListResponse,
    ServiceSummary,
)
from app.schemas.users import (
    Actor,
    BeneficiarySummary,
    ClientSummary,
    PractitionerSummary,
    Role,
)
from app.services.appointment_store import row_to_dict, translate_store_errors
from app.services.authorization import can_view, ensure_can_view
from app.services.pricing import effective_price, format_price, format_service_price

client_users = users.alias("client_users")
practitioner_users = users.alias("practitioner_users")

REDACTED_BENEFICIARY_FIELDS = {"birth_date": None, "email": None, "phone": None}


def _projection_query() -> Any:
    return select(
        appointments,
        client_users.c.first_name.label("client_first_name"),
        client_users.c.last_name.label("client_last_name"),
        client_users.c.email.label("client_email"),
        client_users.c.phone.label("client_phone"),
        practitioners.c.user_id.label("practitioner_user_id"),
        practitioners.c.pseudo.label("practitioner_pseudo"),
        practitioner_users.c.first_name.label("practitioner_first_name"),
        practitioner_users.c.last_name.label("practitioner_last_name"),
        services.c.name.label("service_name"),
        services.c.category.label("service_category"),
        services.c.duration_minutes.label("service_duration_minutes"),
        services.c.price.label("service_price"),
        beneficiaries.c.first_name.label("beneficiary_first_name"),
        beneficiaries.c.last_name.label("beneficiary_last_name"),
        beneficiaries.c.birth_date.label("beneficiary_birth_date"),
        beneficiaries.c.email.label("beneficiary_email"),
        beneficiaries.c.phone.label("beneficiary_phone"),
    ).select_from(
        appointments.join(client_users, appointments.c.client_id == client_users.c.id)
        .join(practitioners, appointments.c.practitioner_id == practitioners.c.id)
        .join(practitioner_users, practitioners.c.user_id == practitioner_users.c.id)
        .join(services, appointments.c.service_id == services.c.id)
        .outerjoin(beneficiaries, appointments.c.beneficiary_id == beneficiaries.c.id)
    )


def build_detail(record: dict[str, Any]) -> AppointmentDetailResponse:
    """Build the unredacted projection from a joined row."""
    beneficiary = None
    if record["beneficiary_id"] is not None:
        beneficiary = BeneficiarySummary(
            id=record["beneficiary_id"],
            first_name=record["beneficiary_first_name"],
            last_name=record["beneficiary_last_name"],
            birth_date=record["beneficiary_birth_date"],
            email=record["beneficiary_email"],
            phone=record["beneficiary_phone"],
        )

    price = effective_price(record["custom_price"], record["service_price"])
    appointment_fields = {key: record[key] for key in appointments.c.keys()}

    return AppointmentDetailResponse(
        **appointment_fields,
        client=ClientSummary(
            id=record["client_id"],
            first_name=record["client_first_name"],
            last_name=record["client_last_name"],
            email=record["client_email"],
            phone=record["client_phone"],
        ),
        practitioner=PractitionerSummary(
            id=record["practitioner_id"],
            user_id=record["practitioner_user_id"],
            pseudo=record["practitioner_pseudo"],
            first_name=record["practitioner_first_name"],
            last_name=record["practitioner_last_name"],
        ),
        service=ServiceSummary(
            id=record["service_id"],
            name=record["service_name"],
            category=record["service_category"],
            duration_minutes=record["service_duration_minutes"],
            price=record["service_price"],
            price_display=format_service_price(record["service_price"]),
        ),
        beneficiary=beneficiary,
        effective_price=price,
        price_display=format_price(price),
    )


def project_for(detail: AppointmentDetailResponse, actor: Actor) -> AppointmentDetailResponse:
    """
    Apply field-level redaction for the requesting actor.

    Beneficiary birth date and contact fields are only kept for actors who
    pass the view check on the appointment.
    """
    parties = {"client_id": detail.client_id, "practitioner_id": detail.practitioner_id}
    if detail.beneficiary is None or can_view(actor, parties):
        return detail

    redacted = detail.beneficiary.model_copy(update=REDACTED_BENEFICIARY_FIELDS)
    return detail.model_copy(update={"beneficiary": redacted})


class AppointmentProjector:
    """Loads appointment projections, cached per appointment."""

    def __init__(self, db: AsyncSession, cache_manager: CacheManager | None = None):
        """Initialize projector with database session and optional cache."""
        self.db = db
        self.cache = cache_manager

    @staticmethod
    def _cache_key(appointment_id: UUID) -> str:
        """Generate cache key for an appointment projection."""
        return f"appointment:{appointment_id}"

    @staticmethod
    def _version_key(appointment_id: UUID) -> str:
        return f"appointment:{appointment_id}:version"

    @translate_store_errors
    async def load(self, appointment_id: UUID) -> AppointmentDetailResponse:
        """
        Load the unredacted projection of an appointment.

        Cached entries carry the appointment's cache version read before the
        database. Every committed write bumps the version, so an entry built
        from a row read before that write is never served.

        Raises:
            NotFoundException: If appointment not found
        """
        version = None
        if self.cache:
            version = self.cache.get_counter(self._version_key(appointment_id))
            if version is not None:
                cached = self.cache.get_json(self._cache_key(appointment_id))
                if isinstance(cached, dict) and cached.get("version") == version:
                    return AppointmentDetailResponse.model_validate(cached["projection"])

        result = await self.db.execute(
            _projection_query().where(appointments.c.id == appointment_id)
        )
        row = result.fetchone()

        if not row:
            raise NotFoundException("Appointment not found")

        detail = build_detail(row_to_dict(row))

        if self.cache and version is not None:
            self.cache.set_json(
                self._cache_key(appointment_id),
                {"version": version, "projection": detail.model_dump(mode="json")},
                ttl=settings.appointment_cache_ttl,
            )

        return detail

    async def get(self, appointment_id: UUID, actor: Actor) -> AppointmentDetailResponse:
        """
        Get an appointment as seen by an actor.

        Raises:
            NotFoundException: If appointment not found
            ForbiddenException: If the actor may not see it
        """
        detail = await self.load(appointment_id)
        ensure_can_view(
            actor, {"client_id": detail.client_id, "practitioner_id": detail.practitioner_id}
        )
        return project_for(detail, actor)

    @translate_store_errors
    async def list_appointments(
        self,
        actor: Actor,
        filters: AppointmentFilters,
    ) -> AppointmentListResponse:
        """List appointments visible to an actor with filtering and pagination."""
        conditions = []

        if actor.role == Role.CLIENT:
            conditions.append(appointments.c.client_id == actor.user_id)
        elif actor.role == Role.PRACTITIONER:
            # A practitioner account without a profile sees nothing
            conditions.append(appointments.c.practitioner_id == actor.practitioner_id)

        if filters.status:
            conditions.append(appointments.c.status == filters.status.value)

        if filters.practitioner_id:
            conditions.append(appointments.c.practitioner_id == filters.practitioner_id)

        if filters.from_date:
            conditions.append(appointments.c.start_time >= filters.from_date)

        if filters.to_date:
            conditions.append(appointments.c.start_time <= filters.to_date)

        where = and_(*conditions) if conditions else true()

        count_stmt = select(func.count()).select_from(appointments).where(where)
        total = (await self.db.execute(count_stmt)).scalar() or 0

        offset = (filters.page - 1) * filters.page_size
        stmt = (
            _projection_query()
            .where(where)
            .order_by(appointments.c.start_time.desc())
            .limit(filters.page_size)
            .offset(offset)
        )
        rows = (await self.db.execute(stmt)).fetchall()

        return AppointmentListResponse(
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            items=[project_for(build_detail(row_to_dict(row)), actor) for row in rows],
        )

    def invalidate(self, appointment_id: UUID) -> None:
        """Retire the cached projection after a committed write."""
        if self.cache:
            self.cache.increment(
                self._version_key(appointment_id), ttl=settings.appointment_cache_ttl * 2
            )
            self.cache.delete(self._cache_key(appointment_id))
