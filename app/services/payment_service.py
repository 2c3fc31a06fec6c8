"""Release of captured payments to practitioners."""

from collections.abc import Mapping
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Protocol
from uuid import uuid4

import structlog
from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import PaymentReleaseFailedException
from app.models.appointments import practitioner_payouts
from app.services.appointment_store import translate_store_errors

logger = structlog.get_logger(__name__)


class PaymentGateway(Protocol):
    """Releases the money held for an appointment to its practitioner."""

    async def release_payment(self, appointment: Mapping[str, Any], amount: Decimal | None) -> None:
        """
        Release payment for a validated appointment.

        Raises:
            PaymentReleaseFailedException: If the money could not be released
        """
        ...


class LedgerPaymentGateway:
    """Marks the practitioner's share as eligible for payout.

    The ledger row is written in the caller's session, so it is committed
    or rolled back together with the status change. The bank transfer
    itself is done by the payout processor reading eligible rows.
    """

    def __init__(self, db: AsyncSession):
        """Initialize gateway with database session."""
        self.db = db

    @translate_store_errors
    async def release_payment(self, appointment: Mapping[str, Any], amount: Decimal | None) -> None:
        """Write the payout ledger row for an appointment."""
        if amount is None:
            raise PaymentReleaseFailedException(
                "The appointment price is still on request, set a custom price before validation"
            )

        values = {
            "id": uuid4(),
            "appointment_id": appointment["id"],
            "practitioner_id": appointment["practitioner_id"],
            "amount": amount,
            "currency": settings.currency,
            "status": "eligible",
            "created_at": datetime.now(UTC),
        }

        try:
            await self.db.execute(insert(practitioner_payouts).values(**values))
        except IntegrityError as e:
            logger.error(
                "payout_ledger_write_failed",
                appointment_id=str(appointment["id"]),
                error=str(e),
            )
            raise PaymentReleaseFailedException(
                "Payment for this appointment has already been released"
            ) from e

        logger.info(
            "payment_released",
            appointment_id=str(appointment["id"]),
            practitioner_id=str(appointment["practitioner_id"]),
            amount=str(amount),
        )
