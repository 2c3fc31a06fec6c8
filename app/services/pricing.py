"""Price rules for appointments.

A service priced at the quote sentinel has no list price: it is left out of
the custom price floor check and is never formatted or summed as an amount.
"""

from decimal import Decimal

from app.config import settings
from app.core.exceptions import PriceBelowFloorException

TWO_PLACES = Decimal("0.01")


def is_quote_on_request(price: Decimal | None) -> bool:
    """Check if a service price is the quote-on-request sentinel."""
    return price is not None and Decimal(price) == settings.quote_price_sentinel


def validate_custom_price(custom_price: Decimal | None, service_price: Decimal) -> None:
    """
    Enforce that an override price is never below the service list price.

    Args:
        custom_price: Practitioner override price, or None to use the list price
        service_price: Price of the booked service

    Raises:
        PriceBelowFloorException: If the override is lower than the list price
    """
    if custom_price is None or is_quote_on_request(service_price):
        return

    if Decimal(custom_price) < Decimal(service_price):
        raise PriceBelowFloorException(
            f"Custom price {format_price(custom_price)} is below the service price "
            f"{format_price(service_price)}"
        )


def effective_price(custom_price: Decimal | None, service_price: Decimal) -> Decimal | None:
    """Price actually charged, or None when it is still on request."""
    if custom_price is not None:
        return Decimal(custom_price).quantize(TWO_PLACES)
    if is_quote_on_request(service_price):
        return None
    return Decimal(service_price).quantize(TWO_PLACES)


def format_price(price: Decimal | None) -> str:
    """Render a charged amount, None meaning it is still on request."""
    if price is None:
        return "on request"
    return f"{Decimal(price).quantize(TWO_PLACES)} {settings.currency_symbol}"


def format_service_price(service_price: Decimal) -> str:
    """Render a service list price, where the sentinel means on request."""
    if is_quote_on_request(service_price):
        return "on request"
    return format_price(service_price)
