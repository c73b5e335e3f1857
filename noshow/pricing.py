from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

from loguru import logger

from noshow import settings
from noshow.errors import PriceResolutionError, SquareAPIError
from noshow.schemas import Booking, Money


class CatalogClient(Protocol):
    async def get_catalog_price(self, variation_id: str) -> Money | None: ...


class PriceResolver:
    """
    Resolves catalog variation prices, memoized for the lifetime of the
    instance. The job builds one resolver per run, so prices are always
    re-fetched on the next run.
    """

    def __init__(
        self,
        catalog: CatalogClient,
        default_currency: str = settings.DEFAULT_CURRENCY,
    ) -> None:
        self._catalog = catalog
        self._default_currency = default_currency
        self._cache: dict[str, Money] = {}

    async def resolve(self, variation_id: str) -> Money:
        cached = self._cache.get(variation_id)
        if cached is not None:
            logger.debug("Cache hit for variation price: variation_id={}", variation_id)
            return cached

        try:
            price = await self._catalog.get_catalog_price(variation_id)
        except SquareAPIError as exc:
            raise PriceResolutionError(
                f"Could not fetch service variation {variation_id}: {exc}"
            ) from exc

        if price is None:
            raise PriceResolutionError(
                f"No price found for service variation {variation_id}."
            )

        self._cache[variation_id] = price
        return price

    async def booking_total(self, booking: Booking) -> Money:
        """
        Sum of all priced line items. Currency is taken from the first item;
        mixed-currency bookings are not supported.
        """
        total = 0
        currency: str | None = None
        for item in booking.line_items:
            if not item.service_variation_id:
                continue
            price = await self.resolve(item.service_variation_id)
            total += price.amount
            currency = currency or price.currency
        return Money(amount=total, currency=currency or self._default_currency)


def calculate_fee(
    service_total: Money, percent: Decimal = settings.FEE_PERCENT
) -> Money | None:
    """Percentage of the service total, rounded half-up to the cent. None if <= 0."""
    fee = (Decimal(service_total.amount) * percent / Decimal(100)).quantize(
        Decimal(1), rounding=ROUND_HALF_UP
    )
    if fee <= 0:
        return None
    return Money(amount=int(fee), currency=service_total.currency)
