from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime, timedelta
from typing import Protocol

from loguru import logger

from noshow import settings
from noshow.errors import FatalJobError, SquareAPIError
from noshow.schemas import Booking


class BookingSource(Protocol):
    async def list_location_ids(self) -> list[str]: ...

    async def list_bookings(
        self,
        location_id: str,
        start_at_min: datetime,
        start_at_max: datetime,
        cursor: str | None = None,
        limit: int = ...,
    ) -> tuple[list[Booking], str | None]: ...


async def resolve_location_id(
    source: BookingSource, configured: str | None = settings.square_location_id
) -> str:
    if configured:
        return configured
    try:
        location_ids = await source.list_location_ids()
    except SquareAPIError as exc:
        raise FatalJobError(f"Could not list Square locations: {exc}") from exc
    if not location_ids:
        raise FatalJobError("No Square locations available.")
    return location_ids[0]


class BookingScanner:
    """
    Streams every booking at `location_id` whose start falls in
    [now - lookback, now], following cursors until Square stops returning one.

    Any page failure aborts the scan with FatalJobError. Stopping halfway
    would quietly hide a page of chargeable bookings.
    """

    def __init__(
        self,
        source: BookingSource,
        location_id: str,
        lookback: timedelta | None = None,
        page_size: int = settings.PAGE_SIZE,
    ) -> None:
        self._source = source
        self._location_id = location_id
        self._lookback = lookback or timedelta(days=settings.LOOKBACK_DAYS)
        self._page_size = page_size

    async def scan(self, now: datetime) -> AsyncIterator[Booking]:
        start_at_min = now - self._lookback
        cursor: str | None = None
        page = 0

        while True:
            page += 1
            try:
                bookings, cursor = await self._source.list_bookings(
                    self._location_id,
                    start_at_min,
                    now,
                    cursor=cursor,
                    limit=self._page_size,
                )
            except SquareAPIError as exc:
                raise FatalJobError(
                    f"Booking scan failed on page {page}: {exc}"
                ) from exc

            logger.debug("Scanned page {} ({} bookings)", page, len(bookings))
            for booking in bookings:
                yield booking

            if not cursor:
                return
