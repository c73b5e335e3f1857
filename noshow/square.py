from __future__ import annotations

from datetime import datetime
from functools import lru_cache
from uuid import uuid4

import httpx
from loguru import logger
from pydantic import ValidationError

from noshow import settings
from noshow.errors import IdempotencyKeyReusedError, SquareAPIError
from noshow.schemas import Booking, Money

# ---------------------------------------------------------------------------
# SquareClient: thin async wrapper around the Square REST API
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _get_square_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.square_base_url,
        timeout=httpx.Timeout(10.0),
        follow_redirects=True,
    )


def _isoformat(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


def _price_money(obj: dict) -> dict | None:
    data = obj.get("item_variation_data") or obj.get("itemVariationData") or {}
    return data.get("price_money") or data.get("priceMoney")


class SquareClient:
    """
    Bookings, catalog and payments calls used by the no-show job.
    Responses are normalized into Booking/Money here so nothing past this
    class deals with raw platform payloads.
    """

    def __init__(
        self,
        access_token: str | None = None,
        api_version: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._token = access_token if access_token is not None else settings.square_access_token
        self._api_version = api_version or settings.square_api_version
        self._http = http_client

    @property
    def _client(self) -> httpx.AsyncClient:
        return self._http or _get_square_http_client()

    @property
    def configured(self) -> bool:
        return bool(self._token)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Square-Version": self._api_version,
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        json: dict | None = None,
        allow_404: bool = False,
    ) -> dict | None:
        try:
            resp = await self._client.request(
                method, path, params=params, json=json, headers=self._headers()
            )
        except httpx.RequestError as exc:
            raise SquareAPIError(f"Square request {method} {path} failed: {exc}") from exc

        if resp.status_code == 404 and allow_404:
            return None
        if resp.status_code >= 400:
            try:
                errors = resp.json().get("errors") or []
            except ValueError:
                errors = []
            error_cls = SquareAPIError
            if any(e.get("code") == "IDEMPOTENCY_KEY_REUSED" for e in errors):
                error_cls = IdempotencyKeyReusedError
            raise error_cls(
                f"Square returned {resp.status_code} for {method} {path}",
                status_code=resp.status_code,
                errors=errors,
            )
        return resp.json() if resp.content else {}

    # -- locations ----------------------------------------------------------

    async def list_location_ids(self) -> list[str]:
        data = await self._request("GET", "/v2/locations") or {}
        return [loc["id"] for loc in data.get("locations") or [] if loc.get("id")]

    # -- bookings -----------------------------------------------------------

    async def list_bookings(
        self,
        location_id: str,
        start_at_min: datetime,
        start_at_max: datetime,
        cursor: str | None = None,
        limit: int = settings.PAGE_SIZE,
    ) -> tuple[list[Booking], str | None]:
        """One page of bookings plus the cursor for the next page (None when done)."""
        params: dict[str, str | int] = {
            "location_id": location_id,
            "start_at_min": _isoformat(start_at_min),
            "start_at_max": _isoformat(start_at_max),
            "limit": limit,
        }
        if cursor:
            params["cursor"] = cursor
        data = await self._request("GET", "/v2/bookings", params=params) or {}
        try:
            bookings = [Booking.model_validate(b) for b in data.get("bookings") or []]
        except ValidationError as exc:
            raise SquareAPIError(f"Malformed booking in list response: {exc}") from exc
        return bookings, data.get("cursor") or None

    async def get_booking(self, booking_id: str) -> Booking | None:
        data = await self._request("GET", f"/v2/bookings/{booking_id}", allow_404=True)
        if not data or not data.get("booking"):
            return None
        return Booking.model_validate(data["booking"])

    async def update_booking_annotation(
        self, booking_id: str, version: int | None, annotation: str
    ) -> Booking:
        """Write the seller note. A stale `version` makes Square reject the update."""
        body: dict = {"seller_note": annotation}
        if version is not None:
            body["version"] = version
        data = await self._request(
            "PUT",
            f"/v2/bookings/{booking_id}",
            json={"idempotency_key": str(uuid4()), "booking": body},
        ) or {}
        if not data.get("booking"):
            raise SquareAPIError(f"Booking update for {booking_id} returned no booking")
        return Booking.model_validate(data["booking"])

    # -- catalog ------------------------------------------------------------

    async def get_catalog_price(self, variation_id: str) -> Money | None:
        data = await self._request(
            "GET", f"/v2/catalog/object/{variation_id}", allow_404=True
        )
        obj = (data or {}).get("object")
        if not obj:
            return None
        price = _price_money(obj)
        if not price or price.get("amount") is None:
            return None
        return Money(
            amount=int(price["amount"]),
            currency=price.get("currency") or settings.DEFAULT_CURRENCY,
        )

    # -- payments -----------------------------------------------------------

    async def create_payment(
        self,
        *,
        source_id: str,
        amount: Money,
        idempotency_key: str,
        location_id: str,
        customer_id: str | None = None,
        reference_id: str | None = None,
        note: str | None = None,
    ) -> str:
        """Charge a stored card. Returns the Square payment id."""
        body: dict = {
            "source_id": source_id,
            "idempotency_key": idempotency_key,
            "amount_money": {"amount": amount.amount, "currency": amount.currency},
            "location_id": location_id,
            "autocomplete": True,
        }
        if customer_id:
            body["customer_id"] = customer_id
        if reference_id:
            body["reference_id"] = reference_id
        if note:
            body["note"] = note

        data = await self._request("POST", "/v2/payments", json=body) or {}
        payment = data.get("payment") or {}
        if not payment.get("id"):
            raise SquareAPIError("Payment API response did not include a payment record.")
        logger.debug(
            "Square payment {} status={}", payment["id"], payment.get("status")
        )
        return payment["id"]


_square_client = SquareClient()


def get_square_client() -> SquareClient:
    return _square_client
