from __future__ import annotations

import hashlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from loguru import logger

from noshow.crud import ChargeRecordCRUD, charge_record_crud
from noshow.errors import (
    ChargedButNotRecordedError,
    ChargeFailedError,
    DuplicateChargeError,
    IdempotencyKeyReusedError,
    NoShowError,
    SquareAPIError,
)
from noshow.ledger import decode, encode, record_charge
from noshow.schemas import Booking, Money

# Square rejects idempotency keys longer than 45 characters
IDEMPOTENCY_KEY_LENGTH = 45


class PaymentsGateway(Protocol):
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
    ) -> str: ...

    async def get_booking(self, booking_id: str) -> Booking | None: ...

    async def update_booking_annotation(
        self, booking_id: str, version: int | None, annotation: str
    ) -> Booking: ...


def build_idempotency_key(booking_id: str, amount_cents: int) -> str:
    """Same booking and same fee always give the same key, across runs."""
    base = f"{booking_id}-{amount_cents}"
    return hashlib.sha256(base.encode()).hexdigest()[:IDEMPOTENCY_KEY_LENGTH]


@dataclass(frozen=True)
class ChargeResult:
    booking_id: str
    payment_id: str
    fee: Money
    idempotency_key: str
    annotation: str
    charged_at: datetime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChargeExecutor:
    """
    Charge first, then record. The payment call must finish before the seller
    note is touched; a note failure after a successful payment surfaces as
    ChargedButNotRecordedError and is never folded into a generic failure.
    """

    def __init__(
        self,
        square: PaymentsGateway,
        location_id: str,
        records: ChargeRecordCRUD | None = charge_record_crud,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._square = square
        self._location_id = location_id
        self._records = records
        self._clock = clock

    async def execute(self, booking: Booking, card_id: str, fee: Money) -> ChargeResult:
        key = build_idempotency_key(booking.id, fee.amount)

        try:
            payment_id = await self._square.create_payment(
                source_id=card_id,
                amount=fee,
                idempotency_key=key,
                location_id=self._location_id,
                customer_id=booking.customer_id,
                reference_id=booking.id,
                note=f"No-show fee for booking {booking.id}",
            )
        except IdempotencyKeyReusedError as exc:
            raise DuplicateChargeError(booking.id, key) from exc
        except SquareAPIError as exc:
            raise ChargeFailedError(str(exc)) from exc

        charged_at = self._clock()
        await self._mirror(
            "record_payment",
            booking.id,
            payment_id,
            card_id,
            key,
            fee,
            charged_at,
        )

        try:
            annotation = await self._write_ledger(
                booking.id, card_id, fee, payment_id, charged_at
            )
        except Exception as exc:
            logger.error(
                "Booking {} charged (payment {}) but seller note update failed: {}",
                booking.id,
                payment_id,
                exc,
            )
            await self._mirror("mark_annotation_failed", booking.id, str(exc))
            raise ChargedButNotRecordedError(booking.id, payment_id, exc) from exc

        await self._mirror("mark_annotation_recorded", booking.id)
        logger.info(
            "Charged {} for booking {} (payment {})",
            fee.format(),
            booking.id,
            payment_id,
        )
        return ChargeResult(
            booking_id=booking.id,
            payment_id=payment_id,
            fee=fee,
            idempotency_key=key,
            annotation=annotation,
            charged_at=charged_at,
        )

    async def _write_ledger(
        self,
        booking_id: str,
        card_id: str,
        fee: Money,
        payment_id: str,
        charged_at: datetime,
    ) -> str:
        # Re-read right before writing: the note and version may have moved
        latest = await self._square.get_booking(booking_id)
        if latest is None:
            raise NoShowError(f"booking {booking_id} no longer exists")

        ledger = decode(latest.annotation)
        if ledger.is_charged and ledger.charged_payment_id != payment_id:
            raise NoShowError(
                "seller note already records payment "
                f"{ledger.charged_payment_id}; not overwriting"
            )

        annotation = encode(
            record_charge(
                ledger,
                card_id=card_id,
                amount_cents=fee.amount,
                currency=fee.currency,
                payment_id=payment_id,
                charged_at=charged_at,
            )
        )
        await self._square.update_booking_annotation(
            booking_id, latest.version, annotation
        )
        return annotation

    async def _mirror(self, method: str, *args) -> None:
        if self._records is None:
            return
        call: Callable[..., Awaitable] = getattr(self._records, method)
        try:
            await call(*args)
        except Exception:
            logger.opt(exception=True).warning(
                "Charge record {} failed for booking {}", method, args[0]
            )
