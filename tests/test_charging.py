"""Tests for ChargeExecutor and idempotency keys (noshow/charging.py)."""

from __future__ import annotations

import pytest

from noshow.charging import ChargeExecutor, build_idempotency_key
from noshow.errors import (
    ChargedButNotRecordedError,
    ChargeFailedError,
    DuplicateChargeError,
    IdempotencyKeyReusedError,
    SquareAPIError,
)
from noshow.ledger import decode

from .conftest import make_records
from .factories import BOOKING_ID, CARD_ID, LOCATION_ID, NOW, FakeSquare, clock, make_booking, usd

FEE = usd(6000)


def _executor(square: FakeSquare, records=None) -> ChargeExecutor:
    return ChargeExecutor(square, LOCATION_ID, records=records, clock=clock)


class TestIdempotencyKey:
    def test_deterministic(self):
        assert build_idempotency_key("B1", 6000) == build_idempotency_key("B1", 6000)

    def test_depends_on_booking_and_amount(self):
        key = build_idempotency_key("B1", 6000)
        assert key != build_idempotency_key("B2", 6000)
        assert key != build_idempotency_key("B1", 6001)

    def test_fits_square_limit(self):
        key = build_idempotency_key("a-very-long-booking-identifier" * 4, 123456789)
        assert len(key) == 45
        assert all(c in "0123456789abcdef" for c in key)


class TestExecute:
    @pytest.mark.asyncio
    async def test_charges_then_writes_note(self):
        booking = make_booking()
        square = FakeSquare(bookings=[booking])

        result = await _executor(square).execute(booking, CARD_ID, FEE)

        assert result.payment_id == "pay_1"
        assert result.idempotency_key == build_idempotency_key(BOOKING_ID, 6000)
        call = square.payment_calls[0]
        assert call["source_id"] == CARD_ID
        assert call["amount"] == FEE
        assert call["location_id"] == LOCATION_ID
        assert call["reference_id"] == BOOKING_ID

        ledger = decode(square.bookings[BOOKING_ID].annotation)
        assert ledger.charged_amount_cents == 6000
        assert ledger.charged_currency == "USD"
        assert ledger.charged_at == NOW
        assert ledger.charged_payment_id == "pay_1"
        assert ledger.other_tokens == ["Vehicle: Blue Sedan"]
        assert result.annotation == square.bookings[BOOKING_ID].annotation

    @pytest.mark.asyncio
    async def test_update_uses_latest_version(self):
        booking = make_booking(version=1)
        square = FakeSquare(bookings=[make_booking(version=7)])

        await _executor(square).execute(booking, CARD_ID, FEE)

        assert square.updates[0][1] == 7

    @pytest.mark.asyncio
    async def test_executing_twice_creates_one_payment(self):
        booking = make_booking()
        square = FakeSquare(bookings=[booking])
        executor = _executor(square)

        first = await executor.execute(booking, CARD_ID, FEE)
        second = await executor.execute(booking, CARD_ID, FEE)

        assert first.payment_id == second.payment_id
        assert len(square.payments) == 1
        assert len(square.payment_calls) == 2

    @pytest.mark.asyncio
    async def test_payment_rejection_is_charge_failed(self):
        booking = make_booking()
        square = FakeSquare(bookings=[booking])
        square.fail_payment = SquareAPIError(
            "Square returned 402",
            status_code=402,
            errors=[{"code": "CARD_DECLINED", "detail": "Card declined."}],
        )

        with pytest.raises(ChargeFailedError, match="Card declined"):
            await _executor(square).execute(booking, CARD_ID, FEE)
        assert square.updates == []

    @pytest.mark.asyncio
    async def test_timeout_then_retry_uses_same_key(self):
        booking = make_booking()
        square = FakeSquare(bookings=[booking])
        executor = _executor(square)

        square.fail_payment = SquareAPIError(
            "Square request POST /v2/payments failed: timed out"
        )
        with pytest.raises(ChargeFailedError, match="timed out"):
            await executor.execute(booking, CARD_ID, FEE)

        square.fail_payment = None
        await executor.execute(booking, CARD_ID, FEE)

        keys = [c["idempotency_key"] for c in square.payment_calls]
        assert keys == [build_idempotency_key(BOOKING_ID, 6000)] * 2
        assert len(square.payments) == 1

    @pytest.mark.asyncio
    async def test_reused_key_is_duplicate_charge(self):
        booking = make_booking()
        square = FakeSquare(bookings=[booking])
        square.fail_payment = IdempotencyKeyReusedError(
            "Square returned 400",
            status_code=400,
            errors=[{"code": "IDEMPOTENCY_KEY_REUSED"}],
        )

        with pytest.raises(DuplicateChargeError) as exc_info:
            await _executor(square).execute(booking, CARD_ID, FEE)
        assert exc_info.value.idempotency_key == build_idempotency_key(BOOKING_ID, 6000)
        assert square.updates == []


class TestChargedButNotRecorded:
    @pytest.mark.asyncio
    async def test_note_failure_after_payment(self):
        booking = make_booking()
        square = FakeSquare(bookings=[booking])
        square.fail_update = SquareAPIError("Square returned 409", status_code=409)

        with pytest.raises(ChargedButNotRecordedError) as exc_info:
            await _executor(square).execute(booking, CARD_ID, FEE)

        err = exc_info.value
        assert err.payment_id == "pay_1"
        assert err.booking_id == BOOKING_ID
        assert str(err).startswith("Charged payment pay_1 but failed to update booking note:")
        assert not isinstance(err, ChargeFailedError)

    @pytest.mark.asyncio
    async def test_rerun_after_note_failure_reuses_payment(self):
        booking = make_booking()
        square = FakeSquare(bookings=[booking])
        executor = _executor(square)

        square.fail_update = SquareAPIError("Square returned 500", status_code=500)
        with pytest.raises(ChargedButNotRecordedError):
            await executor.execute(booking, CARD_ID, FEE)

        square.fail_update = None
        result = await executor.execute(square.bookings[BOOKING_ID], CARD_ID, FEE)

        assert result.payment_id == "pay_1"
        assert len(square.payments) == 1
        assert decode(square.bookings[BOOKING_ID].annotation).charged_payment_id == "pay_1"

    @pytest.mark.asyncio
    async def test_booking_gone_before_note_write(self):
        booking = make_booking()
        square = FakeSquare(bookings=[])

        with pytest.raises(ChargedButNotRecordedError, match="no longer exists"):
            await _executor(square).execute(booking, CARD_ID, FEE)

    @pytest.mark.asyncio
    async def test_note_already_records_another_payment(self):
        booking = make_booking()
        stored = make_booking(
            annotation="Card ID: card_abc | No-Show Fee Charged (cents): 6000 | "
            "No-Show Fee Charged Payment ID: pay_other"
        )
        square = FakeSquare(bookings=[stored])

        with pytest.raises(ChargedButNotRecordedError, match="pay_other"):
            await _executor(square).execute(booking, CARD_ID, FEE)
        assert square.updates == []


class TestRecordMirror:
    @pytest.mark.asyncio
    async def test_success_is_mirrored(self):
        booking = make_booking()
        records = make_records()
        square = FakeSquare(bookings=[booking])

        await _executor(square, records).execute(booking, CARD_ID, FEE)

        key = build_idempotency_key(BOOKING_ID, 6000)
        records.record_payment.assert_awaited_once_with(
            BOOKING_ID, "pay_1", CARD_ID, key, FEE, NOW
        )
        records.mark_annotation_recorded.assert_awaited_once_with(BOOKING_ID)
        records.mark_annotation_failed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_note_failure_is_mirrored(self):
        booking = make_booking()
        records = make_records()
        square = FakeSquare(bookings=[booking])
        square.fail_update = SquareAPIError("Square returned 500", status_code=500)

        with pytest.raises(ChargedButNotRecordedError):
            await _executor(square, records).execute(booking, CARD_ID, FEE)

        records.mark_annotation_failed.assert_awaited_once()
        assert records.mark_annotation_failed.await_args.args[0] == BOOKING_ID
        records.mark_annotation_recorded.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_record_store_failure_does_not_block_charge(self):
        booking = make_booking()
        records = make_records()
        records.record_payment.side_effect = RuntimeError("db down")
        records.mark_annotation_recorded.side_effect = RuntimeError("db down")
        square = FakeSquare(bookings=[booking])

        result = await _executor(square, records).execute(booking, CARD_ID, FEE)

        assert result.payment_id == "pay_1"
        assert decode(square.bookings[BOOKING_ID].annotation).is_charged

    @pytest.mark.asyncio
    async def test_no_record_store(self):
        booking = make_booking()
        square = FakeSquare(bookings=[booking])
        result = await _executor(square, records=None).execute(booking, CARD_ID, FEE)
        assert result.payment_id == "pay_1"
