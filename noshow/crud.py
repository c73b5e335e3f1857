from __future__ import annotations

from datetime import datetime

from noshow.models import ChargeRecord
from noshow.schemas import ChargeRecordFilters, ChargeRecordResponse, Money


class ChargeRecordCRUD:
    async def record_payment(
        self,
        booking_id: str,
        payment_id: str,
        card_id: str,
        idempotency_key: str,
        fee: Money,
        charged_at: datetime,
    ) -> ChargeRecordResponse:
        """
        Upsert the row for a booking right after the payment succeeds.
        A retried run that hits the same idempotency key lands on the same row.
        """
        inst, _ = await ChargeRecord.update_or_create(
            booking_id=booking_id,
            defaults=dict(
                payment_id=payment_id,
                card_id=card_id,
                idempotency_key=idempotency_key,
                amount_cents=fee.amount,
                currency=fee.currency,
                charged_at=charged_at,
                annotation_recorded=False,
                error=None,
            ),
        )
        return ChargeRecordResponse.model_validate(inst, from_attributes=True)

    async def mark_annotation_recorded(self, booking_id: str) -> bool:
        updated = await ChargeRecord.filter(booking_id=booking_id).update(
            annotation_recorded=True, error=None
        )
        return updated > 0

    async def mark_annotation_failed(self, booking_id: str, error: str) -> bool:
        updated = await ChargeRecord.filter(booking_id=booking_id).update(
            annotation_recorded=False, error=error
        )
        return updated > 0

    async def get_record(self, booking_id: str) -> ChargeRecordResponse | None:
        inst = await ChargeRecord.get_or_none(booking_id=booking_id)
        if not inst:
            return None
        return ChargeRecordResponse.model_validate(inst, from_attributes=True)

    async def list_records(
        self, filters: ChargeRecordFilters
    ) -> list[ChargeRecordResponse]:
        qs = ChargeRecord.all()
        if filters.annotation_recorded is not None:
            qs = qs.filter(annotation_recorded=filters.annotation_recorded)

        offset = (filters.page - 1) * filters.page_size
        qs = qs.offset(offset).limit(filters.page_size)

        records = await qs
        return [
            ChargeRecordResponse.model_validate(r, from_attributes=True)
            for r in records
        ]


charge_record_crud = ChargeRecordCRUD()
