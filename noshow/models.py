from tortoise import fields
from tortoise.models import Model


class ChargeRecord(Model):
    """
    Structured mirror of the seller-note charge fields, one row per booking.

    The seller note stays authoritative for eligibility because Square only
    exposes that field. Rows with annotation_recorded=False are charges whose
    note update failed and need reconciling.
    """

    id = fields.IntField(primary_key=True)

    booking_id = fields.CharField(max_length=64, unique=True)
    payment_id = fields.CharField(max_length=64)
    card_id = fields.CharField(max_length=128)
    idempotency_key = fields.CharField(max_length=45)

    amount_cents = fields.BigIntField()
    currency = fields.CharField(max_length=3, default="USD")

    annotation_recorded = fields.BooleanField(default=False)
    error = fields.TextField(null=True)

    charged_at = fields.DatetimeField()
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:  # type: ignore
        table = "no_show_charges"
        ordering = ["-charged_at"]
