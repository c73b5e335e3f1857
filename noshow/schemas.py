from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class BookingStatus(StrEnum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    CANCELLED_BY_CUSTOMER = "CANCELLED_BY_CUSTOMER"
    CANCELLED_BY_SELLER = "CANCELLED_BY_SELLER"
    NO_SHOW = "NO_SHOW"


@dataclass(frozen=True)
class Money:
    """Amount in minor units (cents) plus ISO currency code."""

    amount: int
    currency: str

    def format(self) -> str:
        return f"{self.amount / 100:.2f} {self.currency}"


class LineItem(BaseModel):
    """One appointment segment. Only the catalog variation matters for pricing."""

    service_variation_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("service_variation_id", "serviceVariationId"),
    )
    duration_minutes: int | None = Field(
        default=None,
        validation_alias=AliasChoices("duration_minutes", "durationMinutes"),
    )

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Booking(BaseModel):
    """
    Booking as the platform returns it, normalized to one shape.

    `status` stays a plain string so statuses this service does not know
    about still parse. Compare against BookingStatus members.
    """

    id: str
    status: str
    start_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices("start_at", "startAt")
    )
    customer_id: str | None = Field(
        default=None, validation_alias=AliasChoices("customer_id", "customerId")
    )
    line_items: list[LineItem] = Field(
        default_factory=list,
        validation_alias=AliasChoices(
            "line_items", "appointment_segments", "appointmentSegments"
        ),
    )
    annotation: str | None = Field(
        default=None,
        validation_alias=AliasChoices("annotation", "seller_note", "sellerNote"),
    )
    version: int | None = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("start_at", mode="after")
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        if v is None:
            return None
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @field_validator("line_items", mode="before")
    @classmethod
    def none_is_empty(cls, v):
        return v or []


# ---------------------------------------------------------------------------
# API responses
# ---------------------------------------------------------------------------


class RunSummaryResponse(BaseModel):
    processed: int
    eligible: int
    charged: int
    skipped: list[str]
    errors: list[str]


class ManualChargeResponse(BaseModel):
    booking_id: str
    payment_id: str
    amount_cents: int
    currency: str
    service_total_cents: int
    fee_percent: str
    annotation: str


class ReviewCandidate(BaseModel):
    """ACCEPTED booking past the review window with a card and no recorded fee."""

    id: str
    status: str
    start_at: datetime
    customer_id: str | None
    card_id: str


class ChargeRecordResponse(BaseModel):
    booking_id: str
    payment_id: str
    amount_cents: int
    currency: str
    card_id: str
    idempotency_key: str
    annotation_recorded: bool
    error: str | None
    charged_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ChargeRecordFilters(BaseModel):
    """Bind to a FastAPI route via Depends(ChargeRecordFilters)."""

    annotation_recorded: bool | None = None

    # Pagination
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)
