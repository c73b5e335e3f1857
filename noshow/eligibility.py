"""
Two rules that read the same seller-note ledger at different points of a
booking's life:

  * `is_awaiting_no_show_review`: an ACCEPTED booking well past its start
    time that nobody has closed out yet. Staff should decide whether to mark it
    as a no-show. Never charged from here.
  * `classify`: a booking already marked NO_SHOW. Decides whether the batch
    job may bill it now.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum

from noshow import settings
from noshow.ledger import Ledger, decode
from noshow.schemas import Booking, BookingStatus, Money

CONFLICTING_CHARGE_RECORD = "conflicting charge record"
OUTSIDE_LOOKBACK = "outside lookback window"
NO_STORED_CARD = "no stored card"


class Verdict(StrEnum):
    CHARGEABLE = "chargeable"
    NOT_YET_DUE = "not_yet_due"
    ALREADY_SETTLED = "already_settled"
    INELIGIBLE = "ineligible"


@dataclass(frozen=True)
class Classification:
    verdict: Verdict
    reason: str | None = None

    @property
    def chargeable(self) -> bool:
        return self.verdict is Verdict.CHARGEABLE


@dataclass(frozen=True)
class EligibilityPolicy:
    grace_period: timedelta = field(
        default_factory=lambda: timedelta(hours=settings.GRACE_PERIOD_HOURS)
    )
    lookback: timedelta = field(
        default_factory=lambda: timedelta(days=settings.LOOKBACK_DAYS)
    )

    def describe_grace(self) -> str:
        hours = int(self.grace_period.total_seconds() // 3600)
        return f"still within {hours}h grace period"


CHARGEABLE = Classification(Verdict.CHARGEABLE)
ALREADY_SETTLED = Classification(Verdict.ALREADY_SETTLED, "no-show fee already recorded")


def screen(
    booking: Booking, now: datetime, policy: EligibilityPolicy
) -> Classification | None:
    """
    Checks that need no price: status, lookback, grace period, stored card.
    Returns None when the booking passes all of them.
    """
    if booking.status != BookingStatus.NO_SHOW:
        return Classification(Verdict.INELIGIBLE, f"status {booking.status}")

    if booking.start_at is None:
        return Classification(Verdict.INELIGIBLE, "missing start time")

    if booking.start_at < now - policy.lookback:
        return Classification(Verdict.INELIGIBLE, OUTSIDE_LOOKBACK)

    if now - booking.start_at < policy.grace_period:
        return Classification(Verdict.NOT_YET_DUE, policy.describe_grace())

    if not decode(booking.annotation).card_id:
        return Classification(Verdict.INELIGIBLE, NO_STORED_CARD)

    return None


def compare_ledger(ledger: Ledger, fee: Money) -> Classification:
    """A recorded charge settles the booking for good. It is never overwritten."""
    if ledger.charged_amount_cents is None:
        return CHARGEABLE

    recorded_currency = ledger.charged_currency or fee.currency
    if (
        ledger.charged_amount_cents == fee.amount
        and recorded_currency == fee.currency
    ):
        return ALREADY_SETTLED

    return Classification(Verdict.INELIGIBLE, CONFLICTING_CHARGE_RECORD)


def classify(
    booking: Booking,
    now: datetime,
    fee: Money,
    policy: EligibilityPolicy | None = None,
) -> Classification:
    policy = policy or EligibilityPolicy()
    verdict = screen(booking, now, policy)
    if verdict is not None:
        return verdict
    return compare_ledger(decode(booking.annotation), fee)


def is_awaiting_no_show_review(
    booking: Booking,
    now: datetime,
    window: timedelta | None = None,
) -> bool:
    window = window or timedelta(hours=settings.REVIEW_WINDOW_HOURS)
    if booking.status != BookingStatus.ACCEPTED or booking.start_at is None:
        return False
    if now - booking.start_at < window:
        return False
    ledger = decode(booking.annotation)
    return bool(ledger.card_id) and not ledger.is_charged
