"""
Seller-note ledger: billing state stored inside a booking's free-text note.

The note is a ` | `-separated list of tokens. Tokens shaped like `Key: value`
with one of the keys below are decoded into typed fields. Every other token is
carried through unchanged so that notes written by other parts of the system,
such as vehicle details, are never disturbed.

    Vehicle: Blue Sedan | Card ID: card_abc | No-Show Fee Charged (cents): 6000 | ...
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

SEPARATOR = " | "

CARD_ID = "Card ID"
CHARGED_AMOUNT = "No-Show Fee Charged (cents)"
CHARGED_CURRENCY = "No-Show Fee Charged Currency"
CHARGED_AT = "No-Show Fee Charged At"
CHARGED_PAYMENT_ID = "No-Show Fee Charged Payment ID"

# field name -> label; encode order follows this mapping
_LABELS: dict[str, str] = {
    "card_id": CARD_ID,
    "charged_amount_cents": CHARGED_AMOUNT,
    "charged_currency": CHARGED_CURRENCY,
    "charged_at": CHARGED_AT,
    "charged_payment_id": CHARGED_PAYMENT_ID,
}
_FIELDS_BY_KEY: dict[str, str] = {
    label.lower(): name for name, label in _LABELS.items()
}

_DIGITS = re.compile(r"\d+")


@dataclass
class Ledger:
    card_id: str | None = None
    charged_amount_cents: int | None = None
    charged_currency: str | None = None
    charged_at: datetime | None = None
    charged_payment_id: str | None = None
    other_tokens: list[str] = field(default_factory=list)

    @property
    def is_charged(self) -> bool:
        return self.charged_amount_cents is not None


def _parse_amount(value: str) -> int | None:
    if _DIGITS.fullmatch(value):
        return int(value)
    return None


def _parse_timestamp(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_value(name: str, value: str):
    if not value:
        return None
    if name == "charged_amount_cents":
        return _parse_amount(value)
    if name == "charged_at":
        return _parse_timestamp(value)
    return value


def decode(raw: str | None) -> Ledger:
    """
    Parse a seller note into a Ledger.

    When a recognized key appears more than once, the last occurrence with a
    usable value wins. Tokens that do not populate a field are kept verbatim
    in `other_tokens`, including unparseable values for recognized keys.
    """
    ledger = Ledger()
    if not raw or not raw.strip():
        return ledger

    tokens = [t.strip() for t in raw.split("|")]
    tokens = [t for t in tokens if t]

    parsed: list[tuple[str | None, object]] = []
    winner: dict[str, int] = {}
    for idx, token in enumerate(tokens):
        key, sep, value = token.partition(":")
        name = _FIELDS_BY_KEY.get(key.strip().lower()) if sep else None
        if name is None:
            parsed.append((None, None))
            continue
        typed = _parse_value(name, value.strip())
        parsed.append((name, typed))
        if typed is not None:
            winner[name] = idx

    for idx, (token, (name, typed)) in enumerate(zip(tokens, parsed)):
        if name is not None and winner.get(name) == idx:
            setattr(ledger, name, typed)
        else:
            ledger.other_tokens.append(token)

    return ledger


def encode(ledger: Ledger) -> str:
    """Unrecognized tokens first, then the billing fields in a fixed order."""
    tokens = [t.strip() for t in ledger.other_tokens if t and t.strip()]
    for name, label in _LABELS.items():
        value = getattr(ledger, name)
        if value is None:
            continue
        if isinstance(value, datetime):
            value = _format_timestamp(value)
        tokens.append(f"{label}: {value}")
    return SEPARATOR.join(tokens)


def record_charge(
    ledger: Ledger,
    *,
    card_id: str,
    amount_cents: int,
    currency: str,
    payment_id: str,
    charged_at: datetime,
) -> Ledger:
    """Return a copy of `ledger` carrying the given charge."""
    return Ledger(
        card_id=card_id or ledger.card_id,
        charged_amount_cents=amount_cents,
        charged_currency=currency,
        charged_at=charged_at,
        charged_payment_id=payment_id,
        other_tokens=list(ledger.other_tokens),
    )
