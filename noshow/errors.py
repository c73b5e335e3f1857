from __future__ import annotations


class NoShowError(Exception):
    """Base class for every error raised by the no-show billing pipeline."""


class FatalJobError(NoShowError):
    """The whole run must stop: credentials, location or scan failure."""


class SquareAPIError(NoShowError):
    """Non-2xx response (or transport failure) from the Square API."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        errors: list[dict] | None = None,
    ) -> None:
        self.status_code = status_code
        self.errors = errors or []
        details = [e.get("detail") for e in self.errors if e.get("detail")]
        if details:
            message = f"{message}: {', '.join(details)}"
        super().__init__(message)

    @property
    def codes(self) -> list[str]:
        return [e["code"] for e in self.errors if e.get("code")]


class IdempotencyKeyReusedError(SquareAPIError):
    """Square refused a payment whose idempotency key was already used."""


class PriceResolutionError(NoShowError):
    """A booking's service has no usable catalog price."""


class ChargeFailedError(NoShowError):
    """
    The payment request was rejected, or no response came back.

    After a rejection nothing was charged. After a transport failure the
    outcome is unknown; a later run retries with the same idempotency key,
    so it cannot add a second payment.
    """


class DuplicateChargeError(NoShowError):
    """A payment with the same idempotency key was already submitted."""

    def __init__(self, booking_id: str, idempotency_key: str) -> None:
        self.booking_id = booking_id
        self.idempotency_key = idempotency_key
        super().__init__(
            f"payment already submitted with idempotency key {idempotency_key}"
        )


class ChargedButNotRecordedError(NoShowError):
    """
    The card was charged but the seller note could not be updated.

    The next run will not see a charge record on the booking. Only the
    deterministic idempotency key keeps it from charging again, so this
    always needs a reconciliation pass.
    """

    def __init__(self, booking_id: str, payment_id: str, cause: Exception) -> None:
        self.booking_id = booking_id
        self.payment_id = payment_id
        self.cause = cause
        super().__init__(
            f"Charged payment {payment_id} but failed to update booking note: {cause}"
        )
