from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import StrEnum

from loguru import logger

from noshow import settings
from noshow.charging import ChargeExecutor, ChargeResult
from noshow.crud import ChargeRecordCRUD, charge_record_crud
from noshow.eligibility import (
    CONFLICTING_CHARGE_RECORD,
    Classification,
    EligibilityPolicy,
    Verdict,
    compare_ledger,
    is_awaiting_no_show_review,
    screen,
)
from noshow.errors import (
    ChargedButNotRecordedError,
    DuplicateChargeError,
    FatalJobError,
    NoShowError,
    SquareAPIError,
)
from noshow.ledger import decode
from noshow.pricing import PriceResolver, calculate_fee
from noshow.scanner import BookingScanner, resolve_location_id
from noshow.schemas import Booking, Money, ReviewCandidate
from noshow.square import SquareClient

ZERO_FEE = "no-show fee calculated as zero"


@dataclass
class RunSummary:
    processed: int = 0
    eligible: int = 0
    charged: int = 0
    skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return asdict(self)


class OutcomeKind(StrEnum):
    CHARGED = "charged"
    SKIPPED = "skipped"
    ERRORED = "errored"


@dataclass(frozen=True)
class BookingOutcome:
    booking_id: str
    kind: OutcomeKind
    eligible: bool = False
    classification: Classification | None = None
    reason: str | None = None
    service_total: Money | None = None
    charge: ChargeResult | None = None
    error: Exception | None = None

    @property
    def message(self) -> str:
        if self.kind is OutcomeKind.CHARGED and self.charge is not None:
            return (
                f"Booking {self.booking_id} charged {self.charge.fee.format()} "
                f"(payment {self.charge.payment_id})"
            )
        if self.kind is OutcomeKind.SKIPPED:
            return f"Booking {self.booking_id} skipped: {self.reason}"
        return f"Booking {self.booking_id} failed: {self.reason}"


class JobState(StrEnum):
    IDLE = "idle"
    SCANNING = "scanning"
    CLASSIFYING = "classifying"
    CHARGING = "charging"
    SUMMARIZING = "summarizing"
    DONE = "done"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NoShowFeeJob:
    """
    Scans recent bookings and bills the no-shows.

    Every booking is handled on its own: a failure is written into the run
    summary and the loop moves on. Nothing is retried inside a run. Running
    the job again later is safe because payments use deterministic
    idempotency keys.
    """

    def __init__(
        self,
        square: SquareClient,
        *,
        policy: EligibilityPolicy | None = None,
        fee_percent: Decimal = settings.FEE_PERCENT,
        location_id: str | None = settings.square_location_id,
        records: ChargeRecordCRUD | None = charge_record_crud,
        page_size: int = settings.PAGE_SIZE,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._square = square
        self._policy = policy or EligibilityPolicy()
        self._fee_percent = fee_percent
        self._location_id = location_id
        self._records = records
        self._page_size = page_size
        self._clock = clock
        self.state = JobState.IDLE

    @property
    def fee_percent(self) -> Decimal:
        return self._fee_percent

    async def _prepare(self) -> tuple[str, PriceResolver, ChargeExecutor]:
        if not self._square.configured:
            raise FatalJobError("SQUARE_ACCESS_TOKEN not configured.")
        location_id = await resolve_location_id(self._square, self._location_id)
        prices = PriceResolver(self._square)
        executor = ChargeExecutor(
            self._square, location_id, records=self._records, clock=self._clock
        )
        return location_id, prices, executor

    async def run(self, now: datetime | None = None) -> RunSummary:
        now = now or self._clock()
        self.state = JobState.IDLE
        logger.info(
            "Starting no-show fee run (grace {}h, lookback {}d, fee {}%)",
            int(self._policy.grace_period.total_seconds() // 3600),
            self._policy.lookback.days,
            self._fee_percent,
        )

        location_id, prices, executor = await self._prepare()
        scanner = BookingScanner(
            self._square,
            location_id,
            lookback=self._policy.lookback,
            page_size=self._page_size,
        )

        summary = RunSummary()
        self.state = JobState.SCANNING
        async for booking in scanner.scan(now):
            summary.processed += 1
            try:
                outcome = await self.process_booking(booking, now, prices, executor)
            except Exception as exc:
                logger.exception("Unexpected failure for booking {}", booking.id)
                outcome = BookingOutcome(
                    booking_id=booking.id,
                    kind=OutcomeKind.ERRORED,
                    reason=str(exc) or exc.__class__.__name__,
                    error=exc,
                )
            self._fold(summary, outcome)
            self.state = JobState.SCANNING

        self.state = JobState.SUMMARIZING
        logger.info(
            "No-show fee run finished: processed={} eligible={} charged={} "
            "skipped={} errors={}",
            summary.processed,
            summary.eligible,
            summary.charged,
            len(summary.skipped),
            len(summary.errors),
        )
        self.state = JobState.DONE
        return summary

    @staticmethod
    def _fold(summary: RunSummary, outcome: BookingOutcome) -> None:
        if outcome.eligible:
            summary.eligible += 1
        if outcome.kind is OutcomeKind.CHARGED:
            summary.charged += 1
        elif outcome.kind is OutcomeKind.SKIPPED:
            summary.skipped.append(outcome.message)
        else:
            summary.errors.append(outcome.message)

    async def process_booking(
        self,
        booking: Booking,
        now: datetime,
        prices: PriceResolver,
        executor: ChargeExecutor,
    ) -> BookingOutcome:
        self.state = JobState.CLASSIFYING
        verdict = screen(booking, now, self._policy)
        if verdict is not None:
            return self._skip(booking, verdict.reason, classification=verdict)

        try:
            total = await prices.booking_total(booking)
        except NoShowError as exc:
            return self._fail(booking, exc)

        fee = calculate_fee(total, self._fee_percent)
        if fee is None:
            return self._skip(booking, ZERO_FEE, service_total=total)

        ledger = decode(booking.annotation)
        verdict = compare_ledger(ledger, fee)
        if verdict.verdict is not Verdict.CHARGEABLE:
            if verdict.reason == CONFLICTING_CHARGE_RECORD:
                logger.warning(
                    "Booking {} seller note records {} {} but fee is {}; needs review",
                    booking.id,
                    ledger.charged_amount_cents,
                    ledger.charged_currency,
                    fee.format(),
                )
            return self._skip(
                booking, verdict.reason, classification=verdict, service_total=total
            )

        self.state = JobState.CHARGING
        try:
            charge = await executor.execute(booking, ledger.card_id, fee)
        except DuplicateChargeError as exc:
            return self._skip(
                booking,
                str(exc),
                eligible=True,
                classification=verdict,
                service_total=total,
                error=exc,
            )
        except NoShowError as exc:
            return self._fail(
                booking, exc, eligible=True, classification=verdict, service_total=total
            )

        return BookingOutcome(
            booking_id=booking.id,
            kind=OutcomeKind.CHARGED,
            eligible=True,
            classification=verdict,
            service_total=total,
            charge=charge,
        )

    async def charge_one(
        self, booking_id: str, now: datetime | None = None
    ) -> BookingOutcome | None:
        """Run the per-booking pipeline for a single booking. None if it does not exist."""
        now = now or self._clock()
        _, prices, executor = await self._prepare()
        try:
            booking = await self._square.get_booking(booking_id)
        except SquareAPIError as exc:
            raise FatalJobError(f"Could not fetch booking {booking_id}: {exc}") from exc
        if booking is None:
            return None
        return await self.process_booking(booking, now, prices, executor)

    async def review_candidates(
        self,
        now: datetime | None = None,
        window: timedelta | None = None,
    ) -> list[ReviewCandidate]:
        """ACCEPTED bookings in the lookback window that look like unmarked no-shows."""
        now = now or self._clock()
        window = window or timedelta(hours=settings.REVIEW_WINDOW_HOURS)
        if not self._square.configured:
            raise FatalJobError("SQUARE_ACCESS_TOKEN not configured.")
        location_id = await resolve_location_id(self._square, self._location_id)
        scanner = BookingScanner(
            self._square,
            location_id,
            lookback=self._policy.lookback,
            page_size=self._page_size,
        )

        candidates: list[ReviewCandidate] = []
        async for booking in scanner.scan(now):
            if not is_awaiting_no_show_review(booking, now, window):
                continue
            candidates.append(
                ReviewCandidate(
                    id=booking.id,
                    status=booking.status,
                    start_at=booking.start_at,
                    customer_id=booking.customer_id,
                    card_id=decode(booking.annotation).card_id,
                )
            )
        return candidates

    # -- outcome helpers ----------------------------------------------------

    @staticmethod
    def _skip(booking: Booking, reason: str | None, **kwargs) -> BookingOutcome:
        outcome = BookingOutcome(
            booking_id=booking.id, kind=OutcomeKind.SKIPPED, reason=reason, **kwargs
        )
        logger.info(outcome.message)
        return outcome

    @staticmethod
    def _fail(booking: Booking, exc: Exception, **kwargs) -> BookingOutcome:
        outcome = BookingOutcome(
            booking_id=booking.id,
            kind=OutcomeKind.ERRORED,
            reason=str(exc),
            error=exc,
            **kwargs,
        )
        if isinstance(exc, ChargedButNotRecordedError):
            logger.error("{} (reconcile payment {})", outcome.message, exc.payment_id)
        else:
            logger.error(outcome.message)
        return outcome
