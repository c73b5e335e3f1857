from fastapi import APIRouter, Depends, HTTPException, status

from noshow.crud import charge_record_crud
from noshow.deps import (
    CurrentUser,
    can_charge_no_show,
    can_read_no_show,
    get_no_show_job,
)
from noshow.eligibility import CONFLICTING_CHARGE_RECORD, Verdict
from noshow.errors import DuplicateChargeError, FatalJobError
from noshow.job import BookingOutcome, NoShowFeeJob, OutcomeKind
from noshow.schemas import (
    ChargeRecordFilters,
    ChargeRecordResponse,
    ManualChargeResponse,
    ReviewCandidate,
)

router = APIRouter(prefix="/no-show", tags=["no-show"])


def _skip_status(outcome: BookingOutcome) -> int:
    """409 when the booking is (or may be) already billed, 422 otherwise."""
    if isinstance(outcome.error, DuplicateChargeError):
        return status.HTTP_409_CONFLICT
    classification = outcome.classification
    if classification is not None and (
        classification.verdict is Verdict.ALREADY_SETTLED
        or classification.reason == CONFLICTING_CHARGE_RECORD
    ):
        return status.HTTP_409_CONFLICT
    return status.HTTP_422_UNPROCESSABLE_ENTITY


@router.post("/bookings/{booking_id}/charge", response_model=ManualChargeResponse)
async def charge_booking(
    booking_id: str,
    _: CurrentUser = Depends(can_charge_no_show),
    job: NoShowFeeJob = Depends(get_no_show_job),
) -> ManualChargeResponse:
    """
    Bill one booking through the same rules as the cron run.
    The idempotency key is shared with the cron run, so this can never add a
    second payment for the same fee.
    """
    try:
        outcome = await job.charge_one(booking_id)
    except FatalJobError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)
        ) from exc

    if outcome is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found"
        )
    if outcome.kind is OutcomeKind.SKIPPED:
        raise HTTPException(status_code=_skip_status(outcome), detail=outcome.message)
    if outcome.kind is OutcomeKind.ERRORED or outcome.charge is None:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail=outcome.message
        )

    charge = outcome.charge
    return ManualChargeResponse(
        booking_id=charge.booking_id,
        payment_id=charge.payment_id,
        amount_cents=charge.fee.amount,
        currency=charge.fee.currency,
        service_total_cents=outcome.service_total.amount if outcome.service_total else 0,
        fee_percent=str(job.fee_percent),
        annotation=charge.annotation,
    )


@router.get("/review", response_model=list[ReviewCandidate])
async def list_review_candidates(
    _: CurrentUser = Depends(can_read_no_show),
    job: NoShowFeeJob = Depends(get_no_show_job),
) -> list[ReviewCandidate]:
    """ACCEPTED bookings long past their start time, still waiting for staff to mark them."""
    try:
        return await job.review_candidates()
    except FatalJobError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)
        ) from exc


@router.get("/charges", response_model=list[ChargeRecordResponse])
async def list_charges(
    filters: ChargeRecordFilters = Depends(),
    _: CurrentUser = Depends(can_read_no_show),
) -> list[ChargeRecordResponse]:
    return await charge_record_crud.list_records(filters=filters)
