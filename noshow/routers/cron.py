from fastapi import APIRouter, Depends, HTTPException, status
from loguru import logger

from noshow import settings
from noshow.cache import acquire_run_lock, release_run_lock
from noshow.deps import get_no_show_job, verify_cron_secret
from noshow.errors import NoShowError
from noshow.job import NoShowFeeJob
from noshow.schemas import RunSummaryResponse

router = APIRouter(prefix="/cron", tags=["cron"])


def get_cron_enabled() -> bool:
    return settings.CRON_ENABLED


def require_cron_enabled(enabled: bool = Depends(get_cron_enabled)) -> None:
    if not enabled:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="No-show cron is temporarily disabled.",
        )


@router.get(
    "/no-show-charge",
    response_model=RunSummaryResponse,
    dependencies=[Depends(require_cron_enabled), Depends(verify_cron_secret)],
)
async def charge_no_show_fees(
    job: NoShowFeeJob = Depends(get_no_show_job),
) -> RunSummaryResponse:
    """
    Runs one no-show billing pass and returns its summary.
    Per-booking failures are reported in the body with a 200; only fatal
    failures (credentials, location, scan) turn into a 500.
    """
    lock_token = await acquire_run_lock()
    if lock_token is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A no-show fee run is already in progress.",
        )

    try:
        summary = await job.run()
    except NoShowError as exc:
        logger.exception("No-show fee run failed")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc
    finally:
        await release_run_lock(lock_token)

    return RunSummaryResponse(**summary.as_dict())
