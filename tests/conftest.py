"""
Shared pytest fixtures available to every test file automatically.
No imports needed in test files; pytest discovers this by convention.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from noshow.deps import (
    can_charge_no_show,
    can_read_no_show,
    get_cron_secret,
    get_current_user,
    get_no_show_job,
)
from noshow.eligibility import EligibilityPolicy
from noshow.job import NoShowFeeJob
from noshow.routers.cron import get_cron_enabled
from noshow.routers.cron import router as cron_router
from noshow.routers.no_show import router as no_show_router

from .factories import FakeSquare, clock, make_staff

# ---------------------------------------------------------------------------
# Job + record store doubles
# ---------------------------------------------------------------------------


def make_records() -> MagicMock:
    """ChargeRecordCRUD stand-in: every call succeeds, nothing hits a DB."""
    mock = MagicMock()
    mock.record_payment = AsyncMock()
    mock.mark_annotation_recorded = AsyncMock(return_value=True)
    mock.mark_annotation_failed = AsyncMock(return_value=True)
    mock.list_records = AsyncMock(return_value=[])
    return mock


def make_job(square: FakeSquare, **kwargs) -> NoShowFeeJob:
    kwargs.setdefault(
        "policy",
        EligibilityPolicy(grace_period=timedelta(hours=24), lookback=timedelta(days=30)),
    )
    kwargs.setdefault("fee_percent", Decimal("30"))
    kwargs.setdefault("location_id", None)
    kwargs.setdefault("records", make_records())
    kwargs.setdefault("clock", clock)
    return NoShowFeeJob(square, **kwargs)


# ---------------------------------------------------------------------------
# App builder
# ---------------------------------------------------------------------------


def build_app(
    square: FakeSquare | None = None,
    current_user=None,
    cron_secret: str | None = None,
    cron_enabled: bool = True,
    job: NoShowFeeJob | None = None,
) -> FastAPI:
    """
    Fresh FastAPI app wired to a FakeSquare-backed job.
    Scope deps are overridden to return `current_user` when one is given.
    """
    app = FastAPI()
    app.include_router(cron_router)
    app.include_router(no_show_router)

    the_job = job or make_job(square or FakeSquare())
    app.dependency_overrides[get_no_show_job] = lambda: the_job
    app.dependency_overrides[get_cron_secret] = lambda: cron_secret
    app.dependency_overrides[get_cron_enabled] = lambda: cron_enabled

    if current_user is not None:

        async def _user():
            return current_user

        for dep in (can_read_no_show, can_charge_no_show, get_current_user):
            app.dependency_overrides[dep] = _user

    return app


@pytest.fixture(autouse=True)
def no_redis():
    """Run lock always granted; no Redis needed."""
    with (
        patch("noshow.routers.cron.acquire_run_lock", AsyncMock(return_value="lock-token")) as acquire,
        patch("noshow.routers.cron.release_run_lock", AsyncMock()) as release,
    ):
        yield acquire, release


@pytest.fixture()
def square():
    return FakeSquare()


@pytest.fixture()
def client_factory():
    def _make(**kwargs) -> TestClient:
        return TestClient(build_app(**kwargs), raise_server_exceptions=True)

    return _make


@pytest.fixture()
def staff_client(square):
    return TestClient(build_app(square, current_user=make_staff()))
