import hmac
from dataclasses import dataclass, field
from urllib.parse import unquote

from fastapi import Depends, Header, HTTPException, Query, status

from noshow import settings
from noshow.job import NoShowFeeJob
from noshow.scopes import NoShowScope
from noshow.square import SquareClient, get_square_client


@dataclass
class CurrentUser:
    id: str
    username: str
    scopes: list[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return NoShowScope.ADMIN in self.scopes


def get_current_user(
    x_user_id: str = Header(...),
    x_username: str = Header(...),
    x_user_scopes: str = Header(default=""),
) -> CurrentUser:
    """
    Reads the headers injected by the gateway after forwardAuth validation.
    The session has already been verified upstream; we just trust these headers.
    """
    if not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user identity from gateway",
        )

    scopes = x_user_scopes.split(" ") if x_user_scopes else []

    return CurrentUser(id=x_user_id, username=unquote(x_username), scopes=scopes)


def require_scopes(*required: str):
    """
    Factory that returns a dependency enforcing one or more scopes.
    The admin scope satisfies every requirement.

    Usage:
        @router.get("/protected")
        async def route(user = Depends(require_scopes("no_show:read"))):
            ...
    """

    async def _dep(
        current_user: CurrentUser = Depends(get_current_user),
    ) -> CurrentUser:
        if current_user.is_admin:
            return current_user
        missing = [s for s in required if s not in current_user.scopes]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing required scopes: {', '.join(missing)}",
            )
        return current_user

    return _dep


# ---------------------------------------------------------------------------
# Pre-built scope dependencies
# ---------------------------------------------------------------------------

can_read_no_show = require_scopes(NoShowScope.READ)
can_charge_no_show = require_scopes(NoShowScope.CHARGE)


# ---------------------------------------------------------------------------
# Cron trigger secret
# ---------------------------------------------------------------------------


def get_cron_secret() -> str | None:
    return settings.CRON_SECRET


def verify_cron_secret(
    x_cron_secret: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
    token: str | None = Query(default=None),
    secret: str | None = Query(default=None),
    expected: str | None = Depends(get_cron_secret),
) -> None:
    """
    Shared-secret gate for the cron trigger. Headers win over query params.
    No configured secret means the trigger is open.
      - nothing supplied: 401
      - wrong secret: 403
    """
    if not expected:
        return

    supplied = x_cron_secret or authorization
    if supplied:
        if supplied.lower().startswith("bearer "):
            supplied = supplied[7:]
        supplied = supplied.strip()
    else:
        supplied = token or secret

    if not supplied:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
    if not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden",
        )


# ---------------------------------------------------------------------------
# Job wiring
# ---------------------------------------------------------------------------


def get_no_show_job(
    square: SquareClient = Depends(get_square_client),
) -> NoShowFeeJob:
    return NoShowFeeJob(square)
