from uuid import uuid4

from loguru import logger
from redis.asyncio import Redis

from noshow.settings import REDIS_URL, RUN_LOCK_TTL

_redis: Redis | None = None
CHARGE_RUN_LOCK = "charge-run"

# delete the key only if it still holds our token
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def get_redis() -> Redis:
    global _redis
    if _redis is None:
        _redis = Redis.from_url(REDIS_URL, decode_responses=True)
    return _redis


def _lock_key(name: str) -> str:
    return f"noshow:lock:{name}"


async def acquire_run_lock(
    name: str = CHARGE_RUN_LOCK, ttl: int = RUN_LOCK_TTL
) -> str | None:
    """
    Returns this run's lock token, or None if another run holds the lock.
    Fails open when Redis is down: idempotency keys still prevent double
    charges, the lock only keeps two runs from racing on the same seller notes.
    """
    token = uuid4().hex
    try:
        acquired = await get_redis().set(_lock_key(name), token, nx=True, ex=ttl)
    except Exception:
        logger.opt(exception=True).warning("Redis lock failed, running without run lock")
        return token
    return token if acquired else None


async def release_run_lock(token: str, name: str = CHARGE_RUN_LOCK) -> None:
    """No-op if the lock expired and was taken by another run."""
    try:
        released = await get_redis().eval(_RELEASE_SCRIPT, 1, _lock_key(name), token)
    except Exception:
        logger.opt(exception=True).warning("Redis release failed for run lock")
        return
    if not released:
        logger.warning("Run lock {} expired before release", name)
