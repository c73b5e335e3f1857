import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger
from tortoise.contrib.fastapi import RegisterTortoise

from noshow import settings
from noshow.routers.cron import router as cron_router
from noshow.routers.no_show import router as no_show_router

logger.remove()
logger.add(sys.stderr, level=settings.LOG_LEVEL.upper())


def tortoise_config(db_url: str = settings.db_url) -> dict:
    return {
        "connections": {"default": db_url},
        "apps": {
            "models": {"models": ["noshow.models"], "default_connection": "default"}
        },
    }


TORTOISE_ORM = tortoise_config()


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with RegisterTortoise(
        app,
        config=TORTOISE_ORM,
        generate_schemas=True,  # no migrations; only creates missing tables
    ):
        yield


app = FastAPI(title="No-show fee billing", version="1.0.0", lifespan=lifespan)

app.include_router(cron_router)
app.include_router(no_show_router)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}
