import asyncio
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

from server.api import cache_router, payment_router, webhook_router
from server.services.cache_service import cache
from server.services.nowpayments_client import close_nowpayments_client

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

SWEEP_INTERVAL = float(os.getenv("CACHE_SWEEP_INTERVAL_SECONDS", "3600"))


async def sweep_expired_cache(interval: float) -> None:
    """Периодически чистим просроченные записи кэша."""
    while True:
        await asyncio.sleep(interval)
        await cache.purge_expired()


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweeper = asyncio.create_task(sweep_expired_cache(SWEEP_INTERVAL))
    try:
        yield
    finally:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
        await close_nowpayments_client()


app = FastAPI(lifespan=lifespan)

# Подключаем роутеры
app.include_router(webhook_router.router)
app.include_router(payment_router.router)
app.include_router(cache_router.router)


@app.get("/health")
async def health():
    return {"status": "ok"}
