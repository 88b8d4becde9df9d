import asyncio
import sys
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

sys.path.append(str(Path(__file__).resolve().parents[1]))

from server.api import payment_router
from server.db import session as db_session
from server.db.base import Base
from server.services import notification_service, webhook_service

SECRET = "test-ipn-secret"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def setup_test_db(path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}", poolclass=NullPool)
    TestingSessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False)

    async def init_models():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    return engine, TestingSessionLocal


def seed(SessionLocal, *objects):
    async def run():
        async with SessionLocal() as db:
            db.add_all(objects)
            await db.commit()

    asyncio.run(run())


def fetch(SessionLocal, model, pk):
    async def run():
        async with SessionLocal() as db:
            return await db.get(model, pk)

    return asyncio.run(run())


def fetch_all(SessionLocal, model):
    from sqlalchemy import select

    async def run():
        async with SessionLocal() as db:
            return (await db.execute(select(model))).scalars().all()

    return asyncio.run(run())


@pytest.fixture
def session_factory(tmp_path, monkeypatch):
    engine, TestingSessionLocal = setup_test_db(tmp_path / "test.db")
    for module in (db_session, webhook_service, notification_service, payment_router):
        monkeypatch.setattr(module, "SessionLocal", TestingSessionLocal)
    yield TestingSessionLocal
    asyncio.run(engine.dispose())


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "NOWPAYMENTS_ALLOW_UNSIGNED_WEBHOOKS",
        "REALTIME_BROADCAST_URL",
        "REALTIME_API_KEY",
        "SENDGRID_API_KEY",
        "NOTIFICATIONS_FROM_EMAIL",
        "TELEGRAM_BOT_TOKEN",
        "BOT_TOKEN",
        "ADMIN_API_TOKEN",
        "APP_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("NOWPAYMENTS_IPN_SECRET", SECRET)
    monkeypatch.setenv("WEBHOOK_RETRY_BASE_DELAY", "0")
    webhook_service.rate_limiter.reset()
    yield
    webhook_service.rate_limiter.reset()
