import os
import random
from datetime import datetime, timedelta, timezone

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

import giftcard.models  # noqa: F401
from giftcard.core.db import Base
from giftcard.models.gift_card import CODE_STATUS_AVAILABLE, TYPE_GENERAL, GiftCardCode, GiftCardTemplate
from giftcard.models.plan import Plan
from giftcard.models.user import User

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
GB = 1024 * 1024 * 1024


class FixedRandom(random.Random):
    """randint always returns the configured draw."""

    def __init__(self, value: int):
        super().__init__(0)
        self.value = value

    def randint(self, a: int, b: int) -> int:
        assert a <= self.value <= b
        return self.value


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """One connection per session, so concurrent sessions really are separate transactions."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'giftcard.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


async def create_user(session, **fields) -> User:
    values = {
        "email": f"user{random.randint(1, 10**9)}@example.com",
        "created_at": NOW - timedelta(days=30),
        "balance": 0,
        "transfer_enable": 0,
    }
    values.update(fields)
    user = User(**values)
    session.add(user)
    await session.flush()
    return user


async def create_plan(session, **fields) -> Plan:
    values = {"name": "Basic", "transfer_enable": 100 * GB, "device_limit": 3}
    values.update(fields)
    plan = Plan(**values)
    session.add(plan)
    await session.flush()
    return plan


async def create_template(session, **fields) -> GiftCardTemplate:
    values = {"name": "Welcome card", "type": TYPE_GENERAL, "status": True, "rewards": {"balance": 100}}
    values.update(fields)
    template = GiftCardTemplate(**values)
    session.add(template)
    await session.flush()
    return template


async def create_code(session, template: GiftCardTemplate, **fields) -> GiftCardCode:
    values = {
        "template_id": template.id,
        "code": f"GC-{random.randint(1, 10**9):09d}",
        "status": CODE_STATUS_AVAILABLE,
        "usage_count": 0,
        "max_usage": 1,
    }
    values.update(fields)
    code = GiftCardCode(**values)
    session.add(code)
    await session.flush()
    return code
