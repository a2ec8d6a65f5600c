import os
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

os.environ.setdefault('WEB_SECRET', 'test-secret-key-min-32-characters-long')
os.environ.setdefault('CASHFREE_WEBHOOK_SECRET', 'cf-test-secret')
os.environ.setdefault('STABILITY_API_KEY', 'sk-test')

from studio.config import BillingConfig  # noqa: E402
from studio.db import models  # noqa: E402,F401
from studio.db.base import Base  # noqa: E402
from studio.db.models import Direction, Generation, GenerationStatus, LedgerSource, Plan  # noqa: E402
from studio.services.accounts import AccountsService  # noqa: E402
from studio.services.ledger import LedgerStore  # noqa: E402


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest_asyncio.fixture
async def engine(tmp_path):
    db_path = tmp_path / 'studio.db'
    engine = create_async_engine(f'sqlite+aiosqlite:///{db_path}')
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    async with sessionmaker() as session:
        yield session


@pytest.fixture
def config() -> BillingConfig:
    return BillingConfig()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def make_account(sessionmaker, config):
    async def _make(balance: int = 0, plan: Plan = Plan.FREE, plan_expiry: datetime | None = None) -> str:
        async with sessionmaker() as session:
            account = await AccountsService(session, config).create_account()
            if balance:
                await LedgerStore(session).append(
                    account.id,
                    balance,
                    Direction.CREDIT,
                    LedgerSource.ADMIN_ADJUSTMENT,
                    meta={'reason': 'seed'},
                )
            account.plan = plan
            account.plan_expiry = plan_expiry
            await session.commit()
            return account.id

    return _make


@pytest.fixture
def add_generations(sessionmaker):
    async def _add(
        account_id: str,
        count: int,
        created_at: datetime,
        *,
        is_free: bool = False,
        status: GenerationStatus = GenerationStatus.SETTLED,
        generation_type: str = 'general',
    ) -> None:
        async with sessionmaker() as session:
            for _ in range(count):
                session.add(
                    Generation(
                        account_id=account_id,
                        generation_type=generation_type,
                        is_free_generation=is_free,
                        has_watermark=is_free,
                        credit_cost=0 if is_free else 10,
                        status=status,
                        result={},
                        created_at=created_at,
                        updated_at=created_at,
                    )
                )
            await session.commit()

    return _add


@pytest.fixture
def ledger_totals(sessionmaker):
    """(balance, ledger sum, entry count) read in a fresh session."""

    async def _totals(account_id: str) -> tuple[int, int, int]:
        async with sessionmaker() as session:
            ledger = LedgerStore(session)
            account = await ledger.get_account(account_id)
            entries = await ledger.entries_ascending(account_id)
            return account.balance, await ledger.ledger_sum(account_id), len(entries)

    return _totals
