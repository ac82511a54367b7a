# tests/conftest.py
from __future__ import annotations

from typing import AsyncGenerator
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker

from stockledger import catalog
from stockledger.commands import AdjustmentEngine
from stockledger.deltas import Import
from stockledger.event_store import LedgerStore
from stockledger.models import Item
from stockledger.notifier import ChangeNotifier
from stockledger.registry import SubscriptionRegistry
from stockledger.runtime import build_engine
from stockledger.schema import create_schema

ACTOR = "user-7"


# =========================================
# Engine per test: file-backed SQLite (aiosqlite)
# =========================================
@pytest_asyncio.fixture(scope="function")
async def async_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await create_schema(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine: AsyncEngine):
    return sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def store(session_factory) -> LedgerStore:
    return LedgerStore(session_factory, lock_timeout=2.0)


@pytest.fixture
def registry() -> SubscriptionRegistry:
    return SubscriptionRegistry(queue_size=64)


@pytest.fixture
def notifier(registry) -> ChangeNotifier:
    return ChangeNotifier(registry)


@pytest.fixture
def adjustments(store, notifier) -> AdjustmentEngine:
    return AdjustmentEngine(store, notifier, backoff_base=0.001, backoff_max=0.01)


@pytest.fixture
def make_item(session_factory):
    """Register a catalog item. Optional opening stock goes through the ledger."""

    async def _make(
        *,
        min_stock: int = 20,
        name: str = "Tilapia",
        unit: str = "kg",
        opening: int = 0,
        engine: AdjustmentEngine | None = None,
    ) -> Item:
        item = Item(
            id=uuid4(),
            sku=f"FISH-{uuid4().hex[:8].upper()}",
            name=name,
            min_stock=min_stock,
            unit=unit,
        )
        async with session_factory() as session:
            await catalog.register_item(session, item)
            await session.commit()
        if opening:
            assert engine is not None, "opening stock needs an engine"
            await engine.apply(item.id, Import(qty=opening), "seed", note="opening balance")
        return item

    return _make
