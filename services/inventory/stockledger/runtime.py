"""
Stock Ledger — ランタイム組み立て

起動時に作成し停止時に破棄するもの一式:
DB エンジン、台帳ストア、購読レジストリ、notifier、
presence tracker、調整エンジン、(任意の) Redis リレー。
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .commands import AdjustmentEngine
from .config import Settings
from .event_store import LedgerStore
from .notifier import ChangeNotifier
from .presence import PresenceTracker
from .publisher import RedisPublisher
from .registry import SubscriptionRegistry
from .schema import create_schema
from .subscriber import run_subscriber

logger = logging.getLogger(__name__)


def connect_args_for(url: str) -> dict[str, Any]:
    # SQLite: ロック競合で即失敗せず待つ
    if make_url(url).get_backend_name().startswith("sqlite"):
        return {"timeout": 30}
    return {}


def build_engine(url: str) -> AsyncEngine:
    return create_async_engine(url, echo=False, connect_args=connect_args_for(url))


@dataclass
class Runtime:
    settings: Settings
    engine: AsyncEngine
    session_factory: sessionmaker
    store: LedgerStore
    registry: SubscriptionRegistry
    notifier: ChangeNotifier
    presence: PresenceTracker
    adjustments: AdjustmentEngine
    redis: aioredis.Redis | None = None
    _shutdown: asyncio.Event = field(default_factory=asyncio.Event)
    _relay: asyncio.Task | None = None

    @classmethod
    async def start(cls, settings: Settings) -> "Runtime":
        engine = build_engine(settings.database_url)
        if settings.create_schema:
            await create_schema(engine)
        session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

        store = LedgerStore(session_factory, lock_timeout=settings.lock_timeout)
        registry = SubscriptionRegistry(queue_size=settings.notify_queue_size)

        redis = None
        publisher = None
        if settings.redis_url:
            redis = aioredis.from_url(settings.redis_url, decode_responses=True)
            publisher = RedisPublisher(
                redis, settings.redis_channel_prefix, origin=uuid.uuid4().hex
            )

        notifier = ChangeNotifier(registry, publisher)
        runtime = cls(
            settings=settings,
            engine=engine,
            session_factory=session_factory,
            store=store,
            registry=registry,
            notifier=notifier,
            presence=PresenceTracker(registry),
            adjustments=AdjustmentEngine(
                store,
                notifier,
                conflict_retries=settings.conflict_retries,
                transient_retries=settings.transient_retries,
                backoff_base=settings.backoff_base,
                backoff_max=settings.backoff_max,
            ),
            redis=redis,
        )
        if redis is not None:
            runtime._relay = asyncio.create_task(
                run_subscriber(redis, publisher, registry, runtime._shutdown)
            )
        logger.info("Stock ledger runtime started (redis=%s)", bool(redis))
        return runtime

    async def close(self) -> None:
        self._shutdown.set()
        if self._relay is not None:
            self._relay.cancel()
            try:
                await self._relay
            except asyncio.CancelledError:
                pass
        await self.notifier.flush()
        await self.registry.close()
        if self.redis is not None:
            await self.redis.aclose()
        await self.engine.dispose()
        logger.info("Stock ledger runtime stopped")
