"""
Stock Ledger — 購読レジストリ

プロセス内のトピック単位ファンアウト。購読ごとに上限付きキューを持ち、
`publish` は await しないので、遅い購読者や切断済みの購読者は
書き込み側や他の購読者を止めずにスキップされる。

購読のライフサイクル:
    PENDING → ACTIVE → CLOSED
CLOSED は終端。再購読すると新しい Subscription になる。

レジストリは生成したプロセス (FastAPI の lifespan) が所有し、
notifier と presence tracker へ明示的に渡す。
"""

import asyncio
import inspect
import itertools
import logging
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable

from .errors import NotificationDeliveryFailure, SubscriptionClosed

logger = logging.getLogger(__name__)

INVENTORY = "inventory"
SALE_ORDERS = "sale_orders"
IMPORT_ORDERS = "import_orders"
LOW_STOCK = "low_stock"
PRESENCE_PREFIX = "presence:"


def presence_topic(room: str) -> str:
    return f"{PRESENCE_PREFIX}{room}"


Handler = Callable[[Any], Awaitable[None] | None]

_CLOSED = object()


class SubscriptionState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CLOSED = "closed"


class Subscription:
    """
    1トピックへの1件の購読ハンドル。

    `await receive()` / `async for event in sub` で取り出すか、
    `SubscriptionRegistry.subscribe` に handler を渡してプッシュさせる。
    """

    _ids = itertools.count(1)

    def __init__(self, topic: str, queue_size: int) -> None:
        self.id = next(self._ids)
        self.topic = topic
        self.state = SubscriptionState.PENDING
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._task: asyncio.Task | None = None

    def __repr__(self) -> str:
        return f"<Subscription #{self.id} {self.topic} {self.state.value}>"

    @property
    def active(self) -> bool:
        return self.state is SubscriptionState.ACTIVE

    def _activate(self) -> None:
        if self.state is not SubscriptionState.PENDING:
            raise SubscriptionClosed("subscription cannot be activated", state=self.state.value)
        self.state = SubscriptionState.ACTIVE

    def _offer(self, event: Any) -> bool:
        if not self.active:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    def _close(self) -> None:
        if self.state is SubscriptionState.CLOSED:
            return
        self.state = SubscriptionState.CLOSED
        if self._queue.full():
            # 消費側にはクローズが伝われば十分
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(_CLOSED)

    async def receive(self, timeout: float | None = None) -> Any:
        """
        次のイベント。クローズ済みでバッファが空なら SubscriptionClosed、
        時間内に届かなければ TimeoutError。
        """
        if self.state is SubscriptionState.CLOSED and self._queue.empty():
            raise SubscriptionClosed("subscription is closed", topic=self.topic)
        if timeout is None:
            event = await self._queue.get()
        else:
            async with asyncio.timeout(timeout):
                event = await self._queue.get()
        if event is _CLOSED:
            raise SubscriptionClosed("subscription is closed", topic=self.topic)
        return event

    def pending(self) -> int:
        return self._queue.qsize()

    async def __aiter__(self) -> AsyncIterator[Any]:
        while True:
            try:
                yield await self.receive()
            except SubscriptionClosed:
                return


class SubscriptionRegistry:
    def __init__(self, queue_size: int = 256) -> None:
        self.queue_size = queue_size
        self._topics: dict[str, dict[int, Subscription]] = {}
        self._closed = False

    def subscribe(self, topic: str, handler: Handler | None = None) -> Subscription:
        if self._closed:
            raise SubscriptionClosed("registry is closed", topic=topic)
        sub = Subscription(topic, self.queue_size)
        self._topics.setdefault(topic, {})[sub.id] = sub
        sub._activate()
        if handler is not None:
            sub._task = asyncio.create_task(
                _drain(sub, handler), name=f"subscription-{sub.id}-{topic}"
            )
        logger.debug("Subscribed %r", sub)
        return sub

    async def unsubscribe(self, sub: Subscription) -> None:
        subs = self._topics.get(sub.topic)
        if subs is not None:
            subs.pop(sub.id, None)
            if not subs:
                del self._topics[sub.topic]
        sub._close()
        if sub._task is not None and sub._task is not asyncio.current_task():
            sub._task.cancel()
            await asyncio.gather(sub._task, return_exceptions=True)
        logger.debug("Unsubscribed %r", sub)

    def publish(self, topic: str, event: Any) -> int:
        """`topic` の有効な購読者全員に `event` を渡す。配信数を返す。"""
        delivered = 0
        for sub in list(self._topics.get(topic, {}).values()):
            if sub._offer(event):
                delivered += 1
            elif sub.active:
                failure = NotificationDeliveryFailure(
                    "subscriber queue full, event skipped",
                    topic=topic,
                    subscription=sub.id,
                    dropped=sub.dropped,
                )
                logger.warning("%s %s", failure.message, failure.detail)
        return delivered

    def subscribers(self, topic: str) -> list[Subscription]:
        return list(self._topics.get(topic, {}).values())

    def active_topics(self) -> list[str]:
        return sorted(self._topics)

    async def close(self) -> None:
        """全購読をクローズする。以後の購読は受け付けない。"""
        self._closed = True
        for subs in list(self._topics.values()):
            for sub in list(subs.values()):
                await self.unsubscribe(sub)


async def _drain(sub: Subscription, handler: Handler) -> None:
    async for event in sub:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(
                "Subscriber handler failed on %s (subscription #%d)", sub.topic, sub.id
            )
