"""
Stock Ledger — Redis Pub/Sub パブリッシャー

ローカルで publish したイベントを Redis チャネル `<prefix>:<topic>` に転送し、
他インスタンスに接続したダッシュボードにも届ける。

注意: Redis Pub/Sub は fire-and-forget 方式。
リスナーがダウンしている間のイベントは失われる。
リスナーはプロジェクションと台帳を読み直して整合させる。
"""

import json

import redis.asyncio as aioredis

from .events import Event


class RedisPublisher:
    def __init__(self, redis: aioredis.Redis, prefix: str, origin: str) -> None:
        self.redis = redis
        self.prefix = prefix
        self.origin = origin

    def channel(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    def topic_of(self, channel: str) -> str | None:
        head = f"{self.prefix}:"
        return channel[len(head):] if channel.startswith(head) else None

    async def publish(self, topic: str, event: Event) -> None:
        await self.redis.publish(
            self.channel(topic),
            json.dumps(
                {
                    "event_type": event.event_type,
                    "origin": self.origin,
                    "data": event.model_dump(mode="json"),
                },
                default=str,
            ),
        )
