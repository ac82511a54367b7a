"""
Stock Ledger — Redis Pub/Sub リレー

`<prefix>:*` を購読し、他インスタンスが発行したイベントを
ローカルの購読レジストリへ再 publish する。
自インスタンスが発行したメッセージはスキップ (ローカル配信済み)。

注意: Redis Pub/Sub は fire-and-forget 方式。
このループが動いていない間に発行されたイベントは失われる。
"""

import asyncio
import json
import logging

import redis.asyncio as aioredis

from .events import parse_event
from .publisher import RedisPublisher
from .registry import SubscriptionRegistry

logger = logging.getLogger(__name__)


def relay_message(
    message: dict,
    publisher: RedisPublisher,
    registry: SubscriptionRegistry,
) -> bool:
    """Redis メッセージ1件をレジストリへ流す。スキップ時は False。"""
    payload = json.loads(message["data"])
    if payload.get("origin") == publisher.origin:
        return False
    topic = publisher.topic_of(message["channel"])
    if topic is None:
        return False
    registry.publish(topic, parse_event(payload["data"]))
    return True


async def run_subscriber(
    redis: aioredis.Redis,
    publisher: RedisPublisher,
    registry: SubscriptionRegistry,
    shutdown_event: asyncio.Event,
) -> None:
    """
    リレーループ。shutdown_event がセットされるまで動く。
    """
    pubsub = redis.pubsub()
    pattern = f"{publisher.prefix}:*"
    await pubsub.psubscribe(pattern)
    logger.info("Subscribed to %s", pattern)

    try:
        while not shutdown_event.is_set():
            message = await pubsub.get_message(
                ignore_subscribe_messages=True, timeout=1.0
            )
            if message and message["type"] == "pmessage":
                try:
                    if relay_message(message, publisher, registry):
                        logger.debug("Relayed event from %s", message["channel"])
                except Exception:
                    logger.exception("Failed to relay event")
            else:
                await asyncio.sleep(0.1)
    finally:
        await pubsub.punsubscribe(pattern)
        await pubsub.aclose()
