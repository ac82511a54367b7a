"""
Stock Ledger — 変更通知 (Notifier)

コミットされた変更をイベントに変換する:

  inventory      すべての変更 (ChangeEvent)
  sale_orders    販売注文を参照する変更
  import_orders  仕入注文を参照する変更
  low_stock      Alert (ステータスが low/out に切り替わったときだけ)

コミット後に動く。ここから調整エンジンへ例外を投げてはいけない:
失敗は NotificationDeliveryFailure としてログに残して捨てる。
"""

import asyncio
import logging

from . import registry as topics
from .errors import NotificationDeliveryFailure
from .events import Alert, ChangeEvent, Event
from .models import AppliedChange
from .publisher import RedisPublisher
from .registry import SubscriptionRegistry
from .status import ALERT_STATUSES

logger = logging.getLogger(__name__)


def is_crossing(change: AppliedChange) -> bool:
    status = change.projection.status
    return status != change.previous_status and status in ALERT_STATUSES


def events_for(change: AppliedChange) -> list[tuple[str, Event]]:
    entry, projection, item = change.entry, change.projection, change.item
    event = ChangeEvent(
        entry_id=entry.id,
        item_id=entry.item_id,
        sku=item.sku,
        name=item.name,
        kind=entry.kind,
        quantity_change=entry.quantity_change,
        quantity_before=entry.quantity_before,
        quantity_after=entry.quantity_after,
        status=projection.status,
        previous_status=change.previous_status,
        reference_type=entry.reference_type,
        reference_id=entry.reference_id,
        actor_id=entry.actor_id,
        occurred_at=entry.created_at,
    )
    out: list[tuple[str, Event]] = [(topics.INVENTORY, event)]

    ref = entry.reference_type or ""
    if ref.startswith("sale_order"):
        out.append((topics.SALE_ORDERS, event))
    elif ref.startswith("import_order"):
        out.append((topics.IMPORT_ORDERS, event))

    if is_crossing(change):
        out.append(
            (
                topics.LOW_STOCK,
                Alert(
                    entry_id=entry.id,
                    item_id=entry.item_id,
                    sku=item.sku,
                    name=item.name,
                    status=projection.status,
                    previous_status=change.previous_status,
                    quantity_after=entry.quantity_after,
                    min_stock=item.min_stock,
                    occurred_at=entry.created_at,
                ),
            )
        )
    return out


class ChangeNotifier:
    def __init__(
        self,
        registry: SubscriptionRegistry,
        publisher: RedisPublisher | None = None,
    ) -> None:
        self.registry = registry
        self.publisher = publisher
        self._forwarding: set[asyncio.Task] = set()

    def notify(self, change: AppliedChange) -> list[tuple[str, Event]]:
        """コミット済みの変更1件を配信する。例外は投げない。"""
        try:
            out = events_for(change)
        except Exception:
            logger.exception("Failed to build events for entry %s", change.entry.id)
            return []
        for topic, event in out:
            self.publish(topic, event)
        if len(out) > 1 and out[-1][0] == topics.LOW_STOCK:
            logger.info(
                "Stock alert item=%s %s -> %s quantity=%d",
                change.item.sku,
                change.previous_status.value,
                change.projection.status.value,
                change.entry.quantity_after,
            )
        return out

    def publish(self, topic: str, event: Event) -> int:
        """ローカル配信し、バックグラウンドで Redis へ転送する。例外は投げない。"""
        try:
            delivered = self.registry.publish(topic, event)
        except Exception:
            logger.exception("Local delivery failed on %s", topic)
            delivered = 0

        if self.publisher is not None:
            task = asyncio.create_task(self._forward(topic, event))
            self._forwarding.add(task)
            task.add_done_callback(self._forwarding.discard)
        return delivered

    async def _forward(self, topic: str, event: Event) -> None:
        try:
            await self.publisher.publish(topic, event)
        except Exception as exc:
            failure = NotificationDeliveryFailure(
                "redis forward failed", topic=topic, error=repr(exc)
            )
            logger.warning("%s %s", failure.message, failure.detail)

    async def flush(self) -> None:
        """送信中の Redis 転送を待つ (停止時・テスト用)"""
        if self._forwarding:
            await asyncio.gather(*list(self._forwarding), return_exceptions=True)
