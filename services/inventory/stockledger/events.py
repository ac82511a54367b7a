"""
Stock Ledger — イベント定義

変更のコミット後に購読者へ配信されるイベント。
あくまで通知であり、正となるのは台帳。
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .deltas import LedgerKind
from .status import StockStatus


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)


class ChangeEvent(_Event):
    """台帳エントリがコミットされプロジェクションが動いた"""
    event_type: Literal["StockChanged"] = "StockChanged"
    entry_id: int
    item_id: UUID
    sku: str
    name: str
    kind: LedgerKind
    quantity_change: int
    quantity_before: int
    quantity_after: int
    status: StockStatus
    previous_status: StockStatus
    reference_type: str | None = None
    reference_id: str | None = None
    actor_id: str
    occurred_at: datetime


class Alert(_Event):
    """ステータスが low_stock / out_of_stock に切り替わった"""
    event_type: Literal["StockAlert"] = "StockAlert"
    entry_id: int
    item_id: UUID
    sku: str
    name: str
    status: StockStatus
    previous_status: StockStatus
    quantity_after: int
    min_stock: int
    occurred_at: datetime


class PresenceEvent(_Event):
    """参加者1人の join / leave、または sync 時のルーム全体状態"""
    event_type: Literal["Presence"] = "Presence"
    room: str
    action: Literal["join", "leave", "sync"]
    participant_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    state: dict[str, dict[str, Any]] | None = None


class BroadcastEvent(_Event):
    """連携側がトピックに流す自由形式のメッセージ"""
    event_type: Literal["Broadcast"] = "Broadcast"
    name: str
    payload: dict[str, Any] = Field(default_factory=dict)


Event = Annotated[
    Union[ChangeEvent, Alert, PresenceEvent, BroadcastEvent],
    Field(discriminator="event_type"),
]

_event_adapter: TypeAdapter = TypeAdapter(Event)


def parse_event(data: dict[str, Any]) -> Event:
    """JSON 形式 (`model_dump(mode="json")`) からイベントを復元する"""
    return _event_adapter.validate_python(data)
