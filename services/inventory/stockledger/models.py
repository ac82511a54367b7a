"""
Stock Ledger — レコード

API 境界で受け渡す読み取り専用の値。
フィールド名は連携先が依存する契約。
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, computed_field

from .deltas import LedgerKind
from .status import StockStatus


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True)


class Item(_Record):
    """マスタデータ。カタログが所有し、台帳は書き込まない。"""
    id: UUID
    sku: str
    name: str
    min_stock: int = 10
    unit: str = "kg"


class Reference(_Record):
    """変更の元になった業務伝票。例: ("sale_order", "SO-1042")"""
    type: str
    id: str


class Projection(_Record):
    item_id: UUID
    quantity: int
    status: StockStatus
    updated_at: datetime
    version: int = 0


class LedgerEntry(_Record):
    id: int
    item_id: UUID
    version: int
    kind: LedgerKind
    quantity_change: int
    quantity_before: int
    quantity_after: int
    reference_type: str | None = None
    reference_id: str | None = None
    note: str | None = None
    loss_reason: str | None = None
    actor_id: str
    created_at: datetime


class EntryDraft(_Record):
    """調整エンジンがストアに追記を依頼する内容"""
    kind: LedgerKind
    quantity_change: int
    actor_id: str
    note: str | None = None
    loss_reason: str | None = None
    reference: Reference | None = None


class AppliedChange(_Record):
    """コミット済み追記1件の結果"""
    entry: LedgerEntry
    projection: Projection
    item: Item
    previous_status: StockStatus


class StockLevel(_Record):
    """プロジェクションと品目マスタを結合したもの"""
    item_id: UUID
    sku: str
    name: str
    unit: str
    min_stock: int
    quantity: int
    status: StockStatus
    updated_at: datetime


class ProjectionFilter(_Record):
    status: StockStatus | None = None
    item_ids: tuple[UUID, ...] | None = None
    search: str | None = None


class LogPage(_Record):
    entries: list[LedgerEntry]
    next_cursor: int | None = None


class Totals(_Record):
    total_quantity: int
    distinct_item_count: int


class StockSummary(_Record):
    total_quantity: int
    total_products: int
    in_stock_count: int
    low_stock_count: int
    out_of_stock_count: int


class ReplayReport(_Record):
    item_id: UUID
    entry_count: int
    replayed_quantity: int
    projection_quantity: int | None
    gaps: list[int] = Field(default_factory=list)
    movements: dict[LedgerKind, int] = Field(default_factory=dict)

    @computed_field
    @property
    def consistent(self) -> bool:
        return not self.gaps and self.replayed_quantity == (self.projection_quantity or 0)
