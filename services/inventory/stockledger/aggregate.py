"""
Stock Ledger — 品目の在庫集約(Aggregate)

台帳エントリから品目の在庫を再構築する。プロジェクションは常にこの
リプレイ結果と一致しなければならない。
`gaps` には quantity_before が直前エントリの quantity_after と
つながらないエントリの version が入る。
"""

from uuid import UUID

from .deltas import LedgerKind
from .models import LedgerEntry


class StockAggregate:
    def __init__(self, item_id: UUID) -> None:
        self.item_id = item_id
        self.quantity: int = 0
        self.version: int = 0
        self.entry_count: int = 0
        self.gaps: list[int] = []
        self.movements: dict[LedgerKind, int] = {kind: 0 for kind in LedgerKind}

    def apply_entry(self, entry: LedgerEntry) -> None:
        if entry.quantity_before != self.quantity:
            self.gaps.append(entry.version)
        self.quantity += entry.quantity_change
        self.movements[entry.kind] += entry.quantity_change
        self.version = entry.version
        self.entry_count += 1

    @classmethod
    def from_entries(cls, item_id: UUID, entries: list[LedgerEntry]) -> "StockAggregate":
        agg = cls(item_id)
        for entry in entries:
            agg.apply_entry(entry)
        return agg
