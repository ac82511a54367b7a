"""
Stock Ledger — 在庫ステータス判定

数量と品目の min_stock しきい値から在庫レベルを決める。
書き込み側 (プロジェクションに保存) と読み取り側の両方で使う。
"""

from enum import Enum


class StockStatus(str, Enum):
    OUT_OF_STOCK = "out_of_stock"
    LOW_STOCK = "low_stock"
    IN_STOCK = "in_stock"


ALERT_STATUSES = frozenset({StockStatus.LOW_STOCK, StockStatus.OUT_OF_STOCK})


def classify(quantity: int, min_stock: int) -> StockStatus:
    if quantity <= 0:
        return StockStatus.OUT_OF_STOCK
    if quantity <= min_stock:
        return StockStatus.LOW_STOCK
    return StockStatus.IN_STOCK
