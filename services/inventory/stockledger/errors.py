"""
Stock Ledger — エラー分類

API 境界を越える失敗はすべて安定した `kind` を持つ。
業務エラー (validation / not_found / insufficient_stock) は終端でリトライしない。
`Conflict` は無害な version 競合で、調整エンジンがリトライする。
リトライが尽きた後に残るのが `StorageUnavailable`。
"""

from typing import Any


class LedgerError(Exception):
    kind: str = "ledger_error"

    def __init__(self, message: str, **detail: Any) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "detail": self.detail}


class ValidationError(LedgerError):
    """不正な delta spec。ストレージに触る前に弾く。"""

    kind = "validation_error"


class NotFound(LedgerError):
    kind = "not_found"


class InsufficientStock(LedgerError):
    """変更するとプロジェクションが負になる"""

    kind = "insufficient_stock"


class Conflict(LedgerError):
    """プロジェクション行の楽観的 version 不一致"""

    kind = "conflict"


class StorageUnavailable(LedgerError):
    kind = "storage_unavailable"


class NotificationDeliveryFailure(LedgerError):
    """ログのみ。変更処理の外へは伝播させない。"""

    kind = "notification_delivery_failure"


class SubscriptionClosed(LedgerError):
    kind = "subscription_closed"
