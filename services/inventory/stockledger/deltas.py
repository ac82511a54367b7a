"""
Stock Ledger — delta spec (閉じたタグ付きユニオン)

台帳の種別ごとに1つのバリアント。`signed_delta` と `ledger_kind` は
ユニオンを網羅的に match するので、バリアントを追加して処理を書き忘れると
`assert_never` で型チェックが失敗する。
"""

from enum import Enum
from typing import Annotated, Literal, Union, assert_never

from pydantic import BaseModel, ConfigDict, Field

from .errors import ValidationError


class LedgerKind(str, Enum):
    IMPORT = "import"
    SALE = "sale"
    ADJUSTMENT = "adjustment"
    LOSS = "loss"


class AdjustDirection(str, Enum):
    ADD = "add"
    REDUCE = "reduce"


class _Delta(BaseModel):
    model_config = ConfigDict(frozen=True)


class Import(_Delta):
    """入荷 (仕入注文の確定)"""
    kind: Literal["import"] = "import"
    qty: int


class Sale(_Delta):
    """販売 (販売注文の処理)"""
    kind: Literal["sale"] = "sale"
    qty: int


class Adjustment(_Delta):
    """
    手動調整。`qty` は符号付きでよい。`direction` 指定時は
    大きさを `qty` から、符号を `direction` から取る。
    """
    kind: Literal["adjustment"] = "adjustment"
    qty: int
    direction: AdjustDirection | None = None


class Loss(_Delta):
    """廃棄・破損などのロス"""
    kind: Literal["loss"] = "loss"
    qty: int
    reason: str


DeltaSpec = Annotated[
    Union[Import, Sale, Adjustment, Loss],
    Field(discriminator="kind"),
]


def _require_positive(qty: object, kind: str) -> None:
    if isinstance(qty, bool) or not isinstance(qty, int):
        raise ValidationError(f"{kind} quantity must be an integer", qty=qty)
    if qty <= 0:
        raise ValidationError(f"{kind} quantity must be positive", qty=qty)


def validate_delta(spec: DeltaSpec) -> None:
    """不正な spec を弾く。ValidationError を送出。"""
    match spec:
        case Import(qty=qty) | Sale(qty=qty):
            _require_positive(qty, spec.kind)
        case Loss(qty=qty, reason=reason):
            _require_positive(qty, spec.kind)
            if not reason or not reason.strip():
                raise ValidationError("loss reason is required")
        case Adjustment(qty=qty, direction=direction):
            if isinstance(qty, bool) or not isinstance(qty, int):
                raise ValidationError("adjustment quantity must be an integer", qty=qty)
            if qty == 0:
                raise ValidationError("adjustment quantity cannot be 0")
            if direction is AdjustDirection.ADD and qty < 0:
                raise ValidationError(
                    "negative adjustment quantity contradicts direction 'add'",
                    qty=qty,
                )
        case _:
            assert_never(spec)


def signed_delta(spec: DeltaSpec) -> int:
    match spec:
        case Import(qty=qty):
            return qty
        case Sale(qty=qty) | Loss(qty=qty):
            return -qty
        case Adjustment(qty=qty, direction=direction):
            if direction is AdjustDirection.ADD:
                return abs(qty)
            if direction is AdjustDirection.REDUCE:
                return -abs(qty)
            return qty
        case _:
            assert_never(spec)


def ledger_kind(spec: DeltaSpec) -> LedgerKind:
    match spec:
        case Import():
            return LedgerKind.IMPORT
        case Sale():
            return LedgerKind.SALE
        case Adjustment():
            return LedgerKind.ADJUSTMENT
        case Loss():
            return LedgerKind.LOSS
        case _:
            assert_never(spec)


def loss_reason(spec: DeltaSpec) -> str | None:
    return spec.reason if isinstance(spec, Loss) else None
