import pytest
from pydantic import TypeAdapter

from stockledger.deltas import (
    AdjustDirection,
    Adjustment,
    DeltaSpec,
    Import,
    LedgerKind,
    Loss,
    Sale,
    ledger_kind,
    loss_reason,
    signed_delta,
    validate_delta,
)
from stockledger.errors import ValidationError


@pytest.mark.parametrize(
    "spec,expected",
    [
        (Import(qty=40), 40),
        (Sale(qty=15), -15),
        (Loss(qty=3, reason="spoilage"), -3),
        (Adjustment(qty=5, direction=AdjustDirection.ADD), 5),
        (Adjustment(qty=5, direction=AdjustDirection.REDUCE), -5),
        (Adjustment(qty=-5, direction=AdjustDirection.REDUCE), -5),
        (Adjustment(qty=-7), -7),
        (Adjustment(qty=7), 7),
    ],
)
def test_signed_delta(spec, expected):
    validate_delta(spec)
    assert signed_delta(spec) == expected


def test_ledger_kind_per_variant():
    assert ledger_kind(Import(qty=1)) is LedgerKind.IMPORT
    assert ledger_kind(Sale(qty=1)) is LedgerKind.SALE
    assert ledger_kind(Adjustment(qty=1)) is LedgerKind.ADJUSTMENT
    assert ledger_kind(Loss(qty=1, reason="dead on arrival")) is LedgerKind.LOSS


def test_loss_reason_only_for_loss():
    assert loss_reason(Loss(qty=1, reason="spoilage")) == "spoilage"
    assert loss_reason(Sale(qty=1)) is None


@pytest.mark.parametrize(
    "spec",
    [
        Import(qty=0),
        Sale(qty=-2),
        Loss(qty=0, reason="spoilage"),
        Loss(qty=2, reason="   "),
        Adjustment(qty=0),
        Adjustment(qty=-5, direction=AdjustDirection.ADD),
    ],
)
def test_malformed_specs_rejected(spec):
    with pytest.raises(ValidationError) as excinfo:
        validate_delta(spec)
    assert excinfo.value.kind == "validation_error"


def test_discriminated_union_parses_by_kind():
    adapter = TypeAdapter(DeltaSpec)
    spec = adapter.validate_python({"kind": "loss", "qty": 4, "reason": "spoilage"})
    assert isinstance(spec, Loss)
    spec = adapter.validate_python({"kind": "adjustment", "qty": 5, "direction": "reduce"})
    assert isinstance(spec, Adjustment)
    assert spec.direction is AdjustDirection.REDUCE
