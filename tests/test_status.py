import pytest

from stockledger.status import StockStatus, classify


@pytest.mark.parametrize(
    "quantity,min_stock,expected",
    [
        (0, 20, StockStatus.OUT_OF_STOCK),
        (-3, 20, StockStatus.OUT_OF_STOCK),
        (1, 20, StockStatus.LOW_STOCK),
        (20, 20, StockStatus.LOW_STOCK),
        (21, 20, StockStatus.IN_STOCK),
        (0, 0, StockStatus.OUT_OF_STOCK),
        (1, 0, StockStatus.IN_STOCK),
    ],
)
def test_classify_thresholds(quantity, min_stock, expected):
    assert classify(quantity, min_stock) is expected


def test_classify_is_deterministic():
    assert classify(10, 10) is classify(10, 10) is StockStatus.LOW_STOCK
