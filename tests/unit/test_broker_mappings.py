import pytest

from core.utils.exceptions import ValidationError
from services.brokers.mappings import (
    map_broker_status,
    order_type_code,
    product_code,
    side_code,
    to_float,
    to_int,
)
from services.brokers.models import BrokerKind, OrderStatus, OrderType, ProductType, TransactionType


@pytest.mark.parametrize("kind,mis,cnc", [
    (BrokerKind.ZERODHA, "MIS", "CNC"),
    (BrokerKind.UPSTOX, "I", "D"),
    (BrokerKind.ANGEL, "INTRADAY", "DELIVERY"),
    (BrokerKind.SHOONYA, "I", "C"),
])
def test_product_codes(kind, mis, cnc):
    assert product_code(kind, ProductType.MIS) == mis
    assert product_code(kind, ProductType.CNC) == cnc


def test_gateway_has_no_product_codes():
    with pytest.raises(ValidationError):
        product_code(BrokerKind.MT5, ProductType.MIS)


@pytest.mark.parametrize("kind,expected", [
    (BrokerKind.ZERODHA, ["MARKET", "LIMIT", "SL", "SL-M"]),
    (BrokerKind.UPSTOX, ["MARKET", "LIMIT", "SL", "SL-M"]),
    (BrokerKind.ANGEL, ["MARKET", "LIMIT", "STOPLOSS_LIMIT", "STOPLOSS_MARKET"]),
    (BrokerKind.SHOONYA, ["MKT", "LMT", "SL-LMT", "SL-MKT"]),
    (BrokerKind.MT4, ["MARKET", "LIMIT", "STOP_LIMIT", "STOP"]),
    (BrokerKind.MT5, ["MARKET", "LIMIT", "STOP_LIMIT", "STOP"]),
])
def test_order_type_codes(kind, expected):
    types = [OrderType.MARKET, OrderType.LIMIT, OrderType.SL, OrderType.SL_M]
    assert [order_type_code(kind, t) for t in types] == expected


def test_side_codes():
    assert side_code(BrokerKind.SHOONYA, TransactionType.BUY) == "B"
    assert side_code(BrokerKind.SHOONYA, TransactionType.SELL) == "S"
    assert side_code(BrokerKind.ANGEL, TransactionType.SELL) == "SELL"


@pytest.mark.parametrize("raw,expected", [
    ("COMPLETE", OrderStatus.COMPLETE),
    ("complete", OrderStatus.COMPLETE),
    ("EXECUTED", OrderStatus.COMPLETE),
    ("OPEN", OrderStatus.OPEN),
    ("PENDING", OrderStatus.PENDING),
    ("CANCELLED", OrderStatus.CANCELLED),
    ("Canceled", OrderStatus.CANCELLED),
    ("REJECTED", OrderStatus.REJECTED),
    ("FAILED", OrderStatus.REJECTED),
    ("put order req received", OrderStatus.PENDING),
    ("", OrderStatus.PENDING),
    (None, OrderStatus.PENDING),
])
def test_status_map(raw, expected):
    assert map_broker_status(raw) == expected


def test_broker_specific_status_aliases():
    assert map_broker_status("TRIGGER PENDING", BrokerKind.ZERODHA) == OrderStatus.OPEN
    assert map_broker_status("FILLED", BrokerKind.MT5) == OrderStatus.COMPLETE
    assert map_broker_status("FILLED", BrokerKind.ZERODHA) == OrderStatus.PENDING


def test_numeric_coercion():
    assert to_float("2500.50") == 2500.5
    assert to_float("") is None
    assert to_float("n/a") is None
    assert to_int("10.0") == 10
    assert to_int(None) is None
