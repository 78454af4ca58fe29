"""Canonical-to-wire code tables, one per broker kind.

Brokers reject unknown enumerations, so every code sent on the wire comes
from these tables.
"""

from typing import Any, Dict, Optional

from core.utils.exceptions import ValidationError
from .models import BrokerKind, OrderStatus, OrderType, ProductType, TransactionType


PRODUCT_CODES: Dict[BrokerKind, Dict[ProductType, str]] = {
    BrokerKind.ZERODHA: {ProductType.MIS: "MIS", ProductType.CNC: "CNC"},
    BrokerKind.UPSTOX: {ProductType.MIS: "I", ProductType.CNC: "D"},
    BrokerKind.ANGEL: {ProductType.MIS: "INTRADAY", ProductType.CNC: "DELIVERY"},
    BrokerKind.SHOONYA: {ProductType.MIS: "I", ProductType.CNC: "C"},
}

ORDER_TYPE_CODES: Dict[BrokerKind, Dict[OrderType, str]] = {
    BrokerKind.ZERODHA: {
        OrderType.MARKET: "MARKET", OrderType.LIMIT: "LIMIT",
        OrderType.SL: "SL", OrderType.SL_M: "SL-M",
    },
    BrokerKind.UPSTOX: {
        OrderType.MARKET: "MARKET", OrderType.LIMIT: "LIMIT",
        OrderType.SL: "SL", OrderType.SL_M: "SL-M",
    },
    BrokerKind.ANGEL: {
        OrderType.MARKET: "MARKET", OrderType.LIMIT: "LIMIT",
        OrderType.SL: "STOPLOSS_LIMIT", OrderType.SL_M: "STOPLOSS_MARKET",
    },
    BrokerKind.SHOONYA: {
        OrderType.MARKET: "MKT", OrderType.LIMIT: "LMT",
        OrderType.SL: "SL-LMT", OrderType.SL_M: "SL-MKT",
    },
    BrokerKind.MT4: {
        OrderType.MARKET: "MARKET", OrderType.LIMIT: "LIMIT",
        OrderType.SL: "STOP_LIMIT", OrderType.SL_M: "STOP",
    },
    BrokerKind.MT5: {
        OrderType.MARKET: "MARKET", OrderType.LIMIT: "LIMIT",
        OrderType.SL: "STOP_LIMIT", OrderType.SL_M: "STOP",
    },
}

SIDE_CODES: Dict[BrokerKind, Dict[TransactionType, str]] = {
    BrokerKind.SHOONYA: {TransactionType.BUY: "B", TransactionType.SELL: "S"},
}

# Broker status vocabulary -> canonical status. Unknown values default to PENDING.
STATUS_MAP: Dict[str, OrderStatus] = {
    "COMPLETE": OrderStatus.COMPLETE,
    "EXECUTED": OrderStatus.COMPLETE,
    "OPEN": OrderStatus.OPEN,
    "PENDING": OrderStatus.PENDING,
    "CANCELLED": OrderStatus.CANCELLED,
    "CANCELED": OrderStatus.CANCELLED,
    "REJECTED": OrderStatus.REJECTED,
    "FAILED": OrderStatus.REJECTED,
}

# Native spellings some brokers use for the same canonical states
BROKER_STATUS_ALIASES: Dict[BrokerKind, Dict[str, OrderStatus]] = {
    BrokerKind.ZERODHA: {"TRIGGER PENDING": OrderStatus.OPEN},
    BrokerKind.UPSTOX: {"TRIGGER PENDING": OrderStatus.OPEN},
    BrokerKind.ANGEL: {"TRIGGER PENDING": OrderStatus.OPEN},
    BrokerKind.SHOONYA: {"TRIGGER_PENDING": OrderStatus.OPEN},
    BrokerKind.MT4: {"FILLED": OrderStatus.COMPLETE, "PLACED": OrderStatus.OPEN},
    BrokerKind.MT5: {"FILLED": OrderStatus.COMPLETE, "PLACED": OrderStatus.OPEN},
}


def product_code(kind: BrokerKind, product: ProductType) -> str:
    try:
        return PRODUCT_CODES[kind][product]
    except KeyError:
        raise ValidationError(f"Product {product.value} is not supported by {kind.value}",
                              field="product")


def order_type_code(kind: BrokerKind, order_type: OrderType) -> str:
    try:
        return ORDER_TYPE_CODES[kind][order_type]
    except KeyError:
        raise ValidationError(f"Order type {order_type.value} is not supported by {kind.value}",
                              field="order_type")


def side_code(kind: BrokerKind, side: TransactionType) -> str:
    return SIDE_CODES.get(kind, {}).get(side, side.value)


def map_broker_status(raw_status: Optional[str], kind: Optional[BrokerKind] = None) -> OrderStatus:
    """Normalize a broker status string onto the canonical set."""
    if not raw_status:
        return OrderStatus.PENDING
    key = str(raw_status).strip().upper()
    if key in STATUS_MAP:
        return STATUS_MAP[key]
    if kind is not None:
        alias = BROKER_STATUS_ALIASES.get(kind, {}).get(key)
        if alias is not None:
            return alias
    return OrderStatus.PENDING


def to_float(value: Any) -> Optional[float]:
    """Brokers send numbers as strings, empty strings or nulls."""
    try:
        return float(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def to_int(value: Any) -> Optional[int]:
    try:
        return int(float(value)) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None
