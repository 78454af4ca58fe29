"""Broker-agnostic types shared by adapters, ingestion and status tracking."""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class BrokerKind(str, Enum):
    """Broker selector stored on each connection."""
    ZERODHA = "zerodha"
    UPSTOX = "upstox"
    ANGEL = "angel"
    SHOONYA = "shoonya"
    MT4 = "mt4"
    MT5 = "mt5"


class AuthMethod(str, Enum):
    """Authentication/wire-protocol family."""
    OAUTH = "oauth"
    MANUAL = "manual"
    HASHED = "hashed"
    GATEWAY = "gateway"


class TransactionType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    SL = "SL"
    SL_M = "SL-M"


class ProductType(str, Enum):
    MIS = "MIS"
    CNC = "CNC"


class OrderStatus(str, Enum):
    """Canonical order status."""
    PENDING = "PENDING"
    OPEN = "OPEN"
    COMPLETE = "COMPLETE"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETE, OrderStatus.CANCELLED, OrderStatus.REJECTED})

# Rank used to keep status writes monotonic
STATUS_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.OPEN: 1,
    OrderStatus.COMPLETE: 2,
    OrderStatus.CANCELLED: 2,
    OrderStatus.REJECTED: 2,
}


def is_forward_transition(current: OrderStatus, new: OrderStatus) -> bool:
    """True when ``new`` may overwrite ``current``."""
    if current.is_terminal:
        return False
    return STATUS_RANK[new] > STATUS_RANK[current]


@dataclass
class CanonicalOrderRequest:
    """Broker-agnostic trade instruction."""
    symbol: str
    transaction_type: TransactionType
    quantity: int
    exchange: str = "NSE"
    order_type: OrderType = OrderType.MARKET
    product: ProductType = ProductType.MIS
    price: Optional[float] = None
    trigger_price: Optional[float] = None
    validity: str = "DAY"
    # Broker instrument id resolved through the symbol lookup, when the broker needs one
    instrument_token: Optional[str] = None
    tag: Optional[str] = None

    @property
    def needs_trigger(self) -> bool:
        return self.order_type in (OrderType.SL, OrderType.SL_M)

    @property
    def is_limit_priced(self) -> bool:
        return self.order_type in (OrderType.LIMIT, OrderType.SL)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["transaction_type"] = self.transaction_type.value
        data["order_type"] = self.order_type.value
        data["product"] = self.product.value
        return data


@dataclass
class BrokerCredentials:
    """Decrypted material for one connection; never persisted in this form."""
    connection_id: Optional[int]
    broker_kind: BrokerKind
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    client_code: Optional[str] = None
    password: Optional[str] = None
    pin: Optional[str] = None
    two_fa: Optional[str] = None
    broker_user_id: Optional[str] = None
    redirect_uri: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    feed_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def __repr__(self) -> str:
        return (f"BrokerCredentials(connection_id={self.connection_id!r}, "
                f"broker_kind={self.broker_kind.value!r}, has_token={bool(self.access_token)})")


@dataclass
class AuthResult:
    """Session material returned by a successful login, exchange or refresh."""
    access_token: str
    refresh_token: Optional[str] = None
    feed_token: Optional[str] = None
    expires_in: Optional[int] = None
    broker_user_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PlacementResult:
    broker_order_id: str
    initial_status: OrderStatus = OrderStatus.OPEN
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OrderStatusSnapshot:
    """One broker-side reading of an order."""
    broker_order_id: str
    raw_status: str
    status: OrderStatus
    average_price: Optional[float] = None
    price: Optional[float] = None
    filled_quantity: Optional[int] = None
    quantity: Optional[int] = None
    message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def executed_price(self) -> Optional[float]:
        return self.average_price or self.price

    @property
    def executed_quantity(self) -> Optional[int]:
        return self.filled_quantity or self.quantity


@dataclass
class PositionSnapshot:
    symbol: str
    quantity: int
    exchange: Optional[str] = None
    product: Optional[str] = None
    average_price: float = 0.0
    last_price: float = 0.0
    pnl: float = 0.0
    raw: Dict[str, Any] = field(default_factory=dict)


PositionList = List[PositionSnapshot]
