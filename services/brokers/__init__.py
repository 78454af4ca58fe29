"""Broker adapters: one capability interface, one implementation per protocol family."""

from .angel import AngelAdapter
from .base import BrokerAdapter, HttpBrokerAdapter
from .client_cache import AdapterClientCache
from .factory import ADAPTER_CLASSES, REQUIRED_CREDENTIALS, create_adapter, parse_broker_kind
from .kite import KiteAdapter
from .models import (
    AuthMethod,
    AuthResult,
    BrokerCredentials,
    BrokerKind,
    CanonicalOrderRequest,
    OrderStatus,
    OrderStatusSnapshot,
    OrderType,
    PlacementResult,
    PositionSnapshot,
    ProductType,
    TransactionType,
)
from .mt_gateway import MTGatewayAdapter
from .shoonya import ShoonyaAdapter
from .upstox import UpstoxAdapter

__all__ = [
    "ADAPTER_CLASSES",
    "REQUIRED_CREDENTIALS",
    "AdapterClientCache",
    "AngelAdapter",
    "AuthMethod",
    "AuthResult",
    "BrokerAdapter",
    "BrokerCredentials",
    "BrokerKind",
    "CanonicalOrderRequest",
    "HttpBrokerAdapter",
    "KiteAdapter",
    "MTGatewayAdapter",
    "OrderStatus",
    "OrderStatusSnapshot",
    "OrderType",
    "PlacementResult",
    "PositionSnapshot",
    "ProductType",
    "ShoonyaAdapter",
    "TransactionType",
    "UpstoxAdapter",
    "create_adapter",
    "parse_broker_kind",
]
