"""Broker-kind to adapter class dispatch."""

from typing import Dict, Optional, Type

import httpx

from core.config.settings import Settings
from core.monitoring import PrometheusMetricsCollector
from core.utils.exceptions import ValidationError
from .angel import AngelAdapter
from .base import BrokerAdapter, HttpBrokerAdapter
from .kite import KiteAdapter
from .models import BrokerCredentials, BrokerKind
from .mt_gateway import MTGatewayAdapter
from .shoonya import ShoonyaAdapter
from .upstox import UpstoxAdapter

ADAPTER_CLASSES: Dict[BrokerKind, Type[BrokerAdapter]] = {
    BrokerKind.ZERODHA: KiteAdapter,
    BrokerKind.UPSTOX: UpstoxAdapter,
    BrokerKind.ANGEL: AngelAdapter,
    BrokerKind.SHOONYA: ShoonyaAdapter,
    BrokerKind.MT4: MTGatewayAdapter,
    BrokerKind.MT5: MTGatewayAdapter,
}

# Credential fields each broker needs at connect time
REQUIRED_CREDENTIALS: Dict[BrokerKind, tuple] = {
    BrokerKind.ZERODHA: ("api_key", "api_secret"),
    BrokerKind.UPSTOX: ("api_key", "api_secret"),
    BrokerKind.ANGEL: ("api_key", "client_code", "password"),
    BrokerKind.SHOONYA: ("api_key", "api_secret", "client_code", "password"),
    BrokerKind.MT4: ("api_key", "api_secret", "client_code", "password"),
    BrokerKind.MT5: ("api_key", "api_secret", "client_code", "password"),
}


def parse_broker_kind(value: str) -> BrokerKind:
    try:
        return BrokerKind(str(value).lower())
    except ValueError:
        raise ValidationError(f"Unsupported broker: {value}", field="broker")


def adapter_class_for(kind: BrokerKind) -> Type[BrokerAdapter]:
    return ADAPTER_CLASSES[kind]


def create_adapter(credentials: BrokerCredentials, settings: Settings,
                   metrics: Optional[PrometheusMetricsCollector] = None,
                   transport: Optional[httpx.AsyncBaseTransport] = None) -> BrokerAdapter:
    cls = adapter_class_for(credentials.broker_kind)
    if issubclass(cls, HttpBrokerAdapter):
        return cls(credentials, settings, metrics, transport=transport)
    return cls(credentials, settings, metrics)
