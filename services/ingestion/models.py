"""Inbound webhook signal and the result handed back to the caller."""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from core.utils.exceptions import ValidationError
from services.brokers.models import (
    CanonicalOrderRequest,
    OrderStatus,
    OrderType,
    ProductType,
    TransactionType,
)

MISSING_FIELDS = "Invalid payload: symbol, action, and quantity are required"
BAD_QUANTITY = "Invalid quantity: must be an integer > 0"
BAD_ACTION = "Invalid action: must be BUY or SELL"

ORDER_TYPE_ALIASES = {"SLM": "SL-M", "SL_M": "SL-M", "STOPLOSS": "SL", "MKT": "MARKET", "LMT": "LIMIT"}
PRODUCT_ALIASES = {"INTRADAY": "MIS", "I": "MIS", "DELIVERY": "CNC", "D": "CNC", "C": "CNC"}


class WebhookSignal(BaseModel):
    """Validated trade signal."""
    symbol: str
    transaction_type: TransactionType
    quantity: int = Field(gt=0)
    exchange: str = "NSE"
    order_type: OrderType = OrderType.MARKET
    product: ProductType = ProductType.MIS
    price: Optional[float] = None
    trigger_price: Optional[float] = None
    validity: str = "DAY"
    instrument_token: Optional[str] = None

    def to_order_request(self, instrument_token: Optional[str] = None,
                         tag: Optional[str] = None) -> CanonicalOrderRequest:
        return CanonicalOrderRequest(
            symbol=self.symbol,
            transaction_type=self.transaction_type,
            quantity=self.quantity,
            exchange=self.exchange,
            order_type=self.order_type,
            product=self.product,
            price=self.price,
            trigger_price=self.trigger_price,
            validity=self.validity,
            instrument_token=instrument_token or self.instrument_token,
            tag=tag,
        )


def _parse_quantity(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError(BAD_QUANTITY, field="quantity")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValidationError(BAD_QUANTITY, field="quantity")
        value = int(value)
    if isinstance(value, str):
        value = value.strip()
        if not value.lstrip("-").isdigit():
            raise ValidationError(BAD_QUANTITY, field="quantity")
        value = int(value)
    if not isinstance(value, int) or value <= 0:
        raise ValidationError(BAD_QUANTITY, field="quantity")
    return value


def _parse_price(payload: Dict[str, Any], name: str) -> Optional[float]:
    value = payload.get(name)
    if value in (None, ""):
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {name}: must be a number", field=name)
    if price < 0:
        raise ValidationError(f"Invalid {name}: must not be negative", field=name)
    return price


def parse_signal(payload: Any) -> WebhookSignal:
    """Validate a raw webhook body. Raises ValidationError before any broker call."""
    if not isinstance(payload, dict):
        raise ValidationError(MISSING_FIELDS)
    symbol = payload.get("symbol")
    action = payload.get("action") or payload.get("transaction_type")
    quantity = payload.get("quantity")
    if symbol is None or not str(symbol).strip() or not action or quantity in (None, ""):
        raise ValidationError(MISSING_FIELDS)

    parsed_quantity = _parse_quantity(quantity)
    side = str(action).strip().upper()
    if side not in (TransactionType.BUY.value, TransactionType.SELL.value):
        raise ValidationError(BAD_ACTION, field="action")

    raw_type = str(payload.get("order_type") or "MARKET").strip().upper()
    raw_type = ORDER_TYPE_ALIASES.get(raw_type, raw_type)
    try:
        order_type = OrderType(raw_type)
    except ValueError:
        raise ValidationError("Invalid order_type: must be MARKET, LIMIT, SL or SL-M", field="order_type")

    raw_product = str(payload.get("product") or "MIS").strip().upper()
    raw_product = PRODUCT_ALIASES.get(raw_product, raw_product)
    try:
        product = ProductType(raw_product)
    except ValueError:
        raise ValidationError("Invalid product: must be MIS or CNC", field="product")

    price = _parse_price(payload, "price")
    trigger_price = _parse_price(payload, "trigger_price")
    if order_type in (OrderType.LIMIT, OrderType.SL) and not price:
        raise ValidationError("Invalid price: LIMIT and SL orders need a price", field="price")
    if order_type in (OrderType.SL, OrderType.SL_M) and not trigger_price:
        raise ValidationError("Invalid trigger_price: SL and SL-M orders need a trigger price",
                              field="trigger_price")

    token = payload.get("instrument_token") or payload.get("symboltoken")
    return WebhookSignal(
        symbol=str(symbol).strip(),
        transaction_type=TransactionType(side),
        quantity=parsed_quantity,
        exchange=str(payload.get("exchange") or "NSE").strip().upper(),
        order_type=order_type,
        product=product,
        price=price,
        trigger_price=trigger_price,
        validity=str(payload.get("validity") or "DAY").strip().upper(),
        instrument_token=str(token) if token else None,
    )


class DebugTrail:
    """Human-readable processing steps returned with every webhook response."""

    def __init__(self):
        self._started = time.perf_counter()
        self.entries: List[str] = []

    def add(self, message: str) -> None:
        self.entries.append(message)

    @property
    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self._started) * 1000)


@dataclass
class WebhookResult:
    order_id: int
    broker_order_id: str
    status: OrderStatus
    processing_time_ms: int
    polling_started: bool
    debug_logs: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "orderId": self.order_id,
            "brokerOrderId": self.broker_order_id,
            "status": self.status.value,
            "processingTime": self.processing_time_ms,
            "pollingStarted": self.polling_started,
            "debugLogs": self.debug_logs,
        }
