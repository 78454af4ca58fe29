"""MetaTrader 4/5 adapter speaking to an external socket-API gateway.

The gateway owns the terminal connection; it receives the account login,
password and trade server and issues its own bearer token with ``expires_in``.
Credential fields: ``client_code`` is the MT account login and
``config["server_url"]`` the trade server.
"""

from typing import Any, Dict, List

import httpx

from core.utils.exceptions import (
    AuthExpiredError,
    BrokerAuthenticationError,
    InternalBrokerError,
    OrderRejected,
)
from .base import HttpBrokerAdapter
from .mappings import map_broker_status, order_type_code, to_float, to_int
from .models import (
    AuthMethod,
    AuthResult,
    BrokerKind,
    CanonicalOrderRequest,
    OrderStatusSnapshot,
    OrderType,
    PlacementResult,
    PositionSnapshot,
)

MAGIC_NUMBER = 12345
MAX_DEVIATION_POINTS = 10


class MTGatewayAdapter(HttpBrokerAdapter):
    kind = BrokerKind.MT4
    auth_method = AuthMethod.GATEWAY
    supports_refresh = False

    def __init__(self, credentials, *args, **kwargs):
        super().__init__(credentials, *args, **kwargs)
        # One class serves both platforms
        self.kind = credentials.broker_kind
        self.base_url = self.settings.brokers.mt_gateway_base_url

    def default_token_ttl(self) -> int:
        return self.settings.brokers.mt_default_ttl_seconds

    def _headers(self, authenticated: bool = True) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if authenticated:
            headers["Authorization"] = f"Bearer {self._require_session()}"
        return headers

    def _check_payload(self, response: httpx.Response, payload: Any, operation: str) -> None:
        super()._check_payload(response, payload, operation)
        if isinstance(payload, dict) and payload.get("success") is False:
            raise InternalBrokerError(
                payload.get("message") or "MT gateway request failed",
                self.kind.value,
                api_response=payload,
                details={"operation": operation},
            )

    def _data(self, payload: Any) -> Any:
        return payload.get("data") if isinstance(payload, dict) else payload

    # --- authentication ---
    async def authenticate(self, **params: Any) -> AuthResult:
        login = self._require(params.get("login") or self.credentials.client_code, "login")
        server_url = self._require(params.get("server_url") or self.credentials.config.get("server_url"),
                                   "server_url")
        body = {
            "api_key": self._require(self.credentials.api_key, "api_key"),
            "api_secret": self._require(self.credentials.api_secret, "api_secret"),
            "server_url": server_url,
            "login": login,
            "password": self._require(params.get("password") or self.credentials.password, "password"),
        }
        try:
            payload = await self._request("POST", "/api/auth/login", "login",
                                          authenticated=False, json=body)
        except (AuthExpiredError, InternalBrokerError) as e:
            raise BrokerAuthenticationError(
                str(e), self.kind.value,
                user_message=f"MetaTrader gateway login failed: {e.message}",
            ) from e
        if not payload.get("access_token"):
            raise BrokerAuthenticationError("MT gateway login returned no access_token", self.kind.value)
        return AuthResult(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_in=to_int(payload.get("expires_in")),
            broker_user_id=str(login),
            extra={"server_url": server_url},
        )

    # --- trading ---
    def build_order_payload(self, request: CanonicalOrderRequest) -> Dict[str, Any]:
        if request.is_limit_priced:
            price = float(request.price or 0)
        elif request.order_type == OrderType.SL_M:
            price = float(request.trigger_price or 0)
        else:
            price = 0.0
        payload = {
            "symbol": request.symbol,
            "action": request.transaction_type.value,
            "volume": float(request.quantity),
            "order_type": order_type_code(self.kind, request.order_type),
            "price": price,
            "stoploss": 0.0,
            "takeprofit": 0.0,
            "comment": request.tag or self.settings.brokers.order_tag,
            "magic": MAGIC_NUMBER,
            "deviation": MAX_DEVIATION_POINTS,
        }
        if request.needs_trigger:
            payload["stop_price"] = float(request.trigger_price or 0)
        return payload

    async def place_order(self, request: CanonicalOrderRequest) -> PlacementResult:
        payload = self.build_order_payload(request)
        try:
            response = await self._request("POST", "/api/trade/order", "place_order", json=payload)
        except InternalBrokerError as e:
            raise OrderRejected(e.message, self.kind.value, reason=e.message,
                                details={"api_response": e.api_response}) from e
        data = self._data(response) or {}
        order_id = data.get("order_id") or data.get("ticket")
        if not order_id:
            raise InternalBrokerError("MT gateway returned no order id or ticket", self.kind.value,
                                      api_response=response)
        self.logger.info("MT order placed", broker_order_id=str(order_id), symbol=request.symbol)
        return PlacementResult(broker_order_id=str(order_id), raw=response)

    async def get_order_status(self, broker_order_id: str) -> OrderStatusSnapshot:
        response = await self._request("GET", f"/api/orders/{broker_order_id}", "order_details")
        data = self._data(response) or {}
        raw_status = data.get("status") or data.get("state") or ""
        return OrderStatusSnapshot(
            broker_order_id=str(broker_order_id),
            raw_status=raw_status,
            status=map_broker_status(raw_status, self.kind),
            average_price=to_float(data.get("price_open") or data.get("average_price")),
            price=to_float(data.get("price")),
            filled_quantity=to_int(data.get("volume_filled")),
            quantity=to_int(data.get("volume")),
            message=data.get("comment"),
            raw=data,
        )

    async def get_orders(self) -> List[Dict[str, Any]]:
        return self._data(await self._request("GET", "/api/orders", "orders")) or []

    async def get_positions(self) -> List[PositionSnapshot]:
        rows = self._data(await self._request("GET", "/api/positions", "positions")) or []
        positions = []
        for p in rows:
            volume = to_float(p.get("volume")) or 0.0
            # Gateway reports a side plus a positive volume
            if str(p.get("type", "")).upper() in ("SELL", "POSITION_TYPE_SELL"):
                volume = -volume
            positions.append(PositionSnapshot(
                symbol=p.get("symbol", ""),
                quantity=int(volume),
                average_price=to_float(p.get("price_open")) or 0.0,
                last_price=to_float(p.get("price_current")) or 0.0,
                pnl=to_float(p.get("profit")) or 0.0,
                raw=p,
            ))
        return positions

    async def get_holdings(self) -> List[Dict[str, Any]]:
        return []

    async def test_connection(self) -> Dict[str, Any]:
        return self._data(await self._request("GET", "/api/account/info", "account_info")) or {}
