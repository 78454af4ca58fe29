"""Angel One SmartAPI adapter (manual session: client code, password, TOTP)."""

from typing import Any, Dict, List

import httpx

from core.utils.exceptions import (
    AuthExpiredError,
    BrokerAuthenticationError,
    InternalBrokerError,
    OrderRejected,
    ValidationError,
)
from .base import HttpBrokerAdapter
from .mappings import map_broker_status, order_type_code, product_code, to_float, to_int
from .models import (
    AuthMethod,
    AuthResult,
    BrokerKind,
    CanonicalOrderRequest,
    OrderStatusSnapshot,
    PlacementResult,
    PositionSnapshot,
)

SECURE = "/rest/secure/angelbroking"


class AngelAdapter(HttpBrokerAdapter):
    kind = BrokerKind.ANGEL
    auth_method = AuthMethod.MANUAL
    supports_refresh = False
    requires_instrument_token = True

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.base_url = self.settings.brokers.angel_base_url

    def default_token_ttl(self) -> int:
        return self.settings.brokers.angel_default_ttl_seconds

    def _headers(self, authenticated: bool = True) -> Dict[str, str]:
        brokers = self.settings.brokers
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-UserType": "USER",
            "X-SourceID": "WEB",
            "X-ClientLocalIP": brokers.angel_client_local_ip,
            "X-ClientPublicIP": brokers.angel_client_public_ip,
            "X-MACAddress": brokers.angel_mac_address,
            "X-PrivateKey": self._require(self.credentials.api_key, "api_key"),
        }
        if authenticated:
            headers["Authorization"] = f"Bearer {self._require_session()}"
        return headers

    def _check_payload(self, response: httpx.Response, payload: Any, operation: str) -> None:
        super()._check_payload(response, payload, operation)
        if isinstance(payload, dict) and payload.get("status") is False:
            code = str(payload.get("errorcode") or "")
            # AG8001/AG8002: invalid or expired token
            if code in ("AG8001", "AG8002"):
                raise AuthExpiredError(payload.get("message") or "Angel session expired", self.kind.value)
            raise InternalBrokerError(
                payload.get("message") or "Angel returned status=false",
                self.kind.value,
                api_error_code=code or None,
                api_response=payload,
                details={"operation": operation},
            )

    # --- authentication ---
    async def authenticate(self, **params: Any) -> AuthResult:
        body = {
            "clientcode": self._require(params.get("client_code") or self.credentials.client_code,
                                        "client_code"),
            "password": self._require(params.get("password") or self.credentials.password, "password"),
            "totp": self._require(params.get("totp"), "totp"),
        }
        try:
            payload = await self._request(
                "POST", "/rest/auth/angelbroking/user/v1/loginByPassword", "login",
                authenticated=False, json=body,
            )
        except (AuthExpiredError, InternalBrokerError) as e:
            raise BrokerAuthenticationError(
                str(e), self.kind.value,
                user_message=f"Angel One login failed: {e.message}",
            ) from e
        data = payload.get("data") or {}
        if not data.get("jwtToken"):
            raise BrokerAuthenticationError("Angel login response had no jwtToken", self.kind.value)
        return AuthResult(
            access_token=data["jwtToken"],
            refresh_token=data.get("refreshToken"),
            feed_token=data.get("feedToken"),
            broker_user_id=body["clientcode"],
        )

    # --- trading ---
    def build_order_payload(self, request: CanonicalOrderRequest) -> Dict[str, Any]:
        if not request.instrument_token:
            raise ValidationError(f"No Angel symbol token known for {request.symbol} on {request.exchange}",
                                  field="instrument_token")
        payload = {
            "variety": "STOPLOSS" if request.needs_trigger else "NORMAL",
            "tradingsymbol": request.symbol,
            "symboltoken": request.instrument_token,
            "transactiontype": request.transaction_type.value,
            "exchange": request.exchange or "NSE",
            "ordertype": order_type_code(self.kind, request.order_type),
            "producttype": product_code(self.kind, request.product),
            "duration": request.validity or "DAY",
            "price": str(request.price or 0) if request.is_limit_priced else "0",
            "squareoff": "0",
            "stoploss": "0",
            "quantity": str(int(request.quantity)),
        }
        if request.needs_trigger:
            payload["triggerprice"] = str(request.trigger_price or 0)
        return payload

    async def place_order(self, request: CanonicalOrderRequest) -> PlacementResult:
        payload = self.build_order_payload(request)
        try:
            response = await self._request("POST", f"{SECURE}/order/v1/placeOrder", "place_order",
                                           json=payload)
        except InternalBrokerError as e:
            raise OrderRejected(e.message, self.kind.value, reason=e.message,
                                details={"api_response": e.api_response}) from e
        order_id = (response.get("data") or {}).get("orderid")
        if not order_id:
            raise InternalBrokerError("Angel returned no order id", self.kind.value, api_response=response)
        self.logger.info("Angel order placed", broker_order_id=order_id, symbol=request.symbol)
        return PlacementResult(broker_order_id=str(order_id), raw=response)

    async def get_order_status(self, broker_order_id: str) -> OrderStatusSnapshot:
        response = await self._request("POST", f"{SECURE}/order/v1/details", "order_details",
                                       json={"orderid": broker_order_id})
        data = response.get("data") or {}
        if isinstance(data, list):
            data = data[-1] if data else {}
        raw_status = data.get("orderstatus") or data.get("status") or ""
        return OrderStatusSnapshot(
            broker_order_id=str(broker_order_id),
            raw_status=raw_status,
            status=map_broker_status(raw_status, self.kind),
            average_price=to_float(data.get("averageprice")),
            price=to_float(data.get("price")),
            filled_quantity=to_int(data.get("filledshares")),
            quantity=to_int(data.get("quantity")),
            message=data.get("text"),
            raw=data,
        )

    async def get_orders(self) -> List[Dict[str, Any]]:
        response = await self._request("GET", f"{SECURE}/order/v1/getOrderBook", "orders")
        return response.get("data") or []

    async def get_positions(self) -> List[PositionSnapshot]:
        response = await self._request("GET", f"{SECURE}/order/v1/getPosition", "positions")
        return [
            PositionSnapshot(
                symbol=p.get("tradingsymbol", ""),
                exchange=p.get("exchange"),
                product=p.get("producttype"),
                quantity=to_int(p.get("netqty")) or 0,
                average_price=to_float(p.get("avgnetprice")) or 0.0,
                last_price=to_float(p.get("ltp")) or 0.0,
                pnl=to_float(p.get("pnl")) or 0.0,
                raw=p,
            )
            for p in response.get("data") or []
        ]

    async def get_holdings(self) -> List[Dict[str, Any]]:
        response = await self._request("GET", f"{SECURE}/portfolio/v1/getHolding", "holdings")
        return response.get("data") or []

    async def test_connection(self) -> Dict[str, Any]:
        response = await self._request("GET", f"{SECURE}/user/v1/getProfile", "profile")
        return response.get("data") or {}

    async def invalidate_session(self) -> None:
        if self.credentials.access_token:
            client_code = self.credentials.client_code or self.credentials.broker_user_id
            await self._request("POST", f"{SECURE}/user/v1/logout", "logout",
                                json={"clientcode": self._require(client_code, "client_code")})
