"""Upstox v2 adapter (OAuth with non-interactive refresh)."""

from typing import Any, Dict, List
from urllib.parse import urlencode

import httpx

from core.utils.exceptions import (
    AuthExpiredError,
    BrokerAuthenticationError,
    InternalBrokerError,
    OrderRejected,
    ValidationError,
)
from .base import HttpBrokerAdapter
from .mappings import map_broker_status, order_type_code, product_code
from .models import (
    AuthMethod,
    AuthResult,
    BrokerKind,
    CanonicalOrderRequest,
    OrderStatusSnapshot,
    PlacementResult,
    PositionSnapshot,
)


class UpstoxAdapter(HttpBrokerAdapter):
    kind = BrokerKind.UPSTOX
    auth_method = AuthMethod.OAUTH
    supports_refresh = True
    requires_instrument_token = True

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.base_url = self.settings.brokers.upstox_base_url

    def default_token_ttl(self) -> int:
        return self.settings.brokers.upstox_default_ttl_seconds

    def _headers(self, authenticated: bool = True) -> Dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if authenticated:
            headers["Authorization"] = f"Bearer {self._require_session()}"
        return headers

    def _check_payload(self, response: httpx.Response, payload: Any, operation: str) -> None:
        if isinstance(payload, dict) and payload.get("status") == "error" and response.status_code < 400:
            raise InternalBrokerError(
                self._error_message(payload) or "Upstox returned an error",
                self.kind.value,
                api_response=payload,
                details={"operation": operation},
            )
        super()._check_payload(response, payload, operation)

    # --- authentication ---
    def login_url(self, state: str, redirect_url: str) -> str:
        query = urlencode({
            "response_type": "code",
            "client_id": self._require(self.credentials.api_key, "api_key"),
            "redirect_uri": self.credentials.redirect_uri or redirect_url,
            "state": state,
        })
        return f"{self.base_url}/login/authorization/dialog?{query}"

    async def _token_request(self, form: Dict[str, str], operation: str) -> AuthResult:
        try:
            payload = await self._request(
                "POST", "/login/authorization/token", operation,
                authenticated=False,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except (AuthExpiredError, InternalBrokerError) as e:
            raise BrokerAuthenticationError(
                str(e), self.kind.value,
                user_message="Upstox rejected the authorization. Check the API key, secret and redirect URI.",
            ) from e
        access_token = payload.get("access_token")
        if not access_token:
            raise BrokerAuthenticationError("Upstox token response had no access_token", self.kind.value)
        return AuthResult(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_in=payload.get("expires_in"),
            broker_user_id=payload.get("user_id"),
            extra={"email": payload.get("email")},
        )

    async def authenticate(self, **params: Any) -> AuthResult:
        code = self._require(params.get("code"), "code")
        return await self._token_request({
            "code": code,
            "client_id": self._require(self.credentials.api_key, "api_key"),
            "client_secret": self._require(self.credentials.api_secret, "api_secret"),
            "redirect_uri": self.credentials.redirect_uri or params.get("redirect_uri", ""),
            "grant_type": "authorization_code",
        }, "exchange_code")

    async def refresh(self) -> AuthResult:
        refresh_token = self.credentials.refresh_token
        if not refresh_token:
            raise AuthExpiredError("No refresh token stored; reconnect required", self.kind.value)
        try:
            return await self._token_request({
                "refresh_token": refresh_token,
                "client_id": self._require(self.credentials.api_key, "api_key"),
                "client_secret": self._require(self.credentials.api_secret, "api_secret"),
                "grant_type": "refresh_token",
            }, "refresh_token")
        except BrokerAuthenticationError as e:
            raise AuthExpiredError(f"Upstox refresh failed: {e.message}", self.kind.value) from e

    # --- trading ---
    def build_order_payload(self, request: CanonicalOrderRequest) -> Dict[str, Any]:
        # Upstox keys are ISIN based (NSE_EQ|INE002A01018) and cannot be derived from the symbol
        if not request.instrument_token:
            raise ValidationError(f"No Upstox instrument key known for {request.symbol} on {request.exchange}",
                                  field="instrument_token")
        return {
            "quantity": int(request.quantity),
            "product": product_code(self.kind, request.product),
            "validity": request.validity or "DAY",
            "price": float(request.price or 0) if request.is_limit_priced else 0,
            "tag": request.tag or self.settings.brokers.order_tag,
            "instrument_token": request.instrument_token,
            "order_type": order_type_code(self.kind, request.order_type),
            "transaction_type": request.transaction_type.value,
            "disclosed_quantity": 0,
            "trigger_price": float(request.trigger_price or 0) if request.needs_trigger else 0,
            "is_amo": False,
        }

    async def place_order(self, request: CanonicalOrderRequest) -> PlacementResult:
        payload = self.build_order_payload(request)
        try:
            response = await self._request("POST", "/order/place", "place_order", json=payload)
        except InternalBrokerError as e:
            if e.api_error_code and e.api_error_code.startswith("4"):
                raise OrderRejected(e.message, self.kind.value, reason=e.message,
                                    details={"api_response": e.api_response}) from e
            raise
        order_id = (response.get("data") or {}).get("order_id")
        if not order_id:
            raise InternalBrokerError("Upstox returned no order id", self.kind.value, api_response=response)
        self.logger.info("Upstox order placed", broker_order_id=order_id,
                         instrument_token=payload["instrument_token"])
        return PlacementResult(broker_order_id=str(order_id), raw=response)

    async def get_order_status(self, broker_order_id: str) -> OrderStatusSnapshot:
        response = await self._request("GET", "/order/details", "order_details",
                                       params={"order_id": broker_order_id})
        data = response.get("data") or {}
        raw_status = data.get("status") or ""
        return OrderStatusSnapshot(
            broker_order_id=str(broker_order_id),
            raw_status=raw_status,
            status=map_broker_status(raw_status, self.kind),
            average_price=data.get("average_price"),
            price=data.get("price"),
            filled_quantity=data.get("filled_quantity"),
            quantity=data.get("quantity"),
            message=data.get("status_message"),
            raw=data,
        )

    async def get_orders(self) -> List[Dict[str, Any]]:
        response = await self._request("GET", "/order/retrieve-all", "orders")
        return response.get("data") or []

    async def get_positions(self) -> List[PositionSnapshot]:
        response = await self._request("GET", "/portfolio/short-term-positions", "positions")
        return [
            PositionSnapshot(
                symbol=p.get("tradingsymbol") or p.get("trading_symbol", ""),
                exchange=p.get("exchange"),
                product=p.get("product"),
                quantity=int(p.get("quantity") or 0),
                average_price=float(p.get("average_price") or 0),
                last_price=float(p.get("last_price") or 0),
                pnl=float(p.get("pnl") or 0),
                raw=p,
            )
            for p in response.get("data") or []
        ]

    async def get_holdings(self) -> List[Dict[str, Any]]:
        response = await self._request("GET", "/portfolio/long-term-holdings", "holdings")
        return response.get("data") or []

    async def test_connection(self) -> Dict[str, Any]:
        response = await self._request("GET", "/user/profile", "profile")
        return response.get("data") or {}

    async def invalidate_session(self) -> None:
        if self.credentials.access_token:
            await self._request("DELETE", "/logout", "logout")
