"""Finvasia Shoonya (NorenWClientTP) adapter.

Login sends SHA-256 hashes of the password and of ``"{uid}|{api_secret}"``;
every call posts a ``jData=<json>`` body, session calls append ``&jKey=<token>``.
Credential fields: ``client_code`` is the Shoonya user id, ``api_key`` the
vendor code and ``api_secret`` the app secret. ``config["imei"]`` is optional.
"""

import hashlib
import json
from typing import Any, Dict, List, Optional

import httpx

from core.utils.exceptions import (
    AuthExpiredError,
    BrokerAuthenticationError,
    InternalBrokerError,
    OrderRejected,
    ValidationError,
)
from .base import HttpBrokerAdapter
from .mappings import map_broker_status, order_type_code, product_code, side_code, to_float, to_int
from .models import (
    AuthMethod,
    AuthResult,
    BrokerKind,
    CanonicalOrderRequest,
    OrderStatusSnapshot,
    PlacementResult,
    PositionSnapshot,
)

# Broker message fragment -> message shown to the user
LOGIN_ERROR_MESSAGES = {
    "invalid vendor code": "Invalid vendor code. Please check your vendor code and try again.",
    "invalid app key": "Invalid API secret or user ID. Please check your credentials and try again.",
    "invalid input": "Invalid input parameters. Please check all your credentials and try again.",
}


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def app_key_hash(user_id: str, api_secret: str) -> str:
    return sha256_hex(f"{user_id}|{api_secret}")


def login_error_message(broker_message: Optional[str]) -> Optional[str]:
    text = (broker_message or "").lower()
    for fragment, friendly in LOGIN_ERROR_MESSAGES.items():
        if fragment in text:
            return friendly
    return None


def check_credentials(user_id: Optional[str], vendor_code: Optional[str],
                     api_secret: Optional[str]) -> Dict[str, Any]:
    """Offline shape check of Shoonya credentials; no broker call is made."""
    problems = []
    if not user_id or not user_id.strip():
        problems.append("user_id is required")
    elif user_id != user_id.strip() or " " in user_id:
        problems.append("user_id must not contain spaces")
    if not vendor_code or not vendor_code.strip():
        problems.append("vendor_code is required")
    if not api_secret or not api_secret.strip():
        problems.append("api_secret is required")
    elif len(api_secret.strip()) < 8:
        problems.append("api_secret looks too short")

    result: Dict[str, Any] = {"valid": not problems, "problems": problems}
    if not problems:
        result["app_key_hash_prefix"] = app_key_hash(user_id, api_secret)[:10]
    return result


class ShoonyaAdapter(HttpBrokerAdapter):
    kind = BrokerKind.SHOONYA
    auth_method = AuthMethod.HASHED
    supports_refresh = False

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.base_url = self.settings.brokers.shoonya_base_url

    def default_token_ttl(self) -> int:
        return self.settings.brokers.shoonya_default_ttl_seconds

    def _headers(self, authenticated: bool = True) -> Dict[str, str]:
        return {"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"}

    @property
    def user_id(self) -> str:
        return self._require(self.credentials.broker_user_id or self.credentials.client_code, "client_code")

    @property
    def account_id(self) -> str:
        return self.credentials.config.get("actid") or self.user_id

    def _body(self, params: Dict[str, Any], with_session: bool) -> str:
        body = "jData=" + json.dumps(params, separators=(",", ":"))
        if with_session:
            body += f"&jKey={self._require_session()}"
        return body

    async def _call(self, route: str, operation: str, params: Dict[str, Any],
                    with_session: bool = True) -> Any:
        return await self._request(
            "POST", route, operation,
            authenticated=with_session,
            content=self._body(params, with_session),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

    async def _call_list(self, route: str, operation: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Book/list calls; Shoonya answers an empty book with a "no data" error."""
        try:
            payload = await self._call(route, operation, params)
        except InternalBrokerError as e:
            if "no data" in (e.message or "").lower():
                return []
            raise
        return payload if isinstance(payload, list) else []

    def _check_payload(self, response: httpx.Response, payload: Any, operation: str) -> None:
        if isinstance(payload, dict) and payload.get("stat") == "Not_Ok":
            message = payload.get("emsg") or "Shoonya request failed"
            if "session expired" in message.lower() or "invalid session key" in message.lower():
                raise AuthExpiredError(message, self.kind.value, details={"operation": operation})
            raise InternalBrokerError(message, self.kind.value, api_response=payload,
                                      details={"operation": operation})
        super()._check_payload(response, payload, operation)

    # --- authentication ---
    async def authenticate(self, **params: Any) -> AuthResult:
        user_id = self._require(params.get("user_id") or self.credentials.client_code, "client_code")
        password = self._require(params.get("password") or self.credentials.password, "password")
        vendor_code = self._require(self.credentials.api_key, "vendor_code")
        api_secret = self._require(self.credentials.api_secret, "api_secret")
        two_fa = params.get("two_fa") or params.get("totp") or self.credentials.two_fa or ""

        auth_params = {
            "source": "API",
            "apkversion": "js:1.0.0",
            "uid": user_id,
            "pwd": sha256_hex(password),
            "factor2": two_fa,
            "vc": vendor_code,
            "appkey": app_key_hash(user_id, api_secret),
        }
        imei = params.get("imei") or self.credentials.config.get("imei")
        if imei:
            auth_params["imei"] = imei

        try:
            payload = await self._call("/QuickAuth", "login", auth_params, with_session=False)
        except (InternalBrokerError, AuthExpiredError) as e:
            friendly = login_error_message(e.message)
            raise BrokerAuthenticationError(
                e.message, self.kind.value,
                user_message=friendly or f"Shoonya login failed: {e.message}",
                status_code=400 if friendly else 500,
            ) from e

        token = payload.get("susertoken") if isinstance(payload, dict) else None
        if not token:
            raise BrokerAuthenticationError("Shoonya login response had no susertoken", self.kind.value,
                                            status_code=500)
        return AuthResult(
            access_token=token,
            broker_user_id=user_id,
            extra={"actid": payload.get("actid") or user_id, "uname": payload.get("uname")},
        )

    def use_session(self, result: AuthResult) -> None:
        super().use_session(result)
        if result.extra.get("actid"):
            self.credentials.config["actid"] = result.extra["actid"]

    # --- trading ---
    def build_order_payload(self, request: CanonicalOrderRequest) -> Dict[str, Any]:
        if request.needs_trigger and not request.trigger_price:
            raise ValidationError("trigger_price is required for stop-loss orders", field="trigger_price")
        payload = {
            "uid": self.user_id,
            "actid": self.account_id,
            "exch": request.exchange or "NSE",
            "tsym": request.symbol,
            "qty": str(int(request.quantity)),
            "prc": str(float(request.price or 0)) if request.is_limit_priced else "0",
            "prd": product_code(self.kind, request.product),
            "trantype": side_code(self.kind, request.transaction_type),
            "prctyp": order_type_code(self.kind, request.order_type),
            "ret": request.validity or "DAY",
            "remarks": request.tag or self.settings.brokers.order_tag,
            "dscqty": "0",
            "amo": "NO",
        }
        if request.needs_trigger:
            payload["trgprc"] = str(float(request.trigger_price))
        return payload

    async def place_order(self, request: CanonicalOrderRequest) -> PlacementResult:
        payload = self.build_order_payload(request)
        try:
            response = await self._call("/PlaceOrder", "place_order", payload)
        except InternalBrokerError as e:
            raise OrderRejected(e.message, self.kind.value, reason=e.message,
                                details={"api_response": e.api_response}) from e
        order_id = response.get("norenordno") if isinstance(response, dict) else None
        if not order_id:
            raise InternalBrokerError("Shoonya returned no order number", self.kind.value,
                                      api_response=response if isinstance(response, dict) else None)
        self.logger.info("Shoonya order placed", broker_order_id=order_id, symbol=request.symbol)
        return PlacementResult(broker_order_id=str(order_id), raw=response)

    async def get_order_status(self, broker_order_id: str) -> OrderStatusSnapshot:
        history = await self._call_list("/SingleOrdHist", "order_history",
                                         {"uid": self.user_id, "norenordno": broker_order_id})
        if not history:
            raise InternalBrokerError(f"Order {broker_order_id} not found at Shoonya", self.kind.value)
        # Newest entry first
        latest = history[0]
        raw_status = latest.get("status") or ""
        return OrderStatusSnapshot(
            broker_order_id=str(broker_order_id),
            raw_status=raw_status,
            status=map_broker_status(raw_status, self.kind),
            average_price=to_float(latest.get("avgprc")),
            price=to_float(latest.get("prc")),
            filled_quantity=to_int(latest.get("fillshares")),
            quantity=to_int(latest.get("qty")),
            message=latest.get("rejreason"),
            raw=latest,
        )

    async def get_orders(self) -> List[Dict[str, Any]]:
        return await self._call_list("/OrderBook", "orders", {"uid": self.user_id})

    async def get_positions(self) -> List[PositionSnapshot]:
        rows = await self._call_list("/PositionBook", "positions",
                                     {"uid": self.user_id, "actid": self.account_id})
        return [
            PositionSnapshot(
                symbol=p.get("tsym", ""),
                exchange=p.get("exch"),
                product=p.get("prd"),
                quantity=to_int(p.get("netqty")) or 0,
                average_price=to_float(p.get("netavgprc")) or 0.0,
                last_price=to_float(p.get("lp")) or 0.0,
                pnl=(to_float(p.get("rpnl")) or 0.0) + (to_float(p.get("urmtom")) or 0.0),
                raw=p,
            )
            for p in rows
        ]

    async def get_holdings(self) -> List[Dict[str, Any]]:
        return await self._call_list("/Holdings", "holdings",
                                     {"uid": self.user_id, "actid": self.account_id, "prd": "C"})

    async def test_connection(self) -> Dict[str, Any]:
        payload = await self._call("/UserDetails", "profile", {"uid": self.user_id})
        return payload if isinstance(payload, dict) else {}

    async def invalidate_session(self) -> None:
        if self.credentials.access_token:
            await self._call("/Logout", "logout", {"uid": self.user_id})

