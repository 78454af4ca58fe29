"""Zerodha Kite Connect adapter (OAuth, fixed next-day expiry, no refresh)."""

import asyncio
import functools
import time
from datetime import datetime, time as clock_time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import pytz
import requests
from kiteconnect import KiteConnect
from kiteconnect import exceptions as kite_exceptions

from core.utils.exceptions import (
    AuthExpiredError,
    BrokerAuthenticationError,
    InternalBrokerError,
    OrderRejected,
    TransientNetworkError,
)
from .base import BrokerAdapter
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


class KiteAdapter(BrokerAdapter):
    """Wraps the blocking KiteConnect client; calls run in the default executor."""

    kind = BrokerKind.ZERODHA
    auth_method = AuthMethod.OAUTH
    supports_refresh = False

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._kite: Optional[KiteConnect] = None

    @property
    def kite(self) -> KiteConnect:
        if self._kite is None:
            self._kite = KiteConnect(api_key=self._require(self.credentials.api_key, "api_key"))
            if self.credentials.access_token:
                self._kite.set_access_token(self.credentials.access_token)
        return self._kite

    async def _call(self, operation: str, fn: Callable, *args, **kwargs) -> Any:
        """Run a blocking kite call and map its exceptions onto the taxonomy."""
        loop = asyncio.get_running_loop()
        started = time.perf_counter()
        try:
            return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))
        except kite_exceptions.TokenException as e:
            raise AuthExpiredError(str(e) or "Kite session expired", self.kind.value,
                                   details={"operation": operation}) from e
        except kite_exceptions.NetworkException as e:
            raise TransientNetworkError(str(e), self.kind.value) from e
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            raise TransientNetworkError(f"Kite {operation} failed: {e}", self.kind.value) from e
        except (kite_exceptions.InputException, kite_exceptions.OrderException) as e:
            if operation == "place_order":
                raise OrderRejected(str(e), self.kind.value, reason=str(e)) from e
            raise InternalBrokerError(str(e), self.kind.value,
                                      api_error_code=str(getattr(e, "code", "")),
                                      details={"operation": operation}) from e
        except kite_exceptions.KiteException as e:
            raise InternalBrokerError(str(e), self.kind.value,
                                      api_error_code=str(getattr(e, "code", "")),
                                      details={"operation": operation}) from e
        finally:
            self._observe(operation, started)

    # --- authentication ---
    def login_url(self, state: str, redirect_url: str) -> str:
        # Kite redirects to the URL registered on the app; state rides in redirect_params
        base = self.settings.brokers.kite_login_url
        query = urlencode({
            "api_key": self._require(self.credentials.api_key, "api_key"),
            "v": "3",
            "redirect_params": urlencode({"state": state}),
        })
        return f"{base}?{query}"

    async def authenticate(self, **params: Any) -> AuthResult:
        request_token = self._require(params.get("request_token"), "request_token")
        api_secret = self._require(self.credentials.api_secret, "api_secret")
        try:
            session = await self._call("generate_session", self.kite.generate_session,
                                       request_token, api_secret=api_secret)
        except (AuthExpiredError, InternalBrokerError) as e:
            raise BrokerAuthenticationError(
                str(e), self.kind.value,
                user_message="Zerodha rejected the login. Check the API key and secret and log in again.",
            ) from e
        access_token = session.get("access_token")
        if not access_token:
            raise BrokerAuthenticationError("Kite session response had no access_token", self.kind.value)
        return AuthResult(
            access_token=access_token,
            refresh_token=session.get("refresh_token") or None,
            broker_user_id=session.get("user_id"),
            extra={"public_token": session.get("public_token")},
        )

    def use_session(self, result: AuthResult) -> None:
        super().use_session(result)
        self.kite.set_access_token(result.access_token)

    def compute_expiry(self, result: AuthResult, now: Optional[datetime] = None) -> datetime:
        """Kite tokens die at a fixed time on the next calendar day (exchange local time)."""
        tz = pytz.timezone(self.settings.brokers.kite_timezone)
        local_today = (now or datetime.now(timezone.utc)).astimezone(tz).date()
        cutover = tz.localize(datetime.combine(local_today + timedelta(days=1),
                                               clock_time(hour=self.settings.brokers.kite_cutover_hour)))
        return cutover.astimezone(timezone.utc)

    # --- trading ---
    def build_order_payload(self, request: CanonicalOrderRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "variety": "regular",
            "exchange": request.exchange or "NSE",
            "tradingsymbol": request.symbol,
            "transaction_type": request.transaction_type.value,
            "quantity": int(request.quantity),
            "order_type": order_type_code(self.kind, request.order_type),
            "product": product_code(self.kind, request.product),
            "validity": request.validity or "DAY",
            "tag": request.tag or self.settings.brokers.order_tag,
        }
        if request.is_limit_priced:
            payload["price"] = float(request.price or 0)
        if request.needs_trigger:
            payload["trigger_price"] = float(request.trigger_price or 0)
        return payload

    async def place_order(self, request: CanonicalOrderRequest) -> PlacementResult:
        self._require_session()
        payload = self.build_order_payload(request)
        order_id = await self._call("place_order", self.kite.place_order, **payload)
        if not order_id:
            raise InternalBrokerError("Kite returned no order id", self.kind.value)
        self.logger.info("Kite order placed", broker_order_id=str(order_id),
                         symbol=request.symbol, side=request.transaction_type.value)
        return PlacementResult(broker_order_id=str(order_id), raw={"order_id": order_id})

    async def get_order_status(self, broker_order_id: str) -> OrderStatusSnapshot:
        self._require_session()
        history = await self._call("order_history", self.kite.order_history, broker_order_id)
        latest = history[-1] if history else None
        if latest is None:
            orders = await self.get_orders()
            latest = next((o for o in orders if str(o.get("order_id")) == str(broker_order_id)), None)
        if latest is None:
            raise InternalBrokerError(f"Order {broker_order_id} not found at Kite", self.kind.value)
        raw_status = latest.get("status") or ""
        return OrderStatusSnapshot(
            broker_order_id=str(broker_order_id),
            raw_status=raw_status,
            status=map_broker_status(raw_status, self.kind),
            average_price=latest.get("average_price"),
            price=latest.get("price"),
            filled_quantity=latest.get("filled_quantity"),
            quantity=latest.get("quantity"),
            message=latest.get("status_message"),
            raw=latest,
        )

    async def get_orders(self) -> List[Dict[str, Any]]:
        self._require_session()
        return await self._call("orders", self.kite.orders) or []

    async def get_positions(self) -> List[PositionSnapshot]:
        self._require_session()
        positions = await self._call("positions", self.kite.positions) or {}
        return [
            PositionSnapshot(
                symbol=p.get("tradingsymbol", ""),
                exchange=p.get("exchange"),
                product=p.get("product"),
                quantity=int(p.get("quantity") or 0),
                average_price=float(p.get("average_price") or 0),
                last_price=float(p.get("last_price") or 0),
                pnl=float(p.get("pnl") or 0),
                raw=p,
            )
            for p in positions.get("net", [])
        ]

    async def get_holdings(self) -> List[Dict[str, Any]]:
        self._require_session()
        return await self._call("holdings", self.kite.holdings) or []

    async def test_connection(self) -> Dict[str, Any]:
        self._require_session()
        return await self._call("profile", self.kite.profile)

    async def invalidate_session(self) -> None:
        if not self.credentials.access_token:
            return
        await self._call("invalidate_access_token", self.kite.invalidate_access_token,
                         self.credentials.access_token)
