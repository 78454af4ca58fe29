from __future__ import annotations

import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

import httpx

from core.config.settings import Settings
from core.logging import get_broker_logger_safe, bind_broker_context
from core.monitoring import PrometheusMetricsCollector
from core.utils.exceptions import (
    AuthExpiredError,
    InternalBrokerError,
    TransientNetworkError,
    ValidationError,
)
from .models import (
    AuthMethod,
    AuthResult,
    BrokerCredentials,
    BrokerKind,
    CanonicalOrderRequest,
    OrderStatusSnapshot,
    PlacementResult,
    PositionSnapshot,
)

logger = get_broker_logger_safe("brokers.base")


class BrokerAdapter(ABC):
    """Capability interface every broker integration implements.

    An adapter instance is bound to one connection's decrypted credentials
    and is cached per connection id by ``AdapterClientCache``.
    """

    kind: BrokerKind
    auth_method: AuthMethod
    supports_refresh: bool = False
    # Instrument id the broker needs instead of a plain trading symbol
    requires_instrument_token: bool = False

    def __init__(self, credentials: BrokerCredentials, settings: Settings,
                 metrics: Optional[PrometheusMetricsCollector] = None):
        self.credentials = credentials
        self.settings = settings
        self.metrics = metrics
        self.logger = bind_broker_context(logger, credentials.broker_kind.value,
                                          credentials.connection_id)

    # --- authentication ---
    def login_url(self, state: str, redirect_url: str) -> str:
        raise ValidationError(f"{self.kind.value} does not use a login redirect")

    @abstractmethod
    async def authenticate(self, **params: Any) -> AuthResult:
        """Obtain a session (code exchange, credential login or gateway login)."""

    async def refresh(self) -> AuthResult:
        raise ValidationError(f"{self.kind.value} does not support token refresh")

    def default_token_ttl(self) -> int:
        return 86400

    def compute_expiry(self, result: AuthResult, now: Optional[datetime] = None) -> datetime:
        """Token expiry: ``now + expires_in`` with a per-broker default."""
        now = now or datetime.now(timezone.utc)
        ttl = result.expires_in if result.expires_in and result.expires_in > 0 else self.default_token_ttl()
        return now + timedelta(seconds=int(ttl))

    def use_session(self, result: AuthResult) -> None:
        """Adopt freshly issued session material on this instance."""
        self.credentials.access_token = result.access_token
        if result.refresh_token:
            self.credentials.refresh_token = result.refresh_token
        if result.feed_token:
            self.credentials.feed_token = result.feed_token
        if result.broker_user_id:
            self.credentials.broker_user_id = result.broker_user_id

    # --- trading ---
    @abstractmethod
    async def place_order(self, request: CanonicalOrderRequest) -> PlacementResult:
        ...

    @abstractmethod
    def build_order_payload(self, request: CanonicalOrderRequest) -> Dict[str, Any]:
        """Translate the canonical request into the broker's wire schema."""

    @abstractmethod
    async def get_order_status(self, broker_order_id: str) -> OrderStatusSnapshot:
        ...

    @abstractmethod
    async def get_orders(self) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def get_positions(self) -> List[PositionSnapshot]:
        ...

    @abstractmethod
    async def get_holdings(self) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def test_connection(self) -> Dict[str, Any]:
        """Fetch the account profile with the current session."""

    async def invalidate_session(self) -> None:
        """Best-effort broker-side logout. Local state is cleared by the caller."""

    async def close(self) -> None:
        """Release network resources."""

    def _require(self, value: Optional[str], name: str) -> str:
        if not value:
            raise ValidationError(f"{name} is required for {self.kind.value}", field=name)
        return value

    def _require_session(self) -> str:
        if not self.credentials.access_token:
            raise AuthExpiredError("No active session; reconnect required", self.kind.value)
        return self.credentials.access_token

    def _observe(self, operation: str, started: float) -> None:
        if self.metrics is not None:
            self.metrics.record_broker_call(self.kind.value, operation, time.perf_counter() - started)


class HttpBrokerAdapter(BrokerAdapter):
    """Adapter base for brokers spoken to over REST with httpx."""

    base_url: str = ""

    def __init__(self, credentials: BrokerCredentials, settings: Settings,
                 metrics: Optional[PrometheusMetricsCollector] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(credentials, settings, metrics)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.settings.brokers.http_timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _headers(self, authenticated: bool = True) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Accept": "application/json"}

    async def _request(self, method: str, path: str, operation: str, *,
                       authenticated: bool = True,
                       json: Optional[Any] = None,
                       data: Optional[Any] = None,
                       content: Optional[str] = None,
                       params: Optional[Mapping[str, Any]] = None,
                       headers: Optional[Mapping[str, str]] = None) -> Any:
        """Send one request and translate transport and HTTP failures."""
        request_headers = self._headers(authenticated)
        if data is not None or content is not None:
            request_headers.pop("Content-Type", None)
        if headers:
            request_headers.update(headers)

        started = time.perf_counter()
        try:
            response = await self.client.request(
                method, path, json=json, data=data, content=content, params=params,
                headers=request_headers,
            )
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{self.kind.value} {operation} timed out", self.kind.value) from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{self.kind.value} {operation} failed: {e}", self.kind.value) from e
        finally:
            self._observe(operation, started)

        payload = self._decode(response)
        if response.status_code == 401:
            raise AuthExpiredError(
                self._error_message(payload) or "Session rejected by broker",
                self.kind.value,
                details={"status_code": 401, "operation": operation},
            )
        if response.status_code in (502, 503, 504):
            raise TransientNetworkError(
                f"{self.kind.value} {operation} unavailable (HTTP {response.status_code})",
                self.kind.value,
            )
        self._check_payload(response, payload, operation)
        return payload

    def _decode(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}

    def _error_message(self, payload: Any) -> Optional[str]:
        if isinstance(payload, dict):
            for key in ("message", "emsg", "error", "errors"):
                value = payload.get(key)
                if isinstance(value, list) and value:
                    first = value[0]
                    return first.get("message") if isinstance(first, dict) else str(first)
                if value:
                    return str(value)
        return None

    def _check_payload(self, response: httpx.Response, payload: Any, operation: str) -> None:
        """Raise for HTTP error statuses; adapters refine with broker semantics."""
        if response.status_code >= 400:
            raise InternalBrokerError(
                self._error_message(payload) or f"HTTP {response.status_code}",
                self.kind.value,
                api_error_code=str(response.status_code),
                api_response=payload if isinstance(payload, dict) else {"raw": payload},
                details={"operation": operation},
            )
