"""Drives connect, login, refresh, reconnect and disconnect flows per broker."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.config.settings import Settings
from core.database.models import BrokerConnection
from core.logging import get_audit_logger_safe, get_error_logger_safe, get_logger
from core.utils.exceptions import (
    AuthExpiredError,
    DecryptionError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from services.brokers import AuthMethod, BrokerAdapter, BrokerKind
from services.brokers.factory import ADAPTER_CLASSES, REQUIRED_CREDENTIALS, parse_broker_kind
from .models import AuthOutcome, ConnectionState, OAuthState, as_utc, token_usable
from .provider import AdapterProvider
from .registry import SECRET_FIELDS, ConnectionRegistry
from .security import decode_oauth_state, encode_oauth_state

logger = get_logger("auth.orchestrator", component="auth")
audit_logger = get_audit_logger_safe("auth.orchestrator")
error_logger = get_error_logger_safe("auth.orchestrator")

# States from which an OAuth callback may complete
CALLBACK_STATES = (ConnectionState.PENDING_AUTH.value, ConnectionState.EXPIRED.value)


class AuthOrchestrator:
    """Owns the connection lifecycle and the background expiry sweep."""

    def __init__(self, settings: Settings, registry: ConnectionRegistry, provider: AdapterProvider):
        self.settings = settings
        self.registry = registry
        self.provider = provider
        self._sweep_task: Optional[asyncio.Task] = None
        self._running = False

    # --- lifecycle ---
    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._sweep_task = asyncio.create_task(self._expiry_sweep_loop())
        logger.info("Auth orchestrator started",
                    check_interval=self.settings.auth.expiry_check_interval_seconds)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        await self.provider.cache.clear()
        logger.info("Auth orchestrator stopped")

    # --- connect ---
    async def connect(self, user_id: str, broker: str, secrets: Dict[str, Optional[str]], *,
                      connection_name: Optional[str] = None,
                      redirect_uri: Optional[str] = None,
                      config: Optional[Dict[str, Any]] = None,
                      base_url: Optional[str] = None) -> AuthOutcome:
        kind = parse_broker_kind(broker)
        missing = [name for name in REQUIRED_CREDENTIALS[kind] if not (secrets.get(name) or "").strip()]
        if missing:
            raise ValidationError(f"Missing required credentials for {kind.value}: {', '.join(missing)}",
                                  field=missing[0])

        limit = self.settings.webhook.max_connections_per_user
        if await self.registry.count_active(user_id) >= limit:
            raise ValidationError(f"Maximum of {limit} active broker connections reached",
                                  field="broker")

        adapter_cls = ADAPTER_CLASSES[kind]
        if adapter_cls.auth_method == AuthMethod.OAUTH and not redirect_uri:
            redirect_uri = self.settings.oauth_redirect_url(kind.value, base_url)

        cleaned = {name: (secrets.get(name) or "").strip() or None for name in SECRET_FIELDS}
        connection = await self.registry.create(
            user_id,
            kind.value,
            connection_name or f"{kind.value.title()} connection",
            cleaned,
            redirect_uri=redirect_uri,
            config=config,
        )
        connection = await self.registry.transition(connection, ConnectionState.PENDING_AUTH, "connect")

        webhook_url = self.settings.webhook_url(user_id, connection.webhook_id)
        extra = {"webhook_id": connection.webhook_id, "webhook_url": webhook_url, "broker": kind.value}
        if adapter_cls.auth_method == AuthMethod.OAUTH:
            login_url = self._login_url(connection, reconnect=False, base_url=base_url)
            return AuthOutcome(connection.id, ConnectionState.PENDING_AUTH,
                               "Broker connection created. Complete authentication with the login URL.",
                               login_url=login_url, extra=extra)
        return AuthOutcome(connection.id, ConnectionState.PENDING_AUTH,
                           "Broker connection created. Submit login credentials to authenticate.",
                           requires_credentials=True, extra=extra)

    def _login_url(self, connection: BrokerConnection, reconnect: bool,
                   base_url: Optional[str] = None) -> str:
        state = encode_oauth_state(
            OAuthState(connection.id, connection.user_id, connection.broker_kind, reconnect),
            self.settings,
        )
        adapter = self.provider.build_for_login(connection)
        redirect = connection.redirect_uri or self.settings.oauth_redirect_url(connection.broker_kind, base_url)
        return adapter.login_url(state, redirect)

    async def auth_url(self, user_id: str, connection_id: int, base_url: Optional[str] = None) -> AuthOutcome:
        """Issue a fresh login URL for a connection waiting on OAuth."""
        connection = await self.registry.get_for_user(connection_id, user_id)
        self._require_method(connection, AuthMethod.OAUTH)
        if connection.state not in CALLBACK_STATES:
            raise InvalidStateTransition("Login URL is only available before authentication completes",
                                         current=connection.state, target=ConnectionState.PENDING_AUTH.value)
        state = ConnectionState(connection.state)
        connection = await self.registry.transition(connection, state, "auth_url_reissued")
        login_url = self._login_url(connection, reconnect=state == ConnectionState.EXPIRED, base_url=base_url)
        return AuthOutcome(connection.id, state, "Login URL generated", login_url=login_url)

    # --- OAuth ---
    async def oauth_callback(self, broker: str, params: Dict[str, Any]) -> AuthOutcome:
        kind = parse_broker_kind(broker)
        connection = await self._resolve_callback_connection(kind, params.get("state"))
        if connection.state not in CALLBACK_STATES:
            raise InvalidStateTransition("Connection is not waiting for an OAuth callback",
                                         current=connection.state,
                                         target=ConnectionState.AUTHENTICATED.value)

        adapter = self.provider.build_for_login(connection)
        try:
            result = await adapter.authenticate(**params)
            expires_at = adapter.compute_expiry(result)
        finally:
            await adapter.close()

        connection = await self.registry.store_session(connection, result, expires_at, "oauth_callback")
        await self.provider.invalidate(connection.id)
        audit_logger.info("OAuth authentication completed", connection_id=connection.id,
                          broker=kind.value, expires_at=expires_at.isoformat())
        return AuthOutcome(connection.id, ConnectionState.AUTHENTICATED,
                           "Broker authenticated successfully", expires_at=expires_at,
                           extra={"broker_user_id": connection.broker_user_id})

    async def _resolve_callback_connection(self, kind: BrokerKind, raw_state: Optional[str]) -> BrokerConnection:
        state = decode_oauth_state(raw_state, self.settings)
        if state is not None:
            if state.broker != kind.value:
                raise ValidationError("OAuth state was issued for a different broker", field="state")
            connection = await self.registry.get(state.connection_id)
            if connection.user_id != state.user_id:
                raise ValidationError("OAuth state does not match the connection owner", field="state")
            return connection

        if not self.settings.auth.allow_state_fallback:
            raise ValidationError("Missing or invalid OAuth state; start the login again", field="state")

        connection = await self.registry.repository.latest_unauthenticated(kind.value, CALLBACK_STATES)
        if connection is None:
            raise NotFoundError("No connection is waiting for this broker's OAuth callback",
                                details={"broker": kind.value})
        error_logger.warning("OAuth callback matched by fallback; state was missing or invalid",
                             broker=kind.value, connection_id=connection.id,
                             user_id=connection.user_id, state_present=bool(raw_state))
        return connection

    # --- credential logins (manual, hashed, gateway) ---
    async def login(self, user_id: str, connection_id: int, credentials: Dict[str, Any]) -> AuthOutcome:
        connection = await self.registry.get_for_user(connection_id, user_id)
        method = ADAPTER_CLASSES[parse_broker_kind(connection.broker_kind)].auth_method
        if method == AuthMethod.OAUTH:
            raise ValidationError("This broker authenticates through its login URL", field="broker")
        if connection.state in (ConnectionState.CREATED.value, ConnectionState.DISCONNECTED.value):
            raise InvalidStateTransition("Connection cannot be logged in from its current state",
                                         current=connection.state,
                                         target=ConnectionState.AUTHENTICATED.value)

        # Fresh secrets replace undecryptable or changed ones
        supplied = {k: v for k, v in credentials.items() if k in SECRET_FIELDS and v}
        if supplied:
            await self.registry.update_secrets(connection, supplied)
            connection = await self.registry.get(connection.id)

        config = dict(connection.broker_specific_config or {})
        if credentials.get("server_url"):
            config["server_url"] = credentials["server_url"]

        try:
            adapter = self.provider.build_for_login(connection)
        except DecryptionError:
            await self.registry.mark_needs_credentials(connection, "decrypt_failed_on_login")
            raise
        try:
            adapter.credentials.config.update(config)
            result = await adapter.authenticate(**credentials)
            expires_at = adapter.compute_expiry(result)
            adapter.use_session(result)
            config.update(adapter.credentials.config)
        finally:
            await adapter.close()

        connection = await self.registry.store_session(connection, result, expires_at,
                                                       f"{method.value}_login", config=config)
        await self.provider.invalidate(connection.id)
        return AuthOutcome(connection.id, ConnectionState.AUTHENTICATED,
                           "Broker authenticated successfully", expires_at=expires_at,
                           extra={"broker_user_id": connection.broker_user_id})

    # --- refresh ---
    async def refresh(self, user_id: str, connection_id: int) -> AuthOutcome:
        connection = await self.registry.get_for_user(connection_id, user_id)
        return await self._refresh(connection, "refresh")

    async def _refresh(self, connection: BrokerConnection, reason: str) -> AuthOutcome:
        adapter_cls = ADAPTER_CLASSES[parse_broker_kind(connection.broker_kind)]
        if not adapter_cls.supports_refresh:
            raise ValidationError(f"{connection.broker_kind} does not support token refresh; reconnect instead",
                                  field="broker")
        if connection.state not in (ConnectionState.AUTHENTICATED.value, ConnectionState.EXPIRED.value):
            raise InvalidStateTransition("Only authenticated or expired connections can be refreshed",
                                         current=connection.state,
                                         target=ConnectionState.AUTHENTICATED.value)
        adapter = self.provider.build(connection)
        try:
            result = await adapter.refresh()
            expires_at = adapter.compute_expiry(result)
        except AuthExpiredError:
            await self.registry.mark_expired(connection, "refresh_rejected", keep_refresh_token=False)
            await self.provider.invalidate(connection.id)
            raise
        finally:
            await adapter.close()

        connection = await self.registry.store_session(connection, result, expires_at, reason)
        await self.provider.invalidate(connection.id)
        return AuthOutcome(connection.id, ConnectionState.AUTHENTICATED, "Access token refreshed",
                           expires_at=expires_at)

    # --- reconnect / disconnect / delete ---
    async def reconnect(self, user_id: str, connection_id: int, base_url: Optional[str] = None) -> AuthOutcome:
        connection = await self.registry.get_for_user(connection_id, user_id)
        if connection.state == ConnectionState.DISCONNECTED.value:
            raise InvalidStateTransition("Disconnected connections cannot be reconnected; create a new one",
                                         current=connection.state,
                                         target=ConnectionState.PENDING_AUTH.value)
        if connection.state == ConnectionState.AUTHENTICATED.value:
            connection = await self.registry.mark_expired(connection, "reconnect_requested",
                                                          keep_refresh_token=False)
        await self.provider.invalidate(connection.id)

        state = ConnectionState(connection.state)
        method = ADAPTER_CLASSES[parse_broker_kind(connection.broker_kind)].auth_method
        if method == AuthMethod.OAUTH:
            login_url = self._login_url(connection, reconnect=True, base_url=base_url)
            return AuthOutcome(connection.id, state, "Complete authentication with the login URL",
                               login_url=login_url)
        return AuthOutcome(
            connection.id, state, "Submit login credentials to re-authenticate",
            requires_credentials=True,
            extra={
                "broker": connection.broker_kind,
                "connection_name": connection.connection_name,
                "broker_user_id": connection.broker_user_id,
                "needs_credentials": connection.needs_credentials,
            },
        )

    async def disconnect(self, user_id: str, connection_id: int) -> AuthOutcome:
        connection = await self.registry.get_for_user(connection_id, user_id)
        if token_usable(connection.state, connection.access_token_expires_at):
            try:
                adapter = await self.provider.get_adapter(connection)
                await adapter.invalidate_session()
            except Exception as e:
                # Local state is wiped regardless of the broker-side logout
                logger.warning("Broker-side logout failed", connection_id=connection.id,
                               broker=connection.broker_kind, error=str(e))
        connection = await self.registry.disconnect(connection, "user_disconnect")
        await self.provider.invalidate(connection.id)
        return AuthOutcome(connection.id, ConnectionState.DISCONNECTED, "Broker disconnected")

    async def delete(self, user_id: str, connection_id: int) -> None:
        connection = await self.registry.get_for_user(connection_id, user_id)
        await self.provider.invalidate(connection.id)
        await self.registry.delete(connection)

    # --- adapter access for trading paths ---
    async def adapter_for(self, connection: BrokerConnection) -> BrokerAdapter:
        """Session-bound adapter; expired or undecryptable connections are flagged on the way out."""
        try:
            return await self.provider.get_adapter(connection)
        except AuthExpiredError:
            await self.handle_auth_failure(connection, "token_not_usable")
            raise
        except DecryptionError:
            await self.registry.mark_needs_credentials(connection, "decrypt_failed")
            raise

    async def handle_auth_failure(self, connection: BrokerConnection, reason: str) -> None:
        await self.provider.invalidate(connection.id)
        await self.registry.mark_expired(connection, reason)

    async def test_connection(self, user_id: str, connection_id: int) -> Dict[str, Any]:
        connection = await self.registry.get_for_user(connection_id, user_id)
        adapter = await self.adapter_for(connection)
        try:
            profile = await adapter.test_connection()
        except AuthExpiredError:
            await self.handle_auth_failure(connection, "test_connection_rejected")
            raise
        await self.registry.touch_sync(connection, datetime.now(timezone.utc))
        return {"connection_id": connection.id, "broker": connection.broker_kind, "profile": profile}

    # --- status ---
    async def list_connections(self, user_id: str) -> List[Dict[str, Any]]:
        connections = await self.registry.repository.list_for_user(user_id)
        return [self.status_summary(c) for c in connections]

    async def connection_status(self, user_id: str, connection_id: int) -> Dict[str, Any]:
        return self.status_summary(await self.registry.get_for_user(connection_id, user_id))

    def status_summary(self, connection: BrokerConnection, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Connection view without any secret material."""
        now = now or datetime.now(timezone.utc)
        expires_at = as_utc(connection.access_token_expires_at)
        usable = token_usable(connection.state, expires_at, now)
        adapter_cls = ADAPTER_CLASSES[parse_broker_kind(connection.broker_kind)]
        return {
            "id": connection.id,
            "broker": connection.broker_kind,
            "connection_name": connection.connection_name,
            "state": connection.state,
            "is_active": connection.is_active,
            "is_authenticated": usable,
            "token_expired": expires_at is not None and now >= expires_at,
            "expires_at": expires_at.isoformat() if expires_at else None,
            "expires_in_seconds": max(0, int((expires_at - now).total_seconds())) if usable else 0,
            "needs_reconnect": connection.is_active and not usable,
            "needs_credentials": connection.needs_credentials,
            "auth_method": adapter_cls.auth_method.value,
            "supports_refresh": adapter_cls.supports_refresh,
            "broker_user_id": connection.broker_user_id,
            "webhook_id": connection.webhook_id,
            "webhook_url": self.settings.webhook_url(connection.user_id, connection.webhook_id),
            "last_sync": connection.last_sync.isoformat() if connection.last_sync else None,
        }

    # --- expiry sweep ---
    async def expire_due_connections(self, now: Optional[datetime] = None) -> int:
        """Move Authenticated connections past their expiry to Expired; refresh where possible."""
        due = await self.registry.repository.list_expired_authenticated(now)
        for connection in due:
            await self.provider.invalidate(connection.id)
            expired = await self.registry.mark_expired(connection, "token_expiry_reached")
            if ADAPTER_CLASSES[parse_broker_kind(connection.broker_kind)].supports_refresh \
                    and expired.encrypted_refresh_token:
                try:
                    await self._refresh(expired, "auto_refresh")
                except Exception as e:
                    logger.warning("Automatic token refresh failed", connection_id=connection.id,
                                   broker=connection.broker_kind, error=str(e))
        if due:
            logger.info("Expired broker sessions swept", count=len(due))
        return len(due)

    async def _expiry_sweep_loop(self) -> None:
        logger.info("Token expiry sweep started")
        while self._running:
            try:
                await asyncio.sleep(self.settings.auth.expiry_check_interval_seconds)
                await self.expire_due_connections()
            except asyncio.CancelledError:
                break
            except Exception as e:
                error_logger.error("Token expiry sweep error", error=str(e), exc_info=True)
        logger.info("Token expiry sweep stopped")

    def _require_method(self, connection: BrokerConnection, method: AuthMethod) -> None:
        actual = ADAPTER_CLASSES[parse_broker_kind(connection.broker_kind)].auth_method
        if actual != method:
            raise ValidationError(f"{connection.broker_kind} does not use {method.value} authentication",
                                  field="broker")
