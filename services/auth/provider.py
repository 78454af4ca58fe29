"""Builds broker adapters for stored connections."""

from typing import Optional

import httpx

from core.config.settings import Settings
from core.database.models import BrokerConnection
from core.logging import get_broker_logger_safe
from core.monitoring import PrometheusMetricsCollector
from core.security.vault import CredentialVault
from core.utils.exceptions import AuthExpiredError
from services.brokers import AdapterClientCache, BrokerAdapter, BrokerCredentials, create_adapter
from services.brokers.factory import parse_broker_kind
from .models import as_utc, token_usable

logger = get_broker_logger_safe("auth.provider")


class AdapterProvider:
    """Decrypts connection secrets and hands out cached, session-bound adapters."""

    def __init__(self, settings: Settings, vault: CredentialVault, cache: AdapterClientCache,
                 metrics: Optional[PrometheusMetricsCollector] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.vault = vault
        self.cache = cache
        self.metrics = metrics
        # Test hook; production adapters use the default httpx transport
        self.transport = transport

    def credentials_for(self, connection: BrokerConnection, include_session: bool = True) -> BrokerCredentials:
        """Decrypt one connection. Raises DecryptionError on a corrupt or foreign ciphertext."""
        vault = self.vault
        credentials = BrokerCredentials(
            connection_id=connection.id,
            broker_kind=parse_broker_kind(connection.broker_kind),
            api_key=vault.decrypt_optional(connection.encrypted_api_key),
            api_secret=vault.decrypt_optional(connection.encrypted_api_secret),
            client_code=vault.decrypt_optional(connection.encrypted_client_code),
            password=vault.decrypt_optional(connection.encrypted_password),
            pin=vault.decrypt_optional(connection.encrypted_pin),
            two_fa=vault.decrypt_optional(connection.encrypted_two_fa),
            broker_user_id=connection.broker_user_id,
            redirect_uri=connection.redirect_uri,
            config=dict(connection.broker_specific_config or {}),
        )
        if include_session:
            credentials.access_token = vault.decrypt_optional(connection.encrypted_access_token)
            credentials.refresh_token = vault.decrypt_optional(connection.encrypted_refresh_token)
            credentials.feed_token = vault.decrypt_optional(connection.encrypted_feed_token)
            credentials.expires_at = as_utc(connection.access_token_expires_at)
        return credentials

    def build(self, connection: BrokerConnection, include_session: bool = True) -> BrokerAdapter:
        """Uncached adapter, used for login flows that run before a session exists."""
        credentials = self.credentials_for(connection, include_session=include_session)
        return create_adapter(credentials, self.settings, self.metrics, transport=self.transport)

    def build_for_login(self, connection: BrokerConnection) -> BrokerAdapter:
        return self.build(connection, include_session=False)

    async def get_adapter(self, connection: BrokerConnection) -> BrokerAdapter:
        """Cached adapter for an Authenticated connection with an unexpired token."""
        if not token_usable(connection.state, connection.access_token_expires_at):
            raise AuthExpiredError(
                "Broker session is expired or not authenticated; reconnect required",
                connection.broker_kind,
                details={"connection_id": connection.id, "state": connection.state},
            )

        async def factory() -> BrokerAdapter:
            logger.debug("Initializing adapter from stored session", connection_id=connection.id,
                         broker=connection.broker_kind)
            return self.build(connection)

        return await self.cache.get_or_create(connection.id, factory)

    async def invalidate(self, connection_id: int) -> None:
        await self.cache.invalidate(connection_id)
