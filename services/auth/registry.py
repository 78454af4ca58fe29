"""Persisted lifecycle of broker connections."""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from core.database.models import BrokerConnection
from core.database.repositories import ConnectionRepository
from core.logging import get_audit_logger_safe
from core.monitoring import PrometheusMetricsCollector
from core.security.vault import CredentialVault
from core.utils.exceptions import InvalidStateTransition, NotFoundError
from services.brokers import AuthResult
from .models import ConnectionState, assert_transition

audit_logger = get_audit_logger_safe("auth.registry")

SECRET_FIELDS = ("api_key", "api_secret", "client_code", "password", "pin", "two_fa")

WIPED_SESSION = {
    "encrypted_access_token": None,
    "encrypted_refresh_token": None,
    "encrypted_feed_token": None,
    "access_token_expires_at": None,
}


class ConnectionRegistry:
    """Reads and writes connection rows; every state change goes through ``transition``."""

    def __init__(self, repository: ConnectionRepository, vault: CredentialVault,
                 metrics: Optional[PrometheusMetricsCollector] = None):
        self.repository = repository
        self.vault = vault
        self.metrics = metrics

    async def create(self, user_id: str, broker_kind: str, connection_name: str,
                     secrets: Dict[str, Optional[str]], *,
                     redirect_uri: Optional[str] = None,
                     broker_user_id: Optional[str] = None,
                     config: Optional[Dict[str, Any]] = None) -> BrokerConnection:
        encrypted = {
            f"encrypted_{name}": self.vault.encrypt_optional(secrets.get(name))
            for name in SECRET_FIELDS
        }
        connection = await self.repository.create(
            user_id=user_id,
            broker_kind=broker_kind,
            connection_name=connection_name,
            webhook_id=str(uuid.uuid4()),
            redirect_uri=redirect_uri,
            broker_user_id=broker_user_id,
            broker_specific_config=config or {},
            state=ConnectionState.CREATED.value,
            is_active=True,
            needs_credentials=False,
            **encrypted,
        )
        audit_logger.info("Broker connection created", connection_id=connection.id,
                          user_id=user_id, broker=broker_kind)
        return connection

    async def get(self, connection_id: int) -> BrokerConnection:
        connection = await self.repository.get(connection_id)
        if connection is None:
            raise NotFoundError("Broker connection not found", details={"connection_id": connection_id})
        return connection

    async def get_for_user(self, connection_id: int, user_id: str) -> BrokerConnection:
        connection = await self.repository.get_for_user(connection_id, user_id)
        if connection is None:
            raise NotFoundError("Broker connection not found", details={"connection_id": connection_id})
        return connection

    async def get_active_by_webhook(self, user_id: str, webhook_id: str) -> BrokerConnection:
        connection = await self.repository.get_active_by_webhook(user_id, webhook_id)
        if connection is None:
            raise NotFoundError("No active broker connection found for this webhook",
                                details={"webhook_id": webhook_id})
        return connection

    async def count_active(self, user_id: str) -> int:
        return await self.repository.count_active_for_user(user_id)

    async def transition(self, connection: BrokerConnection, target: ConnectionState,
                         reason: str, **values: Any) -> BrokerConnection:
        """Move one connection along an allowed edge and persist ``values`` with it."""
        current = ConnectionState(connection.state)
        assert_transition(current, target)
        updated = await self.repository.update(
            connection.id, expected_state=current.value, state=target.value, **values
        )
        if not updated:
            fresh = await self.get(connection.id)
            raise InvalidStateTransition(
                "Connection changed state concurrently",
                current=fresh.state,
                target=target.value,
            )
        audit_logger.info("Connection state transition",
                          connection_id=connection.id,
                          user_id=connection.user_id,
                          broker=connection.broker_kind,
                          from_state=current.value,
                          to_state=target.value,
                          reason=reason)
        if self.metrics is not None and current != target:
            self.metrics.record_connection_state(connection.broker_kind, target.value)
        return await self.get(connection.id)

    async def store_session(self, connection: BrokerConnection, result: AuthResult,
                            expires_at: datetime, reason: str,
                            config: Optional[Dict[str, Any]] = None) -> BrokerConnection:
        values: Dict[str, Any] = {
            "encrypted_access_token": self.vault.encrypt(result.access_token),
            "access_token_expires_at": expires_at,
            "needs_credentials": False,
        }
        if result.refresh_token:
            values["encrypted_refresh_token"] = self.vault.encrypt(result.refresh_token)
        if result.feed_token:
            values["encrypted_feed_token"] = self.vault.encrypt(result.feed_token)
        if result.broker_user_id:
            values["broker_user_id"] = result.broker_user_id
        if config is not None:
            values["broker_specific_config"] = config
        return await self.transition(connection, ConnectionState.AUTHENTICATED, reason, **values)

    async def mark_expired(self, connection: BrokerConnection, reason: str,
                           keep_refresh_token: bool = True) -> BrokerConnection:
        """Authenticated -> Expired. Already-expired connections are left alone."""
        if connection.state != ConnectionState.AUTHENTICATED.value:
            return connection
        values: Dict[str, Any] = {"encrypted_access_token": None}
        if not keep_refresh_token:
            values.update(WIPED_SESSION)
        try:
            return await self.transition(connection, ConnectionState.EXPIRED, reason, **values)
        except InvalidStateTransition:
            # Another writer already moved it
            return await self.get(connection.id)

    async def mark_needs_credentials(self, connection: BrokerConnection, reason: str) -> None:
        await self.repository.update(connection.id, needs_credentials=True)
        audit_logger.warning("Connection flagged for credential re-entry",
                             connection_id=connection.id, broker=connection.broker_kind, reason=reason)

    async def update_secrets(self, connection: BrokerConnection, secrets: Dict[str, Optional[str]]) -> None:
        values = {
            f"encrypted_{name}": self.vault.encrypt(value)
            for name, value in secrets.items()
            if name in SECRET_FIELDS and value
        }
        if values:
            values["needs_credentials"] = False
            await self.repository.update(connection.id, **values)
            audit_logger.info("Connection credentials updated", connection_id=connection.id,
                              fields=sorted(values))

    async def touch_sync(self, connection: BrokerConnection, when: datetime) -> None:
        await self.repository.update(connection.id, last_sync=when)

    async def disconnect(self, connection: BrokerConnection, reason: str) -> BrokerConnection:
        """Terminal: tokens wiped, connection no longer routes webhooks."""
        return await self.transition(connection, ConnectionState.DISCONNECTED, reason,
                                     is_active=False, **WIPED_SESSION)

    async def delete(self, connection: BrokerConnection) -> None:
        await self.repository.delete(connection.id)
        audit_logger.info("Broker connection deleted", connection_id=connection.id,
                          user_id=connection.user_id, broker=connection.broker_kind)
