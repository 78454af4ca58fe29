"""
Pytest configuration and shared fixtures for AutoTrader Hub tests.
"""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from cryptography.fernet import Fernet
from prometheus_client import CollectorRegistry

from core.config.settings import (
    AuthSettings,
    DatabaseSettings,
    LoggingSettings,
    OrderStatusSettings,
    Settings,
    VaultSettings,
)
from core.database.connection import DatabaseManager
from core.database.repositories import (
    ConnectionRepository,
    OrderRepository,
    PositionRepository,
    WebhookLogRepository,
)
from core.monitoring.prometheus_metrics import PrometheusMetricsCollector
from core.security.vault import CredentialVault
from services.auth import AdapterProvider, AuthOrchestrator, ConnectionRegistry, ConnectionState
from services.brokers import AdapterClientCache, AuthResult
from tests.mocks.fake_adapter import FakeAdapter


@pytest.fixture
def test_settings():
    """Test settings configuration."""
    return Settings(
        environment="testing",
        database=DatabaseSettings(url="sqlite+aiosqlite:///:memory:"),
        vault=VaultSettings(encryption_key=Fernet.generate_key().decode()),
        auth=AuthSettings(secret_key="test-secret-key", expiry_check_interval_seconds=3600),
        order_status=OrderStatusSettings(poll_interval_seconds=0.01, max_polling_seconds=5),
        logging=LoggingSettings(file_enabled=False, multi_channel_enabled=False, json_format=False),
    )


@pytest.fixture
def vault(test_settings):
    return CredentialVault(test_settings.encryption_key)


@pytest.fixture
def metrics():
    return PrometheusMetricsCollector(registry=CollectorRegistry())


@pytest.fixture
async def db_manager(test_settings):
    """In-memory sqlite database with the full schema."""
    manager = DatabaseManager(test_settings.database.url, environment="testing")
    await manager.init()
    yield manager
    await manager.shutdown()


@pytest.fixture
def connection_repository(db_manager):
    return ConnectionRepository(db_manager)


@pytest.fixture
def order_repository(db_manager):
    return OrderRepository(db_manager)


@pytest.fixture
def position_repository(db_manager):
    return PositionRepository(db_manager)


@pytest.fixture
def webhook_log_repository(db_manager):
    return WebhookLogRepository(db_manager)


@pytest.fixture
def registry(connection_repository, vault, metrics):
    return ConnectionRegistry(connection_repository, vault, metrics)


@pytest.fixture
def adapter_cache():
    return AdapterClientCache()


@pytest.fixture
def provider(test_settings, vault, adapter_cache, metrics):
    return AdapterProvider(test_settings, vault, adapter_cache, metrics)


@pytest.fixture
def orchestrator(test_settings, registry, provider):
    return AuthOrchestrator(test_settings, registry, provider)


@pytest.fixture
def fake_adapter():
    return FakeAdapter()


@pytest.fixture
def authenticated_connection(registry):
    """Factory for a connection that has completed login."""
    async def _create(broker="zerodha", user_id="user-1", expires_in=timedelta(hours=6), **secrets):
        secrets = secrets or {"api_key": "key", "api_secret": "secret"}
        connection = await registry.create(user_id, broker, f"{broker} test", secrets)
        connection = await registry.transition(connection, ConnectionState.PENDING_AUTH, "test")
        return await registry.store_session(
            connection,
            AuthResult(access_token="access-token", refresh_token="refresh-token", broker_user_id="AB1234"),
            datetime.now(timezone.utc) + expires_in,
            "test_login",
        )
    return _create


@pytest.fixture
def mock_orchestrator(fake_adapter):
    """Orchestrator stand-in whose adapter_for hands back the fake adapter."""
    orchestrator = MagicMock(spec=AuthOrchestrator)
    orchestrator.adapter_for = AsyncMock(return_value=fake_adapter)
    orchestrator.handle_auth_failure = AsyncMock()
    orchestrator.registry = MagicMock(spec=ConnectionRegistry)
    return orchestrator
