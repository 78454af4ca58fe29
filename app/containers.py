# Application DI container
from dependency_injector import containers, providers
from prometheus_client import CollectorRegistry

from core.config.settings import Settings
from core.database.connection import DatabaseManager
from core.database.repositories import (
    ConnectionRepository,
    OrderRepository,
    PositionRepository,
    WebhookLogRepository,
)
from core.monitoring.prometheus_metrics import PrometheusMetricsCollector
from core.security.vault import CredentialVault
from services.auth import AdapterProvider, AuthOrchestrator, ConnectionRegistry
from services.brokers import AdapterClientCache
from services.ingestion import OrderIngestionPipeline, StaticSymbolResolver
from services.order_status import OrderStatusReconciler
from services.positions import PositionSyncService


class AppContainer(containers.DeclarativeContainer):
    """Application dependency injection container"""

    # Configuration
    settings = providers.Singleton(Settings)

    # --- Observability: Prometheus ---
    # Shared registry used by API /metrics endpoint and collectors
    prometheus_registry = providers.Singleton(CollectorRegistry)
    prometheus_metrics = providers.Singleton(
        PrometheusMetricsCollector,
        registry=prometheus_registry,
    )

    # Database with environment awareness
    db_manager = providers.Singleton(
        DatabaseManager,
        db_url=settings.provided.database.url,
        environment=settings.provided.environment,
        schema_management=settings.provided.database.schema_management,
        echo=settings.provided.database.echo,
    )

    # Repositories
    connection_repository = providers.Singleton(ConnectionRepository, db_manager=db_manager)
    order_repository = providers.Singleton(OrderRepository, db_manager=db_manager)
    position_repository = providers.Singleton(PositionRepository, db_manager=db_manager)
    webhook_log_repository = providers.Singleton(WebhookLogRepository, db_manager=db_manager)

    # Secrets at rest
    vault = providers.Singleton(CredentialVault, key=settings.provided.encryption_key)

    # Broker sessions
    adapter_cache = providers.Singleton(AdapterClientCache)
    adapter_provider = providers.Singleton(
        AdapterProvider,
        settings=settings,
        vault=vault,
        cache=adapter_cache,
        metrics=prometheus_metrics,
    )

    # Connection lifecycle
    connection_registry = providers.Singleton(
        ConnectionRegistry,
        repository=connection_repository,
        vault=vault,
        metrics=prometheus_metrics,
    )
    auth_orchestrator = providers.Singleton(
        AuthOrchestrator,
        settings=settings,
        registry=connection_registry,
        provider=adapter_provider,
    )

    position_service = providers.Singleton(
        PositionSyncService,
        orchestrator=auth_orchestrator,
        positions=position_repository,
    )

    order_status_reconciler = providers.Singleton(
        OrderStatusReconciler,
        settings=settings,
        orders=order_repository,
        orchestrator=auth_orchestrator,
        positions=position_service,
        metrics=prometheus_metrics,
    )

    symbol_resolver = providers.Singleton(StaticSymbolResolver)

    ingestion_pipeline = providers.Singleton(
        OrderIngestionPipeline,
        settings=settings,
        orchestrator=auth_orchestrator,
        orders=order_repository,
        webhook_logs=webhook_log_repository,
        reconciler=order_status_reconciler,
        positions=position_service,
        symbol_resolver=symbol_resolver,
        metrics=prometheus_metrics,
    )
