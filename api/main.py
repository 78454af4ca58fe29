from contextlib import asynccontextmanager
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from api.middleware.error_handling import ErrorHandlingMiddleware, register_exception_handlers
from api.middleware.request_ids import RequestIdMiddleware
from api.routers import broker_auth, brokers, webhook
from app.containers import AppContainer
from core.config.settings import Environment, Settings
from core.logging import configure_logging, get_api_logger_safe

logger = get_api_logger_safe("api.main")

WIRED_MODULES = [
    "api.dependencies",
    "api.routers.webhook",
    "api.routers.brokers",
    "api.routers.broker_auth",
]

API_DESCRIPTION = """
Turns webhook trade signals into broker orders and follows each order until
the broker reports a final status.

* `POST /api/v1/webhook/{user_id}/{webhook_id}` places an order
* `/api/v1/brokers/...` manages broker connections (bearer token required)
* `/api/v1/broker/auth/{broker}/callback` receives OAuth redirects
"""


async def start_services(container: AppContainer) -> None:
    settings = container.settings()
    await container.db_manager().init()
    await container.auth_orchestrator().start()
    if settings.order_status.resume_on_startup:
        resumed = await container.order_status_reconciler().resume_pending()
        logger.info("Resumed order status polling", orders=resumed)


async def stop_services(container: AppContainer) -> None:
    # Pollers first; they still need the database and broker sessions
    await container.order_status_reconciler().stop_all()
    await container.auth_orchestrator().stop()
    await container.db_manager().shutdown()


@asynccontextmanager
async def lifespan(app: FastAPI):
    container: AppContainer = app.state.container
    logger.info("Starting AutoTrader Hub API")
    try:
        await start_services(container)
    except Exception as e:
        logger.error("Failed to start services", error=str(e))
        raise

    yield

    logger.info("Stopping AutoTrader Hub API")
    try:
        await stop_services(container)
    except Exception as e:
        logger.error("Error while stopping services", error=str(e))


def add_cors(app: FastAPI, settings: Settings) -> None:
    origins = settings.api.cors_origins
    if settings.environment == Environment.PRODUCTION and "*" in origins:
        raise ValueError("API__CORS_ORIGINS may not contain '*' in production")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=settings.api.cors_credentials,
        allow_methods=settings.api.cors_methods,
        allow_headers=settings.api.cors_headers,
    )


def create_app(container: AppContainer | None = None) -> FastAPI:
    """Build the FastAPI app around a (possibly overridden) container."""
    container = container or AppContainer()
    settings = container.settings()
    configure_logging(settings)

    app = FastAPI(
        title="AutoTrader Hub API",
        version=settings.version,
        description=API_DESCRIPTION,
        lifespan=lifespan,
    )
    app.state.container = container
    container.wire(modules=WIRED_MODULES)

    register_exception_handlers(app)
    # Last added runs first
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(RequestIdMiddleware)
    add_cors(app, settings)

    for router, tag in ((webhook.router, "Webhook"),
                        (brokers.router, "Brokers"),
                        (broker_auth.router, "Broker Authentication")):
        app.include_router(router, prefix="/api/v1", tags=[tag])

    registry = container.prometheus_registry()

    @app.get("/health", tags=["Health"])
    def health():
        return {
            "status": "healthy",
            "service": "autotrader-hub-api",
            "version": settings.version,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "active_polling_tasks": len(container.order_status_reconciler().active_keys()),
        }

    @app.get("/metrics", tags=["Monitoring"])
    def metrics():
        return Response(content=generate_latest(registry), media_type=CONTENT_TYPE_LATEST)

    @app.get("/", tags=["Root"])
    def root():
        return {
            "service": "AutoTrader Hub API",
            "version": settings.version,
            "docs": "/docs",
            "health": "/health",
            "api_prefix": "/api/v1",
        }

    return app


def run(host: str = "0.0.0.0", port: int = 8000):
    # Keep the handlers installed by configure_logging; only tune uvicorn levels
    log_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "loggers": {name: {"level": "INFO", "propagate": False}
                    for name in ("uvicorn", "uvicorn.error", "uvicorn.access")},
    }
    uvicorn.run(create_app(), host=host, port=port, log_config=log_config)


if __name__ == "__main__":
    run()
