from fastapi import APIRouter, Depends, Query
from dependency_injector.wiring import inject, Provide
from typing import Any, Dict, Optional

from api.dependencies import get_current_user_id, get_limit_param
from api.schemas.brokers import BrokerLoginRequest, ConnectBrokerRequest, ShoonyaCredentialCheckRequest
from app.containers import AppContainer
from core.database.models import Order, WebhookLog
from core.database.repositories import OrderRepository, WebhookLogRepository
from core.logging import get_api_logger_safe, get_audit_logger_safe
from services.auth import AuthOrchestrator
from services.brokers.shoonya import check_credentials
from services.order_status import OrderStatusReconciler
from services.positions import PositionSyncService

router = APIRouter(tags=["Brokers"])

api_logger = get_api_logger_safe("brokers_api")
audit_logger = get_audit_logger_safe("brokers_audit")


def _order_view(order: Order) -> Dict[str, Any]:
    return {
        "id": order.id,
        "connection_id": order.broker_connection_id,
        "broker_order_id": order.broker_order_id,
        "symbol": order.symbol,
        "exchange": order.exchange,
        "transaction_type": order.transaction_type,
        "quantity": order.quantity,
        "order_type": order.order_type,
        "product": order.product,
        "price": order.price,
        "trigger_price": order.trigger_price,
        "status": order.status,
        "status_message": order.status_message,
        "executed_price": order.executed_price,
        "executed_quantity": order.executed_quantity,
        "pnl": order.pnl,
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "updated_at": order.updated_at.isoformat() if order.updated_at else None,
    }


def _log_view(log: WebhookLog) -> Dict[str, Any]:
    return {
        "id": log.id,
        "webhook_id": log.webhook_id,
        "order_id": log.order_id,
        "status": log.status,
        "error_message": log.error_message,
        "processing_time_ms": log.processing_time_ms,
        "payload": log.payload,
        "created_at": log.created_at.isoformat() if log.created_at else None,
    }


# --- connection lifecycle ---

@router.post("/brokers/connect")
@inject
async def connect_broker(
    body: ConnectBrokerRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: AuthOrchestrator = Depends(Provide[AppContainer.auth_orchestrator]),
):
    """Create a connection; OAuth brokers get a login URL back."""
    outcome = await orchestrator.connect(
        user_id,
        body.broker,
        body.secrets(),
        connection_name=body.connection_name,
        redirect_uri=body.redirect_uri,
        config=body.config,
    )
    audit_logger.info("Broker connection created",
                      user_id=user_id,
                      broker=body.broker,
                      connection_id=outcome.connection_id,
                      action="BROKER_CONNECT")
    return {"success": True, **outcome.to_dict()}


@router.get("/brokers/connections")
@inject
async def list_connections(
    user_id: str = Depends(get_current_user_id),
    orchestrator: AuthOrchestrator = Depends(Provide[AppContainer.auth_orchestrator]),
):
    return {"connections": await orchestrator.list_connections(user_id)}


@router.get("/brokers/connections/{connection_id}/status")
@inject
async def connection_status(
    connection_id: int,
    user_id: str = Depends(get_current_user_id),
    orchestrator: AuthOrchestrator = Depends(Provide[AppContainer.auth_orchestrator]),
):
    return await orchestrator.connection_status(user_id, connection_id)


@router.post("/brokers/connections/{connection_id}/auth-url")
@inject
async def regenerate_auth_url(
    connection_id: int,
    user_id: str = Depends(get_current_user_id),
    orchestrator: AuthOrchestrator = Depends(Provide[AppContainer.auth_orchestrator]),
):
    outcome = await orchestrator.auth_url(user_id, connection_id)
    return {"success": True, **outcome.to_dict()}


@router.post("/brokers/connections/{connection_id}/login")
@inject
async def login_broker(
    connection_id: int,
    body: BrokerLoginRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: AuthOrchestrator = Depends(Provide[AppContainer.auth_orchestrator]),
):
    """Manual (Angel), hashed (Shoonya) and gateway (MT4/MT5) logins."""
    outcome = await orchestrator.login(user_id, connection_id, body.to_credentials())
    audit_logger.info("Broker login completed",
                      user_id=user_id,
                      connection_id=connection_id,
                      action="BROKER_LOGIN")
    return {"success": True, **outcome.to_dict()}


@router.post("/brokers/connections/{connection_id}/refresh")
@inject
async def refresh_token(
    connection_id: int,
    user_id: str = Depends(get_current_user_id),
    orchestrator: AuthOrchestrator = Depends(Provide[AppContainer.auth_orchestrator]),
):
    outcome = await orchestrator.refresh(user_id, connection_id)
    return {"success": True, **outcome.to_dict()}


@router.post("/brokers/connections/{connection_id}/reconnect")
@inject
async def reconnect_broker(
    connection_id: int,
    user_id: str = Depends(get_current_user_id),
    orchestrator: AuthOrchestrator = Depends(Provide[AppContainer.auth_orchestrator]),
):
    outcome = await orchestrator.reconnect(user_id, connection_id)
    return {"success": True, **outcome.to_dict()}


@router.post("/brokers/connections/{connection_id}/disconnect")
@inject
async def disconnect_broker(
    connection_id: int,
    user_id: str = Depends(get_current_user_id),
    orchestrator: AuthOrchestrator = Depends(Provide[AppContainer.auth_orchestrator]),
):
    outcome = await orchestrator.disconnect(user_id, connection_id)
    audit_logger.info("Broker disconnected",
                      user_id=user_id,
                      connection_id=connection_id,
                      action="BROKER_DISCONNECT")
    return {"success": True, **outcome.to_dict()}


@router.delete("/brokers/connections/{connection_id}")
@inject
async def delete_connection(
    connection_id: int,
    user_id: str = Depends(get_current_user_id),
    orchestrator: AuthOrchestrator = Depends(Provide[AppContainer.auth_orchestrator]),
):
    await orchestrator.delete(user_id, connection_id)
    audit_logger.info("Broker connection deleted",
                      user_id=user_id,
                      connection_id=connection_id,
                      action="BROKER_DELETE")
    return {"success": True, "connection_id": connection_id}


@router.post("/brokers/connections/{connection_id}/test")
@inject
async def test_connection(
    connection_id: int,
    user_id: str = Depends(get_current_user_id),
    orchestrator: AuthOrchestrator = Depends(Provide[AppContainer.auth_orchestrator]),
):
    return {"success": True, **await orchestrator.test_connection(user_id, connection_id)}


@router.post("/brokers/shoonya/test-credentials")
async def shoonya_test_credentials(
    body: ShoonyaCredentialCheckRequest,
    user_id: str = Depends(get_current_user_id),
):
    """Shape check of Shoonya credentials without contacting the broker."""
    result = check_credentials(body.user_id, body.vendor_code, body.api_secret)
    api_logger.info("Shoonya credential check", user_id=user_id, valid=result["valid"])
    return result


# --- positions, orders, logs ---

@router.post("/brokers/connections/{connection_id}/sync-positions")
@inject
async def sync_positions(
    connection_id: int,
    user_id: str = Depends(get_current_user_id),
    positions: PositionSyncService = Depends(Provide[AppContainer.position_service]),
):
    return {"success": True, **await positions.sync_for_user(user_id, connection_id)}


@router.get("/brokers/connections/{connection_id}/holdings")
@inject
async def live_holdings(
    connection_id: int,
    user_id: str = Depends(get_current_user_id),
    positions: PositionSyncService = Depends(Provide[AppContainer.position_service]),
):
    """Holdings as the broker reports them right now."""
    return {"success": True, **await positions.live_holdings(user_id, connection_id)}


@router.get("/brokers/connections/{connection_id}/orders")
@inject
async def live_order_book(
    connection_id: int,
    user_id: str = Depends(get_current_user_id),
    positions: PositionSyncService = Depends(Provide[AppContainer.position_service]),
):
    return {"success": True, **await positions.live_orders(user_id, connection_id)}


@router.get("/brokers/positions")
@inject
async def list_positions(
    connection_id: Optional[int] = Query(None),
    user_id: str = Depends(get_current_user_id),
    positions: PositionSyncService = Depends(Provide[AppContainer.position_service]),
):
    return {"positions": await positions.list_positions(user_id, connection_id)}


@router.get("/orders")
@inject
async def list_orders(
    limit: int = Depends(get_limit_param),
    user_id: str = Depends(get_current_user_id),
    orders: OrderRepository = Depends(Provide[AppContainer.order_repository]),
):
    return {"orders": [_order_view(o) for o in await orders.list_for_user(user_id, limit)]}


@router.get("/webhook-logs")
@inject
async def list_webhook_logs(
    limit: int = Depends(get_limit_param),
    user_id: str = Depends(get_current_user_id),
    webhook_logs: WebhookLogRepository = Depends(Provide[AppContainer.webhook_log_repository]),
):
    return {"logs": [_log_view(log) for log in await webhook_logs.list_for_user(user_id, limit)]}


# --- order status polling ---

@router.get("/orders/polling/status")
@inject
async def polling_status(
    user_id: str = Depends(get_current_user_id),
    reconciler: OrderStatusReconciler = Depends(Provide[AppContainer.order_status_reconciler]),
):
    tracked = await reconciler.polling_status(user_id)
    return {"active": len(tracked), "orders": tracked}


@router.post("/orders/{order_id}/start-polling")
@inject
async def start_order_polling(
    order_id: int,
    user_id: str = Depends(get_current_user_id),
    reconciler: OrderStatusReconciler = Depends(Provide[AppContainer.order_status_reconciler]),
):
    result = await reconciler.start_for_user(user_id, order_id)
    api_logger.info("Order polling requested", user_id=user_id, **result)
    return {"success": True, **result}


@router.post("/orders/{order_id}/stop-polling")
@inject
async def stop_order_polling(
    order_id: int,
    user_id: str = Depends(get_current_user_id),
    reconciler: OrderStatusReconciler = Depends(Provide[AppContainer.order_status_reconciler]),
):
    result = await reconciler.stop_for_user(user_id, order_id)
    api_logger.info("Order polling stop requested", user_id=user_id, **result)
    return {"success": True, **result}
