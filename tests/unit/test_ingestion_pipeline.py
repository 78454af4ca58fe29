"""
End-to-end pipeline behaviour against real order and webhook-log repositories.
"""
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.utils.exceptions import (
    AuthExpiredError,
    InternalBrokerError,
    NotFoundError,
    OrderRejected,
    TransientNetworkError,
    ValidationError,
)
from services.brokers import BrokerCredentials, BrokerKind, OrderStatus, create_adapter
from services.ingestion import OrderIngestionPipeline, StaticSymbolResolver
from tests.mocks.broker_gateway import BrokerGateway

SIGNAL = {"symbol": "RELIANCE", "action": "BUY", "quantity": 10}


@pytest.fixture
def connection():
    return SimpleNamespace(id=1, user_id="user-1", broker_kind="zerodha", webhook_id="hook-1")


@pytest.fixture
def reconciler():
    reconciler = MagicMock()
    reconciler.start_polling.return_value = True
    return reconciler


@pytest.fixture
def positions():
    positions = MagicMock()
    positions.sync_quietly = AsyncMock(return_value=True)
    return positions


@pytest.fixture
def resolver():
    return StaticSymbolResolver({("zerodha", "NSE", "RELIANCE"): "738561"})


@pytest.fixture
def pipeline(test_settings, mock_orchestrator, order_repository, webhook_log_repository,
             reconciler, positions, resolver, metrics, connection):
    mock_orchestrator.registry.get_active_by_webhook = AsyncMock(return_value=connection)
    return OrderIngestionPipeline(test_settings, mock_orchestrator, order_repository,
                                  webhook_log_repository, reconciler, positions, resolver, metrics)


async def only_log(webhook_log_repository):
    logs = await webhook_log_repository.list_for_user("user-1")
    assert len(logs) == 1
    return logs[0]


@pytest.mark.asyncio
async def test_open_order_starts_polling(pipeline, fake_adapter, order_repository,
                                         webhook_log_repository, reconciler):
    result = await pipeline.process("user-1", "hook-1", SIGNAL)

    assert result.status == OrderStatus.OPEN
    assert result.broker_order_id == "ABC123"
    assert result.polling_started
    reconciler.start_polling.assert_called_once_with(result.order_id, "ABC123", 1)

    order = await order_repository.get(result.order_id)
    assert order.status == "OPEN"
    assert order.broker_order_id == "ABC123"
    assert order.webhook_data == SIGNAL
    assert fake_adapter.placed[0].tag == "AutoTraderHub"

    log = await only_log(webhook_log_repository)
    assert log.status == "SUCCESS"
    assert log.order_id == result.order_id

    body = result.to_dict()
    assert body["success"] is True
    assert body["orderId"] == result.order_id
    assert any("Broker Order ID: ABC123" in line for line in body["debugLogs"])


@pytest.mark.asyncio
async def test_immediately_complete_order_syncs_positions(pipeline, fake_adapter, reconciler, positions,
                                                          connection):
    fake_adapter.initial_status = OrderStatus.COMPLETE
    result = await pipeline.process("user-1", "hook-1", SIGNAL)

    assert result.status == OrderStatus.COMPLETE
    assert not result.polling_started
    reconciler.start_polling.assert_not_called()
    positions.sync_quietly.assert_awaited_once_with(connection)


@pytest.mark.asyncio
async def test_pending_initial_status_is_left_pending(pipeline, fake_adapter, order_repository):
    fake_adapter.initial_status = OrderStatus.PENDING
    result = await pipeline.process("user-1", "hook-1", SIGNAL)
    assert (await order_repository.get(result.order_id)).status == "PENDING"
    assert result.polling_started


@pytest.mark.asyncio
async def test_invalid_signal_creates_no_order(pipeline, fake_adapter, order_repository,
                                               webhook_log_repository):
    with pytest.raises(ValidationError) as exc:
        await pipeline.process("user-1", "hook-1", {"symbol": "RELIANCE", "action": "BUY", "quantity": 0})

    assert exc.value.message == "Invalid quantity: must be an integer > 0"
    assert exc.value.details["debugLogs"]
    assert "processingTime" in exc.value.details
    assert fake_adapter.placed == []
    assert await order_repository.list_for_user("user-1") == []
    log = await only_log(webhook_log_repository)
    assert log.status == "ERROR"
    assert log.error_message == exc.value.message


@pytest.mark.asyncio
async def test_unknown_webhook_is_not_found(pipeline, mock_orchestrator, order_repository):
    mock_orchestrator.registry.get_active_by_webhook.side_effect = NotFoundError("No active broker connection")
    with pytest.raises(NotFoundError):
        await pipeline.process("user-1", "missing", SIGNAL)
    assert await order_repository.list_for_user("user-1") == []


@pytest.mark.asyncio
async def test_expired_session_creates_no_order(pipeline, mock_orchestrator, order_repository, fake_adapter):
    mock_orchestrator.adapter_for.side_effect = AuthExpiredError("Session expired", "zerodha")
    with pytest.raises(AuthExpiredError):
        await pipeline.process("user-1", "hook-1", SIGNAL)
    assert fake_adapter.placed == []
    assert await order_repository.list_for_user("user-1") == []


@pytest.mark.asyncio
async def test_payload_mapping_failure_creates_no_order(pipeline, fake_adapter, order_repository):
    fake_adapter.payload_error = ValidationError("No Angel symbol token known", field="instrument_token")
    with pytest.raises(ValidationError):
        await pipeline.process("user-1", "hook-1", SIGNAL)
    assert fake_adapter.placed == []
    assert await order_repository.list_for_user("user-1") == []


@pytest.mark.asyncio
async def test_instrument_token_resolved_when_broker_needs_one(pipeline, fake_adapter):
    fake_adapter.requires_instrument_token = True
    await pipeline.process("user-1", "hook-1", SIGNAL)
    assert fake_adapter.placed[0].instrument_token == "738561"


@pytest.mark.asyncio
async def test_rejection_marks_order_rejected(pipeline, fake_adapter, order_repository,
                                              webhook_log_repository, reconciler):
    fake_adapter.place_error = OrderRejected("RMS: margin exceeds", "zerodha", reason="Insufficient margin")
    with pytest.raises(OrderRejected) as exc:
        await pipeline.process("user-1", "hook-1", SIGNAL)

    order_id = exc.value.details["orderId"]
    order = await order_repository.get(order_id)
    assert order.status == "REJECTED"
    assert order.status_message == "Insufficient margin"
    assert order.broker_order_id is None
    reconciler.start_polling.assert_not_called()
    log = await only_log(webhook_log_repository)
    assert (log.status, log.order_id) == ("ERROR", order_id)


@pytest.mark.asyncio
async def test_session_rejected_at_placement(pipeline, fake_adapter, mock_orchestrator,
                                             order_repository, connection):
    fake_adapter.place_error = AuthExpiredError("TokenException", "zerodha")
    with pytest.raises(AuthExpiredError) as exc:
        await pipeline.process("user-1", "hook-1", SIGNAL)

    order = await order_repository.get(exc.value.details["orderId"])
    assert order.status == "REJECTED"
    assert order.status_message == "Broker authentication expired; reconnect required"
    mock_orchestrator.handle_auth_failure.assert_awaited_once_with(connection, "placement_rejected_session")


@pytest.mark.asyncio
async def test_transient_failure_is_not_retried(pipeline, fake_adapter, order_repository):
    fake_adapter.place_error = TransientNetworkError("Kite place_order timed out", "zerodha")
    with pytest.raises(TransientNetworkError) as exc:
        await pipeline.process("user-1", "hook-1", SIGNAL)

    assert len(fake_adapter.placed) == 1
    order = await order_repository.get(exc.value.details["orderId"])
    assert order.status == "REJECTED"
    assert order.status_message.startswith("Order placement failed:")


@pytest.mark.asyncio
async def test_unresolved_upstox_symbol_creates_no_order(pipeline, mock_orchestrator, order_repository,
                                                         webhook_log_repository, test_settings):
    gateway = BrokerGateway({})
    upstox = create_adapter(
        BrokerCredentials(connection_id=1, broker_kind=BrokerKind.UPSTOX, access_token="up-token"),
        test_settings, transport=gateway.transport(),
    )
    mock_orchestrator.adapter_for.return_value = upstox

    with pytest.raises(ValidationError) as exc:
        await pipeline.process("user-1", "hook-1", {"symbol": "TCS", "action": "BUY", "quantity": 1})

    assert exc.value.details["field"] == "instrument_token"
    assert gateway.requests == []
    assert await order_repository.list_for_user("user-1") == []
    log = await only_log(webhook_log_repository)
    assert (log.status, log.order_id) == ("ERROR", None)


@pytest.mark.asyncio
async def test_unexpected_placement_error_rejects_order(pipeline, fake_adapter, order_repository,
                                                        webhook_log_repository, reconciler):
    fake_adapter.place_error = RuntimeError("unexpected payload shape")
    with pytest.raises(InternalBrokerError) as exc:
        await pipeline.process("user-1", "hook-1", SIGNAL)

    assert exc.value.details["error_type"] == "RuntimeError"
    order = await order_repository.get(exc.value.details["orderId"])
    assert order.status == "REJECTED"
    assert order.status_message == "Order placement failed: unexpected payload shape"
    reconciler.start_polling.assert_not_called()
    log = await only_log(webhook_log_repository)
    assert (log.status, log.order_id) == ("ERROR", order.id)


@pytest.mark.asyncio
async def test_unexpected_error_before_placement_closes_the_log(pipeline, mock_orchestrator,
                                                               webhook_log_repository):
    mock_orchestrator.registry.get_active_by_webhook.side_effect = RuntimeError("database went away")
    with pytest.raises(RuntimeError):
        await pipeline.process("user-1", "hook-1", SIGNAL)

    log = await only_log(webhook_log_repository)
    assert log.status == "ERROR"
    assert log.error_message == "database went away"
