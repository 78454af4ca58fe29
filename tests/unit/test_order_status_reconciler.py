import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.utils.exceptions import (
    AuthExpiredError,
    InternalBrokerError,
    NotFoundError,
    TransientNetworkError,
    ValidationError,
)
from services.brokers import OrderStatus, OrderStatusSnapshot
from services.order_status import OrderStatusReconciler


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def connection():
    return SimpleNamespace(id=1, user_id="user-1", broker_kind="zerodha")


@pytest.fixture
def positions():
    positions = MagicMock()
    positions.sync_quietly = AsyncMock(return_value=True)
    return positions


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def reconciler(test_settings, order_repository, mock_orchestrator, positions, metrics, connection, clock):
    mock_orchestrator.registry.get = AsyncMock(return_value=connection)
    return OrderStatusReconciler(test_settings, order_repository, mock_orchestrator, positions,
                                 metrics, clock=clock)


@pytest.fixture
def open_order(order_repository):
    async def _create(side="BUY", status=OrderStatus.OPEN, broker_order_id="ABC123"):
        order = await order_repository.create(
            user_id="user-1", broker_connection_id=1, symbol="RELIANCE", exchange="NSE",
            transaction_type=side, quantity=10, order_type="MARKET", product="MIS",
            validity="DAY", status=OrderStatus.PENDING.value,
        )
        await order_repository.set_broker_order_id(order.id, broker_order_id)
        if status != OrderStatus.PENDING:
            await order_repository.apply_status(order.id, status)
        return await order_repository.get(order.id)
    return _create


async def wait_until_idle(reconciler, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while reconciler.active_keys():
        assert asyncio.get_running_loop().time() < deadline, "polling did not stop"
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_complete_fill_records_pnl_and_syncs_positions(reconciler, open_order, fake_adapter,
                                                             order_repository, positions, connection):
    order = await open_order(side="SELL")
    fake_adapter.script("OPEN", OrderStatusSnapshot("ABC123", "COMPLETE", OrderStatus.COMPLETE,
                                                    average_price=2500.5, filled_quantity=10))

    assert await reconciler.poll_once(order.id, "ABC123", 1) is False
    assert await reconciler.poll_once(order.id, "ABC123", 1) is True

    stored = await order_repository.get(order.id)
    assert stored.status == "COMPLETE"
    assert stored.executed_price == 2500.5
    assert stored.executed_quantity == 10
    assert stored.pnl == 25005.0
    positions.sync_quietly.assert_awaited_once_with(connection)


@pytest.mark.asyncio
async def test_cancelled_order_has_no_pnl(reconciler, open_order, fake_adapter, order_repository):
    order = await open_order()
    fake_adapter.script("CANCELLED")
    assert await reconciler.poll_once(order.id, "ABC123", 1) is True
    stored = await order_repository.get(order.id)
    assert stored.status == "CANCELLED"
    assert stored.pnl == 0.0


@pytest.mark.asyncio
async def test_already_terminal_order_stops_without_broker_call(reconciler, open_order, fake_adapter):
    order = await open_order(status=OrderStatus.REJECTED)
    assert await reconciler.poll_once(order.id, "ABC123", 1) is True
    assert fake_adapter.status_calls == 0


@pytest.mark.asyncio
async def test_backward_reading_is_ignored(reconciler, open_order, fake_adapter, order_repository):
    order = await open_order()
    fake_adapter.script("PENDING")
    assert await reconciler.poll_once(order.id, "ABC123", 1) is False
    assert (await order_repository.get(order.id)).status == "OPEN"


@pytest.mark.asyncio
async def test_transient_and_broker_errors_keep_polling(reconciler, open_order, fake_adapter):
    order = await open_order()
    fake_adapter.script(TransientNetworkError("timeout", "zerodha"),
                        InternalBrokerError("odd reply", "zerodha"), "OPEN")
    assert await reconciler.poll_once(order.id, "ABC123", 1) is False
    assert await reconciler.poll_once(order.id, "ABC123", 1) is False


@pytest.mark.asyncio
async def test_expired_session_stops_polling(reconciler, open_order, fake_adapter, mock_orchestrator,
                                             connection, order_repository):
    order = await open_order()
    fake_adapter.script(AuthExpiredError("TokenException", "zerodha"))
    assert await reconciler.poll_once(order.id, "ABC123", 1) is True
    mock_orchestrator.handle_auth_failure.assert_awaited_once_with(connection, "order_status_rejected")
    assert (await order_repository.get(order.id)).status == "OPEN"


@pytest.mark.asyncio
async def test_missing_connection_stops_polling(reconciler, open_order, mock_orchestrator):
    order = await open_order()
    mock_orchestrator.registry.get.side_effect = NotFoundError("Broker connection not found")
    assert await reconciler.poll_once(order.id, "ABC123", 1) is True


@pytest.mark.asyncio
async def test_background_task_runs_until_terminal(reconciler, open_order, fake_adapter, order_repository):
    order = await open_order()
    fake_adapter.script("OPEN", "OPEN", "COMPLETE")

    assert reconciler.start_polling(order.id, "ABC123", 1)
    await wait_until_idle(reconciler)

    assert (await order_repository.get(order.id)).status == "COMPLETE"
    assert fake_adapter.status_calls == 3


@pytest.mark.asyncio
async def test_duplicate_start_is_a_no_op(reconciler, open_order, fake_adapter):
    order = await open_order()
    assert reconciler.start_polling(order.id, "ABC123", 1) is True
    assert reconciler.start_polling(order.id, "ABC123", 1) is False
    assert reconciler.active_keys() == {(order.id, "ABC123")}
    await reconciler.stop_all()


@pytest.mark.asyncio
async def test_time_ceiling_ends_polling(reconciler, open_order, fake_adapter, clock, order_repository):
    order = await open_order()
    fake_adapter.script("OPEN")

    reconciler.start_polling(order.id, "ABC123", 1)
    await asyncio.sleep(0.05)
    clock.now = reconciler.max_polling_seconds + 1
    await wait_until_idle(reconciler)

    assert fake_adapter.status_calls >= 1
    assert (await order_repository.get(order.id)).status == "OPEN"


@pytest.mark.asyncio
async def test_stop_all_cancels_everything(reconciler, open_order, fake_adapter):
    first = await open_order(broker_order_id="A1")
    second = await open_order(broker_order_id="A2")
    reconciler.start_polling(first.id, "A1", 1)
    reconciler.start_polling(second.id, "A2", 1)

    await reconciler.stop_all()
    assert reconciler.active_keys() == set()


@pytest.mark.asyncio
async def test_resume_pending_restarts_in_flight_orders(reconciler, open_order, order_repository):
    live = await open_order(broker_order_id="LIVE")
    await open_order(status=OrderStatus.COMPLETE, broker_order_id="DONE")
    unplaced = await order_repository.create(
        user_id="user-1", broker_connection_id=1, symbol="X", transaction_type="BUY", quantity=1,
        status="PENDING",
    )

    assert await reconciler.resume_pending() == 1
    assert reconciler.is_polling(live.id, "LIVE")
    assert not reconciler.is_polling(unplaced.id, "None")
    await reconciler.stop_all()


@pytest.mark.asyncio
async def test_unexpected_tick_error_keeps_polling(reconciler, open_order, fake_adapter, order_repository):
    order = await open_order()
    fake_adapter.script(RuntimeError("database blip"), "COMPLETE")

    reconciler.start_polling(order.id, "ABC123", 1)
    await wait_until_idle(reconciler)

    assert fake_adapter.status_calls == 2
    assert (await order_repository.get(order.id)).status == "COMPLETE"


@pytest.mark.asyncio
async def test_stop_polling_removes_live_task(reconciler, open_order, fake_adapter):
    order = await open_order()
    assert reconciler.start_polling(order.id, "ABC123", 1)

    assert reconciler.stop_polling(order.id, "ABC123") is True
    assert not reconciler.is_polling(order.id, "ABC123")
    assert reconciler.active_keys() == set()
    assert reconciler.stop_polling(order.id, "ABC123") is False


@pytest.mark.asyncio
async def test_restart_after_stop_creates_new_task(reconciler, open_order, fake_adapter):
    order = await open_order()
    reconciler.start_polling(order.id, "ABC123", 1)
    reconciler.stop_polling(order.id, "ABC123")
    await asyncio.sleep(0.02)

    assert reconciler.start_polling(order.id, "ABC123", 1) is True
    assert reconciler.is_polling(order.id, "ABC123")
    await reconciler.stop_all()


@pytest.mark.asyncio
async def test_user_polling_controls_check_ownership(reconciler, open_order, fake_adapter):
    order = await open_order()
    with pytest.raises(NotFoundError):
        await reconciler.start_for_user("someone-else", order.id)

    assert await reconciler.start_for_user("user-1", order.id) == {
        "order_id": order.id, "broker_order_id": "ABC123", "polling_started": True,
    }
    assert await reconciler.polling_status("user-1") == [
        {"order_id": order.id, "broker_order_id": "ABC123", "status": "OPEN", "symbol": "RELIANCE"},
    ]
    assert await reconciler.polling_status("someone-else") == []

    with pytest.raises(NotFoundError):
        await reconciler.stop_for_user("someone-else", order.id)
    assert (await reconciler.stop_for_user("user-1", order.id))["polling_stopped"] is True
    assert not reconciler.is_polling(order.id, "ABC123")


@pytest.mark.asyncio
async def test_settled_or_unplaced_orders_cannot_be_polled(reconciler, open_order, order_repository):
    done = await open_order(status=OrderStatus.COMPLETE, broker_order_id="DONE")
    unplaced = await order_repository.create(
        user_id="user-1", broker_connection_id=1, symbol="X", transaction_type="BUY", quantity=1,
        status="PENDING",
    )
    for order_id in (done.id, unplaced.id):
        with pytest.raises(ValidationError):
            await reconciler.start_for_user("user-1", order_id)
    assert reconciler.active_keys() == set()
