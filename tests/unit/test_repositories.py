from datetime import datetime, timedelta, timezone

import pytest

from services.brokers import OrderStatus, PositionSnapshot


async def make_order(order_repository, connection_id=1, **overrides):
    fields = dict(user_id="user-1", broker_connection_id=connection_id, symbol="RELIANCE",
                  transaction_type="BUY", quantity=10, status="PENDING")
    fields.update(overrides)
    return await order_repository.create(**fields)


@pytest.mark.asyncio
async def test_status_moves_forward_only(order_repository):
    order = await make_order(order_repository)

    assert await order_repository.apply_status(order.id, OrderStatus.OPEN)
    assert not await order_repository.apply_status(order.id, OrderStatus.PENDING)
    assert await order_repository.apply_status(order.id, OrderStatus.COMPLETE, executed_price=10.5,
                                               executed_quantity=10, pnl=-105.0)
    assert not await order_repository.apply_status(order.id, OrderStatus.CANCELLED)
    assert not await order_repository.apply_status(order.id, OrderStatus.OPEN)

    stored = await order_repository.get(order.id)
    assert stored.status == "COMPLETE"
    assert stored.pnl == -105.0


@pytest.mark.asyncio
async def test_broker_order_id_is_write_once(order_repository):
    order = await make_order(order_repository)
    assert await order_repository.set_broker_order_id(order.id, "B1")
    assert not await order_repository.set_broker_order_id(order.id, "B2")
    assert (await order_repository.get(order.id)).broker_order_id == "B1"


@pytest.mark.asyncio
async def test_in_flight_orders(order_repository):
    placed = await make_order(order_repository)
    await order_repository.set_broker_order_id(placed.id, "B1")
    await make_order(order_repository)
    done = await make_order(order_repository)
    await order_repository.set_broker_order_id(done.id, "B3")
    await order_repository.apply_status(done.id, OrderStatus.REJECTED)

    assert [o.id for o in await order_repository.list_in_flight()] == [placed.id]


@pytest.mark.asyncio
async def test_connection_lookup_by_webhook_respects_owner_and_activity(registry, connection_repository):
    connection = await registry.create("user-1", "zerodha", "Kite", {"api_key": "k", "api_secret": "s"})

    found = await registry.get_active_by_webhook("user-1", connection.webhook_id)
    assert found.id == connection.id
    assert await connection_repository.get_active_by_webhook("user-2", connection.webhook_id) is None

    await connection_repository.update(connection.id, is_active=False)
    assert await connection_repository.get_active_by_webhook("user-1", connection.webhook_id) is None


@pytest.mark.asyncio
async def test_conditional_update_needs_matching_state(registry, connection_repository):
    connection = await registry.create("user-1", "zerodha", "Kite", {"api_key": "k", "api_secret": "s"})
    assert not await connection_repository.update(connection.id, expected_state="authenticated",
                                                  state="expired")
    assert await connection_repository.update(connection.id, expected_state="created",
                                              state="pending_auth")


@pytest.mark.asyncio
async def test_list_expired_authenticated(authenticated_connection, connection_repository):
    expired = await authenticated_connection(expires_in=timedelta(minutes=-1))
    await authenticated_connection(expires_in=timedelta(hours=1))

    due = await connection_repository.list_expired_authenticated(datetime.now(timezone.utc))
    assert [c.id for c in due] == [expired.id]


@pytest.mark.asyncio
async def test_delete_keeps_orders_and_drops_positions(authenticated_connection, registry, order_repository,
                                                       position_repository):
    connection = await authenticated_connection()
    order = await make_order(order_repository, connection_id=connection.id)
    await position_repository.replace_for_connection(connection.id, "user-1",
                                                     [PositionSnapshot("RELIANCE", 10)])

    await registry.delete(connection)

    kept = await order_repository.get(order.id)
    assert kept is not None
    assert kept.broker_connection_id is None
    assert await position_repository.list_for_user("user-1") == []


@pytest.mark.asyncio
async def test_position_sync_replaces_book(position_repository):
    await position_repository.replace_for_connection(1, "user-1", [
        PositionSnapshot("RELIANCE", 10), PositionSnapshot("INFY", -5),
    ])
    await position_repository.replace_for_connection(1, "user-1", [PositionSnapshot("TCS", 1, pnl=12.5)])

    rows = await position_repository.list_for_user("user-1")
    assert [(p.symbol, p.pnl) for p in rows] == [("TCS", 12.5)]


@pytest.mark.asyncio
async def test_webhook_log_lifecycle(webhook_log_repository):
    log_id = await webhook_log_repository.create("user-1", "hook-1", {"symbol": "X"})
    await webhook_log_repository.update(log_id, "PROCESSING")
    await webhook_log_repository.update(log_id, "ERROR", error_message="bad", processing_time_ms=12)

    [log] = await webhook_log_repository.list_for_user("user-1")
    assert (log.status, log.error_message, log.processing_time_ms) == ("ERROR", "bad", 12)
    assert log.payload == {"symbol": "X"}
