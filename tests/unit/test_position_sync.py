import pytest

from core.utils.exceptions import AuthExpiredError, NotFoundError, TransientNetworkError
from services.brokers import PositionSnapshot
from services.positions import PositionSyncService


@pytest.fixture
def service(orchestrator, position_repository):
    return PositionSyncService(orchestrator, position_repository)


@pytest.fixture
def live_connection(authenticated_connection, adapter_cache, fake_adapter):
    async def _create():
        connection = await authenticated_connection("zerodha")
        adapter_cache.put(connection.id, fake_adapter)
        return connection
    return _create


@pytest.mark.asyncio
async def test_sync_replaces_positions_and_stamps_connection(service, live_connection, fake_adapter, registry):
    connection = await live_connection()
    fake_adapter.positions = [
        PositionSnapshot("RELIANCE", 10, exchange="NSE", product="MIS", average_price=2500.0, pnl=12.5),
        PositionSnapshot("INFY", -3, exchange="NSE", product="CNC"),
    ]

    assert await service.sync(connection) == 2

    listed = await service.list_positions("user-1")
    assert {p["symbol"]: p["quantity"] for p in listed} == {"RELIANCE": 10, "INFY": -3}
    assert all(p["connection_id"] == connection.id for p in listed)
    assert (await registry.get(connection.id)).last_sync is not None


@pytest.mark.asyncio
async def test_sync_for_user_checks_ownership(service, live_connection):
    connection = await live_connection()
    assert await service.sync_for_user("user-1", connection.id) == {
        "connection_id": connection.id, "positions_synced": 0,
    }
    with pytest.raises(NotFoundError):
        await service.sync_for_user("someone-else", connection.id)


@pytest.mark.asyncio
async def test_rejected_session_expires_connection(service, live_connection, fake_adapter, registry,
                                                   adapter_cache):
    connection = await live_connection()
    fake_adapter.positions_error = AuthExpiredError("TokenException", "zerodha")

    with pytest.raises(AuthExpiredError):
        await service.sync(connection)

    assert (await registry.get(connection.id)).state == "expired"
    assert connection.id not in adapter_cache


@pytest.mark.asyncio
async def test_quiet_sync_reports_failure_without_raising(service, live_connection, fake_adapter,
                                                          position_repository):
    connection = await live_connection()
    fake_adapter.positions_error = TransientNetworkError("timed out", "zerodha")

    assert await service.sync_quietly(connection) is False
    assert await position_repository.list_for_user("user-1") == []


@pytest.mark.asyncio
async def test_live_reads_come_straight_from_the_broker(service, live_connection, fake_adapter,
                                                        position_repository):
    connection = await live_connection()
    fake_adapter.holdings = [{"tradingsymbol": "INFY", "quantity": 5}]
    fake_adapter.order_book = [{"order_id": "ABC123", "status": "OPEN"}]

    holdings = await service.live_holdings("user-1", connection.id)
    assert holdings == {"connection_id": connection.id, "broker": "zerodha",
                        "holdings": [{"tradingsymbol": "INFY", "quantity": 5}]}
    orders = await service.live_orders("user-1", connection.id)
    assert orders["orders"] == [{"order_id": "ABC123", "status": "OPEN"}]
    assert await position_repository.list_for_user("user-1") == []

    with pytest.raises(NotFoundError):
        await service.live_holdings("someone-else", connection.id)


@pytest.mark.asyncio
async def test_rejected_session_on_live_read_expires_connection(service, live_connection, fake_adapter,
                                                                registry, adapter_cache):
    connection = await live_connection()
    fake_adapter.read_error = AuthExpiredError("Invalid token", "zerodha")

    with pytest.raises(AuthExpiredError):
        await service.live_orders("user-1", connection.id)

    assert (await registry.get(connection.id)).state == "expired"
    assert connection.id not in adapter_cache
