from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.database.models import BrokerConnection
from core.database.repositories import PositionRepository
from core.logging import get_trading_logger_safe
from core.utils.exceptions import AuthExpiredError
from services.auth import AuthOrchestrator
from services.brokers import BrokerAdapter


class PositionSyncService:
    """Pulls a connection's net positions into ``positions`` and serves live broker reads."""

    def __init__(self, orchestrator: AuthOrchestrator, positions: PositionRepository):
        self.orchestrator = orchestrator
        self.positions = positions
        self.logger = get_trading_logger_safe("position_sync")

    async def sync(self, connection: BrokerConnection) -> int:
        adapter = await self.orchestrator.adapter_for(connection)
        try:
            snapshots = await adapter.get_positions()
        except AuthExpiredError:
            await self.orchestrator.handle_auth_failure(connection, "position_sync_rejected")
            raise
        count = await self.positions.replace_for_connection(connection.id, connection.user_id, snapshots)
        await self.orchestrator.registry.touch_sync(connection, datetime.now(timezone.utc))
        self.logger.info("Positions synced", connection_id=connection.id,
                         broker=connection.broker_kind, positions=count)
        return count

    async def sync_for_user(self, user_id: str, connection_id: int) -> Dict[str, Any]:
        connection = await self.orchestrator.registry.get_for_user(connection_id, user_id)
        count = await self.sync(connection)
        return {"connection_id": connection.id, "positions_synced": count}

    async def sync_quietly(self, connection: BrokerConnection) -> bool:
        """Position resync after an order settles; failures are logged, not raised."""
        try:
            await self.sync(connection)
            return True
        except Exception as e:
            self.logger.warning("Position resync failed", connection_id=connection.id,
                                broker=connection.broker_kind, error=str(e))
            return False

    async def _live_read(self, user_id: str, connection_id: int, operation: str,
                         read: Callable[[BrokerAdapter], Awaitable[List[Dict[str, Any]]]]) -> Dict[str, Any]:
        connection = await self.orchestrator.registry.get_for_user(connection_id, user_id)
        adapter = await self.orchestrator.adapter_for(connection)
        try:
            rows = await read(adapter)
        except AuthExpiredError:
            await self.orchestrator.handle_auth_failure(connection, f"{operation}_rejected")
            raise
        self.logger.info("Live broker read", connection_id=connection.id, broker=connection.broker_kind,
                         operation=operation, rows=len(rows))
        return {"connection_id": connection.id, "broker": connection.broker_kind, operation: rows}

    async def live_holdings(self, user_id: str, connection_id: int) -> Dict[str, Any]:
        """Holdings straight from the broker; nothing is stored."""
        return await self._live_read(user_id, connection_id, "holdings", lambda a: a.get_holdings())

    async def live_orders(self, user_id: str, connection_id: int) -> Dict[str, Any]:
        return await self._live_read(user_id, connection_id, "orders", lambda a: a.get_orders())

    async def list_positions(self, user_id: str, connection_id: Optional[int] = None) -> List[Dict[str, Any]]:
        rows = await self.positions.list_for_user(user_id, connection_id)
        return [
            {
                "connection_id": p.broker_connection_id,
                "symbol": p.symbol,
                "exchange": p.exchange,
                "product": p.product,
                "quantity": p.quantity,
                "average_price": p.average_price,
                "last_price": p.last_price,
                "pnl": p.pnl,
                "updated_at": p.updated_at.isoformat() if p.updated_at else None,
            }
            for p in rows
        ]
