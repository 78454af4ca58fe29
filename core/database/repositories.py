"""
Repositories owning all SQL for connections, orders, positions and webhook logs.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, desc, func, select, update
from sqlalchemy.exc import SQLAlchemyError

from core.logging import get_database_logger_safe
from services.brokers.models import OrderStatus, PositionSnapshot, is_forward_transition
from .connection import DatabaseManager
from .models import BrokerConnection, Order, Position, WebhookLog

logger = get_database_logger_safe("core.database.repositories")

IN_FLIGHT_STATUSES = (OrderStatus.PENDING.value, OrderStatus.OPEN.value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionRepository:
    """Persistence for ``broker_connections`` rows.

    Every mutation is a single-row UPDATE so concurrent writers rely on the
    database's own row atomicity.
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    async def create(self, **fields: Any) -> BrokerConnection:
        try:
            async with self.db_manager.get_session() as session:
                connection = BrokerConnection(**fields)
                session.add(connection)
                await session.commit()
                await session.refresh(connection)
                logger.debug("Created broker connection", connection_id=connection.id,
                             broker=connection.broker_kind)
                return connection
        except SQLAlchemyError as e:
            logger.error("Failed to create broker connection", error=str(e))
            raise

    async def get(self, connection_id: int) -> Optional[BrokerConnection]:
        async with self.db_manager.get_session() as session:
            return await session.get(BrokerConnection, connection_id)

    async def get_for_user(self, connection_id: int, user_id: str) -> Optional[BrokerConnection]:
        async with self.db_manager.get_session() as session:
            stmt = select(BrokerConnection).where(
                BrokerConnection.id == connection_id,
                BrokerConnection.user_id == user_id,
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def get_active_by_webhook(self, user_id: str, webhook_id: str) -> Optional[BrokerConnection]:
        async with self.db_manager.get_session() as session:
            stmt = select(BrokerConnection).where(
                BrokerConnection.user_id == user_id,
                BrokerConnection.webhook_id == webhook_id,
                BrokerConnection.is_active.is_(True),
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_for_user(self, user_id: str) -> List[BrokerConnection]:
        async with self.db_manager.get_session() as session:
            stmt = (select(BrokerConnection)
                    .where(BrokerConnection.user_id == user_id)
                    .order_by(desc(BrokerConnection.created_at), desc(BrokerConnection.id)))
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count_active_for_user(self, user_id: str) -> int:
        async with self.db_manager.get_session() as session:
            stmt = select(func.count(BrokerConnection.id)).where(
                BrokerConnection.user_id == user_id,
                BrokerConnection.is_active.is_(True),
            )
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def latest_unauthenticated(self, broker_kind: str,
                                     states: Iterable[str]) -> Optional[BrokerConnection]:
        """Most recently created active connection of this broker in one of ``states``."""
        async with self.db_manager.get_session() as session:
            stmt = (select(BrokerConnection)
                    .where(BrokerConnection.broker_kind == broker_kind,
                           BrokerConnection.is_active.is_(True),
                           BrokerConnection.state.in_(list(states)))
                    .order_by(desc(BrokerConnection.created_at), desc(BrokerConnection.id))
                    .limit(1))
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_expired_authenticated(self, now: Optional[datetime] = None) -> List[BrokerConnection]:
        async with self.db_manager.get_session() as session:
            stmt = select(BrokerConnection).where(
                BrokerConnection.state == "authenticated",
                BrokerConnection.access_token_expires_at.is_not(None),
                BrokerConnection.access_token_expires_at <= (now or _utcnow()),
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def update(self, connection_id: int, *, expected_state: Optional[str] = None,
                     **values: Any) -> bool:
        """Update one row; with ``expected_state`` the write only lands if the state still matches."""
        try:
            async with self.db_manager.get_session() as session:
                stmt = update(BrokerConnection).where(BrokerConnection.id == connection_id)
                if expected_state is not None:
                    stmt = stmt.where(BrokerConnection.state == expected_state)
                values.setdefault("updated_at", _utcnow())
                result = await session.execute(stmt.values(**values))
                await session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            logger.error("Failed to update broker connection", connection_id=connection_id, error=str(e))
            raise

    async def delete(self, connection_id: int) -> bool:
        try:
            async with self.db_manager.get_session() as session:
                # Orders are kept for audit; detach them before the row goes
                await session.execute(
                    update(Order).where(Order.broker_connection_id == connection_id)
                    .values(broker_connection_id=None)
                )
                await session.execute(delete(Position).where(Position.broker_connection_id == connection_id))
                result = await session.execute(delete(BrokerConnection).where(BrokerConnection.id == connection_id))
                await session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            logger.error("Failed to delete broker connection", connection_id=connection_id, error=str(e))
            raise


class OrderRepository:
    """Persistence for ``orders``. Status writes are monotonic and enforced in SQL."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    async def create(self, **fields: Any) -> Order:
        try:
            async with self.db_manager.get_session() as session:
                order = Order(**fields)
                session.add(order)
                await session.commit()
                await session.refresh(order)
                return order
        except SQLAlchemyError as e:
            logger.error("Failed to create order", error=str(e))
            raise

    async def get(self, order_id: int) -> Optional[Order]:
        async with self.db_manager.get_session() as session:
            return await session.get(Order, order_id)

    async def set_broker_order_id(self, order_id: int, broker_order_id: str) -> bool:
        """Write-once: only lands while the column is still NULL."""
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                update(Order)
                .where(Order.id == order_id, Order.broker_order_id.is_(None))
                .values(broker_order_id=broker_order_id, updated_at=_utcnow())
            )
            await session.commit()
            return result.rowcount > 0

    async def apply_status(self, order_id: int, status: OrderStatus, *,
                           message: Optional[str] = None,
                           executed_price: Optional[float] = None,
                           executed_quantity: Optional[int] = None,
                           pnl: Optional[float] = None) -> bool:
        """Move the order forward to ``status``. Returns False when the write would regress."""
        allowed_from = [s.value for s in OrderStatus if is_forward_transition(s, status)]
        if not allowed_from:
            return False
        values: Dict[str, Any] = {"status": status.value, "updated_at": _utcnow()}
        if message is not None:
            values["status_message"] = message
        if executed_price is not None:
            values["executed_price"] = executed_price
        if executed_quantity is not None:
            values["executed_quantity"] = executed_quantity
        if pnl is not None:
            values["pnl"] = pnl
        try:
            async with self.db_manager.get_session() as session:
                result = await session.execute(
                    update(Order)
                    .where(Order.id == order_id, Order.status.in_(allowed_from))
                    .values(**values)
                )
                await session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            logger.error("Failed to update order status", order_id=order_id,
                         status=status.value, error=str(e))
            raise

    async def list_in_flight(self) -> List[Order]:
        """Non-terminal orders that can still be polled at their broker."""
        async with self.db_manager.get_session() as session:
            stmt = select(Order).where(
                Order.status.in_(IN_FLIGHT_STATUSES),
                Order.broker_order_id.is_not(None),
                Order.broker_connection_id.is_not(None),
            ).order_by(Order.id)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_for_user(self, user_id: str, limit: int = 100) -> List[Order]:
        async with self.db_manager.get_session() as session:
            stmt = (select(Order).where(Order.user_id == user_id)
                    .order_by(desc(Order.created_at), desc(Order.id)).limit(limit))
            result = await session.execute(stmt)
            return list(result.scalars().all())


class PositionRepository:
    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    async def replace_for_connection(self, connection_id: int, user_id: str,
                                     snapshots: Iterable[PositionSnapshot]) -> int:
        """Replace the stored book of one connection with the broker's current net positions."""
        rows = [
            Position(
                user_id=user_id,
                broker_connection_id=connection_id,
                symbol=p.symbol,
                exchange=p.exchange,
                product=p.product,
                quantity=p.quantity,
                average_price=p.average_price,
                last_price=p.last_price,
                pnl=p.pnl,
                raw=p.raw,
                updated_at=_utcnow(),
            )
            for p in snapshots
        ]
        try:
            async with self.db_manager.get_session() as session:
                await session.execute(delete(Position).where(Position.broker_connection_id == connection_id))
                session.add_all(rows)
                await session.commit()
                return len(rows)
        except SQLAlchemyError as e:
            logger.error("Failed to replace positions", connection_id=connection_id, error=str(e))
            raise

    async def list_for_user(self, user_id: str, connection_id: Optional[int] = None) -> List[Position]:
        async with self.db_manager.get_session() as session:
            stmt = select(Position).where(Position.user_id == user_id)
            if connection_id is not None:
                stmt = stmt.where(Position.broker_connection_id == connection_id)
            result = await session.execute(stmt.order_by(Position.symbol))
            return list(result.scalars().all())


class WebhookLogRepository:
    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    async def create(self, user_id: str, webhook_id: str, payload: Any) -> int:
        async with self.db_manager.get_session() as session:
            row = WebhookLog(user_id=user_id, webhook_id=webhook_id, payload=payload, status="RECEIVED")
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return row.id

    async def update(self, log_id: int, status: str, *, order_id: Optional[int] = None,
                     error_message: Optional[str] = None,
                     processing_time_ms: Optional[float] = None) -> None:
        values: Dict[str, Any] = {"status": status}
        if order_id is not None:
            values["order_id"] = order_id
        if error_message is not None:
            values["error_message"] = error_message
        if processing_time_ms is not None:
            values["processing_time_ms"] = processing_time_ms
        async with self.db_manager.get_session() as session:
            await session.execute(update(WebhookLog).where(WebhookLog.id == log_id).values(**values))
            await session.commit()

    async def list_for_user(self, user_id: str, limit: int = 100) -> List[WebhookLog]:
        async with self.db_manager.get_session() as session:
            stmt = (select(WebhookLog).where(WebhookLog.user_id == user_id)
                    .order_by(desc(WebhookLog.created_at), desc(WebhookLog.id)).limit(limit))
            result = await session.execute(stmt)
            return list(result.scalars().all())
