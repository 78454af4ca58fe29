"""Background polling of in-flight orders until they settle."""

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from core.config.settings import Settings
from core.database.models import Order
from core.database.repositories import OrderRepository
from core.logging import get_error_logger_safe, get_trading_logger_safe
from core.logging.correlation import create_correlation_context
from core.monitoring import PrometheusMetricsCollector
from core.utils.exceptions import (
    AuthExpiredError,
    AutoTraderException,
    DecryptionError,
    NotFoundError,
    TransientNetworkError,
    ValidationError,
)
from services.auth import AuthOrchestrator
from services.brokers.models import OrderStatus, is_forward_transition
from services.positions import PositionSyncService
from .pnl import realized_pnl

PollKey = Tuple[int, str]


class OrderStatusReconciler:
    """One cancellable polling task per (order id, broker order id).

    Each task ticks every ``poll_interval_seconds``, writes forward status
    changes, resyncs positions once the order is terminal and gives up after
    ``max_polling_seconds``.
    """

    def __init__(self, settings: Settings, orders: OrderRepository, orchestrator: AuthOrchestrator,
                 positions: PositionSyncService,
                 metrics: Optional[PrometheusMetricsCollector] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.settings = settings
        self.orders = orders
        self.orchestrator = orchestrator
        self.positions = positions
        self.metrics = metrics
        self._clock = clock
        self._tasks: Dict[PollKey, asyncio.Task] = {}
        self.logger = get_trading_logger_safe("order_status")
        self.error_logger = get_error_logger_safe("order_status")

    @property
    def poll_interval(self) -> float:
        return self.settings.order_status.poll_interval_seconds

    @property
    def max_polling_seconds(self) -> float:
        return self.settings.order_status.max_polling_seconds

    def active_keys(self) -> Set[PollKey]:
        return {key for key, task in self._tasks.items() if not task.done()}

    def is_polling(self, order_id: int, broker_order_id: str) -> bool:
        task = self._tasks.get((order_id, str(broker_order_id)))
        return task is not None and not task.done()

    def start_polling(self, order_id: int, broker_order_id: str, connection_id: int) -> bool:
        """Start tracking an order. A second start for the same key is a no-op."""
        key = (order_id, str(broker_order_id))
        existing = self._tasks.get(key)
        if existing is not None and not existing.done():
            self.logger.debug("Polling already active", order_id=order_id, broker_order_id=key[1])
            return False

        task = asyncio.create_task(self._poll(key, connection_id), name=f"order-status-{order_id}-{key[1]}")
        self._tasks[key] = task
        task.add_done_callback(lambda t, k=key: self._forget(k, t))
        self._update_gauge()
        self.logger.info("Order status polling started", order_id=order_id, broker_order_id=key[1],
                         connection_id=connection_id, interval=self.poll_interval)
        return True

    def stop_polling(self, order_id: int, broker_order_id: str) -> bool:
        task = self._tasks.pop((order_id, str(broker_order_id)), None)
        self._update_gauge()
        if task is None or task.done():
            return False
        task.cancel()
        self.logger.info("Order status polling stopped", order_id=order_id, broker_order_id=broker_order_id)
        return True

    async def _owned_order(self, user_id: str, order_id: int) -> Order:
        order = await self.orders.get(order_id)
        if order is None or order.user_id != user_id:
            raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
        return order

    async def start_for_user(self, user_id: str, order_id: int) -> Dict[str, Any]:
        order = await self._owned_order(user_id, order_id)
        if not order.broker_order_id:
            raise ValidationError(f"Order {order_id} has no broker order id yet", field="order_id")
        if OrderStatus(order.status).is_terminal:
            raise ValidationError(f"Order {order_id} is already {order.status}", field="order_id")
        if order.broker_connection_id is None:
            raise ValidationError(f"Order {order_id} is no longer attached to a broker connection",
                                  field="order_id")
        started = self.start_polling(order.id, order.broker_order_id, order.broker_connection_id)
        return {"order_id": order.id, "broker_order_id": order.broker_order_id, "polling_started": started}

    async def stop_for_user(self, user_id: str, order_id: int) -> Dict[str, Any]:
        order = await self._owned_order(user_id, order_id)
        stopped = bool(order.broker_order_id) and self.stop_polling(order.id, order.broker_order_id)
        return {"order_id": order.id, "broker_order_id": order.broker_order_id, "polling_stopped": stopped}

    async def polling_status(self, user_id: str) -> List[Dict[str, Any]]:
        """Orders of ``user_id`` that currently have a live polling task."""
        tracked = []
        for order_id, broker_order_id in sorted(self.active_keys()):
            order = await self.orders.get(order_id)
            if order is not None and order.user_id == user_id:
                tracked.append({"order_id": order_id, "broker_order_id": broker_order_id,
                                "status": order.status, "symbol": order.symbol})
        return tracked

    async def stop_all(self) -> None:
        """Cancel every task without waiting for a terminal broker status."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._update_gauge()
        self.logger.info("All order status polling stopped", cancelled=len(tasks))

    async def resume_pending(self) -> int:
        """Restart tracking for every stored non-terminal order that has a broker order id."""
        started = 0
        for order in await self.orders.list_in_flight():
            if self.start_polling(order.id, order.broker_order_id, order.broker_connection_id):
                started += 1
        self.logger.info("Resumed order status polling", orders=started)
        return started

    def _forget(self, key: PollKey, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        self._update_gauge()

    def _update_gauge(self) -> None:
        if self.metrics is not None:
            self.metrics.set_active_polling_tasks(len(self.active_keys()))

    async def _poll(self, key: PollKey, connection_id: int) -> None:
        order_id, broker_order_id = key
        create_correlation_context("order_status", "poll", order_id=order_id, broker_order_id=broker_order_id)
        started = self._clock()
        ticks = 0
        while not self._ceiling_reached(key, started, ticks):
            await asyncio.sleep(self.poll_interval)
            if self._ceiling_reached(key, started, ticks):
                return
            ticks += 1
            try:
                done = await self.poll_once(order_id, broker_order_id, connection_id)
            except Exception as e:
                # The time ceiling still bounds a task that keeps failing
                self.error_logger.error("Order status poll tick failed", order_id=order_id,
                                        broker_order_id=broker_order_id, tick=ticks, error=str(e),
                                        exc_info=True)
                continue
            if done:
                return

    def _ceiling_reached(self, key: PollKey, started: float, ticks: int) -> bool:
        if self._clock() - started < self.max_polling_seconds:
            return False
        self.logger.warning("Order status polling hit its time ceiling",
                            order_id=key[0], broker_order_id=key[1], ticks=ticks)
        return True

    async def poll_once(self, order_id: int, broker_order_id: str, connection_id: int) -> bool:
        """One tick. Returns True when polling for this order should stop."""
        order = await self.orders.get(order_id)
        if order is None:
            return True
        current = OrderStatus(order.status)
        if current.is_terminal:
            return True

        try:
            connection = await self.orchestrator.registry.get(connection_id)
            adapter = await self.orchestrator.adapter_for(connection)
        except (NotFoundError, AuthExpiredError, DecryptionError) as e:
            self.logger.warning("Stopping order status polling; connection unusable",
                                order_id=order_id, connection_id=connection_id, error=str(e))
            return True

        try:
            snapshot = await adapter.get_order_status(broker_order_id)
        except AuthExpiredError as e:
            await self.orchestrator.handle_auth_failure(connection, "order_status_rejected")
            self.logger.warning("Stopping order status polling; broker session expired",
                                order_id=order_id, broker=connection.broker_kind, error=str(e))
            return True
        except TransientNetworkError as e:
            self.logger.warning("Transient error polling order status", order_id=order_id,
                                broker=connection.broker_kind, error=str(e))
            return False
        except AutoTraderException as e:
            self.logger.warning("Broker error polling order status", order_id=order_id,
                                broker=connection.broker_kind, error=e.message)
            return False

        new = snapshot.status
        if new == current or not is_forward_transition(current, new):
            return False

        pnl = None
        if new == OrderStatus.COMPLETE:
            pnl = realized_pnl(order.transaction_type, snapshot.executed_price, snapshot.executed_quantity)
        applied = await self.orders.apply_status(
            order_id, new,
            message=snapshot.message or f"Broker status: {snapshot.raw_status}",
            executed_price=snapshot.executed_price,
            executed_quantity=snapshot.executed_quantity,
            pnl=pnl,
        )
        if not applied:
            # Someone else settled it first
            refreshed = await self.orders.get(order_id)
            return refreshed is None or OrderStatus(refreshed.status).is_terminal

        if self.metrics is not None:
            self.metrics.record_status_transition(connection.broker_kind, new.value)
        self.logger.info("Order status updated", order_id=order_id, broker_order_id=broker_order_id,
                         from_status=current.value, to_status=new.value, raw_status=snapshot.raw_status,
                         executed_price=snapshot.executed_price, pnl=pnl)

        if new.is_terminal:
            await self.positions.sync_quietly(connection)
            return True
        return False
