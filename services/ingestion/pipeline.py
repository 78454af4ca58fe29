"""Webhook signal -> validated canonical order -> broker placement -> tracking."""

from typing import Any, Optional

from core.config.settings import Settings
from core.database.models import BrokerConnection
from core.database.repositories import OrderRepository, WebhookLogRepository
from core.logging import get_trading_logger_safe
from core.monitoring import PrometheusMetricsCollector
from core.utils.exceptions import (
    AuthExpiredError,
    AutoTraderException,
    InternalBrokerError,
    OrderRejected,
    TransientNetworkError,
)
from services.auth import AuthOrchestrator
from services.brokers import BrokerAdapter, CanonicalOrderRequest, OrderStatus
from services.order_status import OrderStatusReconciler
from services.positions import PositionSyncService
from .models import DebugTrail, WebhookResult, WebhookSignal, parse_signal
from .symbols import SymbolResolver

logger = get_trading_logger_safe("ingestion.pipeline")


class OrderIngestionPipeline:
    """Handles one webhook call end to end.

    Placement is single-attempt: a rejected, expired or failed placement marks
    the order REJECTED and is never retried.
    """

    def __init__(self, settings: Settings, orchestrator: AuthOrchestrator, orders: OrderRepository,
                 webhook_logs: WebhookLogRepository, reconciler: OrderStatusReconciler,
                 positions: PositionSyncService, symbol_resolver: SymbolResolver,
                 metrics: Optional[PrometheusMetricsCollector] = None):
        self.settings = settings
        self.orchestrator = orchestrator
        self.orders = orders
        self.webhook_logs = webhook_logs
        self.reconciler = reconciler
        self.positions = positions
        self.symbol_resolver = symbol_resolver
        self.metrics = metrics

    async def process(self, user_id: str, webhook_id: str, payload: Any) -> WebhookResult:
        trail = DebugTrail()
        trail.add(f"Webhook received for user {user_id}, webhook {webhook_id}")
        log_id = await self.webhook_logs.create(user_id, webhook_id, payload)
        order_id: Optional[int] = None
        try:
            await self.webhook_logs.update(log_id, "PROCESSING")
            signal = parse_signal(payload)
            trail.add(f"Payload validated: symbol={signal.symbol}, action={signal.transaction_type.value}, "
                      f"quantity={signal.quantity}")

            connection = await self.orchestrator.registry.get_active_by_webhook(user_id, webhook_id)
            trail.add(f"Broker connection found: {connection.broker_kind} (ID {connection.id})")

            # Token is checked before any order row exists
            adapter = await self.orchestrator.adapter_for(connection)
            request = await self._build_request(signal, adapter, connection, trail)
            adapter.build_order_payload(request)

            order = await self.orders.create(
                user_id=user_id,
                broker_connection_id=connection.id,
                symbol=request.symbol,
                exchange=request.exchange,
                transaction_type=request.transaction_type.value,
                quantity=request.quantity,
                order_type=request.order_type.value,
                product=request.product.value,
                price=request.price,
                trigger_price=request.trigger_price,
                validity=request.validity,
                status=OrderStatus.PENDING.value,
                webhook_data=payload,
            )
            order_id = order.id
            trail.add(f"Order created with ID: {order.id}")

            result = await self._place(order.id, adapter, connection, request, trail)
            await self.webhook_logs.update(log_id, "SUCCESS", order_id=order.id,
                                           processing_time_ms=trail.elapsed_ms)
            if self.metrics is not None:
                self.metrics.record_webhook("success")
            return result
        except AutoTraderException as e:
            trail.add(f"ERROR: {e.message}")
            e.details.setdefault("debugLogs", trail.entries)
            e.details.setdefault("processingTime", trail.elapsed_ms)
            if order_id is not None:
                e.details.setdefault("orderId", order_id)
            await self.webhook_logs.update(log_id, "ERROR", order_id=order_id, error_message=e.message,
                                           processing_time_ms=trail.elapsed_ms)
            if self.metrics is not None:
                self.metrics.record_webhook(type(e).__name__)
            logger.warning("Webhook processing failed", user_id=user_id, webhook_id=webhook_id,
                           order_id=order_id, error_type=type(e).__name__, error=e.message)
            raise
        except Exception as e:
            await self.webhook_logs.update(log_id, "ERROR", order_id=order_id, error_message=str(e),
                                           processing_time_ms=trail.elapsed_ms)
            if self.metrics is not None:
                self.metrics.record_webhook("unexpected_error")
            logger.error("Webhook processing crashed", user_id=user_id, webhook_id=webhook_id,
                         order_id=order_id, error=str(e), exc_info=True)
            raise

    async def _build_request(self, signal: WebhookSignal, adapter: BrokerAdapter,
                             connection: BrokerConnection, trail: DebugTrail) -> CanonicalOrderRequest:
        token = signal.instrument_token
        if adapter.requires_instrument_token and not token:
            token = await self.symbol_resolver.resolve(signal.symbol, signal.exchange, connection.broker_kind)
            trail.add(f"Instrument lookup for {signal.symbol}: {token or 'not found'}")
        return signal.to_order_request(instrument_token=token, tag=self.settings.brokers.order_tag)

    async def _place(self, order_id: int, adapter: BrokerAdapter, connection: BrokerConnection,
                     request: CanonicalOrderRequest, trail: DebugTrail) -> WebhookResult:
        broker = connection.broker_kind
        trail.add(f"Placing order with broker: {broker}")
        try:
            placement = await adapter.place_order(request)
        except OrderRejected as e:
            await self._reject(order_id, broker, e.reason, "rejected")
            raise
        except AuthExpiredError:
            await self._reject(order_id, broker, "Broker authentication expired; reconnect required",
                               "auth_expired")
            await self.orchestrator.handle_auth_failure(connection, "placement_rejected_session")
            raise
        except TransientNetworkError as e:
            await self._reject(order_id, broker, f"Order placement failed: {e.message}", "transient_error")
            raise
        except AutoTraderException as e:
            await self._reject(order_id, broker, f"Order placement failed: {e.message}", "error")
            raise
        except Exception as e:
            await self._reject(order_id, broker, f"Order placement failed: {e}", "error")
            raise InternalBrokerError(f"Unexpected error placing order: {e}", broker,
                                      details={"error_type": type(e).__name__}) from e

        await self.orders.set_broker_order_id(order_id, placement.broker_order_id)
        status = placement.initial_status
        if status != OrderStatus.PENDING:
            await self.orders.apply_status(order_id, status, message="Order placed with broker")
        if self.metrics is not None:
            self.metrics.record_order_placement(broker, "placed")
        trail.add(f"Order placed successfully. Broker Order ID: {placement.broker_order_id}")
        logger.info("Order placed", order_id=order_id, broker=broker,
                    broker_order_id=placement.broker_order_id, status=status.value)

        polling_started = False
        if status == OrderStatus.COMPLETE:
            if await self.positions.sync_quietly(connection):
                trail.add("Positions synced")
        elif not status.is_terminal:
            polling_started = self.reconciler.start_polling(order_id, placement.broker_order_id, connection.id)
            trail.add("Started order status polling" if polling_started else "Order status polling already active")

        return WebhookResult(
            order_id=order_id,
            broker_order_id=placement.broker_order_id,
            status=status,
            processing_time_ms=trail.elapsed_ms,
            polling_started=polling_started,
            debug_logs=trail.entries,
        )

    async def _reject(self, order_id: int, broker: str, message: str, outcome: str) -> None:
        await self.orders.apply_status(order_id, OrderStatus.REJECTED, message=message)
        if self.metrics is not None:
            self.metrics.record_order_placement(broker, outcome)
        logger.warning("Order placement failed", order_id=order_id, broker=broker,
                       outcome=outcome, reason=message)
