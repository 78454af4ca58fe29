"""
Prometheus metrics for webhook ingestion, broker calls and order tracking
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from typing import Optional


class PrometheusMetricsCollector:
    """Order-flow metrics exposed on /metrics"""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        # Throughput metrics
        self.webhooks_received = Counter(
            'autotrader_webhooks_received_total',
            'Inbound webhook signals by outcome',
            ['outcome'],
            registry=self.registry
        )

        self.orders_placed = Counter(
            'autotrader_orders_placed_total',
            'Order placement attempts by broker and outcome',
            ['broker', 'outcome'],
            registry=self.registry
        )

        self.order_status_transitions = Counter(
            'autotrader_order_status_transitions_total',
            'Order status changes observed by the status poller',
            ['broker', 'status'],
            registry=self.registry
        )

        # Latency metrics
        self.broker_call_latency = Histogram(
            'autotrader_broker_call_latency_seconds',
            'Latency of broker API calls',
            ['broker', 'operation'],
            buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=self.registry
        )

        # Polling
        self.active_polling_tasks = Gauge(
            'autotrader_active_polling_tasks',
            'Order status polling tasks currently running',
            registry=self.registry
        )

        self.connection_state_changes = Counter(
            'autotrader_connection_state_changes_total',
            'Broker connection lifecycle transitions',
            ['broker', 'state'],
            registry=self.registry
        )

    def record_webhook(self, outcome: str) -> None:
        self.webhooks_received.labels(outcome=outcome).inc()

    def record_order_placement(self, broker: str, outcome: str) -> None:
        self.orders_placed.labels(broker=broker, outcome=outcome).inc()

    def record_status_transition(self, broker: str, status: str) -> None:
        self.order_status_transitions.labels(broker=broker, status=status).inc()

    def record_broker_call(self, broker: str, operation: str, duration_seconds: float) -> None:
        self.broker_call_latency.labels(broker=broker, operation=operation).observe(duration_seconds)

    def set_active_polling_tasks(self, count: int) -> None:
        self.active_polling_tasks.set(count)

    def record_connection_state(self, broker: str, state: str) -> None:
        self.connection_state_changes.labels(broker=broker, state=state).inc()
