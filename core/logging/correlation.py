"""
Correlation ids for log events.

HTTP requests get one from RequestIdMiddleware; each order status poll
starts its own. The structlog chain copies the current id (and request id,
when set) onto every event.
"""

import contextvars
import uuid
from typing import Any, Dict, Optional

_correlation_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "autotrader_correlation_id", default=None
)
_correlation_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "autotrader_correlation_context", default={}
)


class CorrelationIdManager:

    @staticmethod
    def generate_correlation_id() -> str:
        return uuid.uuid4().hex

    @staticmethod
    def set_correlation_id(correlation_id: str) -> str:
        _correlation_id.set(correlation_id)
        return correlation_id

    @staticmethod
    def get_correlation_id() -> Optional[str]:
        return _correlation_id.get()

    @staticmethod
    def set_correlation_context(**values) -> Dict[str, Any]:
        # Copy on write; the default dict is shared between contexts
        merged = {**_correlation_context.get(), **values}
        _correlation_context.set(merged)
        return merged

    @staticmethod
    def get_correlation_context() -> Dict[str, Any]:
        return dict(_correlation_context.get())

    @staticmethod
    def clear_correlation() -> None:
        _correlation_id.set(None)
        _correlation_context.set({})


def create_correlation_context(service: str, operation: str, **context) -> str:
    """Start a new correlation id for background work such as a polling task.

    ``None`` values in ``context`` are dropped.
    """
    CorrelationIdManager.clear_correlation()
    correlation_id = CorrelationIdManager.set_correlation_id(CorrelationIdManager.generate_correlation_id())
    CorrelationIdManager.set_correlation_context(
        service=service,
        operation=operation,
        **{key: value for key, value in context.items() if value is not None},
    )
    return correlation_id
