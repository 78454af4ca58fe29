# Enhanced structured logging with multi-channel support
import structlog
from typing import Optional, Dict, Any

from core.config.settings import Settings
from .channels import LogChannel
from .enhanced_logging import (
    configure_enhanced_logging,
    get_enhanced_logger,
    get_channel_logger,
    get_logging_statistics,
)


def configure_logging(settings: Settings) -> None:
    """Configure logging system (idempotent)."""
    configure_enhanced_logging(settings)


def get_logger(name: str, component: Optional[str] = None) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return get_enhanced_logger(name, component)


def bind_broker_context(logger: structlog.BoundLogger, broker: str,
                        connection_id: Optional[int] = None) -> structlog.BoundLogger:
    """Bind broker context consistently to a logger."""
    ctx: Dict[str, Any] = {"broker": broker}
    if connection_id is not None:
        ctx["connection_id"] = connection_id
    return logger.bind(**ctx)


def get_statistics() -> Dict[str, Any]:
    """Get logging system statistics."""
    return get_logging_statistics()


# Channel-specific logger functions
def get_trading_logger_safe(name: str) -> structlog.BoundLogger:
    return get_channel_logger(name, LogChannel.TRADING)


def get_broker_logger_safe(name: str) -> structlog.BoundLogger:
    return get_channel_logger(name, LogChannel.BROKER)


def get_api_logger_safe(name: str) -> structlog.BoundLogger:
    return get_channel_logger(name, LogChannel.API)


def get_audit_logger_safe(name: str) -> structlog.BoundLogger:
    return get_channel_logger(name, LogChannel.AUDIT)


def get_performance_logger_safe(name: str) -> structlog.BoundLogger:
    return get_channel_logger(name, LogChannel.PERFORMANCE)


def get_error_logger_safe(name: str) -> structlog.BoundLogger:
    return get_channel_logger(name, LogChannel.ERROR)


def get_database_logger_safe(name: str) -> structlog.BoundLogger:
    return get_channel_logger(name, LogChannel.DATABASE)


__all__ = [
    "LogChannel",
    "configure_logging",
    "get_logger",
    "bind_broker_context",
    "get_statistics",
    "get_trading_logger_safe",
    "get_broker_logger_safe",
    "get_api_logger_safe",
    "get_audit_logger_safe",
    "get_performance_logger_safe",
    "get_error_logger_safe",
    "get_database_logger_safe",
]
