# Structured exception hierarchy for the webhook-to-broker order system

from typing import Dict, Any, Optional
from datetime import datetime, timezone


class AutoTraderException(Exception):
    """Base exception for all AutoTrader specific errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 correlation_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.correlation_id = correlation_id
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "error": type(self).__name__,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.details:
            payload["details"] = self.details
        if self.correlation_id:
            payload["correlation_id"] = self.correlation_id
        return payload


class ValidationError(AutoTraderException):
    """Malformed inbound request; no broker call is made"""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.field = field
        if field:
            self.details.setdefault("field", field)


class NotFoundError(AutoTraderException):
    """Referenced connection or order does not exist or is not active"""
    pass


class InvalidStateTransition(AutoTraderException):
    """Connection lifecycle edge that is not allowed"""

    def __init__(self, message: str, current: str, target: str, **kwargs):
        super().__init__(message, **kwargs)
        self.current = current
        self.target = target
        self.details.update({"current": current, "target": target})


class DecryptionError(AutoTraderException):
    """Stored secret cannot be decrypted (corruption or key mismatch)"""
    pass


# Broker Integration Errors
class BrokerError(AutoTraderException):
    """Base class for broker integration errors"""

    def __init__(self, message: str, broker: str, **kwargs):
        super().__init__(message, **kwargs)
        self.broker = broker
        self.details.setdefault("broker", broker)


class AuthExpiredError(BrokerError):
    """Token missing, expired or rejected by the broker; a reconnect is required"""
    pass


class BrokerAuthenticationError(BrokerError):
    """Broker refused the submitted login credentials"""

    def __init__(self, message: str, broker: str, user_message: Optional[str] = None,
                 status_code: int = 400, **kwargs):
        super().__init__(message, broker, **kwargs)
        self.user_message = user_message or message
        self.status_code = status_code


class OrderRejected(BrokerError):
    """Broker refused the order. Never retried automatically."""

    def __init__(self, message: str, broker: str, reason: Optional[str] = None, **kwargs):
        super().__init__(message, broker, **kwargs)
        self.reason = reason or message


class TransientNetworkError(BrokerError):
    """Timeout or connection failure talking to a broker"""
    pass


class InternalBrokerError(BrokerError):
    """Unclassified broker failure; raw broker message is kept in details"""

    def __init__(self, message: str, broker: str, api_error_code: Optional[str] = None,
                 api_response: Optional[Dict[str, Any]] = None, **kwargs):
        super().__init__(message, broker, **kwargs)
        self.api_error_code = api_error_code
        self.api_response = api_response or {}
        if api_error_code:
            self.details.setdefault("api_error_code", api_error_code)


class ConfigurationError(AutoTraderException):
    """Configuration errors - invalid settings"""
    pass
