"""Connection lifecycle models for the broker authentication flows."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional

from core.utils.exceptions import InvalidStateTransition


class ConnectionState(str, Enum):
    """Authentication state of one broker connection."""
    CREATED = "created"
    PENDING_AUTH = "pending_auth"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"
    DISCONNECTED = "disconnected"


# Self-loops cover re-issuing a login URL and token refresh
ALLOWED_TRANSITIONS: Mapping[ConnectionState, FrozenSet[ConnectionState]] = {
    ConnectionState.CREATED: frozenset({ConnectionState.PENDING_AUTH}),
    ConnectionState.PENDING_AUTH: frozenset({
        ConnectionState.PENDING_AUTH,
        ConnectionState.AUTHENTICATED,
    }),
    ConnectionState.AUTHENTICATED: frozenset({
        ConnectionState.AUTHENTICATED,
        ConnectionState.EXPIRED,
        ConnectionState.DISCONNECTED,
    }),
    ConnectionState.EXPIRED: frozenset({
        ConnectionState.EXPIRED,
        ConnectionState.AUTHENTICATED,
        ConnectionState.DISCONNECTED,
    }),
    ConnectionState.DISCONNECTED: frozenset(),
}


def can_transition(current: ConnectionState, target: ConnectionState) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def assert_transition(current: ConnectionState, target: ConnectionState) -> None:
    if not can_transition(current, target):
        raise InvalidStateTransition(
            f"Connection cannot move from {current.value} to {target.value}",
            current=current.value,
            target=target.value,
        )


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def token_usable(state: str, expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """A token may be used only while Authenticated and before its expiry."""
    if state != ConnectionState.AUTHENTICATED.value:
        return False
    expires_at = as_utc(expires_at)
    if expires_at is None:
        return False
    return (now or datetime.now(timezone.utc)) < expires_at


@dataclass
class OAuthState:
    """Correlation payload carried through an OAuth redirect."""
    connection_id: int
    user_id: str
    broker: str
    reconnect: bool = False


@dataclass
class AuthOutcome:
    """What a connect/reconnect/login call hands back to the API layer."""
    connection_id: int
    state: ConnectionState
    message: str
    login_url: Optional[str] = None
    requires_credentials: bool = False
    expires_at: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "connection_id": self.connection_id,
            "state": self.state.value,
            "message": self.message,
        }
        if self.login_url:
            payload["login_url"] = self.login_url
        if self.requires_credentials:
            payload["requires_credentials"] = True
        if self.expires_at:
            payload["expires_at"] = self.expires_at.isoformat()
        payload.update(self.extra)
        return payload
