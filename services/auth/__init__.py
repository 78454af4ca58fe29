"""Broker connection lifecycle: registry, adapter provider and auth flows."""

from .models import (
    ALLOWED_TRANSITIONS,
    AuthOutcome,
    ConnectionState,
    OAuthState,
    assert_transition,
    can_transition,
    token_usable,
)
from .orchestrator import AuthOrchestrator
from .provider import AdapterProvider
from .registry import ConnectionRegistry
from .security import (
    create_access_token,
    decode_access_token,
    decode_oauth_state,
    encode_oauth_state,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "AdapterProvider",
    "AuthOrchestrator",
    "AuthOutcome",
    "ConnectionRegistry",
    "ConnectionState",
    "OAuthState",
    "assert_transition",
    "can_transition",
    "create_access_token",
    "decode_access_token",
    "decode_oauth_state",
    "encode_oauth_state",
    "token_usable",
]
