from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from core.utils.exceptions import InvalidStateTransition
from services.auth import (
    ConnectionState,
    OAuthState,
    assert_transition,
    can_transition,
    create_access_token,
    decode_access_token,
    decode_oauth_state,
    encode_oauth_state,
    token_usable,
)

S = ConnectionState


def test_allowed_edges():
    assert can_transition(S.CREATED, S.PENDING_AUTH)
    assert can_transition(S.PENDING_AUTH, S.AUTHENTICATED)
    assert can_transition(S.AUTHENTICATED, S.EXPIRED)
    assert can_transition(S.EXPIRED, S.AUTHENTICATED)
    assert can_transition(S.AUTHENTICATED, S.DISCONNECTED)
    assert can_transition(S.EXPIRED, S.DISCONNECTED)


def test_forbidden_edges():
    assert not can_transition(S.PENDING_AUTH, S.DISCONNECTED)
    assert not can_transition(S.CREATED, S.AUTHENTICATED)
    for target in ConnectionState:
        assert not can_transition(S.DISCONNECTED, target)


def test_assert_transition_raises_with_states():
    with pytest.raises(InvalidStateTransition) as exc:
        assert_transition(S.PENDING_AUTH, S.DISCONNECTED)
    assert exc.value.current == "pending_auth"
    assert exc.value.target == "disconnected"


def test_token_usable():
    now = datetime.now(timezone.utc)
    assert token_usable("authenticated", now + timedelta(minutes=1), now)
    assert not token_usable("authenticated", now - timedelta(seconds=1), now)
    assert not token_usable("authenticated", now, now)
    assert not token_usable("authenticated", None, now)
    assert not token_usable("expired", now + timedelta(hours=1), now)
    # Naive values from sqlite are read as UTC
    assert token_usable("authenticated", (now + timedelta(minutes=1)).replace(tzinfo=None), now)


def test_oauth_state_round_trip(test_settings):
    token = encode_oauth_state(OAuthState(42, "user-1", "upstox", reconnect=True), test_settings)
    state = decode_oauth_state(token, test_settings)
    assert state == OAuthState(42, "user-1", "upstox", True)


def test_oauth_state_rejects_tampering_and_expiry(test_settings):
    assert decode_oauth_state(None, test_settings) is None
    assert decode_oauth_state("garbage", test_settings) is None

    forged = jwt.encode({"purpose": "oauth_state", "cid": 1, "uid": "u", "broker": "zerodha"},
                        "another-secret", algorithm="HS256")
    assert decode_oauth_state(forged, test_settings) is None

    expired = jwt.encode(
        {"purpose": "oauth_state", "cid": 1, "uid": "u", "broker": "zerodha",
         "exp": datetime.now(timezone.utc) - timedelta(seconds=5)},
        test_settings.auth.secret_key, algorithm=test_settings.auth.algorithm,
    )
    assert decode_oauth_state(expired, test_settings) is None


def test_access_token_and_oauth_state_are_not_interchangeable(test_settings):
    access = create_access_token({"sub": "user-1"}, test_settings)
    assert decode_access_token(access, test_settings)["sub"] == "user-1"
    assert decode_oauth_state(access, test_settings) is None

    state = encode_oauth_state(OAuthState(1, "user-1", "zerodha"), test_settings)
    assert decode_access_token(state, test_settings) is None
