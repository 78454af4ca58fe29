from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from core.config.settings import Settings
from .models import OAuthState

OAUTH_STATE_PURPOSE = "oauth_state"


def _sign(claims: dict, ttl: timedelta, settings: Settings) -> str:
    claims = {**claims, "exp": datetime.now(timezone.utc) + ttl}
    return jwt.encode(claims, settings.auth.secret_key, algorithm=settings.auth.algorithm)


def _verify(token: str, settings: Settings) -> Optional[dict]:
    try:
        return jwt.decode(token, settings.auth.secret_key, algorithms=[settings.auth.algorithm])
    except JWTError:
        return None


# --- API bearer tokens ---
# Management endpoints authenticate the application user with a JWT whose
# ``sub`` is the user id.

def create_access_token(data: dict, settings: Settings) -> str:
    return _sign(data, timedelta(minutes=settings.auth.access_token_expire_minutes), settings)


def decode_access_token(token: str, settings: Settings) -> dict | None:
    """Payload of a valid bearer token, otherwise None."""
    payload = _verify(token, settings)
    if payload is None or payload.get("purpose") == OAUTH_STATE_PURPOSE:
        # A leaked OAuth state must never work as an API credential
        return None
    return payload


# --- OAuth correlation state ---

def encode_oauth_state(state: OAuthState, settings: Settings) -> str:
    """Signed, short-lived correlation token for the OAuth redirect round-trip."""
    claims = {
        "purpose": OAUTH_STATE_PURPOSE,
        "cid": state.connection_id,
        "uid": state.user_id,
        "broker": state.broker,
        "reconnect": state.reconnect,
    }
    return _sign(claims, timedelta(seconds=settings.auth.oauth_state_ttl_seconds), settings)


def decode_oauth_state(token: Optional[str], settings: Settings) -> Optional[OAuthState]:
    """Returns None when the token is missing, tampered with or expired."""
    claims = _verify(token, settings) if token else None
    if claims is None or claims.get("purpose") != OAUTH_STATE_PURPOSE:
        return None
    try:
        return OAuthState(
            connection_id=int(claims["cid"]),
            user_id=str(claims["uid"]),
            broker=str(claims["broker"]),
            reconnect=bool(claims.get("reconnect", False)),
        )
    except (KeyError, TypeError, ValueError):
        return None
