from fastapi import Depends, HTTPException, Query, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from dependency_injector.wiring import inject, Provide
from typing import Optional

from app.containers import AppContainer
from core.config.settings import Settings
from services.auth import decode_access_token

bearer_scheme = HTTPBearer(auto_error=False)


# Management endpoint authentication
@inject
async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(Provide[AppContainer.settings]),
) -> str:
    """Application user id from the bearer token's ``sub`` claim"""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_access_token(credentials.credentials, settings)
    user_id = payload.get("sub") if payload else None
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired access token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return str(user_id)


# Query parameter dependencies
def get_limit_param(
    limit: int = Query(100, ge=1, le=1000, description="Maximum rows to return")
) -> int:
    return limit
