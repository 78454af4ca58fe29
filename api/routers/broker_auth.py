from fastapi import APIRouter, Depends, Request
from dependency_injector.wiring import inject, Provide

from app.containers import AppContainer
from core.logging import get_api_logger_safe, get_audit_logger_safe
from core.utils.exceptions import ValidationError
from services.auth import AuthOrchestrator

router = APIRouter(tags=["Broker Authentication"])

api_logger = get_api_logger_safe("broker_auth_api")
audit_logger = get_audit_logger_safe("broker_auth_audit")


@router.get("/broker/auth/{broker}/callback")
@inject
async def oauth_callback(
    broker: str,
    request: Request,
    orchestrator: AuthOrchestrator = Depends(Provide[AppContainer.auth_orchestrator]),
):
    """
    OAuth redirect target for Zerodha and Upstox.

    The signed ``state`` query parameter identifies the connection; the
    request token (Zerodha) or authorization code (Upstox) is exchanged for
    an access token.
    """
    params = dict(request.query_params)
    api_logger.info("OAuth callback received",
                    broker=broker,
                    has_state=bool(params.get("state")),
                    status=params.get("status"))

    if params.get("error") or params.get("status") in ("cancelled", "error"):
        raise ValidationError(
            f"Broker login was not completed: {params.get('error_description') or params.get('error') or params.get('status')}",
            field="status",
        )

    outcome = await orchestrator.oauth_callback(broker, params)
    audit_logger.info("OAuth callback completed",
                      broker=broker,
                      connection_id=outcome.connection_id,
                      action="BROKER_OAUTH_CALLBACK")
    return {"success": True, **outcome.to_dict()}
