from fastapi import APIRouter, Depends, Request
from dependency_injector.wiring import inject, Provide
from json import JSONDecodeError

from app.containers import AppContainer
from core.logging import get_api_logger_safe
from core.utils.exceptions import ValidationError
from services.ingestion import OrderIngestionPipeline

router = APIRouter(tags=["Webhook"])

api_logger = get_api_logger_safe("webhook_api")


@router.post("/webhook/{user_id}/{webhook_id}")
@inject
async def receive_webhook(
    user_id: str,
    webhook_id: str,
    request: Request,
    pipeline: OrderIngestionPipeline = Depends(Provide[AppContainer.ingestion_pipeline]),
):
    """
    Trade signal from an external alerting source.

    Unauthenticated; the (user id, webhook id) pair selects the broker connection.
    """
    try:
        payload = await request.json()
    except (JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Invalid payload: body must be JSON")

    api_logger.info("Webhook received",
                    user_id=user_id,
                    webhook_id=webhook_id,
                    client_ip=request.client.host if request.client else "unknown")

    result = await pipeline.process(user_id, webhook_id, payload)
    return result.to_dict()
