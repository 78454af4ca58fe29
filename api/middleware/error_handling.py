from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from core.logging import get_api_logger_safe
from core.logging.correlation import CorrelationIdManager
from core.utils.exceptions import (
    AuthExpiredError,
    AutoTraderException,
    BrokerAuthenticationError,
    DecryptionError,
    InternalBrokerError,
    InvalidStateTransition,
    NotFoundError,
    OrderRejected,
    TransientNetworkError,
    ValidationError,
)
from datetime import datetime, timezone

logger = get_api_logger_safe("api.middleware.error_handling")

# Most specific first; the first isinstance match wins
STATUS_CODES = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (AuthExpiredError, 401),
    (BrokerAuthenticationError, 400),
    (OrderRejected, 422),
    (DecryptionError, 409),
    (InvalidStateTransition, 409),
    (TransientNetworkError, 503),
    (InternalBrokerError, 502),
)


def status_code_for(exc: AutoTraderException) -> int:
    if isinstance(exc, BrokerAuthenticationError):
        return exc.status_code
    for exc_type, code in STATUS_CODES:
        if isinstance(exc, exc_type):
            return code
    return 500


def error_body(exc: AutoTraderException) -> dict:
    body = exc.to_dict()
    body["success"] = False
    if isinstance(exc, BrokerAuthenticationError):
        body["message"] = exc.user_message
    if isinstance(exc, AuthExpiredError):
        body["reconnect"] = True
    if isinstance(exc, DecryptionError):
        body["needs_credentials"] = True
    if isinstance(exc, OrderRejected):
        body["reason"] = exc.reason
    if exc.correlation_id is None:
        correlation_id = CorrelationIdManager.get_correlation_id()
        if correlation_id:
            body["correlation_id"] = correlation_id
    return body


async def handle_domain_error(request: Request, exc: AutoTraderException) -> JSONResponse:
    code = status_code_for(exc)
    log = logger.error if code >= 500 else logger.warning
    log("Request failed",
        path=request.url.path,
        method=request.method,
        status_code=code,
        error_type=type(exc).__name__,
        error=exc.message)
    return JSONResponse(status_code=code, content=error_body(exc))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AutoTraderException, handle_domain_error)


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Global error handling middleware"""

    async def dispatch(self, request: Request, call_next):
        try:
            response = await call_next(request)
            return response
        except HTTPException as e:
            # Let FastAPI handle HTTP exceptions normally
            raise e
        except Exception as e:
            # Log the error
            logger.error(
                "Unhandled API exception",
                path=request.url.path,
                method=request.method,
                error=str(e),
                exc_info=True
            )

            # Return a structured error response
            return JSONResponse(
                status_code=500,
                content={
                    "success": False,
                    "error": "Internal server error",
                    "message": "An unexpected error occurred",
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "path": request.url.path
                }
            )
