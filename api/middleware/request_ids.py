from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from core.logging.correlation import CorrelationIdManager

REQUEST_ID_HEADER = "X-Request-ID"
CORRELATION_ID_HEADER = "X-Correlation-ID"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tag each request with a request id and a correlation id.

    Caller-supplied ids are reused; both are echoed on the response.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
        correlation_id = (request.headers.get(CORRELATION_ID_HEADER)
                          or CorrelationIdManager.generate_correlation_id())
        request.state.request_id = request_id

        CorrelationIdManager.clear_correlation()
        CorrelationIdManager.set_correlation_id(correlation_id)
        CorrelationIdManager.set_correlation_context(request_id=request_id, method=request.method,
                                                     path=request.url.path)

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers[CORRELATION_ID_HEADER] = correlation_id
        return response
