"""
Canned broker REST endpoints for httpx.MockTransport.
"""
import httpx


class BrokerGateway:
    """Routes requests by path to canned responses and records what was sent.

    A route value is a JSON body (HTTP 200), a ``(status, body)`` tuple or an
    exception to raise from the transport.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        reply = self.routes[request.url.path]
        if isinstance(reply, Exception):
            raise reply
        status, body = reply if isinstance(reply, tuple) else (200, reply)
        return httpx.Response(status, json=body)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)
