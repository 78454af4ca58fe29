"""
HTTP surface: routing, auth, error mapping and request ids.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest
from dependency_injector import providers
from fastapi.testclient import TestClient

from api.main import create_app
from app.containers import AppContainer
from core.utils.exceptions import (
    AuthExpiredError,
    DecryptionError,
    OrderRejected,
    TransientNetworkError,
    ValidationError,
)
from services.auth import create_access_token
from services.brokers import OrderStatus
from services.ingestion import WebhookResult


@pytest.fixture
def pipeline():
    pipeline = MagicMock()
    pipeline.process = AsyncMock(return_value=WebhookResult(
        order_id=7, broker_order_id="ABC123", status=OrderStatus.OPEN,
        processing_time_ms=12, polling_started=True, debug_logs=["Order created with ID: 7"],
    ))
    return pipeline


@pytest.fixture
def container(test_settings, pipeline):
    container = AppContainer()
    container.settings.override(providers.Object(test_settings))
    container.ingestion_pipeline.override(providers.Object(pipeline))
    yield container
    container.unwire()


@pytest.fixture
def client(container):
    with TestClient(create_app(container)) as client:
        yield client


@pytest.fixture
def auth_headers(test_settings):
    return {"Authorization": f"Bearer {create_access_token({'sub': 'user-1'}, test_settings)}"}


def test_health_and_root(client):
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["active_polling_tasks"] == 0
    assert client.get("/").json()["api_prefix"] == "/api/v1"


def test_webhook_success_body(client, pipeline):
    response = client.post("/api/v1/webhook/user-1/hook-1",
                           json={"symbol": "RELIANCE", "action": "BUY", "quantity": 1})

    assert response.status_code == 200
    body = response.json()
    assert body == {
        "success": True, "orderId": 7, "brokerOrderId": "ABC123", "status": "OPEN",
        "processingTime": 12, "pollingStarted": True, "debugLogs": ["Order created with ID: 7"],
    }
    pipeline.process.assert_awaited_once_with(
        "user-1", "hook-1", {"symbol": "RELIANCE", "action": "BUY", "quantity": 1})


def test_webhook_rejects_non_json(client, pipeline):
    response = client.post("/api/v1/webhook/user-1/hook-1", content=b"symbol=X",
                           headers={"Content-Type": "text/plain"})
    assert response.status_code == 400
    assert response.json()["message"] == "Invalid payload: body must be JSON"
    pipeline.process.assert_not_awaited()


@pytest.mark.parametrize("error,status,field", [
    (ValidationError("Invalid quantity: must be an integer > 0", field="quantity"), 400, None),
    (AuthExpiredError("Broker session is expired", "zerodha"), 401, "reconnect"),
    (OrderRejected("RMS rejected", "zerodha", reason="Insufficient margin"), 422, "reason"),
    (DecryptionError("Ciphertext was tampered with"), 409, "needs_credentials"),
    (TransientNetworkError("timed out", "upstox"), 503, None),
])
def test_webhook_error_mapping(client, pipeline, error, status, field):
    pipeline.process.side_effect = error
    response = client.post("/api/v1/webhook/user-1/hook-1", json={"symbol": "X"})

    assert response.status_code == status
    body = response.json()
    assert body["success"] is False
    assert body["error"] == type(error).__name__
    assert body["message"] == error.message
    if field:
        assert field in body


def test_request_ids_are_echoed(client):
    response = client.get("/health", headers={"X-Request-ID": "req-42", "X-Correlation-ID": "corr-42"})
    assert response.headers["X-Request-ID"] == "req-42"
    assert response.headers["X-Correlation-ID"] == "corr-42"
    assert client.get("/health").headers["X-Request-ID"]


def test_management_endpoints_need_a_bearer_token(client, test_settings):
    assert client.get("/api/v1/brokers/connections").status_code == 401
    bad = {"Authorization": "Bearer not-a-token"}
    assert client.get("/api/v1/brokers/connections", headers=bad).status_code == 401


def test_connect_then_list(client, auth_headers):
    created = client.post("/api/v1/brokers/connect", headers=auth_headers, json={
        "broker": "zerodha", "connection_name": "Kite", "api_key": "kite-key", "api_secret": "kite-secret",
    })
    assert created.status_code == 200
    body = created.json()
    assert body["state"] == "pending_auth"
    assert body["login_url"].startswith("https://kite.zerodha.com/connect/login")

    listed = client.get("/api/v1/brokers/connections", headers=auth_headers).json()["connections"]
    assert [c["id"] for c in listed] == [body["connection_id"]]
    assert listed[0]["needs_reconnect"] is True
    assert "kite-secret" not in str(listed)


def test_connect_validation_error(client, auth_headers):
    response = client.post("/api/v1/brokers/connect", headers=auth_headers,
                           json={"broker": "angel", "api_key": "k"})
    assert response.status_code == 400
    assert response.json()["details"]["field"] == "client_code"


def test_unknown_connection_is_404(client, auth_headers):
    response = client.get("/api/v1/brokers/connections/999/status", headers=auth_headers)
    assert response.status_code == 404


def test_oauth_callback_cancelled_by_user(client):
    response = client.get("/api/v1/broker/auth/zerodha/callback", params={"status": "cancelled"})
    assert response.status_code == 400


def test_oauth_callback_without_state(client):
    response = client.get("/api/v1/broker/auth/upstox/callback", params={"code": "abc"})
    assert response.status_code == 400
    assert response.json()["details"]["field"] == "state"


def test_shoonya_credential_check(client, auth_headers):
    response = client.post("/api/v1/brokers/shoonya/test-credentials", headers=auth_headers,
                           json={"user_id": "FA1", "vendor_code": "FA1_U", "api_secret": "long-enough-secret"})
    assert response.status_code == 200
    assert response.json()["valid"] is True


def test_orders_and_logs_start_empty(client, auth_headers):
    assert client.get("/api/v1/orders", headers=auth_headers).json() == {"orders": []}
    assert client.get("/api/v1/webhook-logs", headers=auth_headers).json() == {"logs": []}
    assert client.get("/api/v1/orders?limit=0", headers=auth_headers).status_code == 422


def test_metrics_endpoint(client, container):
    container.prometheus_metrics().record_webhook("success")
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "autotrader_" in response.text


def test_polling_endpoints(client, auth_headers):
    assert client.get("/api/v1/orders/polling/status", headers=auth_headers).json() == {
        "active": 0, "orders": [],
    }
    assert client.post("/api/v1/orders/999/start-polling", headers=auth_headers).status_code == 404
    assert client.post("/api/v1/orders/999/stop-polling", headers=auth_headers).status_code == 404
    assert client.post("/api/v1/orders/999/stop-polling").status_code == 401


def test_live_broker_reads_need_an_owned_connection(client, auth_headers):
    assert client.get("/api/v1/brokers/connections/999/holdings", headers=auth_headers).status_code == 404
    assert client.get("/api/v1/brokers/connections/999/orders", headers=auth_headers).status_code == 404
