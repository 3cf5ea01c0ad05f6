import asyncio
import threading
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from vendordash.auth import VendorSession
from vendordash.backend import BackendClient
from vendordash.config import Settings
from vendordash.main import create_app

BASE_URL = "https://backend.test/api/vendor"
PLANS = {
    "1month": {"name": "Monthly Plan", "price": 499, "duration": 30, "features": {"maxProducts": 10}},
    "1year": {"name": "Annual Plan", "price": 4999, "duration": 365, "features": {"maxProducts": 100}},
}


class FakeVendorBackend:
    """Scripted vendor backend served through ``httpx.MockTransport``."""

    def __init__(self):
        self.create_status = 201
        self.create_body = {
            "success": True,
            "data": {
                "subscription": {"_id": "sub_1", "status": "pending", "plan": "1year", "amount": 4999},
                "razorpayOrder": {"id": "order_1", "amount": 4999, "currency": "INR"},
            },
        }
        self.verify_success = True
        self.active = False
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/api/vendor")
        self.requests.append((request.method, path, request.content))
        if path == "/subscription/plans":
            return httpx.Response(200, json={"success": True, "data": PLANS})
        if path == "/subscription" and request.method == "POST":
            return httpx.Response(self.create_status, json=self.create_body)
        if path == "/subscription/verify":
            if not self.verify_success:
                return httpx.Response(200, json={"success": False, "message": "Invalid payment signature"})
            self.active = True
            return httpx.Response(200, json={"success": True, "message": "Subscription activated"})
        if path == "/subscription/current":
            if not self.active:
                return httpx.Response(200, json={"success": True, "data": None})
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "data": {
                        "_id": "sub_1",
                        "status": "active",
                        "plan": "1year",
                        "planName": "Annual Plan",
                        "features": {"maxProducts": 100},
                        "remainingDays": 365,
                    },
                },
            )
        return httpx.Response(404, json={"success": False, "message": "not found"})

    def calls(self, path):
        return [entry for entry in self.requests if entry[1] == path]


@pytest.fixture()
def vendor_backend():
    return FakeVendorBackend()


def _build_client(handler):
    settings = Settings(
        api_base=BASE_URL,
        http_timeout=2.0,
        read_retries=0,
        gateway_key_id="rzp_test_key",
        gateway_ready_poll_interval=0.001,
    )
    session = VendorSession()
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)
    backend = BackendClient.from_settings(settings, session, client=http, retry_backoff=0)
    app = create_app(settings, session=session, backend=backend)
    return TestClient(app)


@pytest.fixture()
def client(vendor_backend):
    with _build_client(vendor_backend.handler) as test_client:
        yield test_client


def _wait_for(client, predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    body = None
    while time.monotonic() < deadline:
        body = client.get("/api/v1/subscription/purchase").json()
        if predicate(body):
            return body
        time.sleep(0.01)
    raise AssertionError(f"purchase never reached expected state: {body}")


def _start_purchase(client, plan_key="1year"):
    response = client.post("/api/v1/subscription/purchase", json={"plan_key": plan_key})
    assert response.status_code == 202
    return response.json()


def _await_checkout(client):
    body = _wait_for(client, lambda data: data["state"] == "awaiting_payment")
    for _ in range(300):
        if body["order_id"] in client.get("/api/v1/checkout").json()["orders"]:
            return body
        time.sleep(0.01)
    raise AssertionError("checkout dialog was never opened")


def test_health(client):
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json()["service"] == "vendordash"


def test_login_and_session_health(client):
    assert client.get("/api/v1/session/health").json()["authenticated"] is False

    response = client.post("/api/v1/session/login", json={"token": "vendor-jwt"})
    assert response.status_code == 200
    assert response.json()["has_active_subscription"] is False
    assert response.json()["populated"] is True
    assert client.get("/api/v1/session/health").json()["authenticated"] is True


def test_list_plans(client):
    response = client.get("/api/v1/subscription/plans")
    assert response.status_code == 200
    plans = response.json()
    assert [plan["key"] for plan in plans] == ["1month", "1year"]
    assert plans[1]["popular"] is True
    assert plans[1]["price"] == 4999


def test_unknown_plan(client):
    response = client.post("/api/v1/subscription/purchase", json={"plan_key": "lifetime"})
    assert response.status_code == 404
    assert response.json()["detail"] == "plan_not_found"


def test_purchase_end_to_end(client, vendor_backend):
    client.post("/api/v1/session/login", json={"token": "vendor-jwt"})
    _start_purchase(client)
    status = _await_checkout(client)

    assert status["order_id"] == "order_1"
    assert status["checkout_url"] == "/api/v1/checkout/order_1"
    options = client.get(status["checkout_url"]).json()
    assert options["key"] == "rzp_test_key"
    assert options["amount"] == 4999
    assert options["currency"] == "INR"

    second = client.post("/api/v1/subscription/purchase", json={"plan_key": "1year"})
    assert second.status_code == 409

    response = client.post(
        "/api/v1/checkout/order_1/complete",
        json={
            "razorpay_payment_id": "pay_1",
            "razorpay_order_id": "order_1",
            "razorpay_signature": "sig_1",
        },
    )
    assert response.status_code == 200

    final = _wait_for(client, lambda data: data["state"] == "complete")
    assert final["error"] is None
    assert final["subscription_id"] == "sub_1"

    verify_calls = vendor_backend.calls("/subscription/verify")
    assert len(verify_calls) == 1
    assert b'"gatewayPaymentId":"pay_1"' in verify_calls[0][2].replace(b" ", b"")

    entitlements = client.get("/api/v1/subscription/entitlements").json()
    assert entitlements["has_active_subscription"] is True
    assert entitlements["plan_name"] == "Annual Plan"
    assert entitlements["feature_set"] == {"maxProducts": 100}

    assert "purchase_attempts_total" in client.get("/metrics").text


def test_dismissed_checkout_abandons_payment(client, vendor_backend):
    _start_purchase(client)
    _await_checkout(client)

    assert client.post("/api/v1/checkout/order_1/dismiss").status_code == 200
    final = _wait_for(client, lambda data: data["state"] == "payment_abandoned")

    assert final["error"]["code"] == "payment_cancelled"
    assert final["error"]["retryable"] is True
    assert vendor_backend.calls("/subscription/verify") == []
    assert client.post("/api/v1/checkout/order_1/dismiss").status_code == 404


def test_cancel_endpoint_abandons_payment(client, vendor_backend):
    assert client.post("/api/v1/subscription/purchase/cancel").json() == {"cancelled": False}
    _start_purchase(client)
    _await_checkout(client)

    assert client.post("/api/v1/subscription/purchase/cancel").json() == {"cancelled": True}
    _wait_for(client, lambda data: data["state"] == "payment_abandoned")
    assert client.get("/api/v1/checkout").json()["orders"] == []


def test_conflict_reports_manage_existing(client, vendor_backend):
    vendor_backend.create_status = 409
    vendor_backend.create_body = {
        "success": False,
        "message": "You already have an active or pending subscription",
    }
    _start_purchase(client)
    final = _wait_for(client, lambda data: data["state"] == "creation_failed")

    assert final["error"]["code"] == "order_conflict"
    assert final["error"]["next_action"] == "manage_existing"
    assert client.get("/api/v1/checkout").json()["orders"] == []


def test_failed_verification_refuses_resubmission(client, vendor_backend):
    vendor_backend.verify_success = False
    _start_purchase(client)
    _await_checkout(client)
    client.post(
        "/api/v1/checkout/order_1/complete",
        json={
            "razorpay_payment_id": "pay_1",
            "razorpay_order_id": "order_1",
            "razorpay_signature": "sig_1",
        },
    )
    final = _wait_for(client, lambda data: data["state"] == "verification_failed")

    assert final["error"]["payment_id"] == "pay_1"
    assert final["error"]["order_id"] == "order_1"
    assert final["error"]["next_action"] == "contact_support"

    retry = client.post("/api/v1/subscription/purchase/verification/retry")
    assert retry.status_code == 409
    assert len(vendor_backend.calls("/subscription/verify")) == 1

    reset = client.post("/api/v1/subscription/purchase/reset")
    assert reset.json()["state"] == "idle"


def test_hosted_link_is_returned(client, vendor_backend):
    vendor_backend.create_body = {
        "success": True,
        "data": {
            "subscription": {"_id": "sub_1", "status": "pending"},
            "paymentLink": "https://pay.example/link/1",
        },
    }
    _start_purchase(client)
    final = _wait_for(client, lambda data: data["state"] == "pending_external_action")
    assert final["payment_link"] == "https://pay.example/link/1"


def test_logout_clears_entitlements(client, vendor_backend):
    vendor_backend.active = True
    client.post("/api/v1/session/login", json={"token": "vendor-jwt"})
    assert client.get("/api/v1/subscription/entitlements").json()["has_active_subscription"] is True

    assert client.post("/api/v1/session/logout").json() == {"status": "logged_out"}
    entitlements = client.get("/api/v1/subscription/entitlements").json()
    assert entitlements["has_active_subscription"] is False
    assert entitlements["populated"] is False
    assert client.get("/api/v1/session/health").json()["authenticated"] is False


def test_readiness_follows_session(client):
    body = client.get("/api/v1/ready").json()
    assert body["ready"] is False
    assert body["checks"]["session"] == "not_authenticated"

    client.post("/api/v1/session/login", json={"token": "vendor-jwt"})
    body = client.get("/api/v1/ready").json()
    assert body["ready"] is True
    assert body["checks"]["checkout_runtime"] == "ok"
    assert body["checks"]["checkout_loaded"] is False


def test_logout_during_order_creation_skips_checkout():
    vendor_backend = FakeVendorBackend()
    release = threading.Event()

    async def handler(request):
        if request.method == "POST" and request.url.path.endswith("/subscription"):
            while not release.is_set():
                await asyncio.sleep(0.005)
        return vendor_backend.handler(request)

    with _build_client(handler) as client:
        client.post("/api/v1/session/login", json={"token": "vendor-jwt"})
        _start_purchase(client)
        _wait_for(client, lambda data: data["state"] == "order_creating")

        assert client.post("/api/v1/session/logout").json() == {"status": "logged_out"}
        release.set()

        final = _wait_for(client, lambda data: data["state"] == "payment_abandoned")
        assert final["state"] == "payment_abandoned"
        assert client.get("/api/v1/checkout").json()["orders"] == []
        assert vendor_backend.calls("/subscription/verify") == []
