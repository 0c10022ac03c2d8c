from __future__ import annotations

from typing import Any

import pytest
from fastapi.testclient import TestClient

from backend.app.api import deps
from backend.app.core.database import Database
from backend.app.core.errors import CheckoutUnavailable
from backend.app.services.plans import PlanStore
from backend.app.services.stripe_gateway import StripeGateway
from backend.main import app


class RecordingGateway(StripeGateway):
    def __init__(self, error: Exception | None = None):
        super().__init__(api_key="sk_test", webhook_secret="whsec_test", tolerance_seconds=300)
        self.calls: list[dict[str, Any]] = []
        self.error = error

    def create_checkout_session(self, account_id, price_id, mode="subscription", **kwargs) -> dict[str, Any]:
        self.calls.append({"account_id": account_id, "price_id": price_id, "mode": mode, **kwargs})
        if self.error is not None:
            raise self.error
        return {"id": "cs_test_9", "url": "https://checkout.stripe.com/c/pay/cs_test_9", "customer_id": None}


@pytest.fixture
def gateway(db: Database):
    PlanStore(db).upsert(plan_id="pro", name="Pro", external_price_id="price_pro", credits_granted=100)
    recording = RecordingGateway()
    app.dependency_overrides[deps.get_stripe_gateway] = lambda: recording
    yield recording
    app.dependency_overrides.pop(deps.get_stripe_gateway, None)


def test_checkout_returns_session_url(client: TestClient, gateway: RecordingGateway) -> None:
    resp = client.post(
        "/billing/checkout",
        json={"accountId": "acct-1", "priceId": "price_pro", "mode": "payment", "email": "owner@example.com"},
    )

    assert resp.status_code == 200
    assert resp.json() == {"session_id": "cs_test_9", "url": "https://checkout.stripe.com/c/pay/cs_test_9"}
    assert gateway.calls[0]["account_id"] == "acct-1"
    assert gateway.calls[0]["mode"] == "payment"
    assert gateway.calls[0]["email"] == "owner@example.com"


def test_checkout_defaults_to_subscription(client: TestClient, gateway: RecordingGateway) -> None:
    client.post("/billing/checkout", json={"accountId": "acct-1", "priceId": "price_pro"})

    assert gateway.calls[0]["mode"] == "subscription"


def test_checkout_for_unknown_price_is_rejected(client: TestClient, gateway: RecordingGateway) -> None:
    resp = client.post("/billing/checkout", json={"accountId": "acct-1", "priceId": "price_missing"})

    assert resp.status_code == 422
    assert resp.json()["code"] == "UNKNOWN_PLAN"
    assert gateway.calls == []


def test_checkout_rejects_unsupported_mode(client: TestClient, gateway: RecordingGateway) -> None:
    resp = client.post("/billing/checkout", json={"accountId": "acct-1", "priceId": "price_pro", "mode": "setup"})

    assert resp.status_code == 422


def test_stripe_outage_maps_to_bad_gateway(client: TestClient, gateway: RecordingGateway) -> None:
    gateway.error = CheckoutUnavailable()

    resp = client.post("/billing/checkout", json={"accountId": "acct-1", "priceId": "price_pro"})

    assert resp.status_code == 502
    assert resp.json()["code"] == "CHECKOUT_UNAVAILABLE"
