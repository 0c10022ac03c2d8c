from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import stripe

from backend.app.core.errors import CheckoutUnavailable, InvalidSignature
from backend.app.services.stripe_gateway import StripeGateway, first_price_id


@pytest.fixture
def stripe_api(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    api = MagicMock()
    api.Customer.list.return_value = {"data": []}
    api.Customer.create.return_value = {"id": "cus_new"}
    api.Session.create.return_value = {"id": "cs_test_1", "url": "https://checkout.stripe.com/c/pay/cs_test_1"}
    monkeypatch.setattr(stripe.Customer, "list", api.Customer.list)
    monkeypatch.setattr(stripe.Customer, "create", api.Customer.create)
    monkeypatch.setattr(stripe.checkout.Session, "create", api.Session.create)
    return api


def _gateway(**overrides) -> StripeGateway:
    values = {"api_key": "sk_test", "webhook_secret": "whsec_test", "tolerance_seconds": 300}
    values.update(overrides)
    return StripeGateway(**values)


def test_subscription_checkout_carries_account_reference(stripe_api: MagicMock) -> None:
    session = _gateway().create_checkout_session(
        "acct-1",
        "price_pro",
        "subscription",
        success_url="https://ads.example.com/done",
        cancel_url="https://ads.example.com/pricing",
    )

    assert session["id"] == "cs_test_1"
    assert session["url"].startswith("https://checkout.stripe.com/")
    kwargs = stripe_api.Session.create.call_args.kwargs
    assert kwargs["api_key"] == "sk_test"
    assert kwargs["mode"] == "subscription"
    assert kwargs["line_items"] == [{"price": "price_pro", "quantity": 1}]
    assert kwargs["client_reference_id"] == "acct-1"
    assert kwargs["metadata"] == {"account_id": "acct-1"}
    assert kwargs["subscription_data"] == {"metadata": {"account_id": "acct-1"}}
    assert kwargs["allow_promotion_codes"] is True
    assert kwargs["success_url"] == "https://ads.example.com/done"
    assert "customer" not in kwargs
    stripe_api.Customer.list.assert_not_called()


def test_payment_checkout_has_no_subscription_data(stripe_api: MagicMock) -> None:
    _gateway().create_checkout_session("acct-1", "price_pack", "payment")

    kwargs = stripe_api.Session.create.call_args.kwargs
    assert kwargs["mode"] == "payment"
    assert "subscription_data" not in kwargs


def test_existing_customer_is_reused(stripe_api: MagicMock) -> None:
    stripe_api.Customer.list.return_value = {"data": [{"id": "cus_existing"}]}

    session = _gateway().create_checkout_session("acct-1", "price_pro", email="owner@example.com")

    assert session["customer_id"] == "cus_existing"
    assert stripe_api.Session.create.call_args.kwargs["customer"] == "cus_existing"
    stripe_api.Customer.create.assert_not_called()


def test_missing_customer_is_created_with_account_metadata(stripe_api: MagicMock) -> None:
    session = _gateway().create_checkout_session("acct-1", "price_pro", email="owner@example.com")

    assert session["customer_id"] == "cus_new"
    create_kwargs = stripe_api.Customer.create.call_args.kwargs
    assert create_kwargs["email"] == "owner@example.com"
    assert create_kwargs["metadata"] == {"account_id": "acct-1"}


def test_stripe_failure_becomes_checkout_unavailable(stripe_api: MagicMock) -> None:
    stripe_api.Session.create.side_effect = stripe.APIConnectionError("network down")

    with pytest.raises(CheckoutUnavailable):
        _gateway().create_checkout_session("acct-1", "price_pro")


def test_checkout_without_secret_key_is_unavailable(stripe_api: MagicMock) -> None:
    with pytest.raises(CheckoutUnavailable):
        _gateway(api_key="").create_checkout_session("acct-1", "price_pro")
    stripe_api.Session.create.assert_not_called()


def test_non_utf8_payload_is_an_invalid_signature() -> None:
    with pytest.raises(InvalidSignature):
        _gateway().verify_event(b"\xff\xfe\x00not-json", "t=1,v1=abc")


@pytest.mark.parametrize(
    "items, expected",
    [
        ({"data": [{"price": {"id": "price_1"}}]}, "price_1"),
        ({"data": [{"price": "price_2"}]}, "price_2"),
        ({"data": []}, None),
        (None, None),
    ],
)
def test_first_price_id(items, expected) -> None:
    assert first_price_id(items) == expected
