"""Tests for the Stripe-backed payment provider adapter."""
from __future__ import annotations

import pytest
import stripe

from creator_backend.app.billing import PaymentNotCompleted, ProviderUnavailable, Tier
from creator_backend.app.services.billing import StripePaymentProvider

API_KEY = "sk_test_provider"


def _stripe_object(values: dict) -> stripe.StripeObject:
    return stripe.StripeObject.construct_from(values, API_KEY)


def test_subscription_metadata_is_read_from_stripe_object(monkeypatch):
    calls = []

    def fake_retrieve(subscription_id, **kwargs):
        calls.append((subscription_id, kwargs))
        return _stripe_object(
            {"id": subscription_id, "object": "subscription", "metadata": {"userId": "fan-1", "creatorId": "creator-1"}}
        )

    monkeypatch.setattr(stripe.Subscription, "retrieve", fake_retrieve)

    metadata = StripePaymentProvider(API_KEY).retrieve_subscription_metadata("sub_1")

    assert metadata.subscriber_id == "fan-1"
    assert metadata.creator_id == "creator-1"
    assert calls == [("sub_1", {"api_key": API_KEY})]


def test_checkout_session_is_parsed_with_line_item_price(monkeypatch):
    def fake_retrieve(session_id, **kwargs):
        assert kwargs["expand"] == ["line_items"]
        return _stripe_object(
            {
                "id": session_id,
                "object": "checkout.session",
                "payment_status": "paid",
                "mode": "subscription",
                "amount_total": 3990,
                "currency": "brl",
                "metadata": {"subscriberId": "fan-1", "creatorId": "creator-1", "tier": "gold"},
                "line_items": {
                    "object": "list",
                    "data": [{"id": "li_1", "price": {"id": "price_1SEJrb5I63txB0RGmEzQuWdw"}}],
                },
            }
        )

    monkeypatch.setattr(stripe.checkout.Session, "retrieve", fake_retrieve)

    session = StripePaymentProvider(API_KEY).retrieve_checkout_session("cs_live_1")

    assert session.payment_status == "paid"
    assert session.price_id == "price_1SEJrb5I63txB0RGmEzQuWdw"
    assert session.metadata.tier is Tier.GOLD


def test_unknown_checkout_session_is_not_completed(monkeypatch):
    def fake_retrieve(session_id, **kwargs):
        raise stripe.InvalidRequestError("No such checkout.session", "id")

    monkeypatch.setattr(stripe.checkout.Session, "retrieve", fake_retrieve)

    with pytest.raises(PaymentNotCompleted):
        StripePaymentProvider(API_KEY).retrieve_checkout_session("cs_missing")


def test_stripe_outage_is_provider_unavailable(monkeypatch):
    def fake_retrieve(subscription_id, **kwargs):
        raise stripe.APIConnectionError("connection refused")

    monkeypatch.setattr(stripe.Subscription, "retrieve", fake_retrieve)

    with pytest.raises(ProviderUnavailable):
        StripePaymentProvider(API_KEY).retrieve_subscription_metadata("sub_1")
