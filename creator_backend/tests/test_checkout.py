"""Tests for checkout session creation and the post-checkout verification fallback."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from creator_backend.app.billing import (
    CheckoutMismatch,
    CheckoutMode,
    CheckoutSessionBuilder,
    CheckoutSessionObject,
    CheckoutVerifier,
    EntitlementRecord,
    EventDispatcher,
    EventMetadata,
    InMemoryBillingRepository,
    PaymentEvent,
    PaymentNotCompleted,
    ReconciliationOutcome,
    ReconciliationService,
    SubscriptionStatus,
    Tier,
    UnknownProduct,
    normalize_app_url,
)
from creator_backend.app.billing.service import BillingNotifier, PaymentProvider
from creator_backend.app.services.billing import LocalSandboxPaymentProvider


class RecordingProvider(PaymentProvider):
    def __init__(self) -> None:
        self.calls: List[Dict[str, object]] = []

    def create_checkout_session(
        self,
        *,
        price_id: str,
        mode: CheckoutMode,
        metadata: Dict[str, str],
        return_url: str,
    ) -> Dict[str, object]:
        self.calls.append({"price_id": price_id, "mode": mode, "metadata": metadata, "return_url": return_url})
        return {"id": f"cs_{len(self.calls)}", "client_secret": f"secret_{len(self.calls)}"}

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionObject:
        raise AssertionError("not used")

    def retrieve_subscription_metadata(self, subscription_id: str) -> EventMetadata:
        raise AssertionError("not used")


class SilentNotifier(BillingNotifier):
    def notify_subscription_canceled(self, entitlement: EntitlementRecord) -> None:
        pass

    def notify_payment_failed(self, entitlement: EntitlementRecord, invoice_id: Optional[str]) -> None:
        pass


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("https://creators.example.com/", "https://creators.example.com"),
        ("https:creators.example.com", "https://creators.example.com"),
        ("https:/creators.example.com", "https://creators.example.com"),
        ("creators.example.com", "https://creators.example.com"),
        ("HTTP://localhost:3000", "http://localhost:3000"),
        ("", "http://localhost:3000"),
        (None, "http://localhost:3000"),
    ],
)
def test_normalize_app_url(raw, expected):
    assert normalize_app_url(raw) == expected


def test_subscription_checkout_uses_catalog_price_and_return_url():
    provider = RecordingProvider()
    builder = CheckoutSessionBuilder(provider, "https:creators.example.com/")

    session = builder.build_subscription_checkout("fan-1", "creator-1", Tier.GOLD)

    assert session.session_id == "cs_1"
    assert session.client_secret == "secret_1"
    call = provider.calls[0]
    assert call["price_id"] == "price_1SEJrb5I63txB0RGmEzQuWdw"
    assert call["mode"] is CheckoutMode.SUBSCRIPTION
    assert call["return_url"] == "https://creators.example.com/subscription/success?session_id={CHECKOUT_SESSION_ID}"
    assert call["metadata"] == {
        "subscriberId": "fan-1",
        "userId": "fan-1",
        "creatorId": "creator-1",
        "tier": "gold",
        "type": "subscription",
    }


def test_service_checkout_uses_payment_mode():
    provider = RecordingProvider()
    builder = CheckoutSessionBuilder(provider, "https://creators.example.com")

    builder.build_service_checkout("fan-1", "creator-1", "custom-pack")

    call = provider.calls[0]
    assert call["mode"] is CheckoutMode.PAYMENT
    assert call["price_id"] == "price_1SGR3j5I63txB0RGuyM3i3mx"
    assert call["return_url"].startswith("https://creators.example.com/service/success?session_id=")
    assert call["metadata"]["serviceProductId"] == "custom-pack"


def test_free_tier_has_no_product_and_skips_provider():
    provider = RecordingProvider()
    builder = CheckoutSessionBuilder(provider, "https://creators.example.com")

    with pytest.raises(UnknownProduct):
        builder.build_subscription_checkout("fan-1", "creator-1", Tier.BRONZE)

    assert provider.calls == []


def test_unknown_service_skips_provider():
    provider = RecordingProvider()
    builder = CheckoutSessionBuilder(provider, "https://creators.example.com")

    with pytest.raises(UnknownProduct) as excinfo:
        builder.build_service_checkout("fan-1", "creator-1", "mystery-box")

    assert excinfo.value.product == "mystery-box"
    assert provider.calls == []


@pytest.fixture
def sandbox():
    provider = LocalSandboxPaymentProvider()
    repository = InMemoryBillingRepository()
    service = ReconciliationService(repository=repository, notifier=SilentNotifier(), provider=provider)
    builder = CheckoutSessionBuilder(provider, "http://localhost:3000")
    return provider, repository, service, builder, CheckoutVerifier(provider, service)


def test_verify_paid_checkout_grants_tier(sandbox):
    provider, repository, _, builder, verifier = sandbox
    session = builder.build_subscription_checkout("fan-1", "creator-1", Tier.PLATINUM)
    provider.complete_session(session.session_id)

    verification = verifier.verify(session.session_id, "fan-1")

    assert verification.tier is Tier.PLATINUM
    assert verification.already_applied is False
    entitlement = repository.get_entitlement("fan-1")
    assert entitlement.tier is Tier.PLATINUM
    assert entitlement.status is SubscriptionStatus.ACTIVE
    assert entitlement.creator_id == "creator-1"


def test_verify_twice_reports_already_applied(sandbox):
    provider, repository, _, builder, verifier = sandbox
    session = builder.build_subscription_checkout("fan-1", "creator-1", Tier.GOLD)
    provider.complete_session(session.session_id)

    verifier.verify(session.session_id, "fan-1")
    again = verifier.verify(session.session_id, "fan-1")

    assert again.already_applied is True
    assert again.entitlement.tier is Tier.GOLD
    assert repository.processed_events[f"checkout:{session.session_id}"].attempts == 1


def test_verify_unpaid_checkout_is_rejected(sandbox):
    _, repository, _, builder, verifier = sandbox
    session = builder.build_subscription_checkout("fan-1", "creator-1", Tier.GOLD)

    with pytest.raises(PaymentNotCompleted):
        verifier.verify(session.session_id, "fan-1")

    assert repository.entitlements == {}


def test_verify_other_subscribers_checkout_is_rejected(sandbox):
    provider, repository, _, builder, verifier = sandbox
    session = builder.build_subscription_checkout("fan-1", "creator-1", Tier.GOLD)
    provider.complete_session(session.session_id)

    with pytest.raises(CheckoutMismatch):
        verifier.verify(session.session_id, "fan-2")

    assert repository.entitlements == {}


def test_verify_checkout_without_owner_is_rejected(sandbox):
    provider, repository, _, _, verifier = sandbox
    created = provider.create_checkout_session(
        price_id="price_1SEJsm5I63txB0RGwaobzeyd",
        mode=CheckoutMode.SUBSCRIPTION,
        metadata={"creatorId": "creator-1", "tier": "platinum"},
        return_url="http://localhost:3000/subscription/success?session_id={CHECKOUT_SESSION_ID}",
    )
    provider.complete_session(str(created["id"]))

    with pytest.raises(CheckoutMismatch):
        verifier.verify(str(created["id"]), "fan-9")

    assert repository.entitlements == {}
    assert repository.processed_events == {}


def test_verify_service_checkout_has_no_tier(sandbox):
    provider, _, _, builder, verifier = sandbox
    session = builder.build_service_checkout("fan-1", "creator-1", "foot-pack")
    provider.complete_session(session.session_id, amount_total=4990)

    with pytest.raises(UnknownProduct):
        verifier.verify(session.session_id, "fan-1")


def test_webhook_after_verification_keeps_entitlement(sandbox):
    provider, repository, service, builder, verifier = sandbox
    session = builder.build_subscription_checkout("fan-1", "creator-1", Tier.GOLD)
    completed = provider.complete_session(session.session_id)
    verifier.verify(session.session_id, "fan-1")
    created = completed.created_at or datetime.now(timezone.utc)

    result = EventDispatcher(service).dispatch(
        PaymentEvent(
            event_id="evt_checkout_late",
            event_type="checkout.session.completed",
            created_at=created + timedelta(seconds=5),
            resource=completed,
        )
    )

    assert result.outcome is ReconciliationOutcome.APPLIED
    entitlement = repository.get_entitlement("fan-1")
    assert entitlement.tier is Tier.GOLD
    assert entitlement.status is SubscriptionStatus.ACTIVE
