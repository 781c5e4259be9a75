"""HTTP-level tests for the billing router."""
from __future__ import annotations

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from typing import Optional

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from creator_backend.app.billing import (
    PLATFORM_OWNER_ID,
    CheckoutSessionBuilder,
    CheckoutVerifier,
    EntitlementRecord,
    EventClaim,
    EventDispatcher,
    InMemoryBillingRepository,
    LedgerService,
    PaymentEventVerifier,
    ReconciliationService,
    ReferralEdge,
    StoreUnavailable,
    WebhookProcessor,
)
from creator_backend.app.billing.service import BillingNotifier
from creator_backend.app.routes import billing as billing_routes
from creator_backend.app.services import billing as billing_services

SECRET = "whsec_routes"
INTERNAL_TOKEN = "operator-secret"


def _signature_header(payload: bytes) -> str:
    ts = int(time.time())
    digest = hmac.new(SECRET.encode("utf-8"), f"{ts}.".encode("utf-8") + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


class SilentNotifier(BillingNotifier):
    def notify_subscription_canceled(self, entitlement: EntitlementRecord) -> None:
        pass

    def notify_payment_failed(self, entitlement: EntitlementRecord, invoice_id: Optional[str]) -> None:
        pass


class UnreachableRepository(InMemoryBillingRepository):
    def claim_event(self, event_id: str, event_type: str) -> EventClaim:
        raise StoreUnavailable("database is down")


def _build_client(repository: InMemoryBillingRepository, monkeypatch):
    provider = billing_services.LocalSandboxPaymentProvider()
    service = ReconciliationService(repository=repository, notifier=SilentNotifier(), provider=provider)

    app = FastAPI()
    app.include_router(billing_routes.router)
    app.dependency_overrides[billing_services.get_webhook_processor] = lambda: WebhookProcessor(
        PaymentEventVerifier(SECRET), EventDispatcher(service)
    )
    app.dependency_overrides[billing_services.get_checkout_builder] = lambda: CheckoutSessionBuilder(
        provider, "https://creators.example.com"
    )
    app.dependency_overrides[billing_services.get_checkout_verifier] = lambda: CheckoutVerifier(provider, service)
    app.dependency_overrides[billing_services.get_ledger_service] = lambda: LedgerService(repository=repository)
    monkeypatch.setattr(billing_services, "get_internal_token", lambda: INTERNAL_TOKEN)
    return TestClient(app), provider


@pytest.fixture
def api(monkeypatch):
    repository = InMemoryBillingRepository()
    client, provider = _build_client(repository, monkeypatch)
    return client, repository, provider


def _invoice_body(event_id: str = "evt_inv_1", *, metadata: Optional[dict] = None, event_type: str = "invoice.paid") -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "type": event_type,
            "created": int(datetime.now(timezone.utc).timestamp()),
            "data": {
                "object": {
                    "id": f"in_{event_id}",
                    "object": "invoice",
                    "subscription": "sub_1",
                    "amount_paid": 3990,
                    "currency": "brl",
                    "metadata": metadata if metadata is not None else {"userId": "fan-1", "creatorId": "creator-1"},
                }
            },
        }
    ).encode("utf-8")


def _post_webhook(client: TestClient, body: bytes, *, signature: Optional[str] = None):
    return client.post(
        "/api/billing/webhook",
        content=body,
        headers={"Stripe-Signature": signature if signature is not None else _signature_header(body)},
    )


def test_signed_invoice_webhook_is_applied(api):
    client, repository, _ = api
    repository.save_referral_edge(ReferralEdge(creator_id="creator-1", referred_by="referrer-1"))
    repository.save_referral_edge(ReferralEdge(creator_id="referrer-1"))

    response = _post_webhook(client, _invoice_body())

    assert response.status_code == 200
    assert response.json() == {"received": True, "outcome": "applied"}
    amounts = {txn.owner_id: txn.amount for txn in repository.transactions}
    assert amounts == {"creator-1": 2793, "referrer-1": 399, PLATFORM_OWNER_ID: 798}


def test_redelivered_webhook_reports_duplicate(api):
    client, repository, _ = api
    body = _invoice_body()

    _post_webhook(client, body)
    response = _post_webhook(client, body)

    assert response.status_code == 200
    assert response.json()["outcome"] == "duplicate"
    assert len(repository.transactions) == 2


def test_tampered_webhook_is_rejected_without_writes(api):
    client, repository, _ = api
    body = _invoice_body()
    signature = _signature_header(body)

    response = _post_webhook(client, body.replace(b"3990", b"1"), signature=signature)

    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "invalid_signature"
    assert repository.processed_events == {}
    assert repository.transactions == []
    assert repository.summaries == {}


def test_unsigned_webhook_is_rejected(api):
    client, repository, _ = api

    response = client.post("/api/billing/webhook", content=_invoice_body())

    assert response.status_code == 400
    assert repository.processed_events == {}


def test_malformed_webhook_is_rejected(api):
    client, _, _ = api

    response = _post_webhook(client, b'{"id": "evt_x"}')

    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "malformed_event"


def test_webhook_missing_metadata_is_acknowledged(api):
    client, repository, _ = api

    response = _post_webhook(client, _invoice_body("evt_no_meta", metadata={}))

    assert response.status_code == 200
    assert response.json()["outcome"] == "skipped"
    assert repository.transactions == []


def test_unknown_event_type_is_acknowledged(api):
    client, repository, _ = api
    body = json.dumps({"id": "evt_c", "type": "customer.created", "data": {"object": {"id": "cus_1", "object": "customer"}}})

    response = _post_webhook(client, body.encode("utf-8"))

    assert response.status_code == 200
    assert response.json()["outcome"] == "ignored"
    assert repository.processed_events == {}


def test_store_outage_returns_server_error(monkeypatch):
    client, _ = _build_client(UnreachableRepository(), monkeypatch)

    response = _post_webhook(client, _invoice_body())

    assert response.status_code == 500
    assert response.json()["detail"]["error"] == "store_unavailable"


def test_create_subscription_checkout_session(api):
    client, _, _ = api

    response = client.post(
        "/api/billing/checkout-session",
        json={"subscriberId": "fan-1", "creatorId": "creator-1", "tier": "gold"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["sessionId"].startswith("cs_test_")
    assert body["clientSecret"]


def test_create_checkout_for_unknown_service_fails(api):
    client, _, _ = api

    response = client.post(
        "/api/billing/checkout-session",
        json={"subscriberId": "fan-1", "creatorId": "creator-1", "serviceProductId": "mystery-box"},
    )

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert "mystery-box" in response.json()["error"]


def test_checkout_request_needs_exactly_one_product(api):
    client, _, _ = api

    response = client.post(
        "/api/billing/checkout-session",
        json={"subscriberId": "fan-1", "creatorId": "creator-1", "tier": "gold", "serviceProductId": "foot-pack"},
    )

    assert response.status_code == 422


def test_verify_checkout_activates_subscription(api):
    client, repository, provider = api
    created = client.post(
        "/api/billing/checkout-session",
        json={"subscriberId": "fan-1", "creatorId": "creator-1", "tier": "prata"},
    ).json()
    provider.complete_session(created["sessionId"])

    response = client.post(
        "/api/billing/verify-checkout",
        json={"sessionId": created["sessionId"], "subscriberId": "fan-1"},
    )

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["tier"] == "prata"
    assert response.json()["hasAccess"] is True
    assert repository.get_entitlement("fan-1").tier.value == "prata"


def test_verify_unpaid_checkout_fails(api):
    client, _, _ = api
    created = client.post(
        "/api/billing/checkout-session",
        json={"subscriberId": "fan-1", "creatorId": "creator-1", "tier": "prata"},
    ).json()

    response = client.post(
        "/api/billing/verify-checkout",
        json={"sessionId": created["sessionId"], "subscriberId": "fan-1"},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "payment_not_completed"


def test_operator_endpoints_require_token(api):
    client, _, _ = api

    assert client.get("/api/billing/creators/creator-1/financials").status_code == 401
    assert (
        client.get("/api/billing/platform/revenue", headers={"X-Internal-Token": "wrong"}).status_code == 401
    )


def test_operator_can_read_financials_and_transactions(api):
    client, _, _ = api
    _post_webhook(client, _invoice_body())
    headers = {"X-Internal-Token": INTERNAL_TOKEN}

    financials = client.get("/api/billing/creators/creator-1/financials", headers=headers).json()
    transactions = client.get(
        "/api/billing/creators/creator-1/transactions",
        params={"limit": 10, "status": "completed"},
        headers=headers,
    ).json()
    revenue = client.get("/api/billing/platform/revenue", headers=headers).json()
    rebuilt = client.post("/api/billing/creators/creator-1/financials/rebuild", headers=headers).json()

    assert financials["availableBalance"] == 2793
    assert financials["directEarnings"] == 2793
    assert [txn["amount"] for txn in transactions["transactions"]] == [2793]
    assert revenue["totalRevenue"] == 1197
    assert revenue["transactionCount"] == 1
    assert rebuilt["totalEarnings"] == 2793


def test_unknown_creator_has_zeroed_financials(api):
    client, _, _ = api

    response = client.get(
        "/api/billing/creators/nobody/financials",
        headers={"X-Internal-Token": INTERNAL_TOKEN},
    )

    assert response.status_code == 200
    assert response.json()["totalEarnings"] == 0
