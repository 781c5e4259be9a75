"""Application wiring for payment reconciliation and the creator ledger."""
from __future__ import annotations

import logging
import secrets
import threading
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

import psycopg2
import psycopg2.extras
import stripe
from fastapi import Header, HTTPException, status
from psycopg2.extensions import connection as PgConnection

from ..billing import (
    BillingNotifier,
    BillingRepository,
    CheckoutMode,
    CheckoutSessionBuilder,
    CheckoutSessionObject,
    CheckoutVerifier,
    EntitlementRecord,
    EventDispatcher,
    EventMetadata,
    InMemoryBillingRepository,
    LedgerService,
    PaymentEventVerifier,
    PaymentNotCompleted,
    PaymentProvider,
    ProviderUnavailable,
    ReconciliationService,
    WebhookProcessor,
)
from ..billing.repository import PostgresBillingRepository, managed_connection
from ..billing.verifier import parse_resource
from ...config import BillingConfig, load_billing_config

logger = logging.getLogger("billing")


class LoggingBillingNotifier(BillingNotifier):
    """Notifier that records billing notifications to the application logger."""

    def notify_subscription_canceled(self, entitlement: EntitlementRecord) -> None:
        logger.warning(
            "Subscription canceled for subscriber %s (creator=%s subscription=%s)",
            entitlement.subscriber_id,
            entitlement.creator_id,
            entitlement.provider_subscription_id,
        )

    def notify_payment_failed(self, entitlement: EntitlementRecord, invoice_id: Optional[str]) -> None:
        logger.warning(
            "Payment failed for subscriber %s invoice=%s tier=%s",
            entitlement.subscriber_id,
            invoice_id,
            entitlement.tier.value,
        )


class PostgresBillingNotifier(BillingNotifier):
    """Stores expiring in-app notifications for the subscriber."""

    def __init__(self, connect: Callable[[], PgConnection], *, ttl_days: int = 7) -> None:
        self._connect = connect
        self._ttl = timedelta(days=ttl_days)

    def notify_subscription_canceled(self, entitlement: EntitlementRecord) -> None:
        self._insert(
            entitlement,
            kind="subscription_canceled",
            title="Assinatura cancelada",
            message="Sua assinatura foi cancelada. Você voltou para o plano gratuito.",
        )

    def notify_payment_failed(self, entitlement: EntitlementRecord, invoice_id: Optional[str]) -> None:
        self._insert(
            entitlement,
            kind="payment_failed",
            title="Falha no pagamento",
            message="Não conseguimos processar o pagamento da sua assinatura. Atualize sua forma de pagamento.",
            payload={"invoiceId": invoice_id},
        )

    def _insert(
        self,
        entitlement: EntitlementRecord,
        *,
        kind: str,
        title: str,
        message: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        expires_at = datetime.now(timezone.utc) + self._ttl
        with managed_connection(self._connect) as (connection, _managed):
            with connection.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO billing_notifications (subscriber_id, kind, title, message, payload, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        entitlement.subscriber_id,
                        kind,
                        title,
                        message,
                        psycopg2.extras.Json({"tier": entitlement.tier.value, **(payload or {})}),
                        expires_at,
                    ),
                )
        logger.info("Stored %s notification for %s", kind, entitlement.subscriber_id)


class LocalSandboxPaymentProvider(PaymentProvider):
    """In-process provider for local development; sessions are paid via :meth:`complete_session`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: Dict[str, CheckoutSessionObject] = {}
        self._subscriptions: Dict[str, EventMetadata] = {}

    def create_checkout_session(
        self,
        *,
        price_id: str,
        mode: CheckoutMode,
        metadata: Dict[str, str],
        return_url: str,
    ) -> Dict[str, object]:
        session_id = f"cs_test_{uuid4().hex}"
        session = CheckoutSessionObject(
            id=session_id,
            payment_status="unpaid",
            mode=mode.value,
            price_id=price_id,
            created_at=datetime.now(timezone.utc),
            metadata=EventMetadata.from_mapping(metadata),
        )
        with self._lock:
            self._sessions[session_id] = session
        return {
            "id": session_id,
            "client_secret": f"{session_id}_secret_{uuid4().hex[:12]}",
            "url": return_url.replace("{CHECKOUT_SESSION_ID}", session_id),
        }

    def complete_session(self, session_id: str, *, amount_total: Optional[int] = None) -> CheckoutSessionObject:
        with self._lock:
            session = self._sessions[session_id]
            subscription_id = f"sub_{uuid4().hex}" if session.mode == CheckoutMode.SUBSCRIPTION.value else None
            completed = session.model_copy(
                update={
                    "payment_status": "paid",
                    "customer": session.customer or f"cus_{uuid4().hex[:14]}",
                    "subscription": subscription_id,
                    "amount_total": amount_total,
                }
            )
            self._sessions[session_id] = completed
            if subscription_id:
                self._subscriptions[subscription_id] = completed.metadata
        return completed

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionObject:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise PaymentNotCompleted(f"Unknown checkout session {session_id}")
        return session

    def retrieve_subscription_metadata(self, subscription_id: str) -> EventMetadata:
        with self._lock:
            return self._subscriptions.get(subscription_id, EventMetadata())


class StripePaymentProvider(PaymentProvider):
    """Payment provider backed by the Stripe API."""

    def __init__(self, api_key: str) -> None:
        if not api_key:
            raise ValueError("api_key must be provided")
        self._api_key = api_key

    def create_checkout_session(
        self,
        *,
        price_id: str,
        mode: CheckoutMode,
        metadata: Dict[str, str],
        return_url: str,
    ) -> Dict[str, object]:
        params: Dict[str, Any] = {
            "ui_mode": "embedded",
            "mode": mode.value,
            "line_items": [{"price": price_id, "quantity": 1}],
            "return_url": return_url,
            "metadata": metadata,
        }
        if mode is CheckoutMode.SUBSCRIPTION:
            params["subscription_data"] = {"metadata": metadata}
        else:
            params["payment_intent_data"] = {"metadata": metadata}
        try:
            session = stripe.checkout.Session.create(api_key=self._api_key, **params)
        except stripe.StripeError as exc:
            logger.exception("Stripe checkout session creation failed for price %s", price_id)
            raise ProviderUnavailable(f"Stripe checkout failed: {exc.user_message or exc}") from exc
        return {"id": session.id, "client_secret": session.client_secret, "url": session.url}

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionObject:
        try:
            session = stripe.checkout.Session.retrieve(session_id, expand=["line_items"], api_key=self._api_key)
        except stripe.InvalidRequestError as exc:
            raise PaymentNotCompleted(f"Unknown checkout session {session_id}") from exc
        except stripe.StripeError as exc:
            logger.exception("Stripe checkout session lookup failed for %s", session_id)
            raise ProviderUnavailable(f"Stripe lookup failed: {exc}") from exc
        resource = parse_resource("checkout.session", _to_plain(session))
        if not isinstance(resource, CheckoutSessionObject):
            raise ProviderUnavailable(f"Stripe returned an unexpected object for {session_id}")
        return resource

    def retrieve_subscription_metadata(self, subscription_id: str) -> EventMetadata:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id, api_key=self._api_key)
        except stripe.StripeError as exc:
            logger.exception("Stripe subscription lookup failed for %s", subscription_id)
            raise ProviderUnavailable(f"Stripe lookup failed: {exc}") from exc
        return EventMetadata.from_mapping(_to_plain(subscription).get("metadata"))


def _to_plain(obj: stripe.StripeObject) -> Dict[str, Any]:
    return obj.to_dict()


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    return load_billing_config()


def get_conn() -> PgConnection:
    return psycopg2.connect(**get_billing_config().db_settings)


@lru_cache(maxsize=1)
def get_billing_repository() -> BillingRepository:
    config = get_billing_config()
    if config.store_backend == "memory":
        logger.warning("Using the in-memory billing store; ledger data is lost on restart")
        return InMemoryBillingRepository()
    return PostgresBillingRepository(get_conn)


@lru_cache(maxsize=1)
def get_payment_provider() -> PaymentProvider:
    config = get_billing_config()
    if config.provider_name == "stripe" and config.stripe_secret_key:
        return StripePaymentProvider(config.stripe_secret_key)
    return LocalSandboxPaymentProvider()


@lru_cache(maxsize=1)
def get_billing_notifier() -> BillingNotifier:
    config = get_billing_config()
    if config.store_backend == "postgres":
        return PostgresBillingNotifier(get_conn, ttl_days=config.notification_ttl_days)
    return LoggingBillingNotifier()


@lru_cache(maxsize=1)
def get_billing_service() -> ReconciliationService:
    return ReconciliationService(
        repository=get_billing_repository(),
        notifier=get_billing_notifier(),
        provider=get_payment_provider(),
        currency=get_billing_config().currency,
    )


@lru_cache(maxsize=1)
def get_event_verifier() -> PaymentEventVerifier:
    config = get_billing_config()
    if not config.webhook_secret:
        raise RuntimeError("STRIPE_WEBHOOK_SECRET is not configured")
    return PaymentEventVerifier(config.webhook_secret, tolerance_seconds=config.signature_tolerance_seconds)


def get_webhook_processor() -> WebhookProcessor:
    return WebhookProcessor(get_event_verifier(), EventDispatcher(get_billing_service()))


def get_checkout_builder() -> CheckoutSessionBuilder:
    return CheckoutSessionBuilder(get_payment_provider(), get_billing_config().app_url)


def get_checkout_verifier() -> CheckoutVerifier:
    return CheckoutVerifier(get_payment_provider(), get_billing_service())


def get_ledger_service() -> LedgerService:
    return LedgerService(repository=get_billing_repository())


def get_internal_token() -> Optional[str]:
    return get_billing_config().internal_api_token


def is_valid_internal_token(*, expected_token: Optional[str], received_token: Optional[str]) -> bool:
    if not expected_token or not received_token:
        return False
    return secrets.compare_digest(expected_token, received_token)


def require_internal_token(x_internal_token: Optional[str] = Header(None, alias="X-Internal-Token")) -> None:
    """Guard for operator endpoints; rejects every request when no token is configured."""

    if not is_valid_internal_token(expected_token=get_internal_token(), received_token=x_internal_token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid internal token")


__all__ = [
    "LocalSandboxPaymentProvider",
    "LoggingBillingNotifier",
    "PostgresBillingNotifier",
    "StripePaymentProvider",
    "get_billing_config",
    "get_billing_repository",
    "get_billing_service",
    "get_checkout_builder",
    "get_checkout_verifier",
    "get_conn",
    "get_event_verifier",
    "get_ledger_service",
    "get_payment_provider",
    "get_webhook_processor",
    "require_internal_token",
]
