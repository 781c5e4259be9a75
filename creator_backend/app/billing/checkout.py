"""Checkout session creation and the synchronous post-checkout verification."""
from __future__ import annotations

import logging
import re
from typing import Dict, Optional

from .catalog import get_service_product, get_subscription_product, tier_for_price
from .errors import CheckoutMismatch, PaymentNotCompleted, UnknownProduct
from .models import CheckoutMode, CheckoutSession, CheckoutVerification, EventMetadata, Tier
from .service import PaymentProvider, ReconciliationService

logger = logging.getLogger(__name__)

SESSION_ID_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"
_SCHEME_RE = re.compile(r"^(https?):/*", re.IGNORECASE)


def normalize_app_url(raw: Optional[str], *, default: str = "http://localhost:3000") -> str:
    """Return ``raw`` as an absolute base URL without a trailing slash.

    ``example.com`` and ``https:example.com`` both become ``https://example.com``.
    """

    value = (raw or "").strip()
    if not value:
        return default.rstrip("/")
    match = _SCHEME_RE.match(value)
    if match:
        value = f"{match.group(1).lower()}://{value[match.end():]}"
    else:
        value = f"https://{value}"
    return value.rstrip("/")


class CheckoutSessionBuilder:
    """Creates embedded checkout sessions for subscriptions and one-off services."""

    def __init__(self, provider: PaymentProvider, app_url: str) -> None:
        self.provider = provider
        self.app_url = normalize_app_url(app_url)

    def build_subscription_checkout(self, subscriber_id: str, creator_id: str, tier: Tier) -> CheckoutSession:
        product = get_subscription_product(tier)
        if product is None:
            raise UnknownProduct(tier.value if isinstance(tier, Tier) else tier)
        metadata = EventMetadata(
            subscriber_id=subscriber_id,
            creator_id=creator_id,
            tier=product.tier,
            purchase_type=CheckoutMode.SUBSCRIPTION.value,
        ).to_provider_metadata()
        return self._create(
            price_id=product.price_id,
            mode=CheckoutMode.SUBSCRIPTION,
            metadata=metadata,
            return_path="/subscription/success",
        )

    def build_service_checkout(self, subscriber_id: str, creator_id: str, service_product_id: str) -> CheckoutSession:
        product = get_service_product(service_product_id)
        if product is None:
            raise UnknownProduct(service_product_id)
        metadata = EventMetadata(
            subscriber_id=subscriber_id,
            creator_id=creator_id,
            service_product_id=product.product_id,
            purchase_type="service",
        ).to_provider_metadata()
        return self._create(
            price_id=product.price_id,
            mode=CheckoutMode.PAYMENT,
            metadata=metadata,
            return_path="/service/success",
        )

    def _create(
        self,
        *,
        price_id: str,
        mode: CheckoutMode,
        metadata: Dict[str, str],
        return_path: str,
    ) -> CheckoutSession:
        return_url = f"{self.app_url}{return_path}?session_id={SESSION_ID_PLACEHOLDER}"
        provider_session = self.provider.create_checkout_session(
            price_id=price_id,
            mode=mode,
            metadata=metadata,
            return_url=return_url,
        )
        session_id = provider_session.get("id")
        if not session_id:
            raise ValueError("Payment provider returned a checkout session without an id")
        logger.info(
            "Created %s checkout %s for subscriber %s (price %s)",
            mode.value,
            session_id,
            metadata.get("subscriberId"),
            price_id,
        )
        client_secret = provider_session.get("client_secret")
        url = provider_session.get("url")
        return CheckoutSession(
            session_id=str(session_id),
            client_secret=str(client_secret) if client_secret else None,
            url=str(url) if url else None,
            mode=mode,
            price_id=price_id,
            metadata=metadata,
        )


class CheckoutVerifier:
    """Applies a completed checkout on the payer's return, ahead of its webhook."""

    def __init__(self, provider: PaymentProvider, service: ReconciliationService) -> None:
        self.provider = provider
        self.service = service

    def verify(self, session_id: str, subscriber_id: str) -> CheckoutVerification:
        session = self.provider.retrieve_checkout_session(session_id)
        if session.payment_status != "paid":
            raise PaymentNotCompleted(
                f"Checkout {session_id} is not paid",
                detail={"payment_status": session.payment_status},
            )

        owner = session.metadata.subscriber_id
        if owner is None or owner != subscriber_id:
            logger.warning("Subscriber %s tried to verify checkout %s owned by %s", subscriber_id, session_id, owner)
            raise CheckoutMismatch(f"Checkout {session_id} does not belong to this subscriber")

        tier = tier_for_price(session.price_id)
        if tier is None:
            raise UnknownProduct(session.price_id)

        verification = self.service.apply_checkout_verification(session, subscriber_id=subscriber_id, tier=tier)
        if verification.already_applied:
            logger.info("Checkout %s was already verified", session_id)
        return verification


__all__ = ["CheckoutSessionBuilder", "CheckoutVerifier", "normalize_app_url"]
