"""Reconciliation of payment processor events into entitlements and the ledger."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Type, TypeVar

from .catalog import get_service_product, service_product_for_price, tier_for_price
from .commissions import MAX_COMMISSION_DEPTH, calculate_commissions, split_revenue
from .errors import EntitlementNotFound, MalformedEvent, MissingMetadata
from .models import (
    PLATFORM_OWNER_ID,
    CheckoutMode,
    CheckoutSessionObject,
    CheckoutVerification,
    CreatorFinancialSummary,
    EntitlementRecord,
    EventClaim,
    EventMetadata,
    InvoiceObject,
    PaymentEvent,
    PaymentResource,
    ProcessedEventStatus,
    ReconciliationOutcome,
    ReconciliationResult,
    ReferralEdge,
    SubscriptionObject,
    SubscriptionStatus,
    SummaryIncrement,
    Tier,
    TransactionKind,
    TransactionRecord,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

CHECKOUT_VERIFIED_EVENT_TYPE = "checkout.session.verified"


class PaymentProvider(Protocol):
    """External payment processor integration."""

    def create_checkout_session(
        self,
        *,
        price_id: str,
        mode: CheckoutMode,
        metadata: Dict[str, str],
        return_url: str,
    ) -> Dict[str, object]:
        """Create a provider checkout session; returns ``id`` and ``client_secret``."""

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionObject:
        """Fetch a checkout session with its first line item's price."""

    def retrieve_subscription_metadata(self, subscription_id: str) -> EventMetadata:
        """Fetch the metadata bag of a processor subscription."""


class BillingNotifier(Protocol):
    """Tells subscribers about entitlement changes they did not initiate in-app."""

    def notify_subscription_canceled(self, entitlement: EntitlementRecord) -> None:
        ...

    def notify_payment_failed(self, entitlement: EntitlementRecord, invoice_id: Optional[str]) -> None:
        ...


class BillingRepository(Protocol):
    """Persistence operations required by the reconciliation pipeline.

    ``append_transaction`` must insert the record and apply ``increment`` to the
    owner's financial summary atomically, and must do neither when a record with
    the same idempotency key already exists.
    """

    def claim_event(self, event_id: str, event_type: str) -> EventClaim:
        ...

    def finish_event(self, event_id: str, status: ProcessedEventStatus) -> None:
        ...

    def get_entitlement(self, subscriber_id: str) -> Optional[EntitlementRecord]:
        ...

    def save_entitlement(self, record: EntitlementRecord) -> EntitlementRecord:
        ...

    def append_transaction(self, record: TransactionRecord, increment: SummaryIncrement) -> bool:
        ...

    def list_transactions(
        self,
        owner_id: str,
        *,
        status: Optional[TransactionStatus] = None,
        limit: Optional[int] = 50,
    ) -> Sequence[TransactionRecord]:
        ...

    def list_event_transactions(self, event_id: str) -> Sequence[TransactionRecord]:
        ...

    def get_financial_summary(self, creator_id: str) -> Optional[CreatorFinancialSummary]:
        ...

    def replace_financial_summary(self, summary: CreatorFinancialSummary) -> CreatorFinancialSummary:
        ...

    def get_referral_edge(self, creator_id: str) -> Optional[ReferralEdge]:
        ...

    def save_referral_edge(self, edge: ReferralEdge) -> ReferralEdge:
        ...


@dataclass(frozen=True)
class HandlerReport:
    detail: Optional[str] = None
    transactions_written: int = 0


Handler = Callable[[PaymentEvent], HandlerReport]
_R = TypeVar("_R", CheckoutSessionObject, SubscriptionObject, InvoiceObject)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ReconciliationService:
    """Applies verified processor events to entitlements and the ledger.

    Every handler is safe to re-run for the same event id: the event is claimed
    before any write, ledger appends are keyed by ``<event id>:<step>`` and
    entitlement writes are overwrites guarded by the event timestamp.
    """

    repository: BillingRepository
    notifier: BillingNotifier
    provider: Optional[PaymentProvider] = None
    currency: str = "BRL"
    clock: Callable[[], datetime] = field(default=_utcnow)

    def run(self, event: PaymentEvent, handler: Handler) -> ReconciliationResult:
        """Claim ``event`` and run ``handler`` for it at most once to completion."""

        claim = self.repository.claim_event(event.event_id, event.event_type)
        if claim is EventClaim.DONE:
            logger.info("Skipping already processed event %s (%s)", event.event_id, event.event_type)
            return ReconciliationResult(
                event_id=event.event_id,
                event_type=event.event_type,
                outcome=ReconciliationOutcome.DUPLICATE,
            )
        if claim is EventClaim.RETRY:
            logger.warning("Resuming event %s (%s) after an incomplete attempt", event.event_id, event.event_type)

        try:
            report = handler(event)
        except MissingMetadata as exc:
            exc.event_id = event.event_id
            logger.error(
                "Event %s (%s) is missing metadata %s; it will not be retried",
                event.event_id,
                event.event_type,
                ", ".join(exc.missing),
            )
            self.repository.finish_event(event.event_id, ProcessedEventStatus.SKIPPED)
            raise

        self.repository.finish_event(event.event_id, ProcessedEventStatus.APPLIED)
        logger.info(
            "Applied event %s (%s): %s",
            event.event_id,
            event.event_type,
            report.detail or "ok",
            extra={"event_id": event.event_id, "transactions_written": report.transactions_written},
        )
        return ReconciliationResult(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=ReconciliationOutcome.APPLIED,
            detail=report.detail,
            transactions_written=report.transactions_written,
        )

    def handle_checkout_completed(self, event: PaymentEvent) -> HandlerReport:
        session = _resource(event, CheckoutSessionObject)
        if session.is_service_purchase:
            return self._record_service_purchase(event, session)

        metadata = session.metadata.require("subscriber_id", "creator_id", "tier", event_id=event.event_id)
        existing = self.repository.get_entitlement(metadata.subscriber_id)
        record = EntitlementRecord(
            subscriber_id=metadata.subscriber_id,
            tier=metadata.tier,
            status=SubscriptionStatus.ACTIVE,
            creator_id=metadata.creator_id,
            provider_customer_id=session.customer or (existing.provider_customer_id if existing else None),
            provider_subscription_id=session.subscription or (existing.provider_subscription_id if existing else None),
            last_event_at=event.created_at,
            updated_at=self.clock(),
        )
        applied = self._save_entitlement(record)
        return HandlerReport(detail=f"{metadata.subscriber_id} -> {metadata.tier.value}" if applied else "stale")

    def handle_subscription_updated(self, event: PaymentEvent) -> HandlerReport:
        subscription = _resource(event, SubscriptionObject)
        metadata = subscription.metadata
        if metadata.tier is None:
            price_tier = tier_for_price(subscription.price_id)
            if price_tier is not None:
                metadata = metadata.model_copy(update={"tier": price_tier})
        metadata.require("subscriber_id", "tier", event_id=event.event_id)

        status = SubscriptionStatus.from_provider(subscription.status)
        tier = Tier.lowest() if status.revokes_access else metadata.tier
        existing = self.repository.get_entitlement(metadata.subscriber_id)
        record = EntitlementRecord(
            subscriber_id=metadata.subscriber_id,
            tier=tier,
            status=status,
            creator_id=metadata.creator_id or (existing.creator_id if existing else None),
            provider_customer_id=subscription.customer or (existing.provider_customer_id if existing else None),
            provider_subscription_id=subscription.id,
            last_event_at=event.created_at,
            updated_at=self.clock(),
        )
        applied = self._save_entitlement(record)
        return HandlerReport(detail=f"{status.value}/{tier.value}" if applied else "stale")

    def handle_subscription_canceled(self, event: PaymentEvent) -> HandlerReport:
        subscription = _resource(event, SubscriptionObject)
        metadata = subscription.metadata.require("subscriber_id", event_id=event.event_id)
        existing = self.repository.get_entitlement(metadata.subscriber_id)
        record = EntitlementRecord(
            subscriber_id=metadata.subscriber_id,
            tier=Tier.lowest(),
            status=SubscriptionStatus.CANCELED,
            creator_id=metadata.creator_id or (existing.creator_id if existing else None),
            provider_customer_id=subscription.customer or (existing.provider_customer_id if existing else None),
            provider_subscription_id=subscription.id,
            last_event_at=event.created_at,
            updated_at=self.clock(),
        )
        if not self._save_entitlement(record):
            return HandlerReport(detail="stale")
        self.notifier.notify_subscription_canceled(record)
        return HandlerReport(detail=f"{metadata.subscriber_id} downgraded to {Tier.lowest().value}")

    def handle_invoice_paid(self, event: PaymentEvent) -> HandlerReport:
        invoice = _resource(event, InvoiceObject)
        metadata = self._invoice_metadata(invoice).require("subscriber_id", "creator_id", event_id=event.event_id)
        label = metadata.tier.value if metadata.tier else "desconhecido"
        prefix = "Renovação" if invoice.billing_reason == "subscription_cycle" else "Assinatura"
        report = self._record_revenue(
            event,
            payment_key=f"invoice:{invoice.id}",
            gross=invoice.amount_paid,
            metadata=metadata,
            kind=TransactionKind.SUBSCRIPTION_REVENUE,
            currency=invoice.currency,
            description=f"{prefix} {label} - Usuário {metadata.subscriber_id}",
        )
        self._restore_after_payment(metadata.subscriber_id, event)
        return report

    def handle_invoice_payment_failed(self, event: PaymentEvent) -> HandlerReport:
        invoice = _resource(event, InvoiceObject)
        metadata = self._invoice_metadata(invoice).require("subscriber_id", event_id=event.event_id)
        existing = self.repository.get_entitlement(metadata.subscriber_id)
        if existing is None or existing.status.revokes_access:
            return HandlerReport(detail="no active entitlement to mark past due")

        record = existing.model_copy(
            update={
                "status": SubscriptionStatus.PAST_DUE,
                "last_event_at": event.created_at,
                "updated_at": self.clock(),
            }
        )
        if not self._save_entitlement(record):
            return HandlerReport(detail="stale")
        self.notifier.notify_payment_failed(record, invoice.id)
        return HandlerReport(detail=f"{metadata.subscriber_id} past due")

    def apply_checkout_verification(
        self,
        session: CheckoutSessionObject,
        *,
        subscriber_id: str,
        tier: Tier,
    ) -> CheckoutVerification:
        """Apply a synchronously verified checkout as if its webhook had arrived."""

        event = PaymentEvent(
            event_id=f"checkout:{session.id}",
            event_type=CHECKOUT_VERIFIED_EVENT_TYPE,
            created_at=session.created_at or self.clock(),
            resource=session.model_copy(
                update={
                    "metadata": session.metadata.model_copy(
                        update={"subscriber_id": subscriber_id, "tier": tier}
                    ),
                    "mode": CheckoutMode.SUBSCRIPTION.value,
                }
            ),
        )
        result = self.run(event, self.handle_checkout_completed)
        entitlement = self.repository.get_entitlement(subscriber_id)
        if entitlement is None:
            raise EntitlementNotFound(f"No entitlement for {subscriber_id} after checkout {session.id}")
        return CheckoutVerification(
            session_id=session.id,
            subscriber_id=subscriber_id,
            tier=tier,
            entitlement=entitlement,
            already_applied=result.outcome is ReconciliationOutcome.DUPLICATE,
        )

    def referral_chain(self, creator_id: str) -> List[str]:
        """Ancestors of ``creator_id`` by increasing depth, at most four."""

        edge = self.repository.get_referral_edge(creator_id)
        if edge is None or not edge.is_active or not edge.referred_by:
            return []

        chain: List[str] = []
        seen = {creator_id}
        current: Optional[str] = edge.referred_by
        while current and len(chain) < MAX_COMMISSION_DEPTH:
            if current in seen:
                logger.error("Referral cycle detected at %s while walking from %s", current, creator_id)
                break
            ancestor = self.repository.get_referral_edge(current)
            if ancestor is None or not ancestor.is_active:
                logger.info("Referrer %s missing or inactive; stopping commission chain for %s", current, creator_id)
                break
            chain.append(current)
            seen.add(current)
            current = ancestor.referred_by
        return chain

    def _record_service_purchase(self, event: PaymentEvent, session: CheckoutSessionObject) -> HandlerReport:
        metadata = session.metadata.require("subscriber_id", "creator_id", "service_product_id", event_id=event.event_id)
        product = get_service_product(metadata.service_product_id) or service_product_for_price(session.price_id)
        gross = session.amount_total
        if gross is None:
            if product is None:
                raise MalformedEvent(
                    f"Service checkout {session.id} has no amount and unknown product {metadata.service_product_id!r}"
                )
            gross = product.price_in_cents
        name = product.name if product else metadata.service_product_id
        return self._record_revenue(
            event,
            payment_key=f"checkout:{session.id}",
            gross=gross,
            metadata=metadata,
            kind=TransactionKind.SERVICE_REVENUE,
            currency=session.currency,
            description=f"Serviço {name} - Usuário {metadata.subscriber_id}",
        )

    def _record_revenue(
        self,
        event: PaymentEvent,
        *,
        payment_key: str,
        gross: int,
        metadata: EventMetadata,
        kind: TransactionKind,
        currency: Optional[str],
        description: str,
    ) -> HandlerReport:
        """Split ``gross`` into ledger rows keyed by ``payment_key``, not by the delivering event."""

        if gross == 0:
            return HandlerReport(detail="zero amount, nothing recorded")

        creator_id = metadata.creator_id
        currency_code = (currency or self.currency).upper()
        split = split_revenue(gross)
        written = 0

        written += self.repository.append_transaction(
            TransactionRecord(
                owner_id=creator_id,
                kind=kind,
                amount=split.creator_share,
                currency=currency_code,
                description=description,
                subscriber_id=metadata.subscriber_id,
                source_event_id=event.event_id,
                idempotency_key=f"{payment_key}:creator",
                created_at=self.clock(),
            ),
            SummaryIncrement.direct(split.creator_share),
        )

        commissions = calculate_commissions(gross, self.referral_chain(creator_id))
        for payout in commissions.payouts:
            written += self.repository.append_transaction(
                TransactionRecord(
                    owner_id=payout.payee_id,
                    kind=TransactionKind.commission(payout.depth),
                    amount=payout.amount,
                    currency=currency_code,
                    description=f"Comissão nível {payout.depth} de {creator_id}",
                    subscriber_id=metadata.subscriber_id,
                    related_creator_id=creator_id,
                    source_event_id=event.event_id,
                    idempotency_key=f"{payment_key}:commission:{payout.depth}",
                    created_at=self.clock(),
                ),
                SummaryIncrement.network(payout.amount),
            )

        platform_profit = split.platform_share - commissions.total_paid
        written += self.repository.append_transaction(
            TransactionRecord(
                owner_id=PLATFORM_OWNER_ID,
                kind=TransactionKind.PLATFORM_REVENUE,
                amount=platform_profit,
                currency=currency_code,
                description=f"Lucro da plataforma - {description}",
                subscriber_id=metadata.subscriber_id,
                related_creator_id=creator_id,
                source_event_id=event.event_id,
                idempotency_key=f"{payment_key}:platform",
                created_at=self.clock(),
            ),
            SummaryIncrement.platform(platform_profit),
        )

        logger.info(
            "Revenue %s split: creator %s=%s, commissions=%s over %s levels, platform=%s",
            gross,
            creator_id,
            split.creator_share,
            commissions.total_paid,
            len(commissions.payouts),
            platform_profit,
        )
        return HandlerReport(
            detail=f"gross={gross} creator={split.creator_share} commissions={commissions.total_paid} platform={platform_profit}",
            transactions_written=written,
        )

    def _invoice_metadata(self, invoice: InvoiceObject) -> EventMetadata:
        metadata = invoice.metadata
        if metadata.subscriber_id and metadata.creator_id:
            return metadata
        if invoice.subscription and self.provider is not None:
            fetched = self.provider.retrieve_subscription_metadata(invoice.subscription)
            metadata = metadata.merged_with(fetched)
        return metadata

    def _restore_after_payment(self, subscriber_id: str, event: PaymentEvent) -> None:
        existing = self.repository.get_entitlement(subscriber_id)
        if existing is None or existing.status is not SubscriptionStatus.PAST_DUE:
            return
        record = existing.model_copy(
            update={
                "status": SubscriptionStatus.ACTIVE,
                "last_event_at": event.created_at,
                "updated_at": self.clock(),
            }
        )
        if self._save_entitlement(record):
            logger.info("Payment recovered for %s; access restored", subscriber_id)

    def _save_entitlement(self, record: EntitlementRecord) -> bool:
        """Persist ``record``; returns ``False`` when a newer state was already stored."""

        stored = self.repository.save_entitlement(record)
        if stored.last_event_at > record.last_event_at:
            logger.info(
                "Ignoring stale entitlement update for %s (event at %s, stored at %s)",
                record.subscriber_id,
                record.last_event_at.isoformat(),
                stored.last_event_at.isoformat(),
            )
            return False
        return True


def _resource(event: PaymentEvent, expected: Type[_R]) -> _R:
    resource: Optional[PaymentResource] = event.resource
    if not isinstance(resource, expected):
        raise MalformedEvent(f"{event.event_type} event {event.event_id} has no {expected.__name__}")
    return resource


__all__ = [
    "BillingNotifier",
    "BillingRepository",
    "HandlerReport",
    "PaymentProvider",
    "ReconciliationService",
]
