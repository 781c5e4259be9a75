"""Domain models for subscription billing and the creator ledger."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import MissingMetadata

logger = logging.getLogger(__name__)

PLATFORM_OWNER_ID = "PLATFORM"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Tier(str, Enum):
    """Subscription tiers, declared from lowest to highest."""

    BRONZE = "bronze"
    PRATA = "prata"
    GOLD = "gold"
    PLATINUM = "platinum"
    DIAMANTE = "diamante"

    @classmethod
    def lowest(cls) -> "Tier":
        return cls.BRONZE

    @property
    def is_free(self) -> bool:
        return self is Tier.BRONZE


class SubscriptionStatus(str, Enum):
    """Entitlement lifecycle state."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INACTIVE = "inactive"

    @classmethod
    def from_provider(cls, raw: Optional[str]) -> "SubscriptionStatus":
        """Normalize a processor subscription status."""

        value = (raw or "").strip().lower()
        if value in {"active", "trialing"}:
            return cls.ACTIVE
        if value in {"past_due", "unpaid"}:
            return cls.PAST_DUE
        if value == "canceled":
            return cls.CANCELED
        return cls.INACTIVE

    @property
    def revokes_access(self) -> bool:
        return self in {SubscriptionStatus.CANCELED, SubscriptionStatus.INACTIVE}


class EntitlementRecord(BaseModel):
    """A subscriber's current tier and status, authoritative for access checks."""

    subscriber_id: str
    tier: Tier = Tier.BRONZE
    status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    creator_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    last_event_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @model_validator(mode="after")
    def _tier_matches_status(self) -> "EntitlementRecord":
        if self.status.revokes_access and self.tier is not Tier.lowest():
            raise ValueError(f"status={self.status.value} requires tier={Tier.lowest().value}")
        return self

    @property
    def grants_access(self) -> bool:
        return not self.status.revokes_access and not self.tier.is_free


class TransactionKind(str, Enum):
    """Kinds of monetary movement recorded in the ledger."""

    SUBSCRIPTION_REVENUE = "subscription"
    SERVICE_REVENUE = "service"
    COMMISSION_LEVEL_1 = "commission_level_1"
    COMMISSION_LEVEL_2 = "commission_level_2"
    COMMISSION_LEVEL_3 = "commission_level_3"
    COMMISSION_LEVEL_4 = "commission_level_4"
    PLATFORM_REVENUE = "platform_revenue"

    @classmethod
    def commission(cls, depth: int) -> "TransactionKind":
        try:
            return cls(f"commission_level_{depth}")
        except ValueError as exc:
            raise ValueError(f"No commission kind for depth {depth}") from exc

    @property
    def is_commission(self) -> bool:
        return self.value.startswith("commission_level_")


class TransactionStatus(str, Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"


class TransactionRecord(BaseModel):
    """Append-only record of a single monetary movement."""

    transaction_id: Optional[str] = None
    owner_id: str = Field(description="Creator identifier or the platform sentinel")
    kind: TransactionKind
    amount: int = Field(ge=0, description="Minor currency units")
    currency: str = Field(default="BRL", min_length=3, max_length=3)
    description: str = ""
    subscriber_id: Optional[str] = None
    related_creator_id: Optional[str] = None
    source_event_id: str
    idempotency_key: str
    status: TransactionStatus = TransactionStatus.COMPLETED
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class SummaryIncrement(BaseModel):
    """Counters added to a financial summary alongside a ledger append."""

    available_balance: int = 0
    total_earnings: int = 0
    monthly_revenue: int = 0
    direct_earnings: int = 0
    network_earnings: int = 0

    model_config = ConfigDict(frozen=True)

    @classmethod
    def direct(cls, amount: int) -> "SummaryIncrement":
        return cls(
            available_balance=amount,
            total_earnings=amount,
            monthly_revenue=amount,
            direct_earnings=amount,
        )

    @classmethod
    def network(cls, amount: int) -> "SummaryIncrement":
        return cls(available_balance=amount, total_earnings=amount, network_earnings=amount)

    @classmethod
    def platform(cls, amount: int) -> "SummaryIncrement":
        return cls(available_balance=amount, total_earnings=amount, monthly_revenue=amount)


class CreatorFinancialSummary(BaseModel):
    """Cached aggregate of a creator's ledger, updated incrementally."""

    creator_id: str
    available_balance: int = 0
    total_earnings: int = 0
    monthly_revenue: int = 0
    direct_earnings: int = 0
    network_earnings: int = 0
    total_withdrawals: int = 0
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def apply(self, increment: SummaryIncrement, *, at: Optional[datetime] = None) -> "CreatorFinancialSummary":
        return self.model_copy(
            update={
                "available_balance": self.available_balance + increment.available_balance,
                "total_earnings": self.total_earnings + increment.total_earnings,
                "monthly_revenue": self.monthly_revenue + increment.monthly_revenue,
                "direct_earnings": self.direct_earnings + increment.direct_earnings,
                "network_earnings": self.network_earnings + increment.network_earnings,
                "updated_at": at or _utcnow(),
            }
        )


class ReferralEdge(BaseModel):
    """Who referred a creator into the network."""

    creator_id: str
    referred_by: Optional[str] = None
    referral_code: str = ""
    level: int = Field(default=1, ge=1)
    is_active: bool = True

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ProcessedEventStatus(str, Enum):
    PROCESSING = "processing"
    APPLIED = "applied"
    SKIPPED = "skipped"


class EventClaim(str, Enum):
    """Result of atomically claiming a processor event id."""

    NEW = "new"
    RETRY = "retry"
    DONE = "done"


class ProcessedEvent(BaseModel):
    event_id: str
    event_type: str
    status: ProcessedEventStatus = ProcessedEventStatus.PROCESSING
    attempts: int = 1
    first_seen_at: datetime = Field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


class PaymentEventType(str, Enum):
    """Processor event tags the pipeline reacts to."""

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


_METADATA_ALIASES = {
    "subscriber_id": ("subscriberId", "userId"),
    "creator_id": ("creatorId",),
    "tier": ("tier",),
    "service_product_id": ("serviceProductId",),
    "purchase_type": ("type",),
}


class EventMetadata(BaseModel):
    """Typed view of the metadata bag attached to processor objects."""

    subscriber_id: Optional[str] = None
    creator_id: Optional[str] = None
    tier: Optional[Tier] = None
    service_product_id: Optional[str] = None
    purchase_type: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "EventMetadata":
        if not isinstance(raw, Mapping):
            return cls()
        values: Dict[str, Any] = {}
        for field_name, keys in _METADATA_ALIASES.items():
            for key in keys:
                candidate = raw.get(key)
                if candidate is None:
                    continue
                text = str(candidate).strip()
                if text:
                    values[field_name] = text
                    break
        tier = values.get("tier")
        if tier is not None:
            try:
                values["tier"] = Tier(tier.lower())
            except ValueError:
                logger.warning("Ignoring unknown tier %r in event metadata", tier)
                values.pop("tier")
        return cls(**values)

    def merged_with(self, fallback: "EventMetadata") -> "EventMetadata":
        """Fill fields missing here from ``fallback``."""

        update = {
            name: getattr(fallback, name)
            for name in _METADATA_ALIASES
            if getattr(self, name) is None and getattr(fallback, name) is not None
        }
        return self.model_copy(update=update) if update else self

    def require(self, *fields: str, event_id: Optional[str] = None) -> "EventMetadata":
        missing = [_METADATA_ALIASES[name][0] for name in fields if getattr(self, name) is None]
        if missing:
            raise MissingMetadata(missing, event_id=event_id)
        return self

    def to_provider_metadata(self) -> Dict[str, str]:
        """Serialize for a processor metadata bag."""

        data: Dict[str, str] = {}
        if self.subscriber_id:
            data["subscriberId"] = self.subscriber_id
            data["userId"] = self.subscriber_id
        if self.creator_id:
            data["creatorId"] = self.creator_id
        if self.tier:
            data["tier"] = self.tier.value
        if self.service_product_id:
            data["serviceProductId"] = self.service_product_id
        if self.purchase_type:
            data["type"] = self.purchase_type
        return data


class CheckoutMode(str, Enum):
    SUBSCRIPTION = "subscription"
    PAYMENT = "payment"


class CheckoutSessionObject(BaseModel):
    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    payment_status: Optional[str] = None
    mode: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    price_id: Optional[str] = None
    created_at: Optional[datetime] = None
    metadata: EventMetadata = Field(default_factory=EventMetadata)

    model_config = ConfigDict(frozen=True)

    @property
    def is_service_purchase(self) -> bool:
        return self.mode == CheckoutMode.PAYMENT.value and self.metadata.service_product_id is not None


class SubscriptionObject(BaseModel):
    id: str
    customer: Optional[str] = None
    status: Optional[str] = None
    price_id: Optional[str] = None
    metadata: EventMetadata = Field(default_factory=EventMetadata)

    model_config = ConfigDict(frozen=True)


class InvoiceObject(BaseModel):
    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    amount_paid: int = Field(default=0, ge=0)
    currency: Optional[str] = None
    billing_reason: Optional[str] = None
    metadata: EventMetadata = Field(default_factory=EventMetadata)

    model_config = ConfigDict(frozen=True)


PaymentResource = Union[CheckoutSessionObject, SubscriptionObject, InvoiceObject]


class PaymentEvent(BaseModel):
    """A verified processor event, transient and never persisted as-is."""

    event_id: str
    event_type: str
    created_at: datetime
    livemode: bool = False
    resource: Optional[PaymentResource] = None

    model_config = ConfigDict(frozen=True)

    @property
    def known_type(self) -> Optional[PaymentEventType]:
        try:
            return PaymentEventType(self.event_type)
        except ValueError:
            return None

    @property
    def metadata(self) -> EventMetadata:
        if self.resource is None:
            return EventMetadata()
        return self.resource.metadata


class ReconciliationOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    SKIPPED = "skipped"


class ReconciliationResult(BaseModel):
    event_id: str
    event_type: str
    outcome: ReconciliationOutcome
    detail: Optional[str] = None
    transactions_written: int = 0

    model_config = ConfigDict(frozen=True)


class CheckoutSession(BaseModel):
    """Checkout session handed back to the caller for presentation to the payer."""

    session_id: str
    client_secret: Optional[str] = None
    url: Optional[str] = None
    mode: CheckoutMode = CheckoutMode.SUBSCRIPTION
    price_id: str
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class CheckoutVerification(BaseModel):
    session_id: str
    subscriber_id: str
    tier: Tier
    entitlement: EntitlementRecord
    already_applied: bool = False

    model_config = ConfigDict(frozen=True)


class PlatformRevenueReport(BaseModel):
    total: int = 0
    month: int = 0
    week: int = 0
    today: int = 0
    transaction_count: int = 0
    generated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)
