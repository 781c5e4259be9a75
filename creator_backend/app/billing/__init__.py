"""Billing domain package: payment event reconciliation, commissions and the creator ledger."""

from .checkout import CheckoutSessionBuilder, CheckoutVerifier, normalize_app_url
from .commissions import (
    COMMISSION_RATES,
    CREATOR_SHARE_RATE,
    MAX_COMMISSION_DEPTH,
    CommissionBreakdown,
    CommissionPayout,
    RevenueSplit,
    calculate_commissions,
    split_revenue,
)
from .dispatcher import EventDispatcher, WebhookProcessor
from .errors import (
    BillingError,
    CheckoutMismatch,
    EntitlementNotFound,
    InvalidSignature,
    MalformedEvent,
    MissingMetadata,
    PaymentNotCompleted,
    ProviderUnavailable,
    StoreUnavailable,
    UnknownProduct,
)
from .ledger import LedgerService
from .memory import InMemoryBillingRepository
from .models import (
    PLATFORM_OWNER_ID,
    CheckoutMode,
    CheckoutSession,
    CheckoutSessionObject,
    CheckoutVerification,
    CreatorFinancialSummary,
    EntitlementRecord,
    EventClaim,
    EventMetadata,
    InvoiceObject,
    PaymentEvent,
    PaymentEventType,
    PlatformRevenueReport,
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
from .service import BillingNotifier, BillingRepository, PaymentProvider, ReconciliationService
from .verifier import PaymentEventVerifier, parse_event

__all__ = [
    "BillingError",
    "BillingNotifier",
    "BillingRepository",
    "COMMISSION_RATES",
    "CREATOR_SHARE_RATE",
    "CheckoutMismatch",
    "CheckoutMode",
    "CheckoutSession",
    "CheckoutSessionBuilder",
    "CheckoutSessionObject",
    "CheckoutVerification",
    "CheckoutVerifier",
    "CommissionBreakdown",
    "CommissionPayout",
    "CreatorFinancialSummary",
    "EntitlementNotFound",
    "EntitlementRecord",
    "EventClaim",
    "EventDispatcher",
    "EventMetadata",
    "InMemoryBillingRepository",
    "InvalidSignature",
    "InvoiceObject",
    "LedgerService",
    "MAX_COMMISSION_DEPTH",
    "MalformedEvent",
    "MissingMetadata",
    "PLATFORM_OWNER_ID",
    "PaymentEvent",
    "PaymentEventType",
    "PaymentEventVerifier",
    "PaymentNotCompleted",
    "PaymentProvider",
    "PlatformRevenueReport",
    "ProcessedEventStatus",
    "ProviderUnavailable",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "ReconciliationService",
    "ReferralEdge",
    "RevenueSplit",
    "StoreUnavailable",
    "SubscriptionObject",
    "SubscriptionStatus",
    "SummaryIncrement",
    "Tier",
    "TransactionKind",
    "TransactionRecord",
    "TransactionStatus",
    "UnknownProduct",
    "WebhookProcessor",
    "calculate_commissions",
    "normalize_app_url",
    "parse_event",
    "split_revenue",
]
