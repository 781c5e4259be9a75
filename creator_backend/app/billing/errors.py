"""Exceptions raised by the billing reconciliation pipeline."""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Sequence

from fastapi import HTTPException, status


class BillingError(Exception):
    """Base class for billing failures surfaced to API callers.

    ``retryable`` tells the webhook route whether the payment processor should
    redeliver the event (server error) or give up on it (client error).
    """

    code = "billing_error"
    status_code = status.HTTP_400_BAD_REQUEST
    retryable = False

    def __init__(self, message: str, *, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = dict(detail or {})

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        base: Dict[str, Any] = {"error": self.code, "message": self.message}
        base.update(self.detail)
        return base

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class InvalidSignature(BillingError):
    code = "invalid_signature"


class MalformedEvent(BillingError):
    code = "malformed_event"


class MissingMetadata(BillingError):
    """The event lacks metadata it can never gain; redelivery is pointless."""

    code = "missing_metadata"

    def __init__(self, missing: Sequence[str], *, event_id: Optional[str] = None) -> None:
        self.missing = tuple(missing)
        self.event_id = event_id
        detail: Dict[str, Any] = {"missing": list(self.missing)}
        if event_id:
            detail["event_id"] = event_id
        super().__init__(f"Missing metadata: {', '.join(self.missing)}", detail=detail)


class UnknownProduct(BillingError):
    code = "unknown_product"

    def __init__(self, product: Optional[str]) -> None:
        self.product = product
        super().__init__(f"No price mapping for product: {product!r}", detail={"product": product})


class PaymentNotCompleted(BillingError):
    code = "payment_not_completed"


class CheckoutMismatch(BillingError):
    code = "checkout_mismatch"
    status_code = status.HTTP_403_FORBIDDEN


class EntitlementNotFound(BillingError):
    code = "entitlement_not_found"
    status_code = status.HTTP_404_NOT_FOUND


class StoreUnavailable(BillingError):
    """Transient persistence failure; the whole event should be retried."""

    code = "store_unavailable"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable = True


class ProviderUnavailable(BillingError):
    """The payment processor API could not be reached."""

    code = "provider_unavailable"
    status_code = status.HTTP_502_BAD_GATEWAY
    retryable = True


__all__ = [
    "BillingError",
    "CheckoutMismatch",
    "EntitlementNotFound",
    "InvalidSignature",
    "MalformedEvent",
    "MissingMetadata",
    "PaymentNotCompleted",
    "ProviderUnavailable",
    "StoreUnavailable",
    "UnknownProduct",
]
