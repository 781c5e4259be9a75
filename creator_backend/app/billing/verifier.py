"""Authenticity checks and parsing for inbound payment processor events."""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union

import stripe
from pydantic import ValidationError

from .errors import InvalidSignature, MalformedEvent
from .models import (
    CheckoutSessionObject,
    EventMetadata,
    InvoiceObject,
    PaymentEvent,
    PaymentEventType,
    PaymentResource,
    SubscriptionObject,
)

DEFAULT_TOLERANCE_SECONDS = 300

_EXPECTED_OBJECT: Dict[PaymentEventType, str] = {
    PaymentEventType.CHECKOUT_SESSION_COMPLETED: "checkout.session",
    PaymentEventType.SUBSCRIPTION_CREATED: "subscription",
    PaymentEventType.SUBSCRIPTION_UPDATED: "subscription",
    PaymentEventType.SUBSCRIPTION_DELETED: "subscription",
    PaymentEventType.INVOICE_PAID: "invoice",
    PaymentEventType.INVOICE_PAYMENT_SUCCEEDED: "invoice",
    PaymentEventType.INVOICE_PAYMENT_FAILED: "invoice",
}


class PaymentEventVerifier:
    """Checks the ``Stripe-Signature`` header of a webhook delivery before parsing it."""

    def __init__(self, secret: str, *, tolerance_seconds: Optional[int] = DEFAULT_TOLERANCE_SECONDS) -> None:
        if not secret:
            raise ValueError("secret must be provided")
        self._secret = secret
        self._tolerance = tolerance_seconds

    def verify(self, payload: Union[bytes, str], signature_header: Optional[str]) -> PaymentEvent:
        """Check the signature and parse the payload into a :class:`PaymentEvent`."""

        if not signature_header:
            raise InvalidSignature("No signature header")
        try:
            body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError as exc:
            raise InvalidSignature("Payload is not UTF-8 and cannot carry a valid signature") from exc

        try:
            stripe.WebhookSignature.verify_header(body, signature_header, self._secret, self._tolerance)
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignature(f"Signature verification failed: {exc.user_message or exc}") from exc
        return parse_event(body)


def _as_bytes(payload: Union[bytes, str]) -> bytes:
    if isinstance(payload, bytes):
        return payload
    return payload.encode("utf-8")


def parse_event(body: Union[bytes, str]) -> PaymentEvent:
    """Parse a raw event envelope; raises :class:`MalformedEvent` on bad shape."""

    try:
        envelope = json.loads(_as_bytes(body).decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedEvent("Event body is not valid JSON") from exc
    if not isinstance(envelope, dict):
        raise MalformedEvent("Event body must be a JSON object")

    event_id = envelope.get("id")
    event_type = envelope.get("type")
    data = envelope.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    missing = [
        name
        for name, value in (("id", event_id), ("type", event_type), ("data.object", obj))
        if not value
    ]
    if missing:
        raise MalformedEvent(f"Event is missing required fields: {', '.join(missing)}")
    if not isinstance(obj, dict):
        raise MalformedEvent("data.object must be a JSON object")

    known_type = _known_type(str(event_type))
    object_kind = str(obj.get("object") or (_EXPECTED_OBJECT.get(known_type) if known_type else "") or "")
    if known_type is not None and object_kind != _EXPECTED_OBJECT[known_type]:
        raise MalformedEvent(f"{event_type} carries a {object_kind or 'untyped'} object")

    try:
        return PaymentEvent(
            event_id=str(event_id),
            event_type=str(event_type),
            created_at=_parse_timestamp(envelope.get("created")) or datetime.now(timezone.utc),
            livemode=bool(envelope.get("livemode", False)),
            resource=parse_resource(object_kind, obj),
        )
    except (ValidationError, TypeError) as exc:
        raise MalformedEvent(f"Invalid {object_kind or 'event'} object: {exc}") from exc


def _known_type(raw: str) -> Optional[PaymentEventType]:
    try:
        return PaymentEventType(raw)
    except ValueError:
        return None


def parse_resource(kind: str, obj: Mapping[str, Any]) -> Optional[PaymentResource]:
    """Build the typed view of a processor object; ``None`` for kinds not reconciled."""

    if kind not in _EXPECTED_OBJECT.values():
        return None
    if not obj.get("id"):
        raise MalformedEvent(f"{kind} object has no id")
    if kind == "checkout.session":
        return CheckoutSessionObject(
            id=str(obj["id"]),
            customer=_optional_id(obj.get("customer")),
            subscription=_optional_id(obj.get("subscription")),
            payment_status=obj.get("payment_status"),
            mode=obj.get("mode"),
            amount_total=_optional_int(obj.get("amount_total")),
            currency=obj.get("currency"),
            price_id=_first_price_id(obj.get("line_items")),
            created_at=_parse_timestamp(obj.get("created")),
            metadata=EventMetadata.from_mapping(obj.get("metadata")),
        )
    if kind == "subscription":
        return SubscriptionObject(
            id=str(obj["id"]),
            customer=_optional_id(obj.get("customer")),
            status=obj.get("status"),
            price_id=_first_price_id(obj.get("items")),
            metadata=EventMetadata.from_mapping(obj.get("metadata")),
        )
    if kind == "invoice":
        metadata = EventMetadata.from_mapping(obj.get("metadata"))
        details = obj.get("subscription_details")
        if isinstance(details, dict):
            metadata = metadata.merged_with(EventMetadata.from_mapping(details.get("metadata")))
        first_line = _first_list_item(obj.get("lines"))
        if first_line is not None:
            metadata = metadata.merged_with(EventMetadata.from_mapping(first_line.get("metadata")))
        return InvoiceObject(
            id=str(obj["id"]),
            customer=_optional_id(obj.get("customer")),
            subscription=_optional_id(obj.get("subscription")),
            amount_paid=_optional_int(obj.get("amount_paid")) or 0,
            currency=obj.get("currency"),
            billing_reason=obj.get("billing_reason"),
            metadata=metadata,
        )


def _optional_id(value: Any) -> Optional[str]:
    """Processor references are either a bare id or an expanded object."""

    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedEvent(f"Expected an integer amount, got {value!r}")
    return value


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    raise MalformedEvent(f"Expected a unix timestamp, got {value!r}")


def _first_list_item(value: Any) -> Optional[Mapping[str, Any]]:
    if isinstance(value, dict):
        value = value.get("data")
    if isinstance(value, list) and value and isinstance(value[0], dict):
        return value[0]
    return None


def _first_price_id(value: Any) -> Optional[str]:
    item = _first_list_item(value)
    if item is None:
        return None
    price = item.get("price")
    return _optional_id(price)


__all__ = ["PaymentEventVerifier", "parse_event", "parse_resource", "DEFAULT_TOLERANCE_SECONDS"]
