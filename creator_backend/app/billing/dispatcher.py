"""Routes verified payment events to their reconciliation handler."""
from __future__ import annotations

import logging
from typing import Dict, Optional, Union

from .models import PaymentEvent, PaymentEventType, ReconciliationOutcome, ReconciliationResult
from .service import Handler, ReconciliationService
from .verifier import PaymentEventVerifier

logger = logging.getLogger(__name__)


class EventDispatcher:
    """Maps event type tags onto :class:`ReconciliationService` handlers.

    Subscription creation is reconciled exactly like an update, and both
    invoice success tags share one handler. Anything else is acknowledged and
    ignored so new processor event types never cause redelivery loops.
    """

    def __init__(self, service: ReconciliationService) -> None:
        self._service = service
        self._routes: Dict[PaymentEventType, Handler] = {
            PaymentEventType.CHECKOUT_SESSION_COMPLETED: service.handle_checkout_completed,
            PaymentEventType.SUBSCRIPTION_CREATED: service.handle_subscription_updated,
            PaymentEventType.SUBSCRIPTION_UPDATED: service.handle_subscription_updated,
            PaymentEventType.SUBSCRIPTION_DELETED: service.handle_subscription_canceled,
            PaymentEventType.INVOICE_PAID: service.handle_invoice_paid,
            PaymentEventType.INVOICE_PAYMENT_SUCCEEDED: service.handle_invoice_paid,
            PaymentEventType.INVOICE_PAYMENT_FAILED: service.handle_invoice_payment_failed,
        }

    def handler_for(self, event_type: Union[str, PaymentEventType]) -> Optional[Handler]:
        try:
            return self._routes.get(PaymentEventType(event_type))
        except ValueError:
            return None

    def dispatch(self, event: PaymentEvent) -> ReconciliationResult:
        handler = self.handler_for(event.event_type)
        if handler is None:
            logger.info("Ignoring unhandled payment event %s (%s)", event.event_id, event.event_type)
            return ReconciliationResult(
                event_id=event.event_id,
                event_type=event.event_type,
                outcome=ReconciliationOutcome.IGNORED,
            )
        return self._service.run(event, handler)


class WebhookProcessor:
    """Verify-then-dispatch entry point used by the webhook route."""

    def __init__(self, verifier: PaymentEventVerifier, dispatcher: EventDispatcher) -> None:
        self.verifier = verifier
        self.dispatcher = dispatcher

    def process(self, payload: bytes, signature_header: Optional[str]) -> ReconciliationResult:
        event = self.verifier.verify(payload, signature_header)
        logger.debug(
            "Verified payment event %s (%s)",
            event.event_id,
            event.event_type,
            extra={"event_id": event.event_id, "subscriber_id": event.metadata.subscriber_id},
        )
        return self.dispatcher.dispatch(event)


__all__ = ["EventDispatcher", "WebhookProcessor"]
