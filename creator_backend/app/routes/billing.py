"""API routes exposing billing functionality."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from ..billing import (
    BillingError,
    CheckoutSessionBuilder,
    CheckoutVerifier,
    InvalidSignature,
    LedgerService,
    MalformedEvent,
    MissingMetadata,
    ReconciliationOutcome,
    TransactionStatus,
    WebhookProcessor,
)
from ..schemas.billing import (
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    FinancialSummaryResponse,
    PlatformRevenueResponse,
    TransactionListResponse,
    VerifyCheckoutRequest,
    VerifyCheckoutResponse,
    WebhookResponse,
)
from ..services.billing import (
    get_checkout_builder,
    get_checkout_verifier,
    get_ledger_service,
    get_webhook_processor,
    require_internal_token,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing", tags=["billing"])


def _failure(exc: BillingError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message, "code": exc.code},
    )


@router.post("/webhook", response_model=WebhookResponse)
async def receive_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> WebhookResponse:
    payload = await request.body()
    try:
        result = await run_in_threadpool(processor.process, payload, stripe_signature)
    except (InvalidSignature, MalformedEvent) as exc:
        logger.warning("Rejected payment webhook: %s", exc.message, extra={"error_code": exc.code})
        raise exc.to_http_exception() from exc
    except MissingMetadata:
        # Acknowledged so the processor stops redelivering; the event is marked skipped.
        return WebhookResponse(outcome=ReconciliationOutcome.SKIPPED)
    except BillingError as exc:
        logger.error(
            "Payment webhook failed with %s; the processor will redeliver",
            exc.code,
            extra={"error_code": exc.code, "retryable": exc.retryable},
        )
        if exc.retryable:
            raise exc.to_http_exception() from exc
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=dict(exc.payload)) from exc
    except Exception as exc:
        logger.exception("Unexpected error while handling payment webhook")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook processing failed") from exc

    logger.info(
        "Payment webhook %s (%s) -> %s",
        result.event_id,
        result.event_type,
        result.outcome.value,
        extra={"event_id": result.event_id, "outcome": result.outcome.value},
    )
    return WebhookResponse(outcome=result.outcome)


@router.post("/checkout-session", response_model=CheckoutSessionResponse)
def create_checkout_session(
    payload: CheckoutSessionRequest,
    builder: CheckoutSessionBuilder = Depends(get_checkout_builder),
):
    try:
        if payload.tier is not None:
            session = builder.build_subscription_checkout(payload.subscriber_id, payload.creator_id, payload.tier)
        else:
            session = builder.build_service_checkout(
                payload.subscriber_id,
                payload.creator_id,
                payload.service_product_id or "",
            )
    except BillingError as exc:
        logger.warning("Checkout session refused for %s: %s", payload.subscriber_id, exc.message)
        return _failure(exc)
    return CheckoutSessionResponse.from_session(session)


@router.post("/verify-checkout", response_model=VerifyCheckoutResponse)
def verify_checkout(
    payload: VerifyCheckoutRequest,
    verifier: CheckoutVerifier = Depends(get_checkout_verifier),
):
    try:
        verification = verifier.verify(payload.session_id, payload.subscriber_id)
    except BillingError as exc:
        logger.info("Checkout %s not verified: %s", payload.session_id, exc.code)
        return _failure(exc)
    return VerifyCheckoutResponse.from_verification(verification)


@router.get(
    "/creators/{creator_id}/financials",
    response_model=FinancialSummaryResponse,
    dependencies=[Depends(require_internal_token)],
)
def get_creator_financials(
    creator_id: str,
    ledger: LedgerService = Depends(get_ledger_service),
) -> FinancialSummaryResponse:
    return FinancialSummaryResponse.from_summary(ledger.get_financial_summary(creator_id))


@router.post(
    "/creators/{creator_id}/financials/rebuild",
    response_model=FinancialSummaryResponse,
    dependencies=[Depends(require_internal_token)],
)
def rebuild_creator_financials(
    creator_id: str,
    ledger: LedgerService = Depends(get_ledger_service),
) -> FinancialSummaryResponse:
    return FinancialSummaryResponse.from_summary(ledger.rebuild_financial_summary(creator_id))


@router.get(
    "/creators/{creator_id}/transactions",
    response_model=TransactionListResponse,
    dependencies=[Depends(require_internal_token)],
)
def list_creator_transactions(
    creator_id: str,
    limit: int = Query(50, ge=1, le=500),
    status_filter: Optional[TransactionStatus] = Query(None, alias="status"),
    ledger: LedgerService = Depends(get_ledger_service),
) -> TransactionListResponse:
    transactions = ledger.list_transactions(creator_id, limit=limit, status=status_filter)
    return TransactionListResponse(transactions=list(transactions))


@router.get(
    "/platform/revenue",
    response_model=PlatformRevenueResponse,
    dependencies=[Depends(require_internal_token)],
)
def get_platform_revenue(ledger: LedgerService = Depends(get_ledger_service)) -> PlatformRevenueResponse:
    return PlatformRevenueResponse.from_report(ledger.platform_revenue_report())
