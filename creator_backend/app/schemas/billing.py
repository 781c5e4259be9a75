"""API schemas for billing endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..billing import (
    CheckoutSession,
    CheckoutVerification,
    CreatorFinancialSummary,
    PlatformRevenueReport,
    ReconciliationOutcome,
    Tier,
    TransactionRecord,
)


class CheckoutSessionRequest(BaseModel):
    subscriber_id: str = Field(alias="subscriberId", min_length=1)
    creator_id: str = Field(alias="creatorId", min_length=1)
    tier: Optional[Tier] = None
    service_product_id: Optional[str] = Field(alias="serviceProductId", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def _one_product(self) -> "CheckoutSessionRequest":
        if (self.tier is None) == (self.service_product_id is None):
            raise ValueError("Provide exactly one of tier or serviceProductId")
        return self


class CheckoutSessionResponse(BaseModel):
    success: bool = True
    client_secret: Optional[str] = Field(alias="clientSecret", default=None)
    session_id: Optional[str] = Field(alias="sessionId", default=None)
    error: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_session(cls, session: CheckoutSession) -> "CheckoutSessionResponse":
        return cls(client_secret=session.client_secret, session_id=session.session_id)


class VerifyCheckoutRequest(BaseModel):
    session_id: str = Field(alias="sessionId", min_length=1)
    subscriber_id: str = Field(alias="subscriberId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class VerifyCheckoutResponse(BaseModel):
    success: bool = True
    tier: Optional[Tier] = None
    has_access: bool = Field(alias="hasAccess", default=False)
    message: str = ""

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_verification(cls, verification: CheckoutVerification) -> "VerifyCheckoutResponse":
        message = (
            "Assinatura já estava ativa"
            if verification.already_applied
            else f"Assinatura {verification.tier.value} ativada"
        )
        return cls(
            tier=verification.tier,
            has_access=verification.entitlement.grants_access,
            message=message,
        )


class WebhookResponse(BaseModel):
    received: bool = True
    outcome: ReconciliationOutcome


class FinancialSummaryResponse(BaseModel):
    creator_id: str = Field(alias="creatorId")
    available_balance: int = Field(alias="availableBalance")
    total_earnings: int = Field(alias="totalEarnings")
    monthly_revenue: int = Field(alias="monthlyRevenue")
    direct_earnings: int = Field(alias="directEarnings")
    network_earnings: int = Field(alias="networkEarnings")
    total_withdrawals: int = Field(alias="totalWithdrawals")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_summary(cls, summary: CreatorFinancialSummary) -> "FinancialSummaryResponse":
        return cls.model_validate(summary.model_dump())


class TransactionListResponse(BaseModel):
    transactions: List[TransactionRecord]

    model_config = ConfigDict(populate_by_name=True)


class PlatformRevenueResponse(BaseModel):
    total_revenue: int = Field(alias="totalRevenue")
    monthly_revenue: int = Field(alias="monthlyRevenue")
    weekly_revenue: int = Field(alias="weeklyRevenue")
    today_revenue: int = Field(alias="todayRevenue")
    transaction_count: int = Field(alias="transactionCount")
    generated_at: datetime = Field(alias="generatedAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_report(cls, report: PlatformRevenueReport) -> "PlatformRevenueResponse":
        return cls(
            total_revenue=report.total,
            monthly_revenue=report.month,
            weekly_revenue=report.week,
            today_revenue=report.today,
            transaction_count=report.transaction_count,
            generated_at=report.generated_at,
        )
