"""Read-side ledger queries and summary recovery."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence

from .models import (
    PLATFORM_OWNER_ID,
    CreatorFinancialSummary,
    PlatformRevenueReport,
    SummaryIncrement,
    TransactionKind,
    TransactionRecord,
    TransactionStatus,
)
from .service import BillingRepository

logger = logging.getLogger(__name__)

MAX_TRANSACTION_PAGE = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _increment_for(record: TransactionRecord) -> SummaryIncrement:
    if record.kind is TransactionKind.PLATFORM_REVENUE:
        return SummaryIncrement.platform(record.amount)
    if record.kind.is_commission:
        return SummaryIncrement.network(record.amount)
    return SummaryIncrement.direct(record.amount)


def _start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


@dataclass
class LedgerService:
    """Financial summaries and reports computed from the transaction ledger."""

    repository: BillingRepository
    clock: Callable[[], datetime] = field(default=_utcnow)

    def list_transactions(
        self,
        owner_id: str,
        *,
        limit: int = 50,
        status: Optional[TransactionStatus] = None,
    ) -> Sequence[TransactionRecord]:
        limit = max(1, min(limit, MAX_TRANSACTION_PAGE))
        return self.repository.list_transactions(owner_id, status=status, limit=limit)

    def get_financial_summary(self, creator_id: str) -> CreatorFinancialSummary:
        summary = self.repository.get_financial_summary(creator_id)
        if summary is None:
            return CreatorFinancialSummary(creator_id=creator_id, updated_at=self.clock())
        return summary

    def rebuild_financial_summary(self, creator_id: str) -> CreatorFinancialSummary:
        """Recompute a cached summary from completed ledger entries and store it.

        ``monthly_revenue`` only counts entries from the current calendar month,
        which also resets the counter the incremental path keeps growing.
        """

        now = self.clock()
        month_start = _start_of_day(now).replace(day=1)
        previous = self.repository.get_financial_summary(creator_id)
        withdrawals = previous.total_withdrawals if previous else 0

        rebuilt = CreatorFinancialSummary(creator_id=creator_id, total_withdrawals=withdrawals, updated_at=now)
        entries = self.repository.list_transactions(creator_id, status=TransactionStatus.COMPLETED, limit=None)
        for record in entries:
            increment = _increment_for(record)
            if record.created_at < month_start:
                increment = increment.model_copy(update={"monthly_revenue": 0})
            rebuilt = rebuilt.apply(increment, at=now)
        rebuilt = rebuilt.model_copy(update={"available_balance": rebuilt.total_earnings - withdrawals})

        if previous is not None and previous.total_earnings != rebuilt.total_earnings:
            logger.warning(
                "Financial summary drift for %s: cached total %s, ledger total %s",
                creator_id,
                previous.total_earnings,
                rebuilt.total_earnings,
            )
        logger.info("Rebuilt financial summary for %s from %s ledger entries", creator_id, len(entries))
        return self.repository.replace_financial_summary(rebuilt)

    def platform_revenue_report(self, now: Optional[datetime] = None) -> PlatformRevenueReport:
        """Totals of completed platform profit entries; weeks start on Sunday."""

        now = now or self.clock()
        today = _start_of_day(now)
        month_start = today.replace(day=1)
        week_start = today - timedelta(days=(today.weekday() + 1) % 7)

        total = month = week = day = count = 0
        for record in self.repository.list_transactions(
            PLATFORM_OWNER_ID,
            status=TransactionStatus.COMPLETED,
            limit=None,
        ):
            if record.kind is not TransactionKind.PLATFORM_REVENUE:
                continue
            count += 1
            total += record.amount
            if record.created_at >= month_start:
                month += record.amount
            if record.created_at >= week_start:
                week += record.amount
            if record.created_at >= today:
                day += record.amount
        return PlatformRevenueReport(
            total=total,
            month=month,
            week=week,
            today=day,
            transaction_count=count,
            generated_at=now,
        )


__all__ = ["LedgerService", "MAX_TRANSACTION_PAGE"]
