"""Tests for ledger queries, summary rebuilds and the platform revenue report."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from creator_backend.app.billing import (
    PLATFORM_OWNER_ID,
    CreatorFinancialSummary,
    InMemoryBillingRepository,
    LedgerService,
    SummaryIncrement,
    TransactionKind,
    TransactionRecord,
    TransactionStatus,
)

# A Wednesday; the reporting week starts on Sunday 2025-03-09.
NOW = datetime(2025, 3, 12, 15, 30, tzinfo=timezone.utc)


def _txn(key: str, owner: str, kind: TransactionKind, amount: int, created_at: datetime, **extra) -> TransactionRecord:
    return TransactionRecord(
        owner_id=owner,
        kind=kind,
        amount=amount,
        source_event_id=key.split(":")[0],
        idempotency_key=key,
        created_at=created_at,
        **extra,
    )


@pytest.fixture
def ledger():
    repository = InMemoryBillingRepository()
    return repository, LedgerService(repository=repository, clock=lambda: NOW)


def test_missing_summary_is_zeroed(ledger):
    _, service = ledger

    summary = service.get_financial_summary("creator-1")

    assert summary.creator_id == "creator-1"
    assert summary.total_earnings == 0
    assert summary.available_balance == 0


def test_list_transactions_is_newest_first_and_filtered(ledger):
    repository, service = ledger
    repository.append_transaction(
        _txn("e1:creator", "creator-1", TransactionKind.SUBSCRIPTION_REVENUE, 100, NOW - timedelta(days=2)),
        SummaryIncrement.direct(100),
    )
    repository.append_transaction(
        _txn("e2:creator", "creator-1", TransactionKind.SUBSCRIPTION_REVENUE, 200, NOW - timedelta(days=1)),
        SummaryIncrement.direct(200),
    )
    repository.append_transaction(
        _txn(
            "e3:creator",
            "creator-1",
            TransactionKind.SERVICE_REVENUE,
            300,
            NOW,
            status=TransactionStatus.PENDING,
        ),
        SummaryIncrement(),
    )

    assert [txn.amount for txn in service.list_transactions("creator-1")] == [300, 200, 100]
    assert [txn.amount for txn in service.list_transactions("creator-1", limit=1)] == [300]
    completed = service.list_transactions("creator-1", status=TransactionStatus.COMPLETED)
    assert [txn.amount for txn in completed] == [200, 100]


def test_rebuild_recomputes_counters_from_ledger(ledger):
    repository, service = ledger
    repository.replace_financial_summary(
        CreatorFinancialSummary(creator_id="creator-1", available_balance=1, total_earnings=1, total_withdrawals=50)
    )
    repository.append_transaction(
        _txn("old:creator", "creator-1", TransactionKind.SUBSCRIPTION_REVENUE, 1393, datetime(2025, 2, 20, tzinfo=timezone.utc)),
        SummaryIncrement.direct(1393),
    )
    repository.append_transaction(
        _txn("new:creator", "creator-1", TransactionKind.SUBSCRIPTION_REVENUE, 2793, NOW - timedelta(days=1)),
        SummaryIncrement.direct(2793),
    )
    repository.append_transaction(
        _txn("net:commission:1", "creator-1", TransactionKind.COMMISSION_LEVEL_1, 399, NOW),
        SummaryIncrement.network(399),
    )

    summary = service.rebuild_financial_summary("creator-1")

    assert summary.total_earnings == 1393 + 2793 + 399
    assert summary.direct_earnings == 1393 + 2793
    assert summary.network_earnings == 399
    assert summary.monthly_revenue == 2793
    assert summary.total_withdrawals == 50
    assert summary.available_balance == summary.total_earnings - 50
    assert repository.get_financial_summary("creator-1") == summary


def test_platform_revenue_report_buckets(ledger):
    repository, service = ledger
    entries = [
        ("a", 100, datetime(2025, 1, 5, tzinfo=timezone.utc)),
        ("b", 200, datetime(2025, 3, 2, tzinfo=timezone.utc)),
        ("c", 300, datetime(2025, 3, 9, 1, tzinfo=timezone.utc)),
        ("d", 400, NOW - timedelta(hours=1)),
    ]
    for key, amount, created_at in entries:
        repository.append_transaction(
            _txn(f"{key}:platform", PLATFORM_OWNER_ID, TransactionKind.PLATFORM_REVENUE, amount, created_at),
            SummaryIncrement.platform(amount),
        )

    report = service.platform_revenue_report()

    assert report.total == 1000
    assert report.month == 900
    assert report.week == 700
    assert report.today == 400
    assert report.transaction_count == 4
    assert report.generated_at == NOW
