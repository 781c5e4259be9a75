"""Thread-safe in-memory billing store for tests and local development."""
from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence
from uuid import uuid4

from .models import (
    CreatorFinancialSummary,
    EntitlementRecord,
    EventClaim,
    ProcessedEvent,
    ProcessedEventStatus,
    ReferralEdge,
    SummaryIncrement,
    TransactionRecord,
    TransactionStatus,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryBillingRepository:
    """Implements :class:`BillingRepository` on dictionaries guarded by one lock."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.entitlements: Dict[str, EntitlementRecord] = {}
        self.transactions: List[TransactionRecord] = []
        self._transaction_keys: Dict[str, TransactionRecord] = {}
        self.summaries: Dict[str, CreatorFinancialSummary] = {}
        self.referral_edges: Dict[str, ReferralEdge] = {}
        self.processed_events: Dict[str, ProcessedEvent] = {}

    def claim_event(self, event_id: str, event_type: str) -> EventClaim:
        with self._lock:
            existing = self.processed_events.get(event_id)
            if existing is None:
                self.processed_events[event_id] = ProcessedEvent(event_id=event_id, event_type=event_type)
                return EventClaim.NEW
            if existing.status is not ProcessedEventStatus.PROCESSING:
                return EventClaim.DONE
            self.processed_events[event_id] = existing.model_copy(update={"attempts": existing.attempts + 1})
            return EventClaim.RETRY

    def finish_event(self, event_id: str, status: ProcessedEventStatus) -> None:
        with self._lock:
            existing = self.processed_events.get(event_id)
            if existing is None:
                raise KeyError(event_id)
            self.processed_events[event_id] = existing.model_copy(update={"status": status, "finished_at": _utcnow()})

    def get_entitlement(self, subscriber_id: str) -> Optional[EntitlementRecord]:
        with self._lock:
            return self.entitlements.get(subscriber_id)

    def save_entitlement(self, record: EntitlementRecord) -> EntitlementRecord:
        with self._lock:
            current = self.entitlements.get(record.subscriber_id)
            if current is not None and current.last_event_at > record.last_event_at:
                return current
            self.entitlements[record.subscriber_id] = record
            return record

    def append_transaction(self, record: TransactionRecord, increment: SummaryIncrement) -> bool:
        with self._lock:
            if record.idempotency_key in self._transaction_keys:
                return False
            stored = record.model_copy(update={"transaction_id": record.transaction_id or uuid4().hex})
            self.transactions.append(stored)
            self._transaction_keys[stored.idempotency_key] = stored
            summary = self.summaries.get(stored.owner_id) or CreatorFinancialSummary(creator_id=stored.owner_id)
            self.summaries[stored.owner_id] = summary.apply(increment)
            return True

    def list_transactions(
        self,
        owner_id: str,
        *,
        status: Optional[TransactionStatus] = None,
        limit: Optional[int] = 50,
    ) -> Sequence[TransactionRecord]:
        with self._lock:
            rows = [
                txn
                for txn in self.transactions
                if txn.owner_id == owner_id and (status is None or txn.status is status)
            ]
        # Newest first; ties keep reverse insertion order.
        rows = list(reversed(rows))
        rows.sort(key=lambda txn: txn.created_at, reverse=True)
        return rows if limit is None else rows[:limit]

    def list_event_transactions(self, event_id: str) -> Sequence[TransactionRecord]:
        with self._lock:
            return [txn for txn in self.transactions if txn.source_event_id == event_id]

    def get_financial_summary(self, creator_id: str) -> Optional[CreatorFinancialSummary]:
        with self._lock:
            return self.summaries.get(creator_id)

    def replace_financial_summary(self, summary: CreatorFinancialSummary) -> CreatorFinancialSummary:
        with self._lock:
            self.summaries[summary.creator_id] = summary
            return summary

    def get_referral_edge(self, creator_id: str) -> Optional[ReferralEdge]:
        with self._lock:
            return self.referral_edges.get(creator_id)

    def save_referral_edge(self, edge: ReferralEdge) -> ReferralEdge:
        with self._lock:
            self.referral_edges[edge.creator_id] = edge
            return edge


__all__ = ["InMemoryBillingRepository"]
