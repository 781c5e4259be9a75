"""PostgreSQL persistence for entitlements, the ledger and processed events."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .errors import StoreUnavailable
from .models import (
    CreatorFinancialSummary,
    EntitlementRecord,
    EventClaim,
    ProcessedEventStatus,
    ReferralEdge,
    SubscriptionStatus,
    SummaryIncrement,
    Tier,
    TransactionKind,
    TransactionRecord,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[], PgConnection]

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


def load_schema() -> str:
    return SCHEMA_PATH.read_text(encoding="utf-8")


@contextmanager
def managed_connection(connect: ConnectionFactory, conn: Optional[PgConnection] = None):
    """Yield ``(connection, managed)``; managed connections are committed and closed here."""

    if conn is not None:
        yield conn, False
        return

    try:
        connection = connect()
    except (psycopg2.OperationalError, psycopg2.InterfaceError) as exc:
        raise StoreUnavailable(f"Billing store unreachable: {exc}") from exc
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_entitlement(row: dict) -> EntitlementRecord:
    return EntitlementRecord(
        subscriber_id=row["subscriber_id"],
        tier=Tier(row["tier"]),
        status=SubscriptionStatus(row["status"]),
        creator_id=row.get("creator_id"),
        provider_customer_id=row.get("provider_customer_id"),
        provider_subscription_id=row.get("provider_subscription_id"),
        last_event_at=row["last_event_at"],
        updated_at=row["updated_at"],
    )


def _row_to_transaction(row: dict) -> TransactionRecord:
    return TransactionRecord(
        transaction_id=str(row["transaction_id"]),
        owner_id=row["owner_id"],
        kind=TransactionKind(row["kind"]),
        amount=int(row["amount"]),
        currency=row["currency"],
        description=row.get("description") or "",
        subscriber_id=row.get("subscriber_id"),
        related_creator_id=row.get("related_creator_id"),
        source_event_id=row["source_event_id"],
        idempotency_key=row["idempotency_key"],
        status=TransactionStatus(row["status"]),
        created_at=row["created_at"],
    )


def _row_to_summary(row: dict) -> CreatorFinancialSummary:
    return CreatorFinancialSummary(
        creator_id=row["creator_id"],
        available_balance=int(row["available_balance"]),
        total_earnings=int(row["total_earnings"]),
        monthly_revenue=int(row["monthly_revenue"]),
        direct_earnings=int(row["direct_earnings"]),
        network_earnings=int(row["network_earnings"]),
        total_withdrawals=int(row["total_withdrawals"]),
        updated_at=row["updated_at"],
    )


def _row_to_referral_edge(row: dict) -> ReferralEdge:
    return ReferralEdge(
        creator_id=row["creator_id"],
        referred_by=row.get("referred_by"),
        referral_code=row.get("referral_code") or "",
        level=int(row.get("level") or 1),
        is_active=bool(row["is_active"]),
    )


class PostgresBillingRepository:
    """Concrete repository persisting billing state in PostgreSQL.

    Each public method runs in its own transaction unless the repository was
    bound to an externally managed connection.
    """

    def __init__(self, connect: ConnectionFactory, *, conn: Optional[PgConnection] = None) -> None:
        self._connect = connect
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        try:
            with managed_connection(self._connect, self._conn) as (connection, _managed):
                cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
                try:
                    yield cursor
                finally:
                    cursor.close()
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as exc:
            logger.exception("Billing store operation failed")
            raise StoreUnavailable(f"Billing store unavailable: {exc}") from exc

    def apply_schema(self) -> None:
        """Create the billing tables, indexes and ledger trigger; safe to run on every start."""

        with self._cursor() as cursor:
            cursor.execute(load_schema())
        logger.info("Billing schema applied from %s", SCHEMA_PATH.name)

    def claim_event(self, event_id: str, event_type: str) -> EventClaim:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_processed_events (event_id, event_type, status, attempts)
                VALUES (%s, %s, %s, 1)
                ON CONFLICT (event_id) DO UPDATE SET
                    attempts = billing_processed_events.attempts + 1
                WHERE billing_processed_events.status = %s
                RETURNING (xmax = 0) AS inserted
                """,
                (
                    event_id,
                    event_type,
                    ProcessedEventStatus.PROCESSING.value,
                    ProcessedEventStatus.PROCESSING.value,
                ),
            )
            row = cursor.fetchone()
        if row is None:
            return EventClaim.DONE
        return EventClaim.NEW if row["inserted"] else EventClaim.RETRY

    def finish_event(self, event_id: str, status: ProcessedEventStatus) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_processed_events
                SET status = %s, finished_at = NOW()
                WHERE event_id = %s
                """,
                (status.value, event_id),
            )
            if cursor.rowcount == 0:
                raise KeyError(event_id)

    def get_entitlement(self, subscriber_id: str) -> Optional[EntitlementRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM billing_entitlements WHERE subscriber_id = %s LIMIT 1",
                (subscriber_id,),
            )
            row = cursor.fetchone()
        return _row_to_entitlement(row) if row else None

    def save_entitlement(self, record: EntitlementRecord) -> EntitlementRecord:
        """Upsert ``record`` unless a newer event already wrote this subscriber."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_entitlements (
                    subscriber_id,
                    tier,
                    status,
                    creator_id,
                    provider_customer_id,
                    provider_subscription_id,
                    last_event_at,
                    updated_at
                )
                VALUES (%(subscriber_id)s, %(tier)s, %(status)s, %(creator_id)s,
                        %(provider_customer_id)s, %(provider_subscription_id)s,
                        %(last_event_at)s, %(updated_at)s)
                ON CONFLICT (subscriber_id) DO UPDATE SET
                    tier = EXCLUDED.tier,
                    status = EXCLUDED.status,
                    creator_id = EXCLUDED.creator_id,
                    provider_customer_id = EXCLUDED.provider_customer_id,
                    provider_subscription_id = EXCLUDED.provider_subscription_id,
                    last_event_at = EXCLUDED.last_event_at,
                    updated_at = EXCLUDED.updated_at
                WHERE billing_entitlements.last_event_at <= EXCLUDED.last_event_at
                RETURNING *
                """,
                {
                    "subscriber_id": record.subscriber_id,
                    "tier": record.tier.value,
                    "status": record.status.value,
                    "creator_id": record.creator_id,
                    "provider_customer_id": record.provider_customer_id,
                    "provider_subscription_id": record.provider_subscription_id,
                    "last_event_at": record.last_event_at,
                    "updated_at": record.updated_at,
                },
            )
            row = cursor.fetchone()
            if row is None:
                cursor.execute(
                    "SELECT * FROM billing_entitlements WHERE subscriber_id = %s",
                    (record.subscriber_id,),
                )
                row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist entitlement")
        return _row_to_entitlement(row)

    def append_transaction(self, record: TransactionRecord, increment: SummaryIncrement) -> bool:
        """Insert a ledger row and bump its owner's summary in one transaction."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_transactions (
                    owner_id,
                    kind,
                    amount,
                    currency,
                    description,
                    subscriber_id,
                    related_creator_id,
                    source_event_id,
                    idempotency_key,
                    status,
                    created_at
                )
                VALUES (%(owner_id)s, %(kind)s, %(amount)s, %(currency)s, %(description)s,
                        %(subscriber_id)s, %(related_creator_id)s, %(source_event_id)s,
                        %(idempotency_key)s, %(status)s, %(created_at)s)
                ON CONFLICT (idempotency_key) DO NOTHING
                RETURNING transaction_id
                """,
                {
                    "owner_id": record.owner_id,
                    "kind": record.kind.value,
                    "amount": record.amount,
                    "currency": record.currency,
                    "description": record.description,
                    "subscriber_id": record.subscriber_id,
                    "related_creator_id": record.related_creator_id,
                    "source_event_id": record.source_event_id,
                    "idempotency_key": record.idempotency_key,
                    "status": record.status.value,
                    "created_at": record.created_at,
                },
            )
            if cursor.fetchone() is None:
                return False

            cursor.execute(
                """
                INSERT INTO billing_creator_financials (
                    creator_id,
                    available_balance,
                    total_earnings,
                    monthly_revenue,
                    direct_earnings,
                    network_earnings
                )
                VALUES (%(creator_id)s, %(available_balance)s, %(total_earnings)s,
                        %(monthly_revenue)s, %(direct_earnings)s, %(network_earnings)s)
                ON CONFLICT (creator_id) DO UPDATE SET
                    available_balance = billing_creator_financials.available_balance + EXCLUDED.available_balance,
                    total_earnings = billing_creator_financials.total_earnings + EXCLUDED.total_earnings,
                    monthly_revenue = billing_creator_financials.monthly_revenue + EXCLUDED.monthly_revenue,
                    direct_earnings = billing_creator_financials.direct_earnings + EXCLUDED.direct_earnings,
                    network_earnings = billing_creator_financials.network_earnings + EXCLUDED.network_earnings,
                    updated_at = NOW()
                """,
                {"creator_id": record.owner_id, **increment.model_dump()},
            )
        return True

    def list_transactions(
        self,
        owner_id: str,
        *,
        status: Optional[TransactionStatus] = None,
        limit: Optional[int] = 50,
    ) -> Sequence[TransactionRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_transactions
                WHERE owner_id = %s
                  AND (%s::text IS NULL OR status = %s)
                ORDER BY created_at DESC, sequence_no DESC
                LIMIT %s
                """,
                (owner_id, status.value if status else None, status.value if status else None, limit),
            )
            rows = cursor.fetchall()
        return [_row_to_transaction(row) for row in rows]

    def list_event_transactions(self, event_id: str) -> Sequence[TransactionRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM billing_transactions WHERE source_event_id = %s ORDER BY sequence_no",
                (event_id,),
            )
            rows = cursor.fetchall()
        return [_row_to_transaction(row) for row in rows]

    def get_financial_summary(self, creator_id: str) -> Optional[CreatorFinancialSummary]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM billing_creator_financials WHERE creator_id = %s LIMIT 1",
                (creator_id,),
            )
            row = cursor.fetchone()
        return _row_to_summary(row) if row else None

    def replace_financial_summary(self, summary: CreatorFinancialSummary) -> CreatorFinancialSummary:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_creator_financials (
                    creator_id,
                    available_balance,
                    total_earnings,
                    monthly_revenue,
                    direct_earnings,
                    network_earnings,
                    total_withdrawals,
                    updated_at
                )
                VALUES (%(creator_id)s, %(available_balance)s, %(total_earnings)s, %(monthly_revenue)s,
                        %(direct_earnings)s, %(network_earnings)s, %(total_withdrawals)s, %(updated_at)s)
                ON CONFLICT (creator_id) DO UPDATE SET
                    available_balance = EXCLUDED.available_balance,
                    total_earnings = EXCLUDED.total_earnings,
                    monthly_revenue = EXCLUDED.monthly_revenue,
                    direct_earnings = EXCLUDED.direct_earnings,
                    network_earnings = EXCLUDED.network_earnings,
                    total_withdrawals = EXCLUDED.total_withdrawals,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                summary.model_dump(),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist financial summary")
        return _row_to_summary(row)

    def get_referral_edge(self, creator_id: str) -> Optional[ReferralEdge]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM billing_referral_edges WHERE creator_id = %s LIMIT 1",
                (creator_id,),
            )
            row = cursor.fetchone()
        return _row_to_referral_edge(row) if row else None

    def save_referral_edge(self, edge: ReferralEdge) -> ReferralEdge:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_referral_edges (creator_id, referred_by, referral_code, level, is_active)
                VALUES (%(creator_id)s, %(referred_by)s, %(referral_code)s, %(level)s, %(is_active)s)
                ON CONFLICT (creator_id) DO UPDATE SET
                    is_active = EXCLUDED.is_active,
                    referral_code = EXCLUDED.referral_code
                RETURNING *
                """,
                edge.model_dump(),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist referral edge")
        return _row_to_referral_edge(row)


__all__ = ["PostgresBillingRepository", "SCHEMA_PATH", "load_schema", "managed_connection"]
