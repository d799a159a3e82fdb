"""
Repository pattern for data access.

Append-only billing ledger on SQLite, plus the aggregates quota enforcement
and the CLI read from it.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from .db import get_connection, ledger_connection
from .models import BillingRecord

DEFAULT_DB_PATH = "ai_cost_router.db"

_COLUMNS = (
    "record_id, timestamp, request_id, tenant_id, task_kind, status, provider_id, "
    "model_id, attempts, latency_ms, prompt_tokens, completion_tokens, total_tokens, "
    "request_bytes, response_bytes, estimated_cost, cache_hit, failure_kind, "
    "error_detail, attempt_trail, redacted"
)


def _row_values(record: BillingRecord) -> Tuple:
    return (
        record.record_id,
        record.timestamp.isoformat(),
        record.request_id,
        record.tenant_id,
        record.task_kind,
        record.status,
        record.provider_id,
        record.model_id,
        record.attempts,
        record.latency_ms,
        record.prompt_tokens,
        record.completion_tokens,
        record.total_tokens,
        record.request_bytes,
        record.response_bytes,
        str(record.estimated_cost),
        int(record.cache_hit),
        record.failure_kind,
        record.error_detail,
        record.attempt_trail,
        int(record.redacted),
    )


def _record_from_row(row: Tuple) -> BillingRecord:
    return BillingRecord(
        record_id=row[0],
        timestamp=datetime.fromisoformat(row[1]),
        request_id=row[2],
        tenant_id=row[3],
        task_kind=row[4],
        status=row[5],
        provider_id=row[6],
        model_id=row[7],
        attempts=row[8],
        latency_ms=row[9],
        prompt_tokens=row[10],
        completion_tokens=row[11],
        total_tokens=row[12],
        request_bytes=row[13],
        response_bytes=row[14],
        estimated_cost=Decimal(row[15]),
        cache_hit=bool(row[16]),
        failure_kind=row[17],
        error_detail=row[18],
        attempt_trail=row[19],
        redacted=bool(row[20]),
    )


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the billing_record table if it doesn't exist.

    This creates an append-only ledger for immutable billing records.
    No UPDATE or DELETE operations should ever be performed on this table.
    ``record_id`` is unique so redelivery of the same record is harmless.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS billing_record (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                record_id TEXT NOT NULL UNIQUE,
                timestamp TEXT NOT NULL,
                request_id TEXT NOT NULL,
                tenant_id TEXT NOT NULL,
                task_kind TEXT NOT NULL,
                status TEXT NOT NULL,
                provider_id TEXT,
                model_id TEXT,
                attempts INTEGER NOT NULL,
                latency_ms INTEGER NOT NULL,
                prompt_tokens INTEGER NOT NULL,
                completion_tokens INTEGER NOT NULL,
                total_tokens INTEGER NOT NULL,
                request_bytes INTEGER NOT NULL,
                response_bytes INTEGER NOT NULL,
                estimated_cost TEXT NOT NULL,
                cache_hit INTEGER NOT NULL DEFAULT 0,
                failure_kind TEXT,
                error_detail TEXT,
                attempt_trail TEXT NOT NULL DEFAULT '',
                redacted INTEGER NOT NULL DEFAULT 1
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_billing_tenant_ts ON billing_record (tenant_id, timestamp)"
        )
        conn.commit()
    finally:
        conn.close()


def insert_billing_record(record: BillingRecord, db_path: str = DEFAULT_DB_PATH) -> None:
    """Append a single billing record to the ledger.

    Re-inserting a record that is already present is a no-op, which makes
    at-least-once delivery safe.

    Args:
        record: The billing record to store
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute(
            f"INSERT OR IGNORE INTO billing_record ({_COLUMNS}) "
            f"VALUES ({', '.join('?' * 21)})",
            _row_values(record),
        )
        conn.commit()
    finally:
        conn.close()


def insert_billing_records(records: List[BillingRecord], db_path: str = DEFAULT_DB_PATH) -> None:
    """Append multiple billing records atomically.

    Args:
        records: Billing records to store
        db_path: Path to SQLite database file
    """
    if not records:
        return

    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN TRANSACTION")
        for record in records:
            conn.execute(
                f"INSERT OR IGNORE INTO billing_record ({_COLUMNS}) "
                f"VALUES ({', '.join('?' * 21)})",
                _row_values(record),
            )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


class BillingRepository:
    """Read access to the billing ledger."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def fetch_recent(
        self,
        tenant_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        days: Optional[int] = None,
        limit: int = 100
    ) -> List[BillingRecord]:
        """Get recent billing records with optional filtering.

        Args:
            tenant_id: Optional filter for a specific tenant
            provider_id: Optional filter for a specific provider
            days: Optional number of days to look back
            limit: Maximum number of records to return

        Returns:
            List of records ordered by timestamp (newest first)
        """
        query = f"SELECT {_COLUMNS} FROM billing_record"
        params: List = []
        conditions = []

        if tenant_id:
            conditions.append("tenant_id = ?")
            params.append(tenant_id)
        if provider_id:
            conditions.append("provider_id = ?")
            params.append(provider_id)
        if days is not None:
            conditions.append("timestamp >= ?")
            params.append(_cutoff(days))

        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        with ledger_connection(self.db_path) as conn:
            return [_record_from_row(row) for row in conn.execute(query, params).fetchall()]

    def count_for_request(self, request_id: str) -> int:
        with ledger_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM billing_record WHERE request_id = ?", (request_id,)
            ).fetchone()
        return row[0]

    def tenant_usage(self, tenant_id: str, since: datetime) -> Tuple[int, Decimal]:
        """Total tokens and cost billed to a tenant since a point in time.

        Cost is summed in Python to keep Decimal precision.
        """
        with ledger_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT total_tokens, estimated_cost FROM billing_record "
                "WHERE tenant_id = ? AND timestamp >= ?",
                (tenant_id, since.astimezone(timezone.utc).isoformat()),
            ).fetchall()

        tokens = 0
        cost = Decimal("0")
        for total_tokens, estimated_cost in rows:
            tokens += total_tokens
            cost += Decimal(estimated_cost)
        return tokens, cost

    def usage_summary(self, days: int = 30, tenant_id: Optional[str] = None) -> List[Dict[str, object]]:
        """Per-tenant usage statistics for the specified time period.

        Args:
            days: Number of days to include
            tenant_id: Optional filter for a specific tenant

        Returns:
            One dictionary per tenant, sorted by tenant ID
        """
        query = (
            "SELECT tenant_id, status, cache_hit, total_tokens, estimated_cost "
            "FROM billing_record WHERE timestamp >= ?"
        )
        params: List = [_cutoff(days)]
        if tenant_id:
            query += " AND tenant_id = ?"
            params.append(tenant_id)

        with ledger_connection(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()

        summary: Dict[str, Dict[str, object]] = {}
        for tenant, status, cache_hit, tokens, cost in rows:
            stats = summary.setdefault(tenant, {
                "tenant_id": tenant,
                "total_requests": 0,
                "failed_requests": 0,
                "cache_hits": 0,
                "total_tokens": 0,
                "total_cost": Decimal("0"),
            })
            stats["total_requests"] += 1
            stats["failed_requests"] += int(status != "success")
            stats["cache_hits"] += int(cache_hit)
            stats["total_tokens"] += tokens
            stats["total_cost"] += Decimal(cost)
        return [summary[t] for t in sorted(summary)]


def _cutoff(days: int) -> str:
    return (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()


class SQLiteBillingSink:
    """Billing sink that appends records to the SQLite ledger."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH, initialize: bool = True):
        self.db_path = db_path
        if initialize:
            initialize_schema(db_path)

    def append(self, record: BillingRecord) -> None:
        insert_billing_record(record, self.db_path)
