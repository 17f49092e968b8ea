"""
Kernel Store — transactional persistence for every trust kernel entity.

Prototype: SQLite. Each table keeps the columns it is queried by plus the
full pydantic record as JSON.

Behavioral Contract:
- Every state transition runs inside ``transaction()`` (BEGIN IMMEDIATE),
  so a read-check-write on one entity is serialized against other writers.
- Mutable entities (recommendations, campaigns) are written with a
  compare-and-swap on ``row_version``; a lost race reports no row updated.
- Trust snapshots, segment snapshots and receipts are insert-only. The
  receipts table rejects UPDATE and DELETE at the database level.
- Driver failures surface as StorageUnavailableError; integrity conflicts
  are left to the caller.
"""

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Type, TypeVar
from uuid import uuid4

import structlog
from pydantic import BaseModel

from trust_kernel.errors import StorageUnavailableError
from trust_kernel.models.campaign import Campaign, SendReceipt, SendStatus
from trust_kernel.models.receipt import Receipt
from trust_kernel.models.recommendation import ContentRecommendation
from trust_kernel.models.segmentation import EndCustomer, RuleSet, SegmentSnapshot
from trust_kernel.models.trust import Tenant, TrustScoreSnapshot

logger = structlog.get_logger()

M = TypeVar("M", bound=BaseModel)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS tenants (
    id TEXT PRIMARY KEY,
    domain TEXT NOT NULL UNIQUE,
    record_json TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS trust_snapshots (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    total INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    cold_start_key TEXT UNIQUE,
    record_json TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_trust_tenant ON trust_snapshots(tenant_id, created_at);

CREATE TABLE IF NOT EXISTS recommendations (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    status TEXT NOT NULL,
    row_version INTEGER NOT NULL,
    record_json TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_rec_tenant ON recommendations(tenant_id, status);

CREATE TABLE IF NOT EXISTS rule_sets (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    name TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    record_json TEXT NOT NULL,
    UNIQUE (tenant_id, name)
);

CREATE TABLE IF NOT EXISTS end_customers (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    email TEXT NOT NULL,
    record_json TEXT NOT NULL,
    UNIQUE (tenant_id, email)
);

CREATE TABLE IF NOT EXISTS segment_snapshots (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    rule_set_id TEXT NOT NULL,
    record_json TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS campaigns (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    status TEXT NOT NULL,
    row_version INTEGER NOT NULL,
    record_json TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS send_receipts (
    id TEXT PRIMARY KEY,
    campaign_id TEXT NOT NULL,
    status TEXT NOT NULL,
    record_json TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_send_campaign ON send_receipts(campaign_id, status);

CREATE TABLE IF NOT EXISTS receipts (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    actor TEXT NOT NULL,
    record_json TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_receipts_tenant ON receipts(tenant_id, kind, actor);

CREATE TRIGGER IF NOT EXISTS receipts_no_update
BEFORE UPDATE ON receipts
BEGIN
    SELECT RAISE(ABORT, 'receipts are append-only');
END;

CREATE TRIGGER IF NOT EXISTS receipts_no_delete
BEFORE DELETE ON receipts
BEGIN
    SELECT RAISE(ABORT, 'receipts are append-only');
END;
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


class KernelStore:
    """
    SQLite-backed store shared by all trust kernel components.

    A single connection is guarded by a re-entrant lock, so nested calls
    from one request (a transition writing its receipt, say) join the
    transaction that is already open.
    """

    def __init__(self, db_path: str = ":memory:", timeout: float = 5.0):
        self.db_path = db_path
        self._lock = threading.RLock()
        self._depth = 0
        try:
            self._conn = sqlite3.connect(
                db_path, timeout=timeout, check_same_thread=False, isolation_level=None
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(_SCHEMA)
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"Cannot open store at {db_path}: {e}") from e

    # --- Transactions ---

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the block atomically. Nested blocks join the outer transaction."""
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            self._execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield
            except BaseException:
                self._depth = 0
                self._rollback()
                raise
            self._depth = 0
            try:
                self._execute("COMMIT")
            except BaseException:
                # A failed COMMIT leaves the transaction open
                self._rollback()
                raise

    def _rollback(self) -> None:
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.warning("store_rollback_failed", error=str(e))

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            with self._lock:
                return self._conn.execute(sql, params)
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            logger.error("store_unavailable", error=str(e), db_path=self.db_path)
            raise StorageUnavailableError(str(e)) from e

    def _rows(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        """Execute and step the cursor to completion under the connection lock."""
        with self._lock:
            cursor = self._execute(sql, params)
            try:
                return cursor.fetchall()
            except sqlite3.Error as e:
                logger.error("store_unavailable", error=str(e), db_path=self.db_path)
                raise StorageUnavailableError(str(e)) from e

    def _row(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        rows = self._rows(sql, params)
        return rows[0] if rows else None

    def _fetch_one(self, model: Type[M], sql: str, params: tuple) -> Optional[M]:
        row = self._row(sql, params)
        return model.model_validate_json(row["record_json"]) if row else None

    def _fetch_all(self, model: Type[M], sql: str, params: tuple = ()) -> List[M]:
        rows = self._rows(sql, params)
        return [model.model_validate_json(r["record_json"]) for r in rows]

    # --- Tenants ---

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        return self._fetch_one(
            Tenant, "SELECT record_json FROM tenants WHERE id = ?", (tenant_id,)
        )

    def get_tenant_by_domain(self, domain: str) -> Optional[Tenant]:
        return self._fetch_one(
            Tenant, "SELECT record_json FROM tenants WHERE domain = ?", (domain,)
        )

    def get_or_create_tenant(self, domain: str, name: Optional[str] = None) -> Tenant:
        """Insert under the domain's unique constraint; on conflict read the winner."""
        tenant = Tenant(
            id=new_id("ten"),
            domain=domain,
            name=name or domain,
            created_at=utcnow(),
        )
        try:
            with self.transaction():
                self._execute(
                    "INSERT INTO tenants (id, domain, record_json) VALUES (?, ?, ?)",
                    (tenant.id, tenant.domain, tenant.model_dump_json()),
                )
            logger.info("tenant_created", tenant_id=tenant.id, domain=domain)
            return tenant
        except sqlite3.IntegrityError:
            existing = self.get_tenant_by_domain(domain)
            if existing is None:
                raise
            return existing

    # --- Trust snapshots ---

    def insert_trust_snapshot(
        self, snapshot: TrustScoreSnapshot, cold_start: bool = False
    ) -> None:
        """
        Append a snapshot. A cold-start insert carries a per-tenant unique
        key, so concurrent first calls cannot both create a default.
        """
        self._execute(
            "INSERT INTO trust_snapshots "
            "(id, tenant_id, total, created_at, cold_start_key, record_json) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                snapshot.id,
                snapshot.tenant_id,
                snapshot.total,
                snapshot.created_at.isoformat(),
                snapshot.tenant_id if cold_start else None,
                snapshot.model_dump_json(),
            ),
        )

    def latest_trust_snapshot(self, tenant_id: str) -> Optional[TrustScoreSnapshot]:
        return self._fetch_one(
            TrustScoreSnapshot,
            "SELECT record_json FROM trust_snapshots WHERE tenant_id = ? "
            "ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (tenant_id,),
        )

    def list_trust_snapshots(self, tenant_id: str) -> List[TrustScoreSnapshot]:
        return self._fetch_all(
            TrustScoreSnapshot,
            "SELECT record_json FROM trust_snapshots WHERE tenant_id = ? "
            "ORDER BY created_at, rowid",
            (tenant_id,),
        )

    # --- Recommendations ---

    def insert_recommendation(self, rec: ContentRecommendation) -> None:
        self._execute(
            "INSERT INTO recommendations (id, tenant_id, status, row_version, record_json) "
            "VALUES (?, ?, ?, ?, ?)",
            (rec.id, rec.tenant_id, rec.status.value, rec.row_version, rec.model_dump_json()),
        )

    def get_recommendation(self, rec_id: str) -> Optional[ContentRecommendation]:
        return self._fetch_one(
            ContentRecommendation,
            "SELECT record_json FROM recommendations WHERE id = ?",
            (rec_id,),
        )

    def list_recommendations(
        self, tenant_id: str, status: Optional[str] = None
    ) -> List[ContentRecommendation]:
        if status:
            return self._fetch_all(
                ContentRecommendation,
                "SELECT record_json FROM recommendations WHERE tenant_id = ? AND status = ? "
                "ORDER BY rowid",
                (tenant_id, status),
            )
        return self._fetch_all(
            ContentRecommendation,
            "SELECT record_json FROM recommendations WHERE tenant_id = ? ORDER BY rowid",
            (tenant_id,),
        )

    def swap_recommendation(
        self, rec: ContentRecommendation, expected_version: int
    ) -> bool:
        """Write ``rec`` only if the stored row is still at ``expected_version``."""
        cur = self._execute(
            "UPDATE recommendations SET status = ?, row_version = ?, record_json = ? "
            "WHERE id = ? AND row_version = ?",
            (rec.status.value, rec.row_version, rec.model_dump_json(), rec.id, expected_version),
        )
        return cur.rowcount == 1

    def delete_recommendation(self, rec_id: str, expected_version: int) -> bool:
        cur = self._execute(
            "DELETE FROM recommendations WHERE id = ? AND row_version = ?",
            (rec_id, expected_version),
        )
        return cur.rowcount == 1

    # --- Rule sets and population ---

    def insert_rule_set(self, rule_set: RuleSet) -> None:
        self._execute(
            "INSERT INTO rule_sets (id, tenant_id, name, updated_at, record_json) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                rule_set.id,
                rule_set.tenant_id,
                rule_set.name,
                rule_set.updated_at.isoformat(),
                rule_set.model_dump_json(),
            ),
        )

    def update_rule_set(self, rule_set: RuleSet) -> None:
        self._execute(
            "UPDATE rule_sets SET name = ?, updated_at = ?, record_json = ? WHERE id = ?",
            (
                rule_set.name,
                rule_set.updated_at.isoformat(),
                rule_set.model_dump_json(),
                rule_set.id,
            ),
        )

    def get_rule_set(self, rule_set_id: str) -> Optional[RuleSet]:
        return self._fetch_one(
            RuleSet, "SELECT record_json FROM rule_sets WHERE id = ?", (rule_set_id,)
        )

    def get_rule_set_by_name(self, tenant_id: str, name: str) -> Optional[RuleSet]:
        return self._fetch_one(
            RuleSet,
            "SELECT record_json FROM rule_sets WHERE tenant_id = ? AND name = ?",
            (tenant_id, name),
        )

    def list_rule_sets(self, tenant_id: str) -> List[RuleSet]:
        return self._fetch_all(
            RuleSet,
            "SELECT record_json FROM rule_sets WHERE tenant_id = ? "
            "ORDER BY updated_at DESC, rowid DESC",
            (tenant_id,),
        )

    def upsert_end_customer(self, customer: EndCustomer) -> None:
        self._execute(
            "INSERT INTO end_customers (id, tenant_id, email, record_json) "
            "VALUES (?, ?, ?, ?) "
            "ON CONFLICT (tenant_id, email) DO UPDATE SET record_json = excluded.record_json",
            (customer.id, customer.tenant_id, customer.email, customer.model_dump_json()),
        )

    def list_end_customers(self, tenant_id: str) -> List[EndCustomer]:
        return self._fetch_all(
            EndCustomer,
            "SELECT record_json FROM end_customers WHERE tenant_id = ? ORDER BY rowid",
            (tenant_id,),
        )

    def insert_segment_snapshot(self, snapshot: SegmentSnapshot) -> None:
        self._execute(
            "INSERT INTO segment_snapshots (id, tenant_id, rule_set_id, record_json) "
            "VALUES (?, ?, ?, ?)",
            (snapshot.id, snapshot.tenant_id, snapshot.rule_set_id, snapshot.model_dump_json()),
        )

    def list_segment_snapshots(self, rule_set_id: str) -> List[SegmentSnapshot]:
        return self._fetch_all(
            SegmentSnapshot,
            "SELECT record_json FROM segment_snapshots WHERE rule_set_id = ? ORDER BY rowid",
            (rule_set_id,),
        )

    # --- Campaigns ---

    def insert_campaign(self, campaign: Campaign) -> None:
        self._execute(
            "INSERT INTO campaigns (id, tenant_id, status, row_version, record_json) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                campaign.id,
                campaign.tenant_id,
                campaign.status.value,
                campaign.row_version,
                campaign.model_dump_json(),
            ),
        )

    def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        return self._fetch_one(
            Campaign, "SELECT record_json FROM campaigns WHERE id = ?", (campaign_id,)
        )

    def swap_campaign(self, campaign: Campaign, expected_version: int) -> bool:
        cur = self._execute(
            "UPDATE campaigns SET status = ?, row_version = ?, record_json = ? "
            "WHERE id = ? AND row_version = ?",
            (
                campaign.status.value,
                campaign.row_version,
                campaign.model_dump_json(),
                campaign.id,
                expected_version,
            ),
        )
        return cur.rowcount == 1

    def insert_send_receipt(self, receipt: SendReceipt) -> None:
        self._execute(
            "INSERT INTO send_receipts (id, campaign_id, status, record_json) VALUES (?, ?, ?, ?)",
            (receipt.id, receipt.campaign_id, receipt.status.value, receipt.model_dump_json()),
        )

    def list_send_receipts(
        self, campaign_id: str, status: Optional[SendStatus] = None
    ) -> List[SendReceipt]:
        if status:
            return self._fetch_all(
                SendReceipt,
                "SELECT record_json FROM send_receipts WHERE campaign_id = ? AND status = ? "
                "ORDER BY rowid",
                (campaign_id, status.value),
            )
        return self._fetch_all(
            SendReceipt,
            "SELECT record_json FROM send_receipts WHERE campaign_id = ? ORDER BY rowid",
            (campaign_id,),
        )

    def update_send_receipt(self, receipt: SendReceipt, expected_status: SendStatus) -> bool:
        cur = self._execute(
            "UPDATE send_receipts SET status = ?, record_json = ? WHERE id = ? AND status = ?",
            (receipt.status.value, receipt.model_dump_json(), receipt.id, expected_status.value),
        )
        return cur.rowcount == 1

    # --- Receipts ---

    def insert_receipt(self, receipt: Receipt) -> None:
        self._execute(
            "INSERT INTO receipts (id, tenant_id, kind, actor, record_json) VALUES (?, ?, ?, ?, ?)",
            (
                receipt.id,
                receipt.tenant_id,
                receipt.kind.value,
                receipt.actor.value,
                receipt.model_dump_json(),
            ),
        )

    def get_receipt(self, receipt_id: str) -> Optional[Receipt]:
        return self._fetch_one(
            Receipt, "SELECT record_json FROM receipts WHERE id = ?", (receipt_id,)
        )

    def get_receipt_json(self, receipt_id: str) -> Optional[str]:
        """The stored bytes, untouched, for integrity comparisons."""
        row = self._row(
            "SELECT record_json FROM receipts WHERE id = ?", (receipt_id,)
        )
        return row["record_json"] if row else None

    def list_receipts(
        self,
        tenant_id: str,
        kind: Optional[str] = None,
        actor: Optional[str] = None,
        limit: int = 50,
    ) -> List[Receipt]:
        sql = "SELECT record_json FROM receipts WHERE tenant_id = ?"
        params: list = [tenant_id]
        if kind:
            sql += " AND kind = ?"
            params.append(kind)
        if actor:
            sql += " AND actor = ?"
            params.append(actor)
        sql += " ORDER BY rowid DESC LIMIT ?"
        params.append(limit)
        return self._fetch_all(Receipt, sql, tuple(params))

    def count_receipts(self, tenant_id: str) -> int:
        row = self._row(
            "SELECT COUNT(*) AS cnt FROM receipts WHERE tenant_id = ?", (tenant_id,)
        )
        return row["cnt"]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
