"""
SQLite persistence for the residuals pipeline.

ResidualsStore is the only object that issues SQL. Every other component
receives a store and works with the dataclasses from models.py, so tests can
pass an in-memory store (":memory:").
"""
from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple

from .models import (
    AssignmentStatus,
    AuditIssue,
    AuditStatus,
    CompilationStatus,
    IssueType,
    LeadSheetRow,
    MasterDatasetRecord,
    Merchant,
    MonthlyDataRecord,
    Processor,
    RoleAssignment,
    Severity,
    StageAssignmentStatus,
    UploadProgress,
    UploadStatus,
    utc_now,
)
from .settings import ProcessorConfig

log = logging.getLogger("residuals")

SCHEMA = """
CREATE TABLE IF NOT EXISTS processors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    mapping_key TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS merchants (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    mid TEXT NOT NULL UNIQUE,
    legal_name TEXT,
    dba TEXT,
    branch_id TEXT,
    partner_type TEXT,
    partner_name TEXT,
    current_processor TEXT,
    status TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS monthly_data (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    merchant_id INTEGER NOT NULL REFERENCES merchants(id),
    processor_id INTEGER NOT NULL REFERENCES processors(id),
    month TEXT NOT NULL,
    transactions REAL NOT NULL DEFAULT 0,
    sales_amount REAL NOT NULL DEFAULT 0,
    income REAL NOT NULL DEFAULT 0,
    expenses REAL NOT NULL DEFAULT 0,
    net REAL NOT NULL DEFAULT 0,
    bps REAL NOT NULL DEFAULT 0,
    rep_net REAL NOT NULL DEFAULT 0,
    group_code TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_monthly_data_key ON monthly_data(month, processor_id, merchant_id);

CREATE TABLE IF NOT EXISTS lead_sheet_entries (
    month TEXT NOT NULL,
    mid TEXT NOT NULL,
    legal_name TEXT,
    dba TEXT,
    branch_id TEXT,
    status TEXT,
    current_processor TEXT,
    partner_name TEXT,
    partner_type TEXT,
    sales_reps TEXT,
    assigned_users TEXT,
    column_i TEXT,
    PRIMARY KEY (month, mid)
);

CREATE TABLE IF NOT EXISTS master_dataset (
    mid TEXT NOT NULL,
    month TEXT NOT NULL,
    legal_name TEXT,
    dba TEXT,
    branch_id TEXT,
    partner_type TEXT,
    processor TEXT,
    transactions REAL NOT NULL DEFAULT 0,
    sales_amount REAL NOT NULL DEFAULT 0,
    income REAL NOT NULL DEFAULT 0,
    expenses REAL NOT NULL DEFAULT 0,
    net REAL NOT NULL DEFAULT 0,
    bps REAL NOT NULL DEFAULT 0,
    rep_net REAL NOT NULL DEFAULT 0,
    column_i TEXT,
    in_lead_sheet INTEGER NOT NULL DEFAULT 0,
    assignment_status TEXT NOT NULL DEFAULT 'pending',
    PRIMARY KEY (mid, month)
);

CREATE TABLE IF NOT EXISTS role_assignments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    mid TEXT NOT NULL,
    month TEXT NOT NULL,
    rep TEXT,
    rep_percentage REAL,
    partner TEXT,
    partner_percentage REAL,
    sales_manager TEXT,
    sales_manager_percentage REAL,
    company TEXT,
    company_percentage REAL,
    association TEXT,
    association_percentage REAL,
    original_column_i TEXT,
    first_assigned_month TEXT,
    assignment_status TEXT NOT NULL,
    last_updated TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_role_assignments_mid ON role_assignments(mid, month);

CREATE TABLE IF NOT EXISTS upload_progress (
    month TEXT NOT NULL,
    processor_id INTEGER NOT NULL REFERENCES processors(id),
    upload_status TEXT NOT NULL,
    lead_sheet_status TEXT NOT NULL,
    compilation_status TEXT NOT NULL,
    assignment_status TEXT NOT NULL,
    audit_status TEXT NOT NULL,
    record_count INTEGER NOT NULL DEFAULT 0,
    total_revenue REAL NOT NULL DEFAULT 0,
    file_name TEXT,
    file_size INTEGER,
    last_updated TEXT NOT NULL,
    PRIMARY KEY (month, processor_id)
);

CREATE TABLE IF NOT EXISTS audit_issues (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    month TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    issue_type TEXT NOT NULL,
    severity TEXT NOT NULL,
    description TEXT NOT NULL,
    status TEXT NOT NULL,
    created_by TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (month, entity_id, issue_type)
);

CREATE TABLE IF NOT EXISTS file_uploads (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    month TEXT NOT NULL,
    processor_id INTEGER,
    kind TEXT NOT NULL,
    file_name TEXT,
    file_size INTEGER,
    record_count INTEGER NOT NULL DEFAULT 0,
    error_count INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    uploaded_at TEXT NOT NULL
);
"""

MERCHANT_FIELDS = ("legal_name", "dba", "branch_id", "partner_type", "partner_name", "current_processor", "status")

ASSIGNMENT_FIELDS = (
    "rep", "rep_percentage",
    "partner", "partner_percentage",
    "sales_manager", "sales_manager_percentage",
    "company", "company_percentage",
    "association", "association_percentage",
    "original_column_i", "first_assigned_month",
)

LEAD_SHEET_FIELDS = (
    "legal_name", "dba", "branch_id", "status", "current_processor",
    "partner_name", "partner_type", "sales_reps", "assigned_users", "column_i",
)

MASTER_NUMERIC = ("transactions", "sales_amount", "income", "expenses", "net", "bps", "rep_net")

PROGRESS_FIELDS = (
    "upload_status", "lead_sheet_status", "compilation_status", "assignment_status",
    "audit_status", "record_count", "total_revenue", "file_name", "file_size",
)

ASSIGNMENT_UNIQUE_INDEX = "ux_role_assignments_mid_month"


# =============================================================================
# Row converters
# =============================================================================

def _merchant(row: sqlite3.Row) -> Merchant:
    return Merchant(id=row["id"], mid=row["mid"], **{f: row[f] for f in MERCHANT_FIELDS})


def _monthly(row: sqlite3.Row) -> MonthlyDataRecord:
    return MonthlyDataRecord(
        id=row["id"],
        merchant_id=row["merchant_id"],
        processor_id=row["processor_id"],
        month=row["month"],
        transactions=row["transactions"],
        sales_amount=row["sales_amount"],
        income=row["income"],
        expenses=row["expenses"],
        net=row["net"],
        bps=row["bps"],
        rep_net=row["rep_net"],
        group_code=row["group_code"],
        created_at=row["created_at"],
    )


def _assignment(row: sqlite3.Row) -> RoleAssignment:
    return RoleAssignment(
        id=row["id"],
        mid=row["mid"],
        month=row["month"],
        assignment_status=AssignmentStatus(row["assignment_status"]),
        last_updated=row["last_updated"],
        created_at=row["created_at"],
        **{f: row[f] for f in ASSIGNMENT_FIELDS},
    )


def _master(row: sqlite3.Row) -> MasterDatasetRecord:
    return MasterDatasetRecord(
        mid=row["mid"],
        month=row["month"],
        legal_name=row["legal_name"],
        dba=row["dba"],
        branch_id=row["branch_id"],
        partner_type=row["partner_type"],
        processor=row["processor"],
        column_i=row["column_i"],
        in_lead_sheet=bool(row["in_lead_sheet"]),
        assignment_status=AssignmentStatus(row["assignment_status"]),
        **{f: row[f] for f in MASTER_NUMERIC},
    )


def _progress(row: sqlite3.Row) -> UploadProgress:
    return UploadProgress(
        month=row["month"],
        processor_id=row["processor_id"],
        processor_name=row["processor_name"] or "",
        upload_status=UploadStatus(row["upload_status"]),
        lead_sheet_status=UploadStatus(row["lead_sheet_status"]),
        compilation_status=CompilationStatus(row["compilation_status"]),
        assignment_status=StageAssignmentStatus(row["assignment_status"]),
        audit_status=AuditStatus(row["audit_status"]),
        record_count=row["record_count"],
        total_revenue=row["total_revenue"],
        file_name=row["file_name"],
        file_size=row["file_size"],
        last_updated=row["last_updated"],
    )


def _issue(row: sqlite3.Row) -> AuditIssue:
    return AuditIssue(
        id=row["id"],
        month=row["month"],
        entity_id=row["entity_id"],
        entity_type=row["entity_type"],
        issue_type=IssueType(row["issue_type"]),
        severity=Severity(row["severity"]),
        description=row["description"],
        status=row["status"],
        created_by=row["created_by"],
        created_at=row["created_at"],
    )


def _db_value(value):
    return value.value if hasattr(value, "value") else value


# =============================================================================
# Store
# =============================================================================

class ResidualsStore:
    """Typed repository over one SQLite connection."""

    def __init__(self, db_path: str = ":memory:", batch_size: int = 500):
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.db_path = db_path
        self.batch_size = batch_size
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self.init_schema()

    def init_schema(self) -> None:
        with self._lock:
            self.conn.executescript(SCHEMA)

    def close(self) -> None:
        self.conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Commit on success, rollback on error. Nested blocks join the outer one."""
        with self._lock:
            self._depth += 1
            try:
                yield self.conn
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    self.conn.rollback()
                raise
            else:
                self._depth -= 1
                if self._depth == 0:
                    self.conn.commit()

    def _query(self, sql: str, params: Sequence = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def _one(self, sql: str, params: Sequence = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    # -------------------------------------------------------------------------
    # Processors
    # -------------------------------------------------------------------------

    def seed_processors(self, configs: List[ProcessorConfig]) -> None:
        with self.transaction() as conn:
            for cfg in configs:
                conn.execute(
                    """
                    INSERT INTO processors(name, mapping_key, is_active) VALUES (?, ?, ?)
                    ON CONFLICT(name) DO UPDATE SET
                        mapping_key = excluded.mapping_key,
                        is_active = excluded.is_active
                    """,
                    (cfg.name, cfg.mapping_key, int(cfg.active)),
                )

    def list_processors(self, active_only: bool = False) -> List[Processor]:
        sql = "SELECT * FROM processors"
        if active_only:
            sql += " WHERE is_active = 1"
        rows = self._query(sql + " ORDER BY id")
        return [Processor(id=r["id"], name=r["name"], mapping_key=r["mapping_key"], is_active=bool(r["is_active"])) for r in rows]

    def get_processor(self, processor_id: int) -> Optional[Processor]:
        r = self._one("SELECT * FROM processors WHERE id = ?", (processor_id,))
        if r is None:
            return None
        return Processor(id=r["id"], name=r["name"], mapping_key=r["mapping_key"], is_active=bool(r["is_active"]))

    # -------------------------------------------------------------------------
    # Merchants
    # -------------------------------------------------------------------------

    def get_merchant(self, mid: str) -> Optional[Merchant]:
        r = self._one("SELECT * FROM merchants WHERE mid = ?", (mid,))
        return _merchant(r) if r else None

    def upsert_merchant(self, mid: str, fields: Dict[str, Optional[str]], fill_only: bool = False) -> Tuple[Merchant, bool, bool]:
        """
        Create or enrich a merchant. Blank values never overwrite stored ones;
        with fill_only, only empty columns are filled.

        Returns (merchant, created, updated).
        """
        clean = {k: v for k, v in fields.items() if k in MERCHANT_FIELDS and v not in (None, "")}
        now = utc_now()
        with self.transaction() as conn:
            existing = self.get_merchant(mid)
            if existing is None:
                cols = ["mid"] + list(clean) + ["created_at", "updated_at"]
                conn.execute(
                    f"INSERT INTO merchants({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
                    [mid] + list(clean.values()) + [now, now],
                )
                return self.get_merchant(mid), True, False

            changes = {
                k: v for k, v in clean.items()
                if getattr(existing, k) != v and not (fill_only and getattr(existing, k))
            }
            if not changes:
                return existing, False, False
            sets = ", ".join(f"{k} = ?" for k in changes)
            conn.execute(
                f"UPDATE merchants SET {sets}, updated_at = ? WHERE id = ?",
                list(changes.values()) + [now, existing.id],
            )
            return self.get_merchant(mid), False, True

    def backfill_branch_id(self, mid: str, branch_id: str) -> bool:
        """Set branch_id only where it is still empty."""
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE merchants SET branch_id = ?, updated_at = ? WHERE mid = ? AND (branch_id IS NULL OR branch_id = '')",
                (branch_id, utc_now(), mid),
            )
            return cur.rowcount > 0

    # -------------------------------------------------------------------------
    # Monthly data
    # -------------------------------------------------------------------------

    def insert_monthly(self, rec: MonthlyDataRecord) -> int:
        """Append a row without key checks. Ingest goes through upsert_monthly."""
        with self.transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO monthly_data(merchant_id, processor_id, month, transactions, sales_amount,
                    income, expenses, net, bps, rep_net, group_code, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (rec.merchant_id, rec.processor_id, rec.month, rec.transactions, rec.sales_amount,
                 rec.income, rec.expenses, rec.net, rec.bps, rec.rep_net, rec.group_code,
                 rec.created_at or utc_now()),
            )
            return cur.lastrowid

    def upsert_monthly(self, rec: MonthlyDataRecord) -> bool:
        """Upsert by (merchant, processor, month). Returns True when a row was inserted."""
        with self.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE monthly_data SET transactions = ?, sales_amount = ?, income = ?, expenses = ?,
                    net = ?, bps = ?, rep_net = ?, group_code = ?
                WHERE merchant_id = ? AND processor_id = ? AND month = ?
                """,
                (rec.transactions, rec.sales_amount, rec.income, rec.expenses, rec.net, rec.bps,
                 rec.rep_net, rec.group_code, rec.merchant_id, rec.processor_id, rec.month),
            )
            if cur.rowcount:
                return False
            self.insert_monthly(rec)
            return True

    def list_monthly(self, month: str) -> List[MonthlyDataRecord]:
        rows = self._query("SELECT * FROM monthly_data WHERE month = ? ORDER BY id", (month,))
        return [_monthly(r) for r in rows]

    def iter_monthly_joined(self, month: str) -> Iterator[List[sqlite3.Row]]:
        """
        Monthly rows joined to merchant and processor, in (processor_id, id)
        order, as keyset-paginated batches.
        """
        last = (-1, -1)
        while True:
            rows = self._query(
                """
                SELECT md.*, m.mid, m.legal_name, m.dba, m.branch_id, m.partner_type, p.name AS processor_name
                FROM monthly_data md
                JOIN merchants m ON m.id = md.merchant_id
                JOIN processors p ON p.id = md.processor_id
                WHERE md.month = ? AND (md.processor_id, md.id) > (?, ?)
                ORDER BY md.processor_id, md.id
                LIMIT ?
                """,
                (month, last[0], last[1], self.batch_size),
            )
            if not rows:
                return
            yield rows
            last = (rows[-1]["processor_id"], rows[-1]["id"])

    def monthly_stats(self, month: str, processor_id: int) -> Tuple[int, float]:
        r = self._one(
            "SELECT COUNT(*) AS n, COALESCE(SUM(net), 0) AS total FROM monthly_data WHERE month = ? AND processor_id = ?",
            (month, processor_id),
        )
        return int(r["n"]), float(r["total"])

    def mid_has_monthly(self, mid: str, month: str) -> bool:
        r = self._one(
            "SELECT 1 FROM monthly_data md JOIN merchants m ON m.id = md.merchant_id WHERE m.mid = ? AND md.month = ? LIMIT 1",
            (mid, month),
        )
        return r is not None

    def delete_monthly(self, month: str, processor_id: int) -> int:
        with self.transaction() as conn:
            return conn.execute(
                "DELETE FROM monthly_data WHERE month = ? AND processor_id = ?", (month, processor_id)
            ).rowcount

    def delete_monthly_ids(self, ids: List[int]) -> int:
        if not ids:
            return 0
        with self.transaction() as conn:
            return conn.execute(
                f"DELETE FROM monthly_data WHERE id IN ({', '.join('?' for _ in ids)})", ids
            ).rowcount

    def duplicate_monthly_groups(self, month: str) -> List[sqlite3.Row]:
        """(merchant, processor) pairs with more than one row this month."""
        return self._query(
            """
            SELECT m.mid, md.merchant_id, md.processor_id, p.name AS processor_name,
                   COUNT(*) AS row_count, SUM(md.net) AS total_net
            FROM monthly_data md
            JOIN merchants m ON m.id = md.merchant_id
            LEFT JOIN processors p ON p.id = md.processor_id
            WHERE md.month = ?
            GROUP BY md.merchant_id, md.processor_id
            HAVING COUNT(*) > 1
            ORDER BY m.mid, md.processor_id
            """,
            (month,),
        )

    def monthly_rows_for(self, month: str, merchant_id: int, processor_id: int) -> List[MonthlyDataRecord]:
        """Rows of one natural key, best first: highest net, then most recent."""
        rows = self._query(
            """
            SELECT * FROM monthly_data WHERE month = ? AND merchant_id = ? AND processor_id = ?
            ORDER BY net DESC, created_at DESC, id DESC
            """,
            (month, merchant_id, processor_id),
        )
        return [_monthly(r) for r in rows]

    # -------------------------------------------------------------------------
    # Lead sheet
    # -------------------------------------------------------------------------

    def upsert_lead_sheet_entry(self, month: str, row: LeadSheetRow) -> None:
        values = [getattr(row, f) or None for f in LEAD_SHEET_FIELDS]
        with self.transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO lead_sheet_entries(month, mid, {', '.join(LEAD_SHEET_FIELDS)})
                VALUES (?, ?, {', '.join('?' for _ in LEAD_SHEET_FIELDS)})
                ON CONFLICT(month, mid) DO UPDATE SET
                    {', '.join(f'{f} = excluded.{f}' for f in LEAD_SHEET_FIELDS)}
                """,
                [month, row.mid] + values,
            )

    def lead_sheet_entries(self, month: str) -> Dict[str, LeadSheetRow]:
        rows = self._query("SELECT * FROM lead_sheet_entries WHERE month = ?", (month,))
        return {
            r["mid"]: LeadSheetRow(mid=r["mid"], **{f: r[f] or "" for f in LEAD_SHEET_FIELDS})
            for r in rows
        }

    def count_lead_sheet(self, month: str) -> int:
        return int(self._one("SELECT COUNT(*) AS n FROM lead_sheet_entries WHERE month = ?", (month,))["n"])

    def delete_lead_sheet(self, month: str) -> int:
        with self.transaction() as conn:
            return conn.execute("DELETE FROM lead_sheet_entries WHERE month = ?", (month,)).rowcount

    # -------------------------------------------------------------------------
    # Master dataset
    # -------------------------------------------------------------------------

    def upsert_master(self, rec: MasterDatasetRecord) -> None:
        cols = (
            "legal_name", "dba", "branch_id", "partner_type", "processor",
        ) + MASTER_NUMERIC + ("column_i", "in_lead_sheet", "assignment_status")
        values = [_db_value(getattr(rec, c)) for c in cols]
        values[cols.index("in_lead_sheet")] = int(rec.in_lead_sheet)
        with self.transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO master_dataset(mid, month, {', '.join(cols)})
                VALUES (?, ?, {', '.join('?' for _ in cols)})
                ON CONFLICT(mid, month) DO UPDATE SET
                    {', '.join(f'{c} = excluded.{c}' for c in cols)}
                """,
                [rec.mid, rec.month] + values,
            )

    def list_master(self, month: str) -> List[MasterDatasetRecord]:
        rows = self._query("SELECT * FROM master_dataset WHERE month = ? ORDER BY mid", (month,))
        return [_master(r) for r in rows]

    def get_master(self, mid: str, month: str) -> Optional[MasterDatasetRecord]:
        r = self._one("SELECT * FROM master_dataset WHERE mid = ? AND month = ?", (mid, month))
        return _master(r) if r else None

    def set_master_status(self, mid: str, month: str, status: AssignmentStatus) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE master_dataset SET assignment_status = ? WHERE mid = ? AND month = ?",
                (status.value, mid, month),
            )

    def delete_master_without_monthly(self, month: str) -> int:
        """Drop snapshots whose MID no longer has any monthly data this month."""
        with self.transaction() as conn:
            return conn.execute(
                """
                DELETE FROM master_dataset
                WHERE month = ? AND mid NOT IN (
                    SELECT m.mid FROM monthly_data md JOIN merchants m ON m.id = md.merchant_id
                    WHERE md.month = ?
                )
                """,
                (month, month),
            ).rowcount

    # -------------------------------------------------------------------------
    # Role assignments
    # -------------------------------------------------------------------------

    def insert_assignment(self, ra: RoleAssignment) -> int:
        now = utc_now()
        cols = ("mid", "month") + ASSIGNMENT_FIELDS + ("assignment_status", "last_updated", "created_at")
        values = [ra.mid, ra.month] + [getattr(ra, f) for f in ASSIGNMENT_FIELDS] + [
            ra.assignment_status.value, ra.last_updated or now, ra.created_at or now,
        ]
        with self.transaction() as conn:
            cur = conn.execute(
                f"INSERT INTO role_assignments({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
                values,
            )
            ra.id = cur.lastrowid
            return cur.lastrowid

    def get_assignment(self, mid: str, month: str) -> Optional[RoleAssignment]:
        r = self._one(
            "SELECT * FROM role_assignments WHERE mid = ? AND month = ? ORDER BY created_at DESC, id DESC LIMIT 1",
            (mid, month),
        )
        return _assignment(r) if r else None

    def get_current_assignment(self, mid: str, month: Optional[str] = None) -> Optional[RoleAssignment]:
        """Latest-month assignment for a MID, optionally no later than month."""
        sql = "SELECT * FROM role_assignments WHERE mid = ?"
        params: List = [mid]
        if month:
            sql += " AND month <= ?"
            params.append(month)
        r = self._one(sql + " ORDER BY month DESC, created_at DESC, id DESC LIMIT 1", params)
        return _assignment(r) if r else None

    def list_assignments(self, month: str) -> List[RoleAssignment]:
        rows = self._query("SELECT * FROM role_assignments WHERE month = ? ORDER BY mid, created_at, id", (month,))
        return [_assignment(r) for r in rows]

    def latest_assignments_between(self, start_month: str, end_month: str) -> Dict[str, RoleAssignment]:
        """Most recent assignment per MID with start_month <= month <= end_month."""
        rows = self._query(
            """
            SELECT * FROM role_assignments WHERE month >= ? AND month <= ?
            ORDER BY mid, month DESC, created_at DESC, id DESC
            """,
            (start_month, end_month),
        )
        out: Dict[str, RoleAssignment] = {}
        for r in rows:
            out.setdefault(r["mid"], _assignment(r))
        return out

    def assigned_mids(self, month: str) -> Set[str]:
        return {r["mid"] for r in self._query("SELECT DISTINCT mid FROM role_assignments WHERE month = ?", (month,))}

    def set_assignment_status(self, assignment_id: int, status: AssignmentStatus) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE role_assignments SET assignment_status = ?, last_updated = ? WHERE id = ?",
                (status.value, utc_now(), assignment_id),
            )

    def delete_assignment(self, mid: str, month: str) -> int:
        with self.transaction() as conn:
            return conn.execute("DELETE FROM role_assignments WHERE mid = ? AND month = ?", (mid, month)).rowcount

    def duplicate_assignment_groups(self, month: Optional[str] = None) -> List[sqlite3.Row]:
        sql = "SELECT mid, month, COUNT(*) AS row_count FROM role_assignments"
        params: List = []
        if month:
            sql += " WHERE month = ?"
            params.append(month)
        sql += " GROUP BY mid, month HAVING COUNT(*) > 1 ORDER BY mid, month"
        return self._query(sql, params)

    def assignment_ids_newest_first(self, mid: str, month: str) -> List[int]:
        rows = self._query(
            "SELECT id FROM role_assignments WHERE mid = ? AND month = ? ORDER BY created_at DESC, id DESC",
            (mid, month),
        )
        return [r["id"] for r in rows]

    def delete_assignment_ids(self, ids: List[int]) -> int:
        if not ids:
            return 0
        with self.transaction() as conn:
            return conn.execute(
                f"DELETE FROM role_assignments WHERE id IN ({', '.join('?' for _ in ids)})", ids
            ).rowcount

    def create_assignment_unique_index(self) -> bool:
        """Best-effort unique index on role_assignments(mid, month)."""
        try:
            with self.transaction() as conn:
                conn.execute(
                    f"CREATE UNIQUE INDEX IF NOT EXISTS {ASSIGNMENT_UNIQUE_INDEX} ON role_assignments(mid, month)"
                )
            return True
        except sqlite3.DatabaseError as e:
            log.warning("Could not create %s: %s", ASSIGNMENT_UNIQUE_INDEX, e)
            return False

    def has_assignment_unique_index(self) -> bool:
        r = self._one("SELECT 1 FROM sqlite_master WHERE type = 'index' AND name = ?", (ASSIGNMENT_UNIQUE_INDEX,))
        return r is not None

    # -------------------------------------------------------------------------
    # Upload progress
    # -------------------------------------------------------------------------

    def get_progress(self, month: str, processor_id: int) -> Optional[UploadProgress]:
        r = self._one(
            """
            SELECT up.*, p.name AS processor_name FROM upload_progress up
            LEFT JOIN processors p ON p.id = up.processor_id
            WHERE up.month = ? AND up.processor_id = ?
            """,
            (month, processor_id),
        )
        return _progress(r) if r else None

    def list_progress(self, month: str) -> List[UploadProgress]:
        rows = self._query(
            """
            SELECT up.*, p.name AS processor_name FROM upload_progress up
            LEFT JOIN processors p ON p.id = up.processor_id
            WHERE up.month = ? ORDER BY up.processor_id
            """,
            (month,),
        )
        return [_progress(r) for r in rows]

    def insert_progress(self, p: UploadProgress) -> None:
        with self.transaction() as conn:
            conn.execute(
                f"""
                INSERT OR IGNORE INTO upload_progress(month, processor_id, {', '.join(PROGRESS_FIELDS)}, last_updated)
                VALUES (?, ?, {', '.join('?' for _ in PROGRESS_FIELDS)}, ?)
                """,
                [p.month, p.processor_id] + [_db_value(getattr(p, f)) for f in PROGRESS_FIELDS] + [utc_now()],
            )

    def update_progress(self, month: str, processor_id: Optional[int] = None, **fields) -> int:
        """Update progress columns for one processor, or every tracked one when processor_id is None."""
        fields = {k: _db_value(v) for k, v in fields.items() if k in PROGRESS_FIELDS}
        if not fields:
            return 0
        sets = ", ".join(f"{k} = ?" for k in fields)
        sql = f"UPDATE upload_progress SET {sets}, last_updated = ? WHERE month = ?"
        params: List = list(fields.values()) + [utc_now(), month]
        if processor_id is not None:
            sql += " AND processor_id = ?"
            params.append(processor_id)
        with self.transaction() as conn:
            return conn.execute(sql, params).rowcount

    # -------------------------------------------------------------------------
    # Audit issues
    # -------------------------------------------------------------------------

    def insert_issue(self, issue: AuditIssue) -> bool:
        """Insert unless an issue of the same (month, entity, type) exists."""
        with self.transaction() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO audit_issues(month, entity_id, entity_type, issue_type, severity,
                    description, status, created_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (issue.month, issue.entity_id, issue.entity_type, issue.issue_type.value,
                 issue.severity.value, issue.description, issue.status, issue.created_by,
                 issue.created_at or utc_now()),
            )
            return cur.rowcount > 0

    def delete_issue(self, month: str, entity_id: str, issue_type: IssueType) -> bool:
        with self.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM audit_issues WHERE month = ? AND entity_id = ? AND issue_type = ?",
                (month, entity_id, issue_type.value),
            )
            return cur.rowcount > 0

    def list_issues(self, month: str, issue_type: Optional[IssueType] = None) -> List[AuditIssue]:
        sql = "SELECT * FROM audit_issues WHERE month = ?"
        params: List = [month]
        if issue_type is not None:
            sql += " AND issue_type = ?"
            params.append(issue_type.value)
        return [_issue(r) for r in self._query(sql + " ORDER BY entity_id, issue_type", params)]

    # -------------------------------------------------------------------------
    # Upload log
    # -------------------------------------------------------------------------

    def log_upload(
        self,
        month: str,
        kind: str,
        file_name: Optional[str],
        file_size: Optional[int],
        record_count: int,
        error_count: int,
        status: str,
        processor_id: Optional[int] = None,
    ) -> int:
        with self.transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO file_uploads(month, processor_id, kind, file_name, file_size,
                    record_count, error_count, status, uploaded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (month, processor_id, kind, file_name, file_size, record_count, error_count, status, utc_now()),
            )
            return cur.lastrowid

    def list_uploads(self, month: str) -> List[Dict]:
        return [dict(r) for r in self._query("SELECT * FROM file_uploads WHERE month = ? ORDER BY id", (month,))]
