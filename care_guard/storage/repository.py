"""
Repository pattern for data access.

Handles the append-only ledgers: usage records, audit log and consent history.
Every read is tenant-scoped; none of these tables has an update or delete path.
"""

import hashlib
import json
import threading
from datetime import datetime
from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    AuditLogEntry,
    AuditStatus,
    ConsentRecord,
    ConsentStatus,
    UsageRecord,
)

GENESIS_HASH = "0" * 64


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger tables if they don't exist.

    The audit_log table refuses UPDATE and DELETE through triggers so that
    entries stay immutable even for code paths outside this package.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_record (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                tenant_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                service TEXT NOT NULL,
                operation TEXT NOT NULL,
                cost REAL NOT NULL,
                success INTEGER NOT NULL DEFAULT 1,
                request_id TEXT
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_usage_record_tenant_user "
            "ON usage_record(tenant_id, user_id, timestamp)"
        )
        conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT NOT NULL,
                user_id TEXT,
                action TEXT NOT NULL,
                resource_type TEXT NOT NULL,
                resource_id TEXT,
                phi_accessed INTEGER NOT NULL,
                execution_time_ms REAL NOT NULL,
                compliance_flags TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                status TEXT NOT NULL,
                error_message TEXT,
                prev_hash TEXT NOT NULL,
                entry_hash TEXT NOT NULL
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_audit_log_tenant_timestamp "
            "ON audit_log(tenant_id, timestamp)"
        )
        conn.execute("""
            CREATE TRIGGER IF NOT EXISTS audit_log_no_update
            BEFORE UPDATE ON audit_log
            BEGIN
                SELECT RAISE(ABORT, 'audit_log is append-only');
            END
        """)
        conn.execute("""
            CREATE TRIGGER IF NOT EXISTS audit_log_no_delete
            BEFORE DELETE ON audit_log
            BEGIN
                SELECT RAISE(ABORT, 'audit_log is append-only');
            END
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS consent_record (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                disclaimer_version TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                ip_address TEXT NOT NULL,
                device_fingerprint TEXT NOT NULL,
                consent_type TEXT NOT NULL,
                status TEXT NOT NULL,
                additional_consents TEXT NOT NULL
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_consent_record_user "
            "ON consent_record(user_id, timestamp)"
        )
        conn.commit()
    finally:
        conn.close()


# --- usage ledger -----------------------------------------------------------

def insert_usage_record(record: UsageRecord, db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert a single usage record into the append-only ledger.

    Args:
        record: The usage record to persist
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO usage_record
            (timestamp, tenant_id, user_id, service, operation, cost, success, request_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            record.timestamp.isoformat(),
            record.tenant_id,
            record.user_id,
            record.service,
            record.operation,
            record.cost,
            1 if record.success else 0,
            record.request_id
        ))
        conn.commit()
    finally:
        conn.close()


def fetch_usage_records(
    tenant_id: str,
    user_id: Optional[str] = None,
    service: Optional[str] = None,
    since: Optional[datetime] = None,
    limit: int = 1000,
    db_path: str = DEFAULT_DB_PATH
) -> List[UsageRecord]:
    """Fetch usage records for one tenant, newest first.

    Args:
        tenant_id: Tenant whose records are returned (required)
        user_id: Optional filter for a specific user
        service: Optional filter for a specific service
        since: Optional lower bound on timestamp (inclusive)
        limit: Maximum number of records to return
        db_path: Path to SQLite database file

    Returns:
        List of usage records ordered by timestamp (newest first)
    """
    conn = get_connection(db_path)
    try:
        query = """
            SELECT timestamp, tenant_id, user_id, service, operation,
                   cost, success, request_id
            FROM usage_record
            WHERE tenant_id = ?
        """
        params: list = [tenant_id]
        if user_id:
            query += " AND user_id = ?"
            params.append(user_id)
        if service:
            query += " AND service = ?"
            params.append(service)
        if since is not None:
            query += " AND timestamp >= ?"
            params.append(since.isoformat())

        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        cursor = conn.execute(query, params)
        return [
            UsageRecord(
                timestamp=datetime.fromisoformat(row[0]),
                tenant_id=row[1],
                user_id=row[2],
                service=row[3],
                operation=row[4],
                cost=row[5],
                success=bool(row[6]),
                request_id=row[7]
            )
            for row in cursor.fetchall()
        ]
    finally:
        conn.close()


class UsageRepository:
    """Repository for the usage ledger used by the cost tracker."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def append(self, record: UsageRecord) -> None:
        insert_usage_record(record, self.db_path)

    def records_for_user(
        self,
        tenant_id: str,
        user_id: str,
        since: Optional[datetime] = None
    ) -> List[UsageRecord]:
        return fetch_usage_records(
            tenant_id=tenant_id,
            user_id=user_id,
            since=since,
            limit=100000,
            db_path=self.db_path
        )


# --- audit log --------------------------------------------------------------

def _hash_audit_entry(entry: AuditLogEntry, prev_hash: str) -> str:
    """Chain an entry to its predecessor so edits and gaps are detectable."""
    payload = json.dumps(entry.to_dict(), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256((prev_hash + payload).encode("utf-8")).hexdigest()


def _row_to_audit_entry(row) -> AuditLogEntry:
    return AuditLogEntry(
        tenant_id=row[0],
        user_id=row[1],
        action=row[2],
        resource_type=row[3],
        resource_id=row[4],
        phi_accessed=bool(row[5]),
        execution_time_ms=row[6],
        compliance_flags=tuple(json.loads(row[7])),
        timestamp=datetime.fromisoformat(row[8]),
        status=AuditStatus(row[9]),
        error_message=row[10]
    )


_AUDIT_COLUMNS = """
    tenant_id, user_id, action, resource_type, resource_id, phi_accessed,
    execution_time_ms, compliance_flags, timestamp, status, error_message
"""


class SQLiteAuditSink:
    """Append-only audit sink backed by its own raw SQLite connection.

    Writes never go through the instrumented data-access wrapper, so auditing
    an operation can't trigger another audit record.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        self._lock = threading.Lock()

    def write(self, entry: AuditLogEntry) -> None:
        """Persist one entry, chained to the latest row.

        Raises:
            sqlite3.Error: Propagated so the caller can route it to the emergency channel
        """
        with self._lock:
            conn = get_connection(self.db_path)
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT entry_hash FROM audit_log ORDER BY id DESC LIMIT 1"
                ).fetchone()
                prev_hash = row[0] if row else GENESIS_HASH
                conn.execute(f"""
                    INSERT INTO audit_log ({_AUDIT_COLUMNS}, prev_hash, entry_hash)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    entry.tenant_id,
                    entry.user_id,
                    entry.action,
                    entry.resource_type,
                    entry.resource_id,
                    1 if entry.phi_accessed else 0,
                    entry.execution_time_ms,
                    json.dumps(list(entry.compliance_flags)),
                    entry.timestamp.isoformat(),
                    entry.status.value,
                    entry.error_message,
                    prev_hash,
                    _hash_audit_entry(entry, prev_hash)
                ))
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def entries_for_tenant(
        self,
        tenant_id: str,
        user_id: Optional[str] = None,
        limit: int = 100
    ) -> List[AuditLogEntry]:
        return fetch_audit_entries(tenant_id, user_id=user_id, limit=limit, db_path=self.db_path)


def fetch_audit_entries(
    tenant_id: str,
    user_id: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH
) -> List[AuditLogEntry]:
    """Fetch audit entries for one tenant, newest first.

    Args:
        tenant_id: Tenant whose entries are returned (required)
        user_id: Optional filter for a specific user
        limit: Maximum number of entries to return
        db_path: Path to SQLite database file

    Returns:
        List of audit entries; empty for an unknown tenant
    """
    conn = get_connection(db_path)
    try:
        query = f"SELECT {_AUDIT_COLUMNS} FROM audit_log WHERE tenant_id = ?"
        params: list = [tenant_id]
        if user_id:
            query += " AND user_id = ?"
            params.append(user_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        return [_row_to_audit_entry(row) for row in conn.execute(query, params).fetchall()]
    finally:
        conn.close()


def verify_audit_chain(db_path: str = DEFAULT_DB_PATH) -> bool:
    """Recompute the hash chain over the whole audit log.

    Returns:
        True when every row links to its predecessor and its hash matches its content
    """
    conn = get_connection(db_path)
    try:
        rows = conn.execute(
            f"SELECT {_AUDIT_COLUMNS}, prev_hash, entry_hash FROM audit_log ORDER BY id ASC"
        ).fetchall()
    finally:
        conn.close()

    expected_prev = GENESIS_HASH
    for row in rows:
        prev_hash, entry_hash = row[11], row[12]
        if prev_hash != expected_prev:
            return False
        if _hash_audit_entry(_row_to_audit_entry(row), prev_hash) != entry_hash:
            return False
        expected_prev = entry_hash
    return True


# --- consent history ---------------------------------------------------------

class ConsentRepository:
    """Append-only persistence for consent decisions."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def append(self, record: ConsentRecord) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO consent_record
                (tenant_id, user_id, disclaimer_version, timestamp, ip_address,
                 device_fingerprint, consent_type, status, additional_consents)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.tenant_id,
                record.user_id,
                record.disclaimer_version,
                record.timestamp.isoformat(),
                record.ip_address,
                record.device_fingerprint,
                record.consent_type,
                record.status.value,
                json.dumps(list(record.additional_consents))
            ))
            conn.commit()
        finally:
            conn.close()

    def records_for_user(self, user_id: str, tenant_id: str) -> List[ConsentRecord]:
        """Return the user's consent history within a tenant, oldest first."""
        conn = get_connection(self.db_path)
        try:
            query = """
                SELECT tenant_id, user_id, disclaimer_version, timestamp, ip_address,
                       device_fingerprint, consent_type, status, additional_consents
                FROM consent_record
                WHERE tenant_id = ? AND user_id = ?
                ORDER BY timestamp ASC, id ASC
            """
            params = [tenant_id, user_id]
            return [
                ConsentRecord(
                    tenant_id=row[0],
                    user_id=row[1],
                    disclaimer_version=row[2],
                    timestamp=datetime.fromisoformat(row[3]),
                    ip_address=row[4],
                    device_fingerprint=row[5],
                    consent_type=row[6],
                    status=ConsentStatus(row[7]),
                    additional_consents=tuple(json.loads(row[8]))
                )
                for row in conn.execute(query, params).fetchall()
            ]
        finally:
            conn.close()
