"""
Audited execution of PHI-touching persistence operations.

Every call runs to completion first, then its outcome is timed and audited.
The audit write is secondary: if the sink fails, the failure goes to the
emergency channel and the caller still sees the operation's own result or
error, unchanged.

Call lifecycle:
    START -> operation -> {SUCCESS, FAILURE} -> audit write -> {AUDIT_OK, AUDIT_FAILED} -> DONE
"""

import asyncio
import inspect
import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

from ..storage.models import AuditLogEntry, AuditStatus

logger = logging.getLogger(__name__)
emergency_logger = logging.getLogger("care_guard.audit.emergency")

PHI_ACCESS_FLAG = "PHI_ACCESS"
DATABASE_ERROR_FLAG = "DATABASE_ERROR"
AUDIT_ALL_FLAG = "AUDIT_ALL"


class AuditSink(Protocol):
    """Uninstrumented destination for audit entries.

    Implementations must never route writes back through the data-access wrapper.
    """

    def write(self, entry: AuditLogEntry) -> None:
        ...


class InMemoryAuditSink:
    """Append-only in-process sink, mostly for tests and local runs."""

    def __init__(self):
        self._entries: List[AuditLogEntry] = []
        self._lock = threading.Lock()

    def write(self, entry: AuditLogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    @property
    def entries(self) -> List[AuditLogEntry]:
        with self._lock:
            return list(self._entries)

    def entries_for_tenant(self, tenant_id: str, user_id: Optional[str] = None) -> List[AuditLogEntry]:
        return [
            e for e in self.entries
            if e.tenant_id == tenant_id and (user_id is None or e.user_id == user_id)
        ]


@dataclass(frozen=True)
class QueryContext:
    """Who is touching which resource, and whether PHI is involved."""
    tenant_id: str
    operation_name: str
    resource_type: str
    user_id: Optional[str] = None
    resource_id: Optional[str] = None
    phi_access: bool = False
    domain: str = "database"

    def __post_init__(self):
        if not self.tenant_id:
            raise ValueError("tenant_id is required for every audited operation")
        if not self.operation_name:
            raise ValueError("operation_name is required")


class HealthcareDataAccessWrapper:
    """Runs persistence operations and emits a paired audit record.

    Successful calls are audited when they touch PHI or when audit-all mode is
    on. Failed calls are always audited so they remain diagnosable.
    """

    def __init__(
        self,
        sink: AuditSink,
        audit_all: bool = False,
        emergency_log_path: Optional[str] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        """Initialize the wrapper.

        Args:
            sink: Dedicated audit sink
            audit_all: Audit successful non-PHI operations too
            emergency_log_path: Optional JSONL file receiving entries the sink rejected
            clock: Source of audit timestamps
        """
        self.sink = sink
        self.audit_all = audit_all
        self.emergency_log_path = emergency_log_path
        self._clock = clock
        self._metrics_lock = threading.Lock()
        self._metrics: Dict[str, float] = {
            "total_queries": 0,
            "phi_queries": 0,
            "error_count": 0,
            "audit_failures": 0,
            "average_response_time_ms": 0.0,
        }

    async def execute_healthcare_query(
        self,
        operation: Callable[[], Union[Any, Awaitable[Any]]],
        context: QueryContext
    ) -> Any:
        """Execute ``operation`` and audit the outcome.

        Args:
            operation: Zero-argument callable; may return a value or an awaitable
            context: Tenant, user and resource details for the audit entry

        Returns:
            The operation's result, unchanged

        Raises:
            Whatever the operation raised, unchanged (timeouts and cancellation included)
        """
        started = time.perf_counter()
        try:
            result = operation()
            if inspect.isawaitable(result):
                result = await result
        except (Exception, asyncio.CancelledError) as error:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            self._update_metrics(elapsed_ms, context.phi_access, failed=True)
            logger.error(
                "Healthcare %s operation %s on %s failed after %.1fms: %s",
                context.domain, context.operation_name, context.resource_type, elapsed_ms, error
            )
            self._write_audit(context, elapsed_ms, AuditStatus.ERROR, _describe(error))
            raise

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        self._update_metrics(elapsed_ms, context.phi_access, failed=False)
        if context.phi_access or self.audit_all:
            self._write_audit(context, elapsed_ms, AuditStatus.SUCCESS, None)
        return result

    async def search_with_tenant_isolation(
        self,
        search: Callable[[str], Union[Any, Awaitable[Any]]],
        tenant_id: str,
        resource_type: str,
        user_id: Optional[str] = None,
        phi_access: bool = False
    ) -> Any:
        """Run a tenant-scoped search and drop any row from another tenant.

        Rows are dicts or objects carrying ``tenant_id``; rows without one are kept.
        """
        context = QueryContext(
            tenant_id=tenant_id,
            operation_name="search",
            resource_type=resource_type,
            user_id=user_id,
            phi_access=phi_access
        )
        rows = await self.execute_healthcare_query(lambda: search(tenant_id), context)
        if rows is None:
            return rows
        rows = list(rows)
        kept = [row for row in rows if _row_tenant(row) in (None, tenant_id)]
        dropped = len(rows) - len(kept)
        if dropped:
            logger.error(
                "Dropped %d cross-tenant rows from %s search for tenant %s",
                dropped, resource_type, tenant_id
            )
        return kept

    def _write_audit(
        self,
        context: QueryContext,
        elapsed_ms: float,
        status: AuditStatus,
        error_message: Optional[str]
    ) -> None:
        flags = []
        if context.phi_access:
            flags.append(PHI_ACCESS_FLAG)
        if status is AuditStatus.ERROR:
            flags.append(DATABASE_ERROR_FLAG)
        elif not context.phi_access and self.audit_all:
            flags.append(AUDIT_ALL_FLAG)

        entry = AuditLogEntry(
            tenant_id=context.tenant_id,
            user_id=context.user_id,
            action=f"{context.domain}.{context.operation_name}",
            resource_type=context.resource_type,
            resource_id=context.resource_id,
            phi_accessed=context.phi_access,
            execution_time_ms=round(elapsed_ms, 3),
            compliance_flags=tuple(flags),
            timestamp=self._clock(),
            status=status,
            error_message=error_message
        )
        try:
            self.sink.write(entry)
        except Exception as audit_error:
            with self._metrics_lock:
                self._metrics["audit_failures"] += 1
            self._report_emergency(entry, audit_error)

    def _report_emergency(self, entry: AuditLogEntry, audit_error: Exception) -> None:
        emergency_logger.critical(
            "CRITICAL: audit logging failed for %s (tenant %s): %s",
            entry.action, entry.tenant_id, audit_error,
            extra={"audit_entry": entry.to_dict()}
        )
        if not self.emergency_log_path:
            return
        try:
            path = Path(self.emergency_log_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                record = entry.to_dict()
                record["auditError"] = str(audit_error)
                f.write(json.dumps(record) + "\n")
        except OSError as file_error:
            emergency_logger.critical("Emergency audit file write failed: %s", file_error)

    def _update_metrics(self, elapsed_ms: float, phi_access: bool, failed: bool) -> None:
        with self._metrics_lock:
            m = self._metrics
            m["total_queries"] += 1
            if phi_access:
                m["phi_queries"] += 1
            if failed:
                m["error_count"] += 1
            m["average_response_time_ms"] += (elapsed_ms - m["average_response_time_ms"]) / m["total_queries"]

    def metrics(self) -> Dict[str, float]:
        """Counters for monitoring dashboards."""
        with self._metrics_lock:
            return dict(self._metrics)


def _describe(error: BaseException) -> str:
    message = str(error)
    if not message:
        return type(error).__name__
    return message


def _row_tenant(row: Any) -> Optional[str]:
    if isinstance(row, dict):
        return row.get("tenant_id")
    return getattr(row, "tenant_id", None)
