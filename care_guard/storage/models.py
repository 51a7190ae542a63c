"""
Data models for storage layer.

Defines the append-only records written by the mediation layer.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of a billable external call.

    Append-only events that create an auditable ledger of API spend.
    Once written, these records must never be modified.
    """
    timestamp: datetime
    tenant_id: str
    user_id: str
    service: str
    operation: str
    cost: float
    success: bool = True
    request_id: Optional[str] = None


class AuditStatus(Enum):
    """Outcome of an audited persistence operation."""
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class AuditLogEntry:
    """Immutable audit record for a persistence operation.

    There is no update or delete path for these entries anywhere in the code base.
    """
    tenant_id: str
    action: str
    resource_type: str
    phi_accessed: bool
    execution_time_ms: float
    timestamp: datetime
    status: AuditStatus
    user_id: Optional[str] = None
    resource_id: Optional[str] = None
    compliance_flags: Tuple[str, ...] = ()
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        """Serialize to the persisted audit shape."""
        return {
            "tenantId": self.tenant_id,
            "userId": self.user_id,
            "action": self.action,
            "resourceType": self.resource_type,
            "resourceId": self.resource_id,
            "phiAccessed": self.phi_accessed,
            "executionTime": self.execution_time_ms,
            "complianceFlags": list(self.compliance_flags),
            "timestamp": self.timestamp.isoformat(),
            "status": self.status.value,
            "error": self.error_message,
        }


class ConsentStatus(Enum):
    GRANTED = "granted"
    REVOKED = "revoked"


@dataclass(frozen=True)
class ConsentRecord:
    """Immutable consent decision.

    Records are superseded by newer ones, never edited.
    """
    tenant_id: str
    user_id: str
    disclaimer_version: str
    timestamp: datetime
    ip_address: str
    device_fingerprint: str
    consent_type: str
    status: ConsentStatus = ConsentStatus.GRANTED
    additional_consents: Tuple[str, ...] = field(default_factory=tuple)
