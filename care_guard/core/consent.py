"""
Tiered consent validation.

Consent tiers are ordered basic < enhanced < premium. History is append-only:
upgrades add a new record, revocations add a revocation record, and nothing
is ever edited or deleted.
"""

import hashlib
import json
import logging
import threading
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from ..storage.models import ConsentRecord, ConsentStatus
from ..storage.repository import ConsentRepository
from .errors import ConsentRequiredError

logger = logging.getLogger(__name__)


class ConsentType(Enum):
    """Feature-gating consent tiers in increasing order."""
    BASIC = "basic"
    ENHANCED = "enhanced"
    PREMIUM = "premium"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    def covers(self, other: "ConsentType") -> bool:
        return self.rank >= other.rank


_RANKS = {ConsentType.BASIC: 0, ConsentType.ENHANCED: 1, ConsentType.PREMIUM: 2}


def device_fingerprint(device_info: Union[str, Mapping[str, Any]]) -> str:
    """Fixed-length (64 hex chars) sha256 digest of device characteristics."""
    if isinstance(device_info, Mapping):
        raw = json.dumps(dict(device_info), sort_keys=True, separators=(",", ":"), default=str)
    else:
        raw = str(device_info)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _as_type(value: Union[str, ConsentType]) -> ConsentType:
    return value if isinstance(value, ConsentType) else ConsentType(value)


class ConsentGate:
    """Blocks feature access until sufficient, non-revoked consent exists."""

    def __init__(
        self,
        repository: Optional[ConsentRepository] = None,
        required_disclaimer_version: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        """Initialize the gate.

        Args:
            repository: Optional persistence; when set, history is read from and written to it
            required_disclaimer_version: When set, only consents to this disclaimer count
            clock: Source of the current time
        """
        self.repository = repository
        self.required_disclaimer_version = required_disclaimer_version
        self._clock = clock
        self._history: Dict[Tuple[str, str], List[ConsentRecord]] = {}
        self._lock = threading.Lock()

    def _append(self, record: ConsentRecord) -> None:
        if self.repository is not None:
            self.repository.append(record)
        else:
            with self._lock:
                self._history.setdefault((record.tenant_id, record.user_id), []).append(record)

    def history(self, user_id: str, tenant_id: str = "default") -> List[ConsentRecord]:
        """Consent history for the user within one tenant, oldest first."""
        if self.repository is not None:
            return self.repository.records_for_user(user_id, tenant_id)
        with self._lock:
            return list(self._history.get((tenant_id, user_id), []))

    def grant(
        self,
        user_id: str,
        consent_type: Union[str, ConsentType],
        disclaimer_version: str,
        ip_address: str,
        device_info: Union[str, Mapping[str, Any]],
        tenant_id: str = "default",
        additional_consents: Iterable[str] = ()
    ) -> ConsentRecord:
        """Record a new consent of the given tier.

        Raises:
            ValueError: If consent_type is not a known tier or disclaimer_version is empty
        """
        tier = _as_type(consent_type)
        if not disclaimer_version:
            raise ValueError("disclaimer_version is required")
        record = ConsentRecord(
            tenant_id=tenant_id,
            user_id=user_id,
            disclaimer_version=disclaimer_version,
            timestamp=self._clock(),
            ip_address=ip_address,
            device_fingerprint=device_fingerprint(device_info),
            consent_type=tier.value,
            status=ConsentStatus.GRANTED,
            additional_consents=tuple(additional_consents)
        )
        self._append(record)
        logger.info("Consent '%s' granted by user %s (disclaimer %s)", tier.value, user_id, disclaimer_version)
        return record

    def revoke(
        self,
        user_id: str,
        consent_type: Union[str, ConsentType] = ConsentType.BASIC,
        ip_address: str = "unknown",
        device_info: Union[str, Mapping[str, Any]] = "unknown",
        tenant_id: str = "default"
    ) -> ConsentRecord:
        """Record a revocation.

        Revoking a tier supersedes every earlier grant of that tier or higher,
        so revoking basic consent withdraws everything.
        """
        tier = _as_type(consent_type)
        previous = self.history(user_id, tenant_id)
        disclaimer_version = previous[-1].disclaimer_version if previous else "none"
        record = ConsentRecord(
            tenant_id=tenant_id,
            user_id=user_id,
            disclaimer_version=disclaimer_version,
            timestamp=self._clock(),
            ip_address=ip_address,
            device_fingerprint=device_fingerprint(device_info),
            consent_type=tier.value,
            status=ConsentStatus.REVOKED
        )
        self._append(record)
        logger.info("Consent '%s' revoked by user %s", tier.value, user_id)
        return record

    def has_valid_consent(
        self,
        user_id: str,
        required_type: Union[str, ConsentType],
        tenant_id: str = "default"
    ) -> bool:
        """True iff a non-superseded grant of at least the required tier exists."""
        required = _as_type(required_type)
        active: List[ConsentRecord] = []
        for record in self.history(user_id, tenant_id):
            tier = ConsentType(record.consent_type)
            if record.status == ConsentStatus.REVOKED:
                active = [r for r in active if not ConsentType(r.consent_type).covers(tier)]
            else:
                active.append(record)

        for record in active:
            if (self.required_disclaimer_version is not None
                    and record.disclaimer_version != self.required_disclaimer_version):
                continue
            if ConsentType(record.consent_type).covers(required):
                return True
        return False

    def require(
        self,
        user_id: str,
        required_type: Union[str, ConsentType],
        tenant_id: str = "default"
    ) -> None:
        """Raise unless the user holds the required consent tier.

        Raises:
            ConsentRequiredError: If no valid consent of the tier exists
        """
        required = _as_type(required_type)
        if not self.has_valid_consent(user_id, required, tenant_id):
            logger.info("Blocked user %s: '%s' consent required", user_id, required.value)
            raise ConsentRequiredError(user_id, required)
