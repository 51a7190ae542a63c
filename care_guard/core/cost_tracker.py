"""
Per-user, per-service monetary budget accounting.

Spend accumulates against a monthly budget with alert flags at the policy's
thresholds (50/75/90/100% by default). Once a budget is spent, billable
calls are refused before they reach the network.

Budgets reset only through reset(), which an external period scheduler
invokes; nothing in this module rolls periods over on its own.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from ..config.loader import SERVICES, BudgetPolicy
from ..storage.models import UsageRecord
from ..storage.repository import UsageRepository
from .errors import QuotaExceededError

logger = logging.getLogger(__name__)

SERVICE_QUOTA = "monthly_service_budget"
TOTAL_QUOTA = "monthly_total_budget"


@dataclass(frozen=True)
class ServiceBudget:
    budget: float
    spent: float

    @property
    def remaining(self) -> float:
        return max(0.0, round(self.budget - self.spent, 4))

    @property
    def exceeded(self) -> bool:
        return self.spent >= self.budget


@dataclass(frozen=True)
class BudgetAlerts:
    threshold_50: bool = False
    threshold_75: bool = False
    threshold_90: bool = False
    budget_exceeded: bool = False


@dataclass(frozen=True)
class MonthlyAPIBudget:
    """Snapshot of a user's budget for the current period."""
    user_id: str
    total_budget: float
    spent: float
    remaining: float
    services: Dict[str, ServiceBudget]
    alerts: BudgetAlerts
    period_start: datetime


@dataclass
class _UserLedger:
    period_start: datetime
    spent: Dict[str, Decimal] = field(default_factory=dict)
    alerts: BudgetAlerts = field(default_factory=BudgetAlerts)

    def total(self) -> Decimal:
        return sum(self.spent.values(), Decimal("0"))


def _month_start(moment: datetime) -> datetime:
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _next_month_start(moment: datetime) -> datetime:
    start = _month_start(moment)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


class CostTracker:
    """Accumulates spend per user and service against a BudgetPolicy."""

    def __init__(
        self,
        policy: Optional[BudgetPolicy] = None,
        repository: Optional[UsageRepository] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        """Initialize the tracker.

        Args:
            policy: Budget ceilings (defaults to BudgetPolicy.default())
            repository: Optional ledger persistence for usage records
            clock: Source of the current time
        """
        self.policy = policy or BudgetPolicy.default()
        self.repository = repository
        self._clock = clock
        self._ledgers: Dict[str, _UserLedger] = {}
        self._records: List[UsageRecord] = []
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._records_lock = threading.Lock()

    def _lock_for(self, user_id: str) -> threading.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            with self._locks_guard:
                lock = self._locks.setdefault(user_id, threading.Lock())
        return lock

    def _ledger(self, user_id: str) -> _UserLedger:
        # caller holds the user's lock
        ledger = self._ledgers.get(user_id)
        if ledger is None:
            ledger = _UserLedger(period_start=_month_start(self._clock()))
            self._ledgers[user_id] = ledger
        return ledger

    def _compute_alerts(self, total: Decimal) -> BudgetAlerts:
        budget = Decimal(str(self.policy.monthly_total))
        t50, t75, t90, t100 = (Decimal(str(t)) for t in self.policy.alert_thresholds)
        return BudgetAlerts(
            threshold_50=total >= budget * t50,
            threshold_75=total >= budget * t75,
            threshold_90=total >= budget * t90,
            budget_exceeded=total >= budget * t100,
        )

    def _apply(self, ledger: _UserLedger, user_id: str, service: str, cost: Decimal) -> None:
        ledger.spent[service] = ledger.spent.get(service, Decimal("0")) + cost
        previous = ledger.alerts
        ledger.alerts = self._compute_alerts(ledger.total())
        self._log_alert_transitions(user_id, previous, ledger.alerts)

    def _log_alert_transitions(self, user_id: str, before: BudgetAlerts, after: BudgetAlerts) -> None:
        labels = (
            ("threshold_50", "50%"),
            ("threshold_75", "75%"),
            ("threshold_90", "90%"),
        )
        for attr, label in labels:
            if getattr(after, attr) and not getattr(before, attr):
                logger.warning("User %s has used %s of the monthly API budget", user_id, label)
        if after.budget_exceeded and not before.budget_exceeded:
            logger.error("User %s has exhausted the monthly API budget", user_id)

    def record_usage(
        self,
        user_id: str,
        service: str,
        cost: float,
        operation: str = "request",
        tenant_id: str = "default",
        success: bool = True,
        request_id: Optional[str] = None
    ) -> UsageRecord:
        """Append a usage record and update the user's running totals.

        Args:
            user_id: User the call was made for
            service: Service id (one of SERVICES)
            cost: Monetary cost of the call
            operation: Operation name for the ledger
            tenant_id: Tenant owning the record
            success: Whether the upstream call succeeded
            request_id: Optional upstream request id

        Returns:
            The appended UsageRecord

        Raises:
            ValueError: If cost is negative or service is unknown
        """
        if cost < 0:
            raise ValueError("cost cannot be negative")
        if service not in SERVICES:
            raise ValueError(f"Unknown service: {service}")

        record = UsageRecord(
            timestamp=self._clock(),
            tenant_id=tenant_id,
            user_id=user_id,
            service=service,
            operation=operation,
            cost=float(cost),
            success=success,
            request_id=request_id
        )
        with self._lock_for(user_id):
            ledger = self._ledger(user_id)
            self._apply(ledger, user_id, service, Decimal(str(cost)))
            with self._records_lock:
                self._records.append(record)
        if self.repository is not None:
            self.repository.append(record)
        return record

    def get_budget_status(self, user_id: str) -> MonthlyAPIBudget:
        """Snapshot of the user's budget. Has no side effects."""
        spent: Dict[str, Decimal] = {}
        alerts = BudgetAlerts()
        period_start = _month_start(self._clock())
        # users with no ledger yet get no lock either
        if user_id in self._ledgers:
            with self._lock_for(user_id):
                ledger = self._ledgers[user_id]
                spent = dict(ledger.spent)
                alerts = ledger.alerts
                period_start = ledger.period_start

        total_spent = sum(spent.values(), Decimal("0"))
        total_budget = Decimal(str(self.policy.monthly_total))
        return MonthlyAPIBudget(
            user_id=user_id,
            total_budget=float(total_budget),
            spent=float(total_spent.quantize(Decimal("0.0001"))),
            remaining=float(max(Decimal("0"), total_budget - total_spent).quantize(Decimal("0.0001"))),
            services={
                service: ServiceBudget(
                    budget=self.policy.service_budget(service),
                    spent=float(spent.get(service, Decimal("0")).quantize(Decimal("0.0001")))
                )
                for service in SERVICES
            },
            alerts=alerts,
            period_start=period_start
        )

    def ensure_within_budget(self, user_id: str, service: str) -> None:
        """Refuse a billable call once the user's budget is spent.

        Raises:
            QuotaExceededError: If the service sub-budget or the total budget is spent
        """
        status = self.get_budget_status(user_id)
        reset_time = _next_month_start(self._clock())
        if service in self.policy.services and status.services[service].exceeded:
            logger.info("Refusing %s call for user %s: service budget spent", service, user_id)
            raise QuotaExceededError(service, SERVICE_QUOTA, reset_time)
        if status.alerts.budget_exceeded or status.remaining <= 0:
            logger.info("Refusing %s call for user %s: monthly budget spent", service, user_id)
            raise QuotaExceededError(service, TOTAL_QUOTA, reset_time)

    def usage_records(self, user_id: Optional[str] = None) -> List[UsageRecord]:
        """Copy of the in-memory ledger, optionally for one user."""
        with self._records_lock:
            records = list(self._records)
        if user_id is None:
            return records
        return [r for r in records if r.user_id == user_id]

    def load_from_ledger(self, tenant_id: str, user_id: str) -> MonthlyAPIBudget:
        """Rebuild a user's current-period totals from the persisted ledger.

        Records are replayed without being written again.

        Raises:
            RuntimeError: If no repository is configured
        """
        if self.repository is None:
            raise RuntimeError("load_from_ledger requires a usage repository")
        with self._lock_for(user_id):
            ledger = self._ledger(user_id)
            ledger.spent = {}
            ledger.alerts = BudgetAlerts()
            for record in self.repository.records_for_user(tenant_id, user_id, since=ledger.period_start):
                ledger.spent[record.service] = (
                    ledger.spent.get(record.service, Decimal("0")) + Decimal(str(record.cost))
                )
            ledger.alerts = self._compute_alerts(ledger.total())
        return self.get_budget_status(user_id)

    def reset(self, user_id: str) -> None:
        """Start a new budget period for the user. Idempotent.

        Ledger records are kept; only the running totals and alerts are cleared.
        """
        with self._lock_for(user_id):
            self._ledgers[user_id] = _UserLedger(period_start=self._clock())
        logger.info("Budget period reset for user %s", user_id)
