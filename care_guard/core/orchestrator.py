"""
Service orchestration.

Owns the four external service clients, their shared guard, and their
lifecycle. Nothing here is process-global: the host builds an orchestrator,
initializes it, and shuts it down explicitly.

Lifecycle:
    Initializing -> initialize() -> Ready(clients) | Failed(error)
    Ready -> shutdown() -> Initializing
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Union

from ..config.loader import SERVICES, BudgetPolicy, GatewaySettings, load_budget_policy
from ..sdk import GenerativeAIClient, IdentityClient, NutritionClient, PaymentClient
from ..storage.repository import SQLiteAuditSink, UsageRepository, initialize_schema
from .audit import HealthcareDataAccessWrapper
from .cache import CacheManager
from .cost_tracker import CostTracker
from .errors import NotInitializedError
from .guard import CallGuard
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

ClientFactory = Callable[[GatewaySettings, CallGuard], Any]


@dataclass(frozen=True)
class Initializing:
    pass


@dataclass(frozen=True)
class Ready:
    clients: Dict[str, Any]


@dataclass(frozen=True)
class Failed:
    error: BaseException


OrchestratorState = Union[Initializing, Ready, Failed]


def _default_factories() -> Dict[str, ClientFactory]:
    return {
        "nutrition": lambda s, g: NutritionClient(
            s.nutrition, g, cache_ttl=g.costs.policy.cache_ttl_seconds
        ),
        "ai": lambda s, g: GenerativeAIClient(s.ai, g),
        "payments": lambda s, g: PaymentClient(s.payments, g),
        "identity": lambda s, g: IdentityClient(s.identity, g),
    }


class ServiceOrchestrator:
    """Single access point for the configured external service clients."""

    def __init__(
        self,
        settings: GatewaySettings,
        guard: CallGuard,
        client_factories: Optional[Mapping[str, ClientFactory]] = None
    ):
        """Initialize the orchestrator.

        Args:
            settings: Gateway settings
            guard: CallGuard shared by every client
            client_factories: Per-service overrides of how clients are built
        """
        self.settings = settings
        self.guard = guard
        self._factories = _default_factories()
        self._factories.update(client_factories or {})
        self._state: OrchestratorState = Initializing()
        self._lock = asyncio.Lock()
        self._started = time.monotonic()

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def cache(self) -> CacheManager:
        return self.guard.cache

    @property
    def limiter(self) -> RateLimiter:
        return self.guard.limiter

    @property
    def costs(self) -> CostTracker:
        return self.guard.costs

    async def initialize(self) -> None:
        """Build every client.

        Raises:
            Exception: Whatever a client factory raised; state becomes Failed
        """
        async with self._lock:
            if isinstance(self._state, Ready):
                return
            clients: Dict[str, Any] = {}
            try:
                for service in SERVICES:
                    clients[service] = self._factories[service](self.settings, self.guard)
            except Exception as error:
                for client in clients.values():
                    await client.aclose()
                self._state = Failed(error)
                logger.error("Service initialization failed: %s", error)
                raise
            self._state = Ready(clients)

        configured = [name for name, client in clients.items() if client.is_configured()]
        logger.info(
            "Services initialized (%d/%d configured: %s)",
            len(configured), len(SERVICES), ", ".join(configured) or "none"
        )

    def _client(self, service: str) -> Any:
        state = self._state
        if isinstance(state, Ready):
            return state.clients[service]
        if isinstance(state, Failed):
            raise NotInitializedError(
                f"Services failed to initialize ({state.error}); cannot access {service}"
            )
        raise NotInitializedError(f"Services not initialized; call initialize() before using {service}")

    @property
    def nutrition(self) -> NutritionClient:
        return self._client("nutrition")

    @property
    def ai(self) -> GenerativeAIClient:
        return self._client("ai")

    @property
    def payments(self) -> PaymentClient:
        return self._client("payments")

    @property
    def identity(self) -> IdentityClient:
        return self._client("identity")

    def _configured_in_settings(self, service: str) -> bool:
        return getattr(self.settings, service).configured

    async def _probe(self, service: str, client: Any) -> bool:
        try:
            return bool(await asyncio.wait_for(
                client.health_check(), self.settings.health_check_timeout
            ))
        except asyncio.TimeoutError:
            logger.warning("%s health check timed out", service)
        except Exception as error:
            logger.warning("%s health check failed: %s", service, error)
        return False

    async def perform_health_check(self) -> Dict[str, Any]:
        """Probe every service concurrently.

        Returns:
            Dict with aggregate status, per-service detail, check time and uptime
        """
        state = self._state
        services: Dict[str, Dict[str, Any]] = {}

        if isinstance(state, Ready):
            names = list(state.clients)
            results = await asyncio.gather(
                *(self._probe(name, state.clients[name]) for name in names)
            )
            for name, healthy in zip(names, results):
                services[name] = {
                    "status": "healthy" if healthy else "unhealthy",
                    "configured": state.clients[name].is_configured(),
                    "ready": True,
                }
        else:
            for name in SERVICES:
                services[name] = {
                    "status": "unhealthy",
                    "configured": self._configured_in_settings(name),
                    "ready": False,
                }

        healthy_count = sum(1 for s in services.values() if s["status"] == "healthy")
        if healthy_count == len(SERVICES):
            overall = "healthy"
        elif healthy_count >= 2:
            overall = "degraded"
        else:
            overall = "unhealthy"

        return {
            "status": overall,
            "services": services,
            "last_checked": datetime.now(timezone.utc).isoformat(),
            "uptime": time.monotonic() - self._started,
        }

    async def shutdown(self) -> None:
        """Close every client and return to the Initializing state."""
        async with self._lock:
            state = self._state
            self._state = Initializing()
            if not isinstance(state, Ready):
                return
            for name, client in state.clients.items():
                try:
                    await client.aclose()
                except Exception as error:
                    logger.warning("Error closing %s client: %s", name, error)
        logger.info("Services shut down")


def build_guard(settings: GatewaySettings, persist: bool = True) -> CallGuard:
    """Wire the rate limiter, cache and cost tracker from settings.

    Args:
        settings: Gateway settings
        persist: Append usage records to the SQLite ledger

    Raises:
        FileNotFoundError: If the configured budget policy file is missing
        ValueError: If the budget policy is invalid
    """
    if settings.budget_policy_path:
        policy = load_budget_policy(settings.budget_policy_path)
    else:
        policy = BudgetPolicy.default()

    repository = None
    if persist:
        initialize_schema(settings.audit.db_path)
        repository = UsageRepository(settings.audit.db_path)

    return CallGuard(
        limiter=RateLimiter(settings.rate_limits()),
        costs=CostTracker(policy, repository=repository),
        cache=CacheManager(default_ttl=policy.cache_ttl_seconds)
    )


def build_data_access(settings: GatewaySettings) -> HealthcareDataAccessWrapper:
    """Build the audited data-access wrapper over the SQLite audit sink."""
    initialize_schema(settings.audit.db_path)
    return HealthcareDataAccessWrapper(
        SQLiteAuditSink(settings.audit.db_path),
        audit_all=settings.audit.audit_all,
        emergency_log_path=settings.audit.emergency_log_path
    )
