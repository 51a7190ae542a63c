"""
Guarded execution of billable external calls.

Enforcement Order:
1. Budget ceiling - a spent budget is a hard stop, checked before anything else
2. Cache - identical idempotent reads share one upstream call
3. Rate limit - a denied call is never forwarded
4. Upstream call - bounded by the caller's timeout, never retried here
5. Usage record - exactly one per forwarded call, success or failure
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx

from .cache import CacheManager
from .cost_tracker import CostTracker
from .errors import CareGuardError, ExternalAPIError
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


class CallGuard:
    """Applies budget, cache and rate-limit policy around upstream calls."""

    def __init__(self, limiter: RateLimiter, costs: CostTracker, cache: CacheManager):
        self.limiter = limiter
        self.costs = costs
        self.cache = cache

    async def execute(
        self,
        service: str,
        operation: str,
        call: Callable[[], Awaitable[Any]],
        *,
        user_id: str,
        cost: float,
        tenant_id: str = "default",
        cache_key: Optional[str] = None,
        ttl: Optional[int] = None,
        timeout: Optional[float] = None,
        cost_of: Optional[Callable[[Any], float]] = None
    ) -> Any:
        """Run ``call`` if policy allows it.

        Args:
            service: Service id the call is billed to
            operation: Operation name for the usage ledger
            call: Zero-argument coroutine function performing the upstream request
            user_id: User the call is made for
            cost: Cost charged for the call (and for a failed attempt)
            tenant_id: Tenant owning the usage record
            cache_key: Fingerprint for idempotent reads; None disables caching
            ttl: Cache TTL in seconds
            timeout: Seconds before the call is abandoned and counted as failed
            cost_of: Optional function computing the actual cost from a successful result

        Returns:
            The call's result (possibly from cache)

        Raises:
            QuotaExceededError: If the user's budget is spent; no call is made
            RateLimitError: If the service's window is exhausted; no call is made
            ExternalAPIError: If the upstream call fails or times out
        """
        self.costs.ensure_within_budget(user_id, service)

        async def forward() -> Any:
            self.limiter.acquire(service)
            return await self._forward(
                service, operation, call,
                user_id=user_id, cost=cost, tenant_id=tenant_id,
                timeout=timeout, cost_of=cost_of
            )

        if cache_key is None:
            return await forward()
        return await self.cache.get_or_fetch(cache_key, forward, ttl=ttl)

    async def _forward(
        self,
        service: str,
        operation: str,
        call: Callable[[], Awaitable[Any]],
        *,
        user_id: str,
        cost: float,
        tenant_id: str,
        timeout: Optional[float],
        cost_of: Optional[Callable[[Any], float]]
    ) -> Any:
        def record(success: bool, amount: float) -> None:
            self.costs.record_usage(
                user_id, service, amount,
                operation=operation, tenant_id=tenant_id, success=success
            )

        try:
            if timeout is None:
                result = await call()
            else:
                result = await asyncio.wait_for(call(), timeout)
        except asyncio.CancelledError:
            record(False, cost)
            raise
        except asyncio.TimeoutError as error:
            record(False, cost)
            logger.warning("%s.%s timed out after %ss", service, operation, timeout)
            raise ExternalAPIError(
                f"{service} {operation} timed out after {timeout}s",
                service, 504, error
            ) from error
        except CareGuardError:
            record(False, cost)
            raise
        except Exception as error:
            record(False, cost)
            status_code = None
            if isinstance(error, httpx.HTTPStatusError):
                status_code = error.response.status_code
            else:
                status_code = getattr(error, "status_code", None)
            logger.error("%s.%s failed: %s", service, operation, error)
            raise ExternalAPIError(
                f"{service} {operation} failed: {error}",
                service, status_code, error
            ) from error

        amount = cost
        if cost_of is not None:
            try:
                amount = cost_of(result)
            except Exception as error:
                logger.error("%s.%s cost could not be computed, charging quoted %s: %s", service, operation, cost, error)
                amount = cost
        record(True, amount)
        return result
