"""
Unit tests for guarded external call execution.
"""

import asyncio
from datetime import datetime

import httpx
import pytest

from care_guard.config.loader import BudgetPolicy
from care_guard.core.cache import CacheManager
from care_guard.core.cost_tracker import CostTracker
from care_guard.core.errors import ExternalAPIError, QuotaExceededError, RateLimitError
from care_guard.core.guard import CallGuard
from care_guard.core.rate_limiter import RateLimiter


def fixed_clock():
    return datetime(2024, 6, 10, 9, 0, 0)


class TestCallGuard:
    """Test ordering of budget, cache, rate limit and usage accounting."""

    def setup_method(self):
        self.policy = BudgetPolicy(monthly_total=1.0, services={"nutrition": 0.01, "ai": 0.5})
        self.costs = CostTracker(self.policy, clock=fixed_clock)
        self.limiter = RateLimiter({"nutrition": 2, "ai": 10}, clock=fixed_clock)
        self.cache = CacheManager(clock=fixed_clock)
        self.guard = CallGuard(self.limiter, self.costs, self.cache)
        self.calls = 0

    async def _ok(self):
        self.calls += 1
        return {"ok": True}

    @pytest.mark.asyncio
    async def test_success_records_one_usage(self):
        result = await self.guard.execute(
            "nutrition", "search_recipes", self._ok, user_id="user-1", cost=0.002, tenant_id="clinic-a"
        )
        assert result == {"ok": True}
        [record] = self.costs.usage_records("user-1")
        assert record.success
        assert record.cost == 0.002
        assert record.operation == "search_recipes"
        assert record.tenant_id == "clinic-a"

    @pytest.mark.asyncio
    async def test_budget_checked_before_anything_else(self):
        self.costs.record_usage("user-1", "nutrition", 0.01)

        with pytest.raises(QuotaExceededError):
            await self.guard.execute("nutrition", "search_recipes", self._ok, user_id="user-1", cost=0.002)

        assert self.calls == 0
        assert len(self.costs.usage_records("user-1")) == 1
        assert self.limiter.get_window("nutrition") is None

    @pytest.mark.asyncio
    async def test_rate_limited_call_is_not_forwarded(self):
        for _ in range(2):
            await self.guard.execute("nutrition", "op", self._ok, user_id="user-1", cost=0.001)

        with pytest.raises(RateLimitError):
            await self.guard.execute("nutrition", "op", self._ok, user_id="user-1", cost=0.001)
        assert self.calls == 2
        assert len(self.costs.usage_records()) == 2

    @pytest.mark.asyncio
    async def test_cache_hit_skips_rate_limit_and_billing(self):
        for _ in range(5):
            await self.guard.execute(
                "nutrition", "search_recipes", self._ok,
                user_id="user-1", cost=0.002, cache_key="k"
            )
        assert self.calls == 1
        assert len(self.costs.usage_records()) == 1
        assert self.limiter.get_window("nutrition").count == 1

    @pytest.mark.asyncio
    async def test_failure_recorded_and_wrapped(self):
        async def boom():
            raise ConnectionError("reset by peer")

        with pytest.raises(ExternalAPIError) as exc_info:
            await self.guard.execute("ai", "generate", boom, user_id="user-1", cost=0.003)

        error = exc_info.value
        assert error.service == "ai"
        assert isinstance(error.original_error, ConnectionError)
        [record] = self.costs.usage_records("user-1")
        assert record.success is False
        assert record.cost == 0.003

    @pytest.mark.asyncio
    async def test_http_status_preserved(self):
        request = httpx.Request("GET", "https://api.example.test/x")
        response = httpx.Response(503, request=request)

        async def unavailable():
            raise httpx.HTTPStatusError("unavailable", request=request, response=response)

        with pytest.raises(ExternalAPIError) as exc_info:
            await self.guard.execute("ai", "generate", unavailable, user_id="user-1", cost=0.0)
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self):
        async def slow():
            await asyncio.sleep(5)

        with pytest.raises(ExternalAPIError) as exc_info:
            await self.guard.execute("ai", "generate", slow, user_id="user-1", cost=0.001, timeout=0.01)

        assert exc_info.value.status_code == 504
        [record] = self.costs.usage_records("user-1")
        assert record.success is False

    @pytest.mark.asyncio
    async def test_failed_fetch_not_cached(self):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) == 1:
                raise ConnectionError("first attempt fails")
            return "ok"

        with pytest.raises(ExternalAPIError):
            await self.guard.execute("ai", "x", flaky, user_id="user-1", cost=0.0, cache_key="k")
        assert await self.guard.execute("ai", "x", flaky, user_id="user-1", cost=0.0, cache_key="k") == "ok"

    @pytest.mark.asyncio
    async def test_cost_of_uses_actual_cost(self):
        async def priced():
            return {"cost": 0.0421}

        await self.guard.execute(
            "ai", "generate", priced,
            user_id="user-1", cost=0.0, cost_of=lambda r: r["cost"]
        )
        assert self.costs.get_budget_status("user-1").services["ai"].spent == pytest.approx(0.0421)

    @pytest.mark.asyncio
    async def test_failed_cost_computation_charges_quoted_cost(self):
        def broken_cost(result):
            raise KeyError("cost")

        result = await self.guard.execute(
            "ai", "generate", self._ok,
            user_id="user-1", cost=0.003, cost_of=broken_cost
        )

        assert result == {"ok": True}
        [record] = self.costs.usage_records("user-1")
        assert record.success
        assert record.cost == 0.003

    @pytest.mark.asyncio
    async def test_cancellation_recorded_and_propagated(self):
        started = asyncio.Event()

        async def slow():
            started.set()
            await asyncio.sleep(10)

        task = asyncio.create_task(
            self.guard.execute("ai", "generate", slow, user_id="user-1", cost=0.001)
        )
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        [record] = self.costs.usage_records("user-1")
        assert record.success is False
