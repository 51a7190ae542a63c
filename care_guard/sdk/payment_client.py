"""
Payment and subscription processor client.

Talks to the processor's REST API over httpx. Payment calls are never cached
and never retried.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from ..config.loader import PaymentSettings
from ..core.errors import ExternalAPIError
from ..core.guard import CallGuard
from ..core.pricing import operation_cost

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: Optional[str]
    status: Optional[str]


@dataclass(frozen=True)
class Subscription:
    subscription_id: str
    status: str
    current_period_end: Optional[datetime]
    metadata: Dict[str, str]


class PaymentClient:
    """Client for the subscription processor."""

    service = "payments"

    def __init__(
        self,
        settings: PaymentSettings,
        guard: CallGuard,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 15.0
    ):
        self.settings = settings
        self.guard = guard
        self._http = httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Bearer {settings.secret_key or ''}"}
        )

    def is_configured(self) -> bool:
        return self.settings.configured

    def _require_configured(self) -> None:
        if not self.is_configured():
            raise ExternalAPIError("Payment processor not configured", self.service)

    async def create_checkout_session(
        self,
        user_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        subscription_tier: str,
        customer_email: Optional[str] = None,
        tenant_id: str = "default",
        timeout: Optional[float] = None
    ) -> CheckoutSession:
        """Start a hosted checkout for a subscription tier."""
        self._require_configured()
        form: Dict[str, Any] = {
            "mode": "subscription",
            "line_items[0][price]": price_id,
            "line_items[0][quantity]": 1,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": user_id,
            "metadata[subscription_tier]": subscription_tier,
            "metadata[tenant_id]": tenant_id,
        }
        if customer_email:
            form["customer_email"] = customer_email

        async def call() -> CheckoutSession:
            response = await self._http.post("/v1/checkout/sessions", data=form)
            response.raise_for_status()
            body = response.json()
            return CheckoutSession(
                session_id=body["id"],
                url=body.get("url"),
                status=body.get("status")
            )

        session = await self.guard.execute(
            self.service, "create_checkout_session", call,
            user_id=user_id,
            cost=operation_cost(self.service, "create_checkout_session"),
            tenant_id=tenant_id,
            timeout=timeout
        )
        logger.info("Checkout session %s created for user %s", session.session_id, user_id)
        return session

    async def get_subscription(
        self,
        user_id: str,
        subscription_id: str,
        tenant_id: str = "default",
        timeout: Optional[float] = None
    ) -> Subscription:
        self._require_configured()

        async def call() -> Subscription:
            response = await self._http.get(f"/v1/subscriptions/{subscription_id}")
            response.raise_for_status()
            body = response.json()
            period_end = body.get("current_period_end")
            return Subscription(
                subscription_id=body["id"],
                status=body.get("status", "unknown"),
                current_period_end=(
                    datetime.fromtimestamp(period_end, tz=timezone.utc) if period_end else None
                ),
                metadata=dict(body.get("metadata") or {})
            )

        return await self.guard.execute(
            self.service, "get_subscription", call,
            user_id=user_id,
            cost=operation_cost(self.service, "get_subscription"),
            tenant_id=tenant_id,
            timeout=timeout
        )

    async def health_check(self) -> bool:
        """List a single product to confirm credentials and reachability."""
        if not self.is_configured():
            return False
        response = await self._http.get("/v1/products", params={"limit": 1})
        return response.status_code == 200

    async def aclose(self) -> None:
        await self._http.aclose()
