"""
Identity and session provider client.

Session lookups are session-specific, so their results are never cached.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from ..config.loader import IdentitySettings
from ..core.errors import ExternalAPIError
from ..core.guard import CallGuard
from ..core.pricing import operation_cost


@dataclass(frozen=True)
class IdentityUser:
    user_id: str
    email: Optional[str]
    role: Optional[str]
    metadata: Dict[str, Any]


class IdentityClient:
    """Client for the auth provider's REST API."""

    service = "identity"

    def __init__(
        self,
        settings: IdentitySettings,
        guard: CallGuard,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0
    ):
        self.settings = settings
        self.guard = guard
        self._http = httpx.AsyncClient(
            base_url=(settings.url or "http://identity.invalid").rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"apikey": settings.anon_key or ""}
        )

    def is_configured(self) -> bool:
        return self.settings.configured

    async def get_user(
        self,
        user_id: str,
        access_token: str,
        tenant_id: str = "default",
        timeout: Optional[float] = None
    ) -> IdentityUser:
        """Resolve the user behind an access token.

        Raises:
            ExternalAPIError: If the token is rejected or the provider fails
        """
        if not self.is_configured():
            raise ExternalAPIError("Identity provider not configured", self.service)

        async def call() -> IdentityUser:
            response = await self._http.get(
                "/auth/v1/user",
                headers={"Authorization": f"Bearer {access_token}"}
            )
            response.raise_for_status()
            body = response.json()
            metadata = dict(body.get("user_metadata") or {})
            return IdentityUser(
                user_id=body["id"],
                email=body.get("email"),
                role=metadata.get("healthcare_role") or body.get("role"),
                metadata=metadata
            )

        return await self.guard.execute(
            self.service, "get_user", call,
            user_id=user_id,
            cost=operation_cost(self.service, "get_user"),
            tenant_id=tenant_id,
            timeout=timeout
        )

    async def health_check(self) -> bool:
        if not self.is_configured():
            return False
        response = await self._http.get("/auth/v1/health")
        return response.status_code == 200

    async def aclose(self) -> None:
        await self._http.aclose()
