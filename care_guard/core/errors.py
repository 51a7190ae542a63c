"""
Error taxonomy for external service mediation.

Quota and rate-limit failures carry distinct messages so callers can tell
"stop until the budget resets" from "back off and retry later".
"""

from datetime import datetime
from typing import Any, Optional


class CareGuardError(Exception):
    """Base class for all Care Guard errors."""


class NotInitializedError(CareGuardError):
    """Raised when a service client is requested before the orchestrator is ready.

    This is a programming error in the host process and must not be retried.
    """


class ExternalAPIError(CareGuardError):
    """Wraps any failure reported by a third-party service."""

    def __init__(
        self,
        message: str,
        service: str,
        status_code: Optional[int] = None,
        original_error: Optional[BaseException] = None
    ):
        super().__init__(message)
        self.service = service
        self.status_code = status_code
        self.original_error = original_error


class RateLimitError(ExternalAPIError):
    """Raised when a call would exceed the per-minute ceiling for a service."""

    def __init__(self, service: str, reset_time: datetime, limit: int):
        super().__init__(
            f"Rate limit exceeded for {service}. Resets at {reset_time.isoformat()}",
            service,
            429
        )
        self.reset_time = reset_time
        self.limit = limit


class QuotaExceededError(ExternalAPIError):
    """Raised when a user's monetary budget for a service is spent."""

    def __init__(self, service: str, quota_type: str, reset_time: datetime):
        super().__init__(
            f"Budget exceeded for {service} ({quota_type}). Resets at {reset_time.isoformat()}",
            service,
            429
        )
        self.quota_type = quota_type
        self.reset_time = reset_time


class ConsentRequiredError(CareGuardError):
    """Raised when a feature needs a consent tier the user has not granted."""

    def __init__(self, user_id: str, required_type: Any):
        tier = getattr(required_type, "value", required_type)
        super().__init__(f"User {user_id} has no valid '{tier}' consent on record")
        self.user_id = user_id
        self.required_type = required_type
