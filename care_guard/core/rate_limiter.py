"""
Per-service request rate limiting.

Fixed one-minute windows keyed by service (optionally plus user). Windows
reset only by time; there is no manual reset.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Mapping, Optional, Tuple

from .errors import RateLimitError

logger = logging.getLogger(__name__)

WindowKey = Tuple[str, Optional[str]]


@dataclass
class RateLimitWindow:
    """Request count for one key within the current window."""
    count: int
    window_start: datetime
    limit: int


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of a single acquire attempt."""
    allowed: bool
    limit: int
    remaining: int
    reset_time: datetime


class RateLimiter:
    """Enforces a requests-per-minute ceiling per service.

    Each key has its own lock, so callers hitting different services never
    contend with each other. Expired windows and their locks are pruned
    every ``prune_every`` acquires.
    """

    def __init__(
        self,
        limits: Optional[Mapping[str, int]] = None,
        default_limit: int = 60,
        window_seconds: int = 60,
        clock: Callable[[], datetime] = datetime.now,
        prune_every: int = 1000
    ):
        """Initialize the limiter.

        Args:
            limits: Requests-per-minute ceiling per service id
            default_limit: Ceiling for services missing from ``limits``
            window_seconds: Window length in seconds
            clock: Source of the current time
            prune_every: Acquires between sweeps of expired windows

        Raises:
            ValueError: If any limit or the window length is not positive
        """
        self._limits = dict(limits or {})
        for service, limit in self._limits.items():
            if limit <= 0:
                raise ValueError(f"rate limit for {service} must be > 0")
        if default_limit <= 0:
            raise ValueError("default_limit must be > 0")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        if prune_every <= 0:
            raise ValueError("prune_every must be > 0")

        self.default_limit = default_limit
        self.window = timedelta(seconds=window_seconds)
        self._clock = clock
        self._windows: Dict[WindowKey, RateLimitWindow] = {}
        self._locks: Dict[WindowKey, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self.prune_every = prune_every
        self._since_prune = 0

    def limit_for(self, service: str) -> int:
        return self._limits.get(service, self.default_limit)

    def _lock_for(self, key: WindowKey) -> threading.Lock:
        lock = self._locks.get(key)
        if lock is None:
            with self._locks_guard:
                lock = self._locks.setdefault(key, threading.Lock())
        return lock

    def _acquire_key_lock(self, key: WindowKey) -> threading.Lock:
        # a lock pruned while we waited on it is stale; retry with the live one
        while True:
            lock = self._lock_for(key)
            lock.acquire()
            if self._locks.get(key) is lock:
                return lock
            lock.release()

    def prune(self) -> int:
        """Drop expired windows and their locks.

        Returns:
            Number of windows removed
        """
        now = self._clock()
        removed = 0
        with self._locks_guard:
            self._since_prune = 0
            for key, lock in list(self._locks.items()):
                if not lock.acquire(blocking=False):
                    continue
                try:
                    window = self._windows.get(key)
                    if window is None or now >= window.window_start + self.window:
                        self._windows.pop(key, None)
                        del self._locks[key]
                        removed += 1
                finally:
                    lock.release()
        if removed:
            logger.debug("Pruned %d expired rate limit windows", removed)
        return removed

    def try_acquire(self, service: str, user_id: Optional[str] = None) -> RateLimitDecision:
        """Count one call against the current window if there is headroom.

        A denied attempt does not consume a slot.

        Args:
            service: Service id
            user_id: Optional user id for per-user windows

        Returns:
            RateLimitDecision with the window's reset time
        """
        key = (service, user_id)
        limit = self.limit_for(service)
        with self._locks_guard:
            self._since_prune += 1
            due = self._since_prune >= self.prune_every
        if due:
            self.prune()

        lock = self._acquire_key_lock(key)
        try:
            now = self._clock()
            window = self._windows.get(key)
            if window is None or now >= window.window_start + self.window:
                window = RateLimitWindow(count=0, window_start=now, limit=limit)
                self._windows[key] = window

            reset_time = window.window_start + self.window
            if window.count >= window.limit:
                logger.warning(
                    "Rate limit reached for %s (limit %d, resets %s)",
                    service, window.limit, reset_time.isoformat()
                )
                return RateLimitDecision(
                    allowed=False,
                    limit=window.limit,
                    remaining=0,
                    reset_time=reset_time
                )

            window.count += 1
            return RateLimitDecision(
                allowed=True,
                limit=window.limit,
                remaining=window.limit - window.count,
                reset_time=reset_time
            )
        finally:
            lock.release()

    def acquire(self, service: str, user_id: Optional[str] = None) -> RateLimitDecision:
        """Like try_acquire, but raises when the call must not be forwarded.

        Raises:
            RateLimitError: If the window is exhausted
        """
        decision = self.try_acquire(service, user_id)
        if not decision.allowed:
            raise RateLimitError(service, decision.reset_time, decision.limit)
        return decision

    def get_window(self, service: str, user_id: Optional[str] = None) -> Optional[RateLimitWindow]:
        """Read-only snapshot of the current window; None once it has expired."""
        key = (service, user_id)
        lock = self._acquire_key_lock(key)
        try:
            window = self._windows.get(key)
            if window is None or self._clock() >= window.window_start + self.window:
                return None
            return RateLimitWindow(window.count, window.window_start, window.limit)
        finally:
            lock.release()
