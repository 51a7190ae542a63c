"""
TTL cache for idempotent external reads.

Entries live for a fixed TTL from write time; hits never extend it. Session
or PHI-bearing values are never stored.
"""

import asyncio
import hashlib
import json
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

_MISSING = object()


class _FetchAbandoned(Exception):
    """Set on an in-flight fetch whose owner was cancelled."""


@dataclass
class CacheEntry:
    key: str
    value: Any
    cached_at: datetime
    expires_at: datetime
    hit_count: int = 0


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    if isinstance(value, Mapping):
        return {str(k): _normalize(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted(_normalize(v) for v in value)
    return value


def fingerprint(operation: str, params: Optional[Mapping[str, Any]] = None) -> str:
    """Stable hash of an operation name and its normalized parameters.

    Keys are sorted, None values dropped and strings case-folded, so
    equivalent requests map to the same cache key across processes.
    """
    payload = json.dumps(
        {"operation": operation.strip().lower(), "params": _normalize(params or {})},
        sort_keys=True,
        separators=(",", ":"),
        default=str
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class CacheManager:
    """In-process TTL cache with LRU fallback and single-flight fetches."""

    def __init__(
        self,
        default_ttl: int = 3600,
        max_entries: int = 1000,
        clock: Callable[[], datetime] = datetime.now
    ):
        if default_ttl <= 0:
            raise ValueError("default_ttl must be > 0")
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._inflight: Dict[str, asyncio.Future] = {}
        self._followers: Dict[str, int] = {}
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    fingerprint = staticmethod(fingerprint)

    def _lookup(self, key: str) -> Any:
        # caller holds self._lock
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return _MISSING
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            self.misses += 1
            return _MISSING
        entry.hit_count += 1
        self.hits += 1
        self._entries.move_to_end(key)
        return entry.value

    def get(self, key: str, default: Any = None) -> Any:
        """Return the cached value, or ``default`` on a miss or expiry."""
        with self._lock:
            value = self._lookup(key)
        return default if value is _MISSING else value

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Peek at an entry's metadata without counting a hit."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._clock() >= entry.expires_at:
                return None
            return CacheEntry(entry.key, entry.value, entry.cached_at, entry.expires_at, entry.hit_count)

    def set(self, key: str, value: Any, ttl: Optional[int] = None, sensitive: bool = False) -> bool:
        """Store a value for a fixed TTL.

        Args:
            key: Cache key, usually from fingerprint()
            value: Value to store
            ttl: Seconds to live (defaults to default_ttl)
            sensitive: Session-specific or PHI-bearing values are refused

        Returns:
            True if the value was stored
        """
        if sensitive:
            logger.debug("Refusing to cache sensitive value for key %s", key[:12])
            return False
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be > 0")

        now = self._clock()
        with self._lock:
            self._entries[key] = CacheEntry(
                key=key,
                value=value,
                cached_at=now,
                expires_at=now + timedelta(seconds=ttl)
            )
            self._entries.move_to_end(key)
            if len(self._entries) > self.max_entries:
                self._sweep_locked(now)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                self.evictions += 1
        return True

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def _sweep_locked(self, now: datetime) -> int:
        expired = [k for k, e in self._entries.items() if now >= e.expires_at]
        for k in expired:
            del self._entries[k]
        self.evictions += len(expired)
        return len(expired)

    def sweep(self) -> int:
        """Drop expired entries. Safe to run periodically alongside traffic.

        Returns:
            Number of entries removed
        """
        with self._lock:
            removed = self._sweep_locked(self._clock())
        if removed:
            logger.debug("Cache sweep removed %d expired entries", removed)
        return removed

    async def get_or_fetch(
        self,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
        ttl: Optional[int] = None,
        sensitive: bool = False
    ) -> Any:
        """Return a cached value or run ``fetch`` once for all concurrent callers.

        Callers that join an in-flight fetch are counted as cache hits. A
        failed fetch is not cached; its error reaches every waiter. If the
        caller running the fetch is cancelled, joined callers start over
        with their own fetch instead of inheriting the cancellation.

        Raises:
            ValueError: If ttl is not positive; checked before anything is fetched
        """
        if ttl is not None and ttl <= 0:
            raise ValueError("ttl must be > 0")

        while True:
            with self._lock:
                value = self._lookup(key)
                if value is not _MISSING:
                    return value
                pending = self._inflight.get(key)
                if pending is None:
                    pending = asyncio.get_running_loop().create_future()
                    self._inflight[key] = pending
                    self._followers[key] = 0
                    break
                # the miss counted above belongs to the leader's fetch
                self.misses -= 1
                self.hits += 1
                self._followers[key] += 1

            try:
                return await asyncio.shield(pending)
            except _FetchAbandoned:
                with self._lock:
                    self.hits -= 1
                logger.debug("In-flight fetch for key %s was abandoned, retrying", key[:12])

        try:
            result = await fetch()
        except asyncio.CancelledError:
            self._finish_inflight(key)
            pending.set_exception(_FetchAbandoned())
            pending.exception()
            raise
        except Exception as error:
            self._finish_inflight(key)
            pending.set_exception(error)
            # mark retrieved so a failure nobody joined doesn't warn at collection
            pending.exception()
            raise

        try:
            self.set(key, result, ttl=ttl, sensitive=sensitive)
        finally:
            followers = self._finish_inflight(key)
            pending.set_result(result)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                entry.hit_count += followers
        return result

    def _finish_inflight(self, key: str) -> int:
        with self._lock:
            self._inflight.pop(key, None)
            return self._followers.pop(key, 0)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
            }
