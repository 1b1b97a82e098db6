"""
Process-local decision cache.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from shared.logging import get_logger
from .base import DecisionCache
from ..rules.models import AccessCheckResult, ResourceKey, utcnow


@dataclass
class _Entry:
    payload: str
    course_id: Optional[str]
    computed_at: datetime
    expires_at: datetime


class InMemoryDecisionCache(DecisionCache):
    """Thread-safe TTL cache with invalidation stamps and an injectable clock."""

    def __init__(self, ttl_seconds: int = 300, clock: Callable[[], datetime] = utcnow,
                 max_entries: int = 100_000):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self.max_entries = max_entries
        self.logger = get_logger("gating.cache.memory")

        self._lock = threading.Lock()
        self._entries: Dict[Tuple[str, ResourceKey], _Entry] = {}
        self._user_course_stamps: Dict[Tuple[str, str], datetime] = {}
        self._resource_stamps: Dict[ResourceKey, datetime] = {}
        self._course_stamps: Dict[str, datetime] = {}
        self.hits = 0
        self.misses = 0
        self.rejected = 0

    def _is_stale(self, user_id: str, resource: ResourceKey, course_id: Optional[str],
                  computed_at: datetime) -> bool:
        stamps = [self._resource_stamps.get(resource)]
        if course_id is not None:
            stamps.append(self._user_course_stamps.get((user_id, course_id)))
            stamps.append(self._course_stamps.get(course_id))
        return any(stamp is not None and computed_at <= stamp for stamp in stamps)

    async def get(self, user_id: str, resource: ResourceKey) -> Optional[AccessCheckResult]:
        now = self.clock()
        with self._lock:
            entry = self._entries.get((user_id, resource))
            if entry is None:
                self.misses += 1
                return None
            if entry.expires_at <= now or self._is_stale(user_id, resource, entry.course_id, entry.computed_at):
                del self._entries[(user_id, resource)]
                self.misses += 1
                return None
            self.hits += 1
            payload = entry.payload

        return AccessCheckResult.model_validate_json(payload)

    async def put(self, user_id: str, resource: ResourceKey, course_id: Optional[str],
                  result: AccessCheckResult, computed_at: datetime,
                  stale_after: Optional[datetime] = None) -> bool:
        now = self.clock()
        expires_at = now + self.ttl
        if stale_after is not None:
            expires_at = min(expires_at, stale_after)
        payload = result.model_dump_json(by_alias=True)

        with self._lock:
            # Stamps older than one TTL are pruned, so older computations cannot be checked
            if expires_at <= now or computed_at < now - self.ttl:
                self.rejected += 1
                return False
            if self._is_stale(user_id, resource, course_id, computed_at):
                self.rejected += 1
                return False

            if len(self._entries) >= self.max_entries:
                self._evict(now)
            self._entries[(user_id, resource)] = _Entry(payload, course_id, computed_at, expires_at)
            return True

    def _evict(self, now: datetime):
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        while len(self._entries) >= self.max_entries:
            del self._entries[next(iter(self._entries))]
        self._prune_stamps(now)

    def _prune_stamps(self, now: datetime):
        horizon = now - self.ttl
        for stamps in (self._user_course_stamps, self._resource_stamps, self._course_stamps):
            for key in [k for k, stamp in stamps.items() if stamp < horizon]:
                del stamps[key]

    async def invalidate_user_course(self, user_id: str, course_id: str) -> int:
        with self._lock:
            now = self.clock()
            if len(self._user_course_stamps) >= self.max_entries:
                self._prune_stamps(now)
            self._user_course_stamps[(user_id, course_id)] = now
            doomed = [
                key for key, entry in self._entries.items()
                if key[0] == user_id and entry.course_id == course_id
            ]
            for key in doomed:
                del self._entries[key]

        self.logger.debug("Invalidated user course decisions", user_id=user_id, course_id=course_id, count=len(doomed))
        return len(doomed)

    async def invalidate_resource(self, resource: ResourceKey) -> int:
        with self._lock:
            now = self.clock()
            if len(self._resource_stamps) >= self.max_entries:
                self._prune_stamps(now)
            self._resource_stamps[resource] = now
            doomed = [key for key in self._entries if key[1] == resource]
            for key in doomed:
                del self._entries[key]

        self.logger.debug("Invalidated resource decisions", resource=str(resource), count=len(doomed))
        return len(doomed)

    async def invalidate_course(self, course_id: str) -> int:
        with self._lock:
            now = self.clock()
            if len(self._course_stamps) >= self.max_entries:
                self._prune_stamps(now)
            self._course_stamps[course_id] = now
            doomed = [key for key, entry in self._entries.items() if entry.course_id == course_id]
            for key in doomed:
                del self._entries[key]

        self.logger.debug("Invalidated course decisions", course_id=course_id, count=len(doomed))
        return len(doomed)

    async def clear(self) -> None:
        with self._lock:
            now = self.clock()
            # A clear is an invalidation of every resource currently cached
            for _, resource in self._entries:
                self._resource_stamps[resource] = now
            self._entries.clear()

    async def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self.hits + self.misses
            return {
                "backend": "memory",
                "entries": len(self._entries),
                "hits": self.hits,
                "misses": self.misses,
                "rejected_puts": self.rejected,
                "hit_rate": self.hits / total if total else 0.0,
            }
