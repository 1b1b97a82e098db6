"""
Decision cache interface.

Entries are keyed by ``(user_id, resource)`` and remember the course they
belong to and when they were computed. Invalidations stamp their scope
with the invalidation time; an entry or a ``put`` computed at or before a
covering stamp is stale, so an invalidation always beats a concurrent
write of an older decision.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

from ..rules.models import AccessCheckResult, ResourceKey


class DecisionCache(ABC):

    async def start(self):
        """Acquire connections."""

    async def stop(self):
        """Release connections."""

    @abstractmethod
    async def get(self, user_id: str, resource: ResourceKey) -> Optional[AccessCheckResult]:
        ...

    @abstractmethod
    async def put(self, user_id: str, resource: ResourceKey, course_id: Optional[str],
                  result: AccessCheckResult, computed_at: datetime,
                  stale_after: Optional[datetime] = None) -> bool:
        """Store a decision; returns False when it was rejected as stale."""

    @abstractmethod
    async def invalidate_user_course(self, user_id: str, course_id: str) -> int:
        ...

    @abstractmethod
    async def invalidate_resource(self, resource: ResourceKey) -> int:
        ...

    @abstractmethod
    async def invalidate_course(self, course_id: str) -> int:
        """Drop every decision of a course, for all users."""

    @abstractmethod
    async def clear(self) -> None:
        ...

    @abstractmethod
    async def stats(self) -> Dict[str, Any]:
        ...

    async def health_check(self) -> bool:
        return True
