"""
Redis decision cache.

Layout (all keys share ``prefix``):

- ``decision:{user}:{kind}:{id}``: JSON ``{result, courseId, computedAt}``
- ``idx:uc:{user}:{course}`` / ``idx:res:{kind}:{id}`` / ``idx:course:{course}``:
  sets of decision keys
- ``stamp:uc:{user}:{course}`` / ``stamp:res:{kind}:{id}`` / ``stamp:course:{course}``:
  epoch seconds of the last invalidation of that scope
"""

import json
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as redis

from shared.logging import get_logger
from shared.errors import AccessLayerException
from .base import DecisionCache
from ..rules.models import AccessCheckResult, ResourceKey, utcnow


class RedisDecisionCache(DecisionCache):

    def __init__(self, redis_url: str, ttl_seconds: int = 300, prefix: str = "gating:",
                 client: Optional[redis.Redis] = None, clock: Callable[[], datetime] = utcnow):
        self.redis_url = redis_url
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix
        self.clock = clock
        self.logger = get_logger("gating.cache.redis")
        self.redis: Optional[redis.Redis] = client
        self.min_ttl = 1

    async def start(self):
        if self.redis is not None:
            return
        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=2,
                retry_on_timeout=True,
                health_check_interval=30
            )
            await self.redis.ping()
            self.logger.info("Redis decision cache started")
        except Exception as e:
            self.logger.error("Failed to start Redis decision cache", error=str(e))
            raise AccessLayerException("REDIS_START_FAILED", str(e))

    async def stop(self):
        if self.redis:
            await self.redis.close()
            self.logger.info("Redis decision cache stopped")

    # --- keys -------------------------------------------------------------

    def _decision_key(self, user_id: str, resource: ResourceKey) -> str:
        return f"{self.prefix}decision:{user_id}:{resource.kind}:{resource.id}"

    def _user_course_index(self, user_id: str, course_id: str) -> str:
        return f"{self.prefix}idx:uc:{user_id}:{course_id}"

    def _resource_index(self, resource: ResourceKey) -> str:
        return f"{self.prefix}idx:res:{resource.kind}:{resource.id}"

    def _course_index(self, course_id: str) -> str:
        return f"{self.prefix}idx:course:{course_id}"

    def _user_course_stamp(self, user_id: str, course_id: str) -> str:
        return f"{self.prefix}stamp:uc:{user_id}:{course_id}"

    def _resource_stamp(self, resource: ResourceKey) -> str:
        return f"{self.prefix}stamp:res:{resource.kind}:{resource.id}"

    def _course_stamp(self, course_id: str) -> str:
        return f"{self.prefix}stamp:course:{course_id}"

    def _stamp_keys(self, user_id: str, resource: ResourceKey, course_id: Optional[str]) -> List[str]:
        keys = [self._resource_stamp(resource)]
        if course_id is not None:
            keys.append(self._user_course_stamp(user_id, course_id))
            keys.append(self._course_stamp(course_id))
        return keys

    async def _is_stale(self, user_id: str, resource: ResourceKey, course_id: Optional[str],
                        computed_at: float) -> bool:
        stamps = await self.redis.mget(self._stamp_keys(user_id, resource, course_id))
        return any(stamp is not None and computed_at <= float(stamp) for stamp in stamps)

    # --- operations -----------------------------------------------------------

    async def get(self, user_id: str, resource: ResourceKey) -> Optional[AccessCheckResult]:
        key = self._decision_key(user_id, resource)
        try:
            cached = await self.redis.get(key)
            if not cached:
                return None

            data = json.loads(cached)
            if await self._is_stale(user_id, resource, data.get("courseId"), data["computedAt"]):
                await self.redis.delete(key)
                return None

            self.logger.debug("Cache hit for decision", cache_key=key)
            return AccessCheckResult.model_validate(data["result"])

        except Exception as e:
            self.logger.error("Error reading cached decision", cache_key=key, error=str(e))
            return None

    async def put(self, user_id: str, resource: ResourceKey, course_id: Optional[str],
                  result: AccessCheckResult, computed_at: datetime,
                  stale_after: Optional[datetime] = None) -> bool:
        key = self._decision_key(user_id, resource)
        now = self.clock()
        ttl = self.ttl_seconds
        if stale_after is not None:
            ttl = min(ttl, int((stale_after - now).total_seconds()))
        if ttl < self.min_ttl or (now - computed_at).total_seconds() > self.ttl_seconds:
            return False

        try:
            computed_ts = computed_at.timestamp()
            if await self._is_stale(user_id, resource, course_id, computed_ts):
                return False

            data = {
                "result": result.model_dump(by_alias=True, mode="json"),
                "courseId": course_id,
                "computedAt": computed_ts,
            }
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.setex(key, ttl, json.dumps(data))
                pipe.sadd(self._resource_index(resource), key)
                pipe.expire(self._resource_index(resource), self.ttl_seconds)
                if course_id is not None:
                    pipe.sadd(self._user_course_index(user_id, course_id), key)
                    pipe.expire(self._user_course_index(user_id, course_id), self.ttl_seconds)
                    pipe.sadd(self._course_index(course_id), key)
                    pipe.expire(self._course_index(course_id), self.ttl_seconds)
                await pipe.execute()

            self.logger.debug("Cached decision", cache_key=key, ttl=ttl)
            return True

        except Exception as e:
            self.logger.error("Error caching decision", cache_key=key, error=str(e))
            return False

    async def _invalidate(self, stamp_key: str, index_key: str) -> int:
        # Stamp first: a concurrent put that read no stamp still loses on the next get
        await self.redis.set(stamp_key, self.clock().timestamp(), ex=self.ttl_seconds)
        members = await self.redis.smembers(index_key)
        await self.redis.delete(index_key, *members)
        return len(members)

    async def invalidate_user_course(self, user_id: str, course_id: str) -> int:
        try:
            count = await self._invalidate(
                self._user_course_stamp(user_id, course_id),
                self._user_course_index(user_id, course_id)
            )
            self.logger.info("Invalidated user course decisions", user_id=user_id, course_id=course_id, count=count)
            return count
        except Exception as e:
            self.logger.error("Error invalidating user course decisions", user_id=user_id,
                              course_id=course_id, error=str(e))
            return 0

    async def invalidate_resource(self, resource: ResourceKey) -> int:
        try:
            count = await self._invalidate(self._resource_stamp(resource), self._resource_index(resource))
            self.logger.info("Invalidated resource decisions", resource=str(resource), count=count)
            return count
        except Exception as e:
            self.logger.error("Error invalidating resource decisions", resource=str(resource), error=str(e))
            return 0

    async def invalidate_course(self, course_id: str) -> int:
        try:
            count = await self._invalidate(self._course_stamp(course_id), self._course_index(course_id))
            self.logger.info("Invalidated course decisions", course_id=course_id, count=count)
            return count
        except Exception as e:
            self.logger.error("Error invalidating course decisions", course_id=course_id, error=str(e))
            return 0

    async def clear(self) -> None:
        try:
            keys = [key async for key in self.redis.scan_iter(match=f"{self.prefix}decision:*")]
            keys += [key async for key in self.redis.scan_iter(match=f"{self.prefix}idx:*")]
            if keys:
                await self.redis.delete(*keys)
            self.logger.info("Decision cache cleared", count=len(keys))
        except Exception as e:
            self.logger.error("Error clearing decision cache", error=str(e))

    async def stats(self) -> Dict[str, Any]:
        try:
            info = await self.redis.info()
            hits = info.get("keyspace_hits", 0)
            misses = info.get("keyspace_misses", 0)
            return {
                "backend": "redis",
                "redis_version": info.get("redis_version"),
                "used_memory": info.get("used_memory_human"),
                "connected_clients": info.get("connected_clients"),
                "keyspace_hits": hits,
                "keyspace_misses": misses,
                "hit_rate": hits / (hits + misses) if hits + misses else 0.0,
            }
        except Exception as e:
            self.logger.error("Error getting cache stats", error=str(e))
            return {"backend": "redis"}

    async def health_check(self) -> bool:
        try:
            await self.redis.ping()
            return True
        except Exception:
            return False
