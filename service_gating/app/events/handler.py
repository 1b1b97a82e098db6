"""
Turns invalidation events into decision cache invalidations.
"""

import json
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from shared.logging import get_logger
from shared.errors import ValidationError
from shared.metrics import MetricsCollector
from .models import EnrollmentChanged, ProgressChanged, RuleChanged
from ..cache.base import DecisionCache
from ..rules.models import ResourceKey


class InvalidationHandler:
    """Applies ProgressChanged, RuleChanged and EnrollmentChanged events."""

    def __init__(self, cache: Optional[DecisionCache], metrics: Optional[MetricsCollector] = None):
        self.cache = cache
        self.metrics = metrics
        self.logger = get_logger("gating.events")

    def _count(self, scope: str):
        if self.metrics:
            self.metrics.increment_counter("cache_invalidations_total", scope=scope)

    async def progress_changed(self, event: ProgressChanged) -> int:
        # Course-wide: SEQUENTIAL and PREREQUISITE chains reach other resources
        if self.cache is None:
            return 0
        count = await self.cache.invalidate_user_course(event.user_id, event.course_id)
        self._count("user_course")
        self.logger.info(
            "Progress changed", user_id=event.user_id, course_id=event.course_id,
            resource_id=event.resource_id, invalidated=count
        )
        return count

    async def rule_changed(self, event: RuleChanged) -> int:
        if self.cache is None:
            return 0
        count = await self.cache.invalidate_resource(ResourceKey(event.resource_type.value, event.resource_id))
        self._count("resource")
        if event.course_id is not None:
            # Sequence successors and prerequisite dependants read this resource's rules too
            count += await self.cache.invalidate_course(event.course_id)
            self._count("course")
        self.logger.info(
            "Access rule changed", resource_type=event.resource_type.value,
            resource_id=event.resource_id, course_id=event.course_id, invalidated=count
        )
        return count

    async def enrollment_changed(self, event: EnrollmentChanged) -> int:
        if self.cache is None:
            return 0
        count = await self.cache.invalidate_user_course(event.user_id, event.course_id)
        self._count("user_course")
        self.logger.info("Enrollment changed", user_id=event.user_id, course_id=event.course_id, invalidated=count)
        return count

    async def handle(self, kind: str, payload: Union[bytes, str, Dict[str, Any]]) -> int:
        """Parse and apply a raw event of ``kind`` (progress, rule or enrollment)."""
        handlers = {
            "progress": (ProgressChanged, self.progress_changed),
            "rule": (RuleChanged, self.rule_changed),
            "enrollment": (EnrollmentChanged, self.enrollment_changed),
        }
        if kind not in handlers:
            raise ValidationError(f"Unknown event kind {kind!r}")
        model, apply = handlers[kind]

        try:
            data = json.loads(payload) if isinstance(payload, (bytes, str)) else payload
            event = model.model_validate(data)
        except (ValueError, PydanticValidationError) as e:
            self.logger.warning("Malformed invalidation event", kind=kind, error=str(e))
            raise ValidationError("Malformed invalidation event", {"kind": kind, "error": str(e)}) from e

        return await apply(event)
