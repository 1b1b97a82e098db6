"""
Cache invalidation events.

Payloads are JSON with camelCase keys, whether they arrive from Kafka or
through the HTTP webhooks.
"""

from typing import Optional

from ..rules.models import ResourceType, WireModel


class ProgressChanged(WireModel):
    user_id: str
    course_id: str
    resource_id: Optional[str] = None


class RuleChanged(WireModel):
    """``courseId`` widens the invalidation to every decision in the course."""
    resource_type: ResourceType
    resource_id: str
    course_id: Optional[str] = None


class EnrollmentChanged(WireModel):
    user_id: str
    course_id: str


class InvalidationResponse(WireModel):
    event: str
    invalidated: int
