"""
Progress Oracle interface and its JSON payload.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import Field, field_validator

from ..rules.models import OutlineEntry, ProgressStatus, ResourceKey, UserContext, WireModel


class ProgressOracle(ABC):
    """Read-only source of a user's progress and enrollment in a course."""

    async def start(self):
        """Acquire connections."""

    async def stop(self):
        """Release connections."""

    @abstractmethod
    async def get_user_context(self, user_id: str, course_id: str) -> UserContext:
        ...

    async def health_check(self) -> bool:
        return True


class CompletionRecord(WireModel):
    resource_type: str
    resource_id: str
    status: ProgressStatus


class OutlineRecord(WireModel):
    resource_type: str
    resource_id: str
    parent_id: Optional[str] = None
    order: int = 0


class UserContextPayload(WireModel):
    """Body returned by the progress service."""
    user_id: str
    course_id: str
    enrolled_at: Optional[datetime] = None
    group_ids: List[str] = Field(default_factory=list)
    completion: List[CompletionRecord] = Field(default_factory=list)
    outline: List[OutlineRecord] = Field(default_factory=list)
    quiz_scores: Dict[str, float] = Field(default_factory=dict)

    @field_validator("enrolled_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def to_context(self) -> UserContext:
        return UserContext(
            user_id=self.user_id,
            course_id=self.course_id,
            enrolled_at=self.enrolled_at,
            group_ids=frozenset(self.group_ids),
            completion={
                ResourceKey(record.resource_type, record.resource_id): record.status
                for record in self.completion
            },
            outline=[
                OutlineEntry(
                    resource_type=record.resource_type,
                    resource_id=record.resource_id,
                    parent_id=record.parent_id,
                    order=record.order,
                )
                for record in self.outline
            ],
            quiz_scores=dict(self.quiz_scores),
        )
