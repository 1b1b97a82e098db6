"""
In-memory Progress Oracle for local runs and tests.
"""

from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, Optional, Tuple

from shared.errors import ExternalServiceError
from .base import ProgressOracle
from ..rules.models import OutlineEntry, ProgressStatus, ResourceKey, UserContext


class InMemoryProgressOracle(ProgressOracle):
    """Course outlines plus per-user contexts, mutated through helper methods."""

    def __init__(self):
        self.outlines: Dict[str, list] = {}
        self.contexts: Dict[Tuple[str, str], UserContext] = {}
        self.available = True

    def set_outline(self, course_id: str, entries: Iterable[OutlineEntry]):
        self.outlines[course_id] = list(entries)
        for key, context in list(self.contexts.items()):
            if key[1] == course_id:
                self.contexts[key] = replace(context, outline=list(self.outlines[course_id]))

    def enroll(self, user_id: str, course_id: str, enrolled_at: Optional[datetime],
               group_ids: Iterable[str] = ()):
        current = self._context(user_id, course_id)
        self.contexts[(user_id, course_id)] = replace(
            current, enrolled_at=enrolled_at, group_ids=frozenset(group_ids) or current.group_ids
        )

    def set_groups(self, user_id: str, course_id: str, group_ids: Iterable[str]):
        current = self._context(user_id, course_id)
        self.contexts[(user_id, course_id)] = replace(current, group_ids=frozenset(group_ids))

    def record_progress(self, user_id: str, course_id: str, resource_type: str, resource_id: str,
                        status: ProgressStatus):
        current = self._context(user_id, course_id)
        completion = dict(current.completion)
        completion[ResourceKey(resource_type, resource_id)] = status
        self.contexts[(user_id, course_id)] = replace(current, completion=completion)

    def record_quiz_score(self, user_id: str, course_id: str, quiz_id: str, score: float):
        current = self._context(user_id, course_id)
        scores = dict(current.quiz_scores)
        scores[quiz_id] = max(score, scores.get(quiz_id, score))
        self.contexts[(user_id, course_id)] = replace(current, quiz_scores=scores)

    def _context(self, user_id: str, course_id: str) -> UserContext:
        existing = self.contexts.get((user_id, course_id))
        if existing is not None:
            return existing
        return UserContext(user_id=user_id, course_id=course_id, outline=list(self.outlines.get(course_id, [])))

    async def get_user_context(self, user_id: str, course_id: str) -> UserContext:
        if not self.available:
            raise ExternalServiceError("progress_service", "unavailable")
        return self._context(user_id, course_id)

    async def health_check(self) -> bool:
        return self.available
