"""
Shared fixtures for gating service unit tests.
"""

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from service_gating.app.rules.models import (
    AccessControl, AccessControlType, OutlineEntry, ResourceType, parse_configuration,
)


T0 = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock; call it to read, ``advance`` to move forward."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_rule():
    """Factory for active rules with deterministic ids and creation order."""
    counter = itertools.count(1)

    def _make(resource_id, configuration, resource_type=ResourceType.MODULE, course_id="course-1",
              active=True):
        n = next(counter)
        rule_type = AccessControlType(configuration["type"])
        return AccessControl(
            id=f"rule-{n}",
            resource_type=resource_type,
            resource_id=resource_id,
            course_id=course_id,
            type=rule_type,
            configuration=parse_configuration(rule_type, configuration),
            active=active,
            created_at=T0 - timedelta(days=30) + timedelta(seconds=n),
            updated_at=T0 - timedelta(days=30) + timedelta(seconds=n),
        )

    return _make


@pytest.fixture
def course_outline():
    """Two modules with two lessons each, plus a quiz in module 1."""
    return [
        OutlineEntry("MODULE", "m-1", None, 1),
        OutlineEntry("MODULE", "m-2", None, 2),
        OutlineEntry("LESSON", "l-1", "m-1", 1),
        OutlineEntry("LESSON", "l-2", "m-1", 2),
        OutlineEntry("LESSON", "l-3", "m-2", 1),
        OutlineEntry("LESSON", "l-4", "m-2", 2),
        OutlineEntry("QUIZ", "q-1", "m-1", 3),
    ]
