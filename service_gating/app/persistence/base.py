"""
Rule Store interface.

The engine only reads active rules. The write methods exist for the rule
authoring path, which validates configurations and prerequisite cycles
before calling them.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..rules.models import AccessControl, ResourceType


class RuleStore(ABC):

    async def start(self):
        """Acquire connections."""

    async def stop(self):
        """Release connections."""

    @abstractmethod
    async def get_active_rules(self, resource_type: ResourceType, resource_id: str) -> List[AccessControl]:
        ...

    @abstractmethod
    async def get_all_active_rules_for_course(self, course_id: str) -> List[AccessControl]:
        ...

    @abstractmethod
    async def get_rule(self, rule_id: str) -> Optional[AccessControl]:
        ...

    @abstractmethod
    async def save_rule(self, rule: AccessControl) -> bool:
        """Insert or update a rule."""

    @abstractmethod
    async def save_rules(self, rules: List[AccessControl]) -> bool:
        """Insert or update several rules in one transaction."""

    @abstractmethod
    async def set_active(self, rule_id: str, active: bool) -> Optional[AccessControl]:
        """Soft-enable/disable a rule; returns the updated rule or None."""

    @abstractmethod
    async def delete_rules_for_resource(self, resource_type: ResourceType, resource_id: str) -> int:
        """Hard-delete every rule of a deleted resource."""

    @abstractmethod
    async def get_rule_stats(self) -> Dict[str, Any]:
        ...

    async def health_check(self) -> bool:
        return True
