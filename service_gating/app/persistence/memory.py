"""
In-memory Rule Store for local runs and tests.
"""

from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

from shared.logging import get_logger
from .base import RuleStore
from ..rules.models import AccessControl, ResourceType, rule_sort_key, utcnow


class InMemoryRuleStore(RuleStore):
    """Keeps rules in a dict with a per-resource lookup cache."""

    def __init__(self, rules: Optional[List[AccessControl]] = None):
        self.logger = get_logger("gating.persistence.memory")
        self.rules: Dict[str, AccessControl] = {}
        self.resource_cache: Dict[Tuple[str, str], List[AccessControl]] = {}
        for rule in rules or []:
            self.rules[rule.id] = rule

    async def get_active_rules(self, resource_type: ResourceType, resource_id: str) -> List[AccessControl]:
        cache_key = (ResourceType(resource_type).value, resource_id)
        if cache_key in self.resource_cache:
            return list(self.resource_cache[cache_key])

        rules = sorted(
            (
                rule for rule in self.rules.values()
                if rule.active and rule.resource_key == cache_key
            ),
            key=rule_sort_key
        )
        self.resource_cache[cache_key] = rules
        return list(rules)

    async def get_all_active_rules_for_course(self, course_id: str) -> List[AccessControl]:
        return sorted(
            (rule for rule in self.rules.values() if rule.active and rule.course_id == course_id),
            key=rule_sort_key
        )

    async def get_rule(self, rule_id: str) -> Optional[AccessControl]:
        return self.rules.get(rule_id)

    async def save_rule(self, rule: AccessControl) -> bool:
        self.rules[rule.id] = rule
        self._invalidate_cache()
        self.logger.info("Rule saved", rule_id=rule.id, resource_id=rule.resource_id, type=rule.type.value)
        return True

    async def save_rules(self, rules: List[AccessControl]) -> bool:
        for rule in rules:
            self.rules[rule.id] = rule
        self._invalidate_cache()
        self.logger.info("Rules saved", count=len(rules))
        return True

    async def set_active(self, rule_id: str, active: bool) -> Optional[AccessControl]:
        rule = self.rules.get(rule_id)
        if rule is None:
            return None
        updated = replace(rule, active=active, updated_at=utcnow())
        self.rules[rule_id] = updated
        self._invalidate_cache()
        self.logger.info("Rule active flag changed", rule_id=rule_id, active=active)
        return updated

    async def delete_rules_for_resource(self, resource_type: ResourceType, resource_id: str) -> int:
        key = (ResourceType(resource_type).value, resource_id)
        doomed = [rule_id for rule_id, rule in self.rules.items() if rule.resource_key == key]
        for rule_id in doomed:
            del self.rules[rule_id]
        self._invalidate_cache()
        self.logger.info("Rules deleted for resource", resource_id=resource_id, count=len(doomed))
        return len(doomed)

    async def get_rule_stats(self) -> Dict[str, Any]:
        return {
            "total_rules": len(self.rules),
            "active_rules": len([r for r in self.rules.values() if r.active]),
            "cached_resources": len(self.resource_cache),
            "courses": sorted({r.course_id for r in self.rules.values()}),
        }

    def _invalidate_cache(self):
        self.resource_cache.clear()
