"""
Content access gating service.
"""

import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional

from fastapi import Query

from shared.base_service import BaseService
from shared.config import GatingConfig
from shared.errors import NotFoundError, ServiceError
from shared.logging import set_resource_context, set_user_context

from .cache.base import DecisionCache
from .cache.memory import InMemoryDecisionCache
from .cache.redis_cache import RedisDecisionCache
from .events.consumer import InvalidationConsumer
from .events.handler import InvalidationHandler
from .events.models import EnrollmentChanged, InvalidationResponse, ProgressChanged, RuleChanged
from .persistence.base import RuleStore
from .persistence.memory import InMemoryRuleStore
from .persistence.postgres import PostgresRuleStore
from .progress.base import ProgressOracle
from .progress.client import HttpProgressOracle
from .progress.memory import InMemoryProgressOracle
from .rules.engine import GatingEngine
from .rules.evaluators import CustomRuleRegistry
from .rules.graph import GraphValidator
from .rules.models import (
    AccessCheckRequest, AccessCheckResult, AccessControl, AccessControlRequest, AccessControlResponse,
    AccessControlUpdateRequest, BatchAccessResponse, BulkAccessControlRequest, ConfigurationError, ResourceType,
    RuleListResponse, dump_configuration, parse_configuration, utcnow,
)


class GatingService(BaseService):
    """Gating service implementation.

    Backends come from ``GatingConfig`` unless passed in explicitly.
    """

    def __init__(self, config: Optional[GatingConfig] = None,
                 rule_store: Optional[RuleStore] = None,
                 progress_oracle: Optional[ProgressOracle] = None,
                 cache: Optional[DecisionCache] = None,
                 custom_rules: Optional[CustomRuleRegistry] = None,
                 clock: Callable[[], datetime] = utcnow):
        super().__init__(config)

        self.rule_store = rule_store or self._build_rule_store()
        self.progress_oracle = progress_oracle or self._build_progress_oracle()
        self.cache = cache or self._build_cache(clock)
        self.clock = clock

        self.engine = GatingEngine(
            self.rule_store,
            self.progress_oracle,
            cache=self.cache,
            custom_rules=custom_rules,
            clock=clock,
            upstream_timeout=self.config.upstream_timeout_seconds,
            metrics=self.metrics
        )
        self.validator = GraphValidator()
        self.invalidation = InvalidationHandler(self.cache, self.metrics)
        self.consumer: Optional[InvalidationConsumer] = None
        if self.config.enable_event_consumer:
            self.consumer = InvalidationConsumer(
                self.config.kafka_bootstrap,
                self.config.kafka_group_id,
                self.invalidation,
                topics={
                    self.config.progress_topic: "progress",
                    self.config.rule_topic: "rule",
                    self.config.enrollment_topic: "enrollment",
                }
            )

        self._setup_gating_routes()

    def _build_rule_store(self) -> RuleStore:
        if self.config.rule_store_backend == "memory":
            return InMemoryRuleStore()
        return PostgresRuleStore(self.config.postgres_dsn)

    def _build_progress_oracle(self) -> ProgressOracle:
        if self.config.progress_backend == "memory":
            return InMemoryProgressOracle()
        return HttpProgressOracle(self.config.progress_service_url, timeout=self.config.upstream_timeout_seconds)

    def _build_cache(self, clock: Callable[[], datetime]) -> DecisionCache:
        if self.config.cache_backend == "memory":
            return InMemoryDecisionCache(self.config.decision_ttl_seconds, clock=clock)
        return RedisDecisionCache(self.config.redis_url, self.config.decision_ttl_seconds, clock=clock)

    async def _require_rule(self, rule_id: str) -> AccessControl:
        rule = await self.rule_store.get_rule(rule_id)
        if rule is None:
            raise NotFoundError("Access rule not found", {"rule_id": rule_id})
        return rule

    async def _check_graph(self, rule: AccessControl):
        if not rule.active or not rule.prerequisite_edges():
            return
        existing = await self.rule_store.get_all_active_rules_for_course(rule.course_id)
        self.validator.validate_rules(rule.course_id, existing, rule)

    async def _persist(self, rule: AccessControl):
        if not await self.rule_store.save_rule(rule):
            raise ServiceError("Failed to save access rule", {"rule_id": rule.id})
        await self._rule_changed(rule.resource_type, rule.resource_id, rule.course_id)

    async def _rule_changed(self, resource_type: ResourceType, resource_id: str, course_id: Optional[str]):
        await self.invalidation.rule_changed(RuleChanged(
            resource_type=resource_type, resource_id=resource_id, course_id=course_id
        ))

    def _new_rule(self, request: AccessControlRequest, now: datetime) -> AccessControl:
        return AccessControl(
            id=str(uuid.uuid4()),
            resource_type=request.resource_type,
            resource_id=request.resource_id,
            course_id=request.course_id,
            type=request.type,
            configuration=parse_configuration(request.type, request.configuration),
            active=request.active,
            created_by_id=request.created_by_id,
            created_at=now,
            updated_at=now
        )

    def _setup_gating_routes(self):
        """Set up gating-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": self.service_name,
                "message": "LMS - Content Access Gating Service",
                "version": "1.0.0",
                "capabilities": ["rule_evaluation", "prerequisite_graph", "decision_cache"]
            }

        @self.app.post("/access/check", response_model=AccessCheckResult)
        async def check_access(request: AccessCheckRequest):
            """Decide whether a user may open a module or lesson."""
            set_user_context(user_id=request.user_id)
            set_resource_context(request.resource_type.value, request.resource_id)
            return await self.engine.check_access(
                request.user_id, request.resource_type, request.resource_id, strict=request.strict
            )

        @self.app.get("/access/courses/{course_id}/users/{user_id}", response_model=BatchAccessResponse)
        async def check_course_access(course_id: str, user_id: str, strict: bool = Query(False)):
            """Decide every module and lesson of a course for one user."""
            set_user_context(user_id=user_id, course_id=course_id)
            results = await self.engine.check_access_batch(user_id, course_id, strict=strict)
            return BatchAccessResponse(user_id=user_id, course_id=course_id, results=results)

        @self.app.get("/access/courses/{course_id}/rules", response_model=RuleListResponse)
        async def list_course_rules(course_id: str):
            """List the active rules of a course."""
            rules = await self.rule_store.get_all_active_rules_for_course(course_id)
            return RuleListResponse(
                rules=[AccessControlResponse.from_rule(rule) for rule in rules],
                total=len(rules)
            )

        @self.app.post("/access/rules", response_model=AccessControlResponse, status_code=201)
        async def create_rule(request: AccessControlRequest):
            """Create an access rule."""
            rule = self._new_rule(request, self.clock())
            await self._check_graph(rule)
            await self._persist(rule)

            self.logger.info("Access rule created", rule_id=rule.id, resource_id=rule.resource_id, type=rule.type.value)
            return AccessControlResponse.from_rule(rule)

        @self.app.post("/access/rules/bulk", response_model=RuleListResponse, status_code=201)
        async def create_rules(request: BulkAccessControlRequest):
            """Create several access rules; nothing is stored unless every rule is valid."""
            now = self.clock()
            rules = [self._new_rule(item, now) for item in request.access_controls]

            for course_id in dict.fromkeys(rule.course_id for rule in rules):
                candidates = [rule for rule in rules if rule.course_id == course_id]
                if any(rule.active and rule.prerequisite_edges() for rule in candidates):
                    existing = await self.rule_store.get_all_active_rules_for_course(course_id)
                    self.validator.validate_batch(course_id, existing, [r for r in candidates if r.active])

            if not await self.rule_store.save_rules(rules):
                raise ServiceError("Failed to save access rules", {"count": len(rules)})
            touched = dict.fromkeys((rule.resource_type, rule.resource_id, rule.course_id) for rule in rules)
            for resource_type, resource_id, course_id in touched:
                await self._rule_changed(resource_type, resource_id, course_id)

            self.logger.info("Access rules created in bulk", count=len(rules), resources=len(touched))
            return RuleListResponse(
                rules=[AccessControlResponse.from_rule(rule) for rule in rules],
                total=len(rules)
            )

        @self.app.put("/access/rules/{rule_id}", response_model=AccessControlResponse)
        async def update_rule(rule_id: str, request: AccessControlUpdateRequest):
            """Edit an access rule."""
            existing = await self._require_rule(rule_id)
            rule_type = request.type or existing.type

            data = request.configuration
            if data is None:
                if existing.configuration is None:
                    raise ConfigurationError("stored configuration is invalid; a new configuration is required")
                data = dump_configuration(existing.configuration)

            rule = replace(
                existing,
                type=rule_type,
                configuration=parse_configuration(rule_type, data),
                active=existing.active if request.active is None else request.active,
                config_error=None,
                updated_at=self.clock()
            )
            await self._check_graph(rule)
            await self._persist(rule)

            self.logger.info("Access rule updated", rule_id=rule.id, type=rule.type.value, active=rule.active)
            return AccessControlResponse.from_rule(rule)

        @self.app.post("/access/rules/{rule_id}/disable", response_model=AccessControlResponse)
        async def disable_rule(rule_id: str):
            """Soft-disable an access rule."""
            rule = await self.rule_store.set_active(rule_id, False)
            if rule is None:
                raise NotFoundError("Access rule not found", {"rule_id": rule_id})
            await self._rule_changed(rule.resource_type, rule.resource_id, rule.course_id)
            return AccessControlResponse.from_rule(rule)

        @self.app.delete("/access/resources/{resource_type}/{resource_id}/rules")
        async def delete_resource_rules(resource_type: ResourceType, resource_id: str):
            """Remove every rule of a deleted module or lesson."""
            existing = await self.rule_store.get_active_rules(resource_type, resource_id)
            deleted = await self.rule_store.delete_rules_for_resource(resource_type, resource_id)
            await self._rule_changed(resource_type, resource_id, existing[0].course_id if existing else None)
            return {"deleted": deleted}

        @self.app.post("/events/progress", response_model=InvalidationResponse)
        async def progress_changed(event: ProgressChanged):
            """Progress webhook."""
            count = await self.invalidation.progress_changed(event)
            return InvalidationResponse(event="progress", invalidated=count)

        @self.app.post("/events/rules", response_model=InvalidationResponse)
        async def rule_changed(event: RuleChanged):
            """Rule change webhook."""
            count = await self.invalidation.rule_changed(event)
            return InvalidationResponse(event="rule", invalidated=count)

        @self.app.post("/events/enrollment", response_model=InvalidationResponse)
        async def enrollment_changed(event: EnrollmentChanged):
            """Enrollment webhook."""
            count = await self.invalidation.enrollment_changed(event)
            return InvalidationResponse(event="enrollment", invalidated=count)

        @self.app.get("/access/stats")
        async def get_stats():
            """Get gating service statistics."""
            return {
                "cache": await self.cache.stats(),
                "rules": await self.rule_store.get_rule_stats(),
                "event_consumer": self.consumer.get_subscribed_topics() if self.consumer else [],
                "timestamp": utcnow().isoformat()
            }

    def _dependency_checks(self):
        return {
            "rule_store": self.rule_store.health_check,
            "decision_cache": self.cache.health_check,
            "progress_service": self.progress_oracle.health_check,
        }

    async def start(self):
        """Start gating service components."""
        await self.rule_store.start()
        await self.cache.start()
        await self.progress_oracle.start()
        if self.consumer:
            await self.consumer.start()
        self.logger.info("Gating service started")

    async def stop(self):
        """Stop gating service components."""
        if self.consumer:
            await self.consumer.stop()
        await self.progress_oracle.stop()
        await self.cache.stop()
        await self.rule_store.stop()
        self.logger.info("Gating service stopped")


def create_app():
    """Create gating service application."""
    service = GatingService()
    return service.app


if __name__ == "__main__":
    service = GatingService()
    service.run()
