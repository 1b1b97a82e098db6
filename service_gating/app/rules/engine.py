"""
Gating engine: decides whether a user may open a MODULE or LESSON.

Every active rule of a resource must pass (AND). Anything that goes wrong
while deciding resolves to a locked result with reason "evaluation error";
only strict callers see the underlying exception.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple, TypeVar, Union

from shared.logging import get_logger
from shared.errors import ExternalServiceError
from shared.metrics import MetricsCollector
from shared.tracing import get_tracer
from .evaluators import (
    CustomRuleRegistry, EvaluationContext, RuleEvaluator, SequenceState, build_evaluators,
)
from .graph import PrerequisiteGraph
from .models import (
    AccessCheckResult, AccessControl, AccessControlType, ConfigurationError, PartialDecision,
    ProgressStatus, RequiredAction, RequiredActionType, ResourceKey, ResourceType, SequentialConfig,
    UserContext, access_state, rule_sort_key, utcnow,
)
from ..cache.base import DecisionCache
from ..persistence.base import RuleStore
from ..progress.base import ProgressOracle


T = TypeVar("T")

EVALUATION_ERROR = "evaluation error"
NO_RESTRICTIONS = "no restrictions"


class UpstreamUnavailableError(ExternalServiceError):
    """The Rule Store or the Progress Oracle failed or timed out."""

    def __init__(self, service: str, message: str = "unavailable"):
        super().__init__(service, message)
        self.code = "UPSTREAM_UNAVAILABLE"


@dataclass
class Decision:
    """A computed result plus what the cache needs to know about it."""
    result: AccessCheckResult
    course_id: Optional[str] = None
    opened_at: Optional[datetime] = None
    stale_after: Optional[datetime] = None


def evaluation_error_result() -> AccessCheckResult:
    return AccessCheckResult(
        has_access=False,
        reason=EVALUATION_ERROR,
        required_actions=[RequiredAction(
            type=RequiredActionType.OTHER,
            description="Access could not be determined right now; try again shortly"
        )]
    )


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    return value.astimezone(timezone.utc) if value is not None else None


def combine(partials: List[PartialDecision]) -> AccessCheckResult:
    """AND-combine per-rule verdicts into one result."""
    failed = [p for p in partials if not p.satisfied]
    if not failed:
        return AccessCheckResult(has_access=True)

    unlocks_at = None
    if all(p.unlocks_at is not None for p in failed):
        unlocks_at = _utc(min(p.unlocks_at for p in failed))

    actions: List[RequiredAction] = []
    seen: Set[Tuple[RequiredActionType, Optional[str]]] = set()
    for partial in failed:
        for action in partial.required_actions:
            key = (action.type, action.resource_id)
            if key not in seen:
                seen.add(key)
                actions.append(action)

    if unlocks_at is None and not actions:
        actions.append(RequiredAction(
            type=RequiredActionType.OTHER,
            description="Contact the course instructor for access"
        ))

    return AccessCheckResult(
        has_access=False,
        reason=failed[0].reason or "Access denied",
        unlocks_at=unlocks_at,
        required_actions=actions
    )


class _CourseEvaluation:
    """Decisions for one user in one course at one instant.

    Predecessor decisions needed by SEQUENTIAL grace periods are memoized,
    and a visiting set stops a chain that loops back on itself.
    """

    def __init__(self, engine: "GatingEngine", user: UserContext, now: datetime,
                 course_rules: Iterable[AccessControl]):
        self.engine = engine
        self.user = user
        self.now = now
        self.rules_by_resource: Dict[ResourceKey, List[AccessControl]] = {}
        for rule in sorted(course_rules, key=rule_sort_key):
            if rule.active:
                self.rules_by_resource.setdefault(rule.resource_key, []).append(rule)
        self.graph = PrerequisiteGraph.from_rules(
            rule for rules in self.rules_by_resource.values() for rule in rules
        )
        self._memo: Dict[ResourceKey, Decision] = {}
        self._visiting: Set[ResourceKey] = set()

    def decide(self, key: ResourceKey, rules: Optional[List[AccessControl]] = None) -> Decision:
        if key in self._memo:
            return self._memo[key]
        if rules is None:
            rules = self.rules_by_resource.get(key, [])
        else:
            rules = sorted(rules, key=rule_sort_key)

        if not rules:
            decision = Decision(
                result=AccessCheckResult(has_access=True, reason=NO_RESTRICTIONS),
                opened_at=self.user.enrolled_at
            )
            self._memo[key] = decision
            return decision

        self._warm_predecessors(key, rules)

        self._visiting.add(key)
        try:
            partials = [self._evaluate_rule(rule, key) for rule in rules]
        finally:
            self._visiting.discard(key)

        result = combine(partials)
        decision = Decision(
            result=result,
            course_id=self.user.course_id,
            opened_at=self._opened_at(partials) if result.has_access else None,
            stale_after=self._stale_after(partials)
        )
        self._memo[key] = decision
        return decision

    def _needs_predecessor(self, rules: List[AccessControl]) -> bool:
        return any(
            isinstance(rule.configuration, SequentialConfig)
            and rule.configuration.require_previous
            and rule.configuration.grace_period is not None
            for rule in rules
        )

    def _warm_predecessors(self, key: ResourceKey, rules: List[AccessControl]):
        # Decide the chain front to back so long sequences never recurse deeply
        if not self._needs_predecessor(rules):
            return
        chain: List[ResourceKey] = []
        seen = {key}
        current = self.user.predecessor_of(key)
        while current is not None and current not in seen and current not in self._memo:
            chain.append(current)
            seen.add(current)
            if not self._needs_predecessor(self.rules_by_resource.get(current, [])):
                break
            current = self.user.predecessor_of(current)
        for predecessor in reversed(chain):
            self.decide(predecessor)

    def _sequence_state(self, key: ResourceKey, configuration: SequentialConfig) -> SequenceState:
        predecessor = self.user.predecessor_of(key)
        if predecessor is None:
            return SequenceState()

        state = SequenceState(predecessor=predecessor, status=self.user.status_of(predecessor))
        if configuration.grace_period is None or state.status == ProgressStatus.COMPLETED:
            return state
        if predecessor in self._visiting:
            state.cyclic = True
            return state

        previous = self.decide(predecessor)
        if previous.result.has_access:
            # None when the predecessor opened at an unknown instant
            state.opened_at = previous.opened_at
        else:
            state.unlocks_at = previous.result.unlocks_at
        return state

    def _evaluate_rule(self, rule: AccessControl, key: ResourceKey) -> PartialDecision:
        logger = self.engine.logger
        problem = rule.configuration_problem()
        evaluator = self.engine.evaluators.get(rule.type)
        if problem is None and evaluator is None:
            problem = f"no evaluator for rule type {rule.type.value}"
        if problem is not None:
            logger.warning("Misconfigured access rule", rule_id=rule.id, problem=problem)
            self.engine.metrics.increment_counter("evaluation_errors_total", kind="configuration")
            return self._misconfigured(rule)

        context = EvaluationContext(user=self.user, now=self.now, resource=key)
        try:
            if rule.type == AccessControlType.SEQUENTIAL:
                context.sequence = self._sequence_state(key, rule.configuration)
            elif rule.type == AccessControlType.PREREQUISITE:
                context.in_prerequisite_cycle = self.graph.on_cycle(key)
            return evaluator.evaluate(rule.configuration, context)
        except ConfigurationError as e:
            logger.warning("Misconfigured access rule", rule_id=rule.id, problem=e.message)
            self.engine.metrics.increment_counter("evaluation_errors_total", kind="configuration")
            return self._misconfigured(rule)
        except Exception as e:
            logger.error("Rule evaluation failed", rule_id=rule.id, rule_type=rule.type.value, error=str(e))
            self.engine.metrics.increment_counter("evaluation_errors_total", kind="evaluator")
            return PartialDecision(
                satisfied=False,
                reason=EVALUATION_ERROR,
                required_actions=list(evaluation_error_result().required_actions)
            )

    @staticmethod
    def _misconfigured(rule: AccessControl) -> PartialDecision:
        return PartialDecision(
            satisfied=False,
            reason=EVALUATION_ERROR,
            required_actions=[RequiredAction(
                type=RequiredActionType.OTHER,
                resource_id=rule.resource_id,
                resource_type=rule.resource_type.value,
                description="An access rule on this content is misconfigured; contact the course author"
            )]
        )

    def _opened_at(self, partials: List[PartialDecision]) -> Optional[datetime]:
        if not all(p.open_time_known for p in partials):
            return None
        candidates = [_utc(p.opened_at) for p in partials if p.opened_at is not None]
        if self.user.enrolled_at is not None:
            candidates.append(_utc(self.user.enrolled_at))
        return max(candidates) if candidates else None

    def _stale_after(self, partials: List[PartialDecision]) -> Optional[datetime]:
        boundaries = [
            _utc(p.unlocks_at) if not p.satisfied else _utc(p.valid_until)
            for p in partials
        ]
        future = [b for b in boundaries if b is not None and b > self.now]
        return min(future) if future else None


class GatingEngine:
    """Combines rules, user progress and the decision cache."""

    def __init__(self, rule_store: RuleStore, progress_oracle: ProgressOracle,
                 cache: Optional[DecisionCache] = None,
                 custom_rules: Optional[CustomRuleRegistry] = None,
                 evaluators: Optional[Dict[AccessControlType, RuleEvaluator]] = None,
                 clock: Callable[[], datetime] = utcnow,
                 upstream_timeout: float = 2.0,
                 metrics: Optional[MetricsCollector] = None):
        self.rule_store = rule_store
        self.progress_oracle = progress_oracle
        self.cache = cache
        self.evaluators = evaluators if evaluators is not None else build_evaluators(custom_rules)
        self.clock = clock
        self.upstream_timeout = upstream_timeout
        self.metrics = metrics or MetricsCollector("gating")
        self.logger = get_logger("gating.engine")
        self.tracer = get_tracer("gating.engine")

    async def _read(self, awaitable: Awaitable[T], service: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.upstream_timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailableError(service, "timed out") from e
        except UpstreamUnavailableError:
            raise
        except Exception as e:
            raise UpstreamUnavailableError(service, str(e)) from e

    async def _course_rules(self, course_id: str) -> List[AccessControl]:
        return await self._read(self.rule_store.get_all_active_rules_for_course(course_id), "rule_store")

    async def _user_context(self, user_id: str, course_id: str) -> UserContext:
        return await self._read(self.progress_oracle.get_user_context(user_id, course_id), "progress_service")

    async def check_access(self, user_id: str, resource_type: Union[ResourceType, str], resource_id: str,
                           strict: bool = False) -> AccessCheckResult:
        """Decide access to one resource, consulting the cache first."""
        key = ResourceKey(ResourceType(resource_type).value, resource_id)
        start_time = time.time()

        with self.tracer.start_as_current_span("gating.check_access") as span:
            span.set_attribute("gating.resource", str(key))

            if self.cache is not None:
                cached = await self.cache.get(user_id, key)
                if cached is not None:
                    self.metrics.increment_counter("decision_cache_total", outcome="hit")
                    self._record(cached, "single", start_time)
                    return cached
                self.metrics.increment_counter("decision_cache_total", outcome="miss")

            computed_at = self.clock()
            try:
                decision = await self._decide(user_id, key, computed_at)
            except Exception as e:
                kind = "upstream" if isinstance(e, UpstreamUnavailableError) else "engine"
                self.logger.error("Access check failed", user_id=user_id, resource=str(key), error=str(e))
                self.metrics.increment_counter("evaluation_errors_total", kind=kind)
                if strict:
                    raise
                result = evaluation_error_result()
                self._record(result, "single", start_time)
                return result

            await self._store(user_id, key, decision, computed_at)
            span.set_attribute("gating.has_access", decision.result.has_access)
            self._record(decision.result, "single", start_time)
            return decision.result

    async def _decide(self, user_id: str, key: ResourceKey, now: datetime) -> Decision:
        rules = await self._read(
            self.rule_store.get_active_rules(ResourceType(key.kind), key.id), "rule_store"
        )
        if not rules:
            return Decision(result=AccessCheckResult(has_access=True, reason=NO_RESTRICTIONS))

        course_id = rules[0].course_id
        user = await self._user_context(user_id, course_id)

        course_rules = rules
        if any(rule.type in (AccessControlType.SEQUENTIAL, AccessControlType.PREREQUISITE) for rule in rules):
            course_rules = await self._course_rules(course_id)

        return _CourseEvaluation(self, user, now, course_rules).decide(key, rules)

    async def check_access_batch(self, user_id: str, course_id: str,
                                 strict: bool = False) -> Dict[str, AccessCheckResult]:
        """Decide every MODULE and LESSON of a course with one read of each upstream.

        Results are keyed by resource id and always recomputed; the cache
        is refreshed with them.
        """
        start_time = time.time()
        computed_at = self.clock()

        with self.tracer.start_as_current_span("gating.check_access_batch") as span:
            span.set_attribute("gating.course_id", course_id)
            try:
                course_rules = await self._course_rules(course_id)
            except UpstreamUnavailableError as e:
                self.logger.error("Batch access check failed", user_id=user_id, course_id=course_id, error=str(e))
                self.metrics.increment_counter("evaluation_errors_total", kind="upstream")
                if strict:
                    raise
                # Lock the whole outline; an oracle failure here propagates since nothing is left to lock
                user = await self._user_context(user_id, course_id)
                return {key.id: evaluation_error_result() for key in user.gated_resources()}

            rule_resources = list(dict.fromkeys(
                rule.resource_key for rule in sorted(course_rules, key=rule_sort_key)
            ))

            try:
                user = await self._user_context(user_id, course_id)
            except UpstreamUnavailableError as e:
                self.logger.error("Batch access check failed", user_id=user_id, course_id=course_id, error=str(e))
                self.metrics.increment_counter("evaluation_errors_total", kind="upstream")
                if strict:
                    raise
                return {key.id: evaluation_error_result() for key in rule_resources}

            resources = list(dict.fromkeys(user.gated_resources() + rule_resources))
            evaluation = _CourseEvaluation(self, user, computed_at, course_rules)

            results: Dict[str, AccessCheckResult] = {}
            for key in resources:
                decision = evaluation.decide(key)
                results[key.id] = decision.result
                await self._store(user_id, key, decision, computed_at)
                self.metrics.increment_counter(
                    "access_checks_total", decision=access_state(decision.result).value.lower()
                )

            self.metrics.observe_histogram("access_check_duration_seconds", time.time() - start_time, mode="batch")
            return results

    async def _store(self, user_id: str, key: ResourceKey, decision: Decision, computed_at: datetime):
        if self.cache is None:
            return
        stored = await self.cache.put(
            user_id, key, decision.course_id, decision.result, computed_at, decision.stale_after
        )
        if not stored:
            self.metrics.increment_counter("decision_cache_total", outcome="rejected")

    def _record(self, result: AccessCheckResult, mode: str, start_time: float):
        self.metrics.increment_counter("access_checks_total", decision=access_state(result).value.lower())
        self.metrics.observe_histogram("access_check_duration_seconds", time.time() - start_time, mode=mode)
