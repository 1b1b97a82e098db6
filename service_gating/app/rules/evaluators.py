"""
Rule evaluators, one per ``AccessControlType``.

Evaluators are pure: they read the configuration and an
``EvaluationContext`` and return a ``PartialDecision``. Anything they need
from other resources (the sequence predecessor, cycle membership) is
resolved by the engine beforehand and handed over in the context.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from shared.logging import get_logger
from .models import (
    AccessControlType, AlwaysConfig, ConfigurationError, CustomConfig, EnrollmentDurationConfig,
    PartialDecision, PrerequisiteConfig, PrerequisiteEdge, PrerequisiteType, ProgressStatus,
    RequiredAction, RequiredActionType, RequiredStatus, ResourceKey, SequentialConfig,
    TimeBasedConfig, UserContext, UserGroupConfig, parse_instant,
)


@dataclass
class SequenceState:
    """What the engine knows about a resource's predecessor."""
    predecessor: Optional[ResourceKey] = None
    status: ProgressStatus = ProgressStatus.NOT_STARTED
    opened_at: Optional[datetime] = None
    unlocks_at: Optional[datetime] = None
    cyclic: bool = False


@dataclass
class EvaluationContext:
    """Inputs shared by every rule of one resource."""
    user: UserContext
    now: datetime
    resource: ResourceKey
    sequence: Optional[SequenceState] = None
    in_prerequisite_cycle: bool = False


def _locked(reason: str, *actions: RequiredAction, unlocks_at: Optional[datetime] = None) -> PartialDecision:
    return PartialDecision(satisfied=False, reason=reason, unlocks_at=unlocks_at, required_actions=list(actions))


def _wait_until(when: datetime) -> RequiredAction:
    return RequiredAction(
        type=RequiredActionType.WAIT_TIME,
        description=f"Available from {when.isoformat()}"
    )


class RuleEvaluator:
    """Strategy for one rule type."""

    rule_type: AccessControlType

    def evaluate(self, configuration: Any, context: EvaluationContext) -> PartialDecision:
        raise NotImplementedError


class TimeBasedEvaluator(RuleEvaluator):
    rule_type = AccessControlType.TIME_BASED

    def evaluate(self, configuration: TimeBasedConfig, context: EvaluationContext) -> PartialDecision:
        zone = configuration.zone()
        if configuration.include_time:
            start = self._instant(configuration.start_date, zone)
            end = self._instant(configuration.end_date, zone)
            return self._decide(context.now, start, end, end)

        # Date-only rules compare calendar days in the rule's timezone
        today = context.now.astimezone(zone).date()
        start_day = self._calendar_day(configuration.start_date, zone)
        end_day = self._calendar_day(configuration.end_date, zone)

        start = self._midnight(start_day, zone) if start_day else None
        closes = self._midnight(end_day + timedelta(days=1), zone) if end_day else None
        if start_day and today < start_day:
            return self._decide(context.now, start, None, None)
        if end_day and today > end_day:
            return _locked("This content's access window has closed")
        return PartialDecision(satisfied=True, opened_at=start, valid_until=closes)

    @staticmethod
    def _decide(now: datetime, start: Optional[datetime], end: Optional[datetime],
                valid_until: Optional[datetime]) -> PartialDecision:
        if start and now < start:
            return _locked(f"Available from {start.isoformat()}", _wait_until(start), unlocks_at=start)
        if end and now > end:
            return _locked("This content's access window has closed")
        return PartialDecision(satisfied=True, opened_at=start, valid_until=valid_until)

    @staticmethod
    def _instant(value: Optional[str], zone: ZoneInfo) -> Optional[datetime]:
        if not value:
            return None
        return parse_instant(value, zone).astimezone(timezone.utc)

    @staticmethod
    def _calendar_day(value: Optional[str], zone: ZoneInfo) -> Optional[date]:
        if not value:
            return None
        if "T" not in value and len(value) == 10:
            return date.fromisoformat(value)
        return parse_instant(value, zone).astimezone(zone).date()

    @staticmethod
    def _midnight(day: date, zone: ZoneInfo) -> datetime:
        return datetime.combine(day, time.min, tzinfo=zone).astimezone(timezone.utc)


class SequentialEvaluator(RuleEvaluator):
    rule_type = AccessControlType.SEQUENTIAL

    def evaluate(self, configuration: SequentialConfig, context: EvaluationContext) -> PartialDecision:
        state = context.sequence
        if not configuration.require_previous or state is None or state.predecessor is None:
            return PartialDecision(satisfied=True)

        if state.cyclic:
            return _locked("circular prerequisite", RequiredAction(
                type=RequiredActionType.OTHER,
                resource_id=state.predecessor.id,
                resource_type=state.predecessor.kind,
                description="The content sequence loops back on itself; contact the course author"
            ))

        if state.status == ProgressStatus.COMPLETED:
            return PartialDecision(satisfied=True, open_time_known=False)

        kind = state.predecessor.kind.lower()
        complete = RequiredAction(
            type=RequiredActionType.COMPLETE_CONTENT,
            resource_id=state.predecessor.id,
            resource_type=state.predecessor.kind,
            description=f"Complete the previous {kind}"
        )

        if configuration.grace_period is not None:
            grace = timedelta(hours=configuration.grace_period)
            if state.opened_at is not None:
                opens = state.opened_at + grace
                if context.now >= opens:
                    return PartialDecision(satisfied=True, opened_at=opens)
                return _locked(f"Complete the previous {kind} or wait until {opens.isoformat()}",
                               complete, unlocks_at=opens)
            if state.unlocks_at is not None:
                opens = state.unlocks_at + grace
                return _locked(f"Complete the previous {kind} or wait until {opens.isoformat()}",
                               complete, unlocks_at=opens)

        return _locked(f"Complete the previous {kind} first", complete)


class PrerequisiteEvaluator(RuleEvaluator):
    rule_type = AccessControlType.PREREQUISITE

    def evaluate(self, configuration: PrerequisiteConfig, context: EvaluationContext) -> PartialDecision:
        if context.in_prerequisite_cycle:
            return _locked("circular prerequisite", RequiredAction(
                type=RequiredActionType.OTHER,
                resource_id=context.resource.id,
                resource_type=context.resource.kind,
                description="Prerequisites of this content depend on each other; contact the course author"
            ))

        outcomes = []
        actions = []
        broken = []
        for edge in configuration.prerequisites:
            if edge.prerequisite_type != PrerequisiteType.ENROLLMENT and not context.user.exists(edge.key):
                broken.append(edge)
                outcomes.append(False)
                actions.append(RequiredAction(
                    type=RequiredActionType.OTHER,
                    resource_id=edge.prerequisite_id,
                    resource_type=edge.prerequisite_type.value,
                    description=(
                        f"Required {edge.prerequisite_type.value.lower()} {edge.prerequisite_id} "
                        "no longer exists; contact the course author"
                    )
                ))
                continue

            met = self.status_meets(context.user.status_of(edge.key), edge.required_status)
            outcomes.append(met)
            if not met:
                actions.append(self._action_for(edge))

        satisfied = all(outcomes) if configuration.require_all else any(outcomes)
        if satisfied:
            return PartialDecision(
                satisfied=True,
                open_time_known=self._open_since_enrollment(configuration, outcomes)
            )

        if broken and (configuration.require_all or len(broken) == len(outcomes)):
            reason = "A required prerequisite no longer exists"
        elif configuration.require_all:
            reason = "Prerequisites have not been met"
        else:
            reason = "At least one prerequisite must be met"
        return _locked(reason, *actions)

    @staticmethod
    def _open_since_enrollment(configuration: PrerequisiteConfig, outcomes) -> bool:
        # Only edges that accept any status pass without a progress timestamp
        unconditional = [edge.required_status == RequiredStatus.ANY for edge in configuration.prerequisites]
        if configuration.require_all:
            return all(unconditional)
        return any(met and free for met, free in zip(outcomes, unconditional))

    @staticmethod
    def status_meets(actual: ProgressStatus, required: RequiredStatus) -> bool:
        if required == RequiredStatus.ANY:
            return True
        if required == RequiredStatus.STARTED:
            return actual in (ProgressStatus.STARTED, ProgressStatus.COMPLETED)
        return actual == ProgressStatus.COMPLETED

    @staticmethod
    def _action_for(edge: PrerequisiteEdge) -> RequiredAction:
        verb = "Start" if edge.required_status == RequiredStatus.STARTED else "Complete"
        if edge.prerequisite_type == PrerequisiteType.ENROLLMENT:
            what = "Enroll in" if edge.required_status == RequiredStatus.STARTED else "Complete"
            return RequiredAction(
                type=RequiredActionType.OTHER,
                resource_id=edge.prerequisite_id,
                resource_type=edge.prerequisite_type.value,
                description=f"{what} course {edge.prerequisite_id}"
            )
        return RequiredAction(
            type=RequiredActionType.COMPLETE_CONTENT,
            resource_id=edge.prerequisite_id,
            resource_type=edge.prerequisite_type.value,
            description=f"{verb} {edge.prerequisite_type.value.lower()} {edge.prerequisite_id}"
        )


class EnrollmentDurationEvaluator(RuleEvaluator):
    rule_type = AccessControlType.ENROLLMENT_DURATION

    def evaluate(self, configuration: EnrollmentDurationConfig, context: EvaluationContext) -> PartialDecision:
        enrolled_at = context.user.enrolled_at
        if enrolled_at is None:
            return _locked("You are not enrolled in this course", RequiredAction(
                type=RequiredActionType.OTHER,
                resource_id=context.user.course_id,
                resource_type="COURSE",
                description="Enroll in the course"
            ))

        opens = enrolled_at + timedelta(days=configuration.min_days)
        if context.now < opens:
            return _locked(
                f"Available {configuration.min_days} days after enrollment",
                _wait_until(opens),
                unlocks_at=opens
            )

        closes = None
        if configuration.max_days is not None:
            closes = enrolled_at + timedelta(days=configuration.max_days)
            if context.now > closes:
                return _locked(f"Only available for the first {configuration.max_days} days of enrollment")

        return PartialDecision(satisfied=True, opened_at=opens, valid_until=closes)


class UserGroupEvaluator(RuleEvaluator):
    rule_type = AccessControlType.USER_GROUP

    def evaluate(self, configuration: UserGroupConfig, context: EvaluationContext) -> PartialDecision:
        required = list(dict.fromkeys(configuration.group_ids))
        member_of = context.user.group_ids
        missing = [g for g in required if g not in member_of]

        if configuration.require_all:
            if not missing:
                return PartialDecision(satisfied=True)
            return _locked("Restricted to members of specific groups", *(
                RequiredAction(
                    type=RequiredActionType.JOIN_GROUP,
                    resource_id=group_id,
                    resource_type="GROUP",
                    description=f"Join group {group_id}"
                )
                for group_id in missing
            ))

        if len(missing) < len(required):
            return PartialDecision(satisfied=True)
        return _locked("Restricted to members of specific groups", RequiredAction(
            type=RequiredActionType.JOIN_GROUP,
            resource_type="GROUP",
            description=f"Join one of the groups: {', '.join(required)}"
        ))


CustomRule = Callable[[Dict[str, Any], EvaluationContext], PartialDecision]


class CustomRuleRegistry:
    """Named evaluators for CUSTOM rules, registered by the host application."""

    def __init__(self):
        self.logger = get_logger("gating.custom_rules")
        self._rules: Dict[str, CustomRule] = {}

    def register(self, name: str, rule: CustomRule) -> None:
        self._rules[name] = rule
        self.logger.info("Custom rule registered", condition=name)

    def get(self, name: str) -> Optional[CustomRule]:
        return self._rules.get(name)

    def names(self):
        return sorted(self._rules)


def quiz_score_threshold(parameters: Dict[str, Any], context: EvaluationContext) -> PartialDecision:
    """Satisfied when the user's best score on ``quizId`` is at least ``minScore``."""
    quiz_id = parameters.get("quizId")
    min_score = parameters.get("minScore")
    if not quiz_id or not isinstance(min_score, (int, float)):
        raise ConfigurationError("quiz-score-threshold requires quizId and numeric minScore")

    score = context.user.quiz_scores.get(quiz_id)
    if score is not None and score >= min_score:
        return PartialDecision(satisfied=True, open_time_known=False)
    return _locked(f"Score at least {min_score} on quiz {quiz_id}", RequiredAction(
        type=RequiredActionType.COMPLETE_CONTENT,
        resource_id=quiz_id,
        resource_type=PrerequisiteType.QUIZ.value,
        description=f"Score at least {min_score} on quiz {quiz_id}"
    ))


def default_custom_rules() -> CustomRuleRegistry:
    registry = CustomRuleRegistry()
    registry.register("quiz-score-threshold", quiz_score_threshold)
    return registry


class CustomEvaluator(RuleEvaluator):
    rule_type = AccessControlType.CUSTOM

    def __init__(self, registry: CustomRuleRegistry):
        self.registry = registry

    def evaluate(self, configuration: CustomConfig, context: EvaluationContext) -> PartialDecision:
        rule = self.registry.get(configuration.condition)
        if rule is None:
            return _locked("unknown custom rule", RequiredAction(
                type=RequiredActionType.OTHER,
                description=f"Access condition {configuration.condition!r} is not available; contact the course author"
            ))
        return rule(configuration.parameters, context)


class AlwaysEvaluator(RuleEvaluator):
    rule_type = AccessControlType.ALWAYS

    def evaluate(self, configuration: AlwaysConfig, context: EvaluationContext) -> PartialDecision:
        return PartialDecision(satisfied=True)


def build_evaluators(custom_rules: Optional[CustomRuleRegistry] = None) -> Dict[AccessControlType, RuleEvaluator]:
    """One evaluator instance per rule type."""
    evaluators = [
        TimeBasedEvaluator(),
        SequentialEvaluator(),
        PrerequisiteEvaluator(),
        EnrollmentDurationEvaluator(),
        UserGroupEvaluator(),
        CustomEvaluator(custom_rules or default_custom_rules()),
        AlwaysEvaluator(),
    ]
    return {evaluator.rule_type: evaluator for evaluator in evaluators}
