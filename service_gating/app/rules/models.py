"""
Rule data models for the access gating service.

``AccessControlConfig`` is the persisted JSON wire contract shared with the
rule authoring UI. Keys are camelCase and must stay backward compatible
with stored rules.
"""

from typing import Dict, Any, Optional, List, Union, Literal, NamedTuple, FrozenSet
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel
from typing_extensions import Annotated

from shared.errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResourceType(str, Enum):
    """Content that access rules attach to."""
    MODULE = "MODULE"
    LESSON = "LESSON"


class PrerequisiteType(str, Enum):
    """Things a prerequisite edge may point at."""
    MODULE = "MODULE"
    LESSON = "LESSON"
    QUIZ = "QUIZ"
    ENROLLMENT = "ENROLLMENT"


class AccessControlType(str, Enum):
    """Access control rule types."""
    TIME_BASED = "TIME_BASED"
    SEQUENTIAL = "SEQUENTIAL"
    PREREQUISITE = "PREREQUISITE"
    ENROLLMENT_DURATION = "ENROLLMENT_DURATION"
    USER_GROUP = "USER_GROUP"
    CUSTOM = "CUSTOM"
    ALWAYS = "ALWAYS"


class ProgressStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"


class RequiredStatus(str, Enum):
    COMPLETED = "COMPLETED"
    STARTED = "STARTED"
    ANY = "ANY"


class RequiredActionType(str, Enum):
    COMPLETE_CONTENT = "COMPLETE_CONTENT"
    JOIN_GROUP = "JOIN_GROUP"
    WAIT_TIME = "WAIT_TIME"
    OTHER = "OTHER"


class AccessState(str, Enum):
    """Conceptual per-user state of a resource."""
    LOCKED = "LOCKED"
    LOCKED_INDEFINITE = "LOCKED_INDEFINITE"
    UNLOCKED = "UNLOCKED"


class ResourceKey(NamedTuple):
    """Node identity in the course graph, e.g. ``("LESSON", "l-1")``."""
    kind: str
    id: str

    def __str__(self) -> str:
        return f"{self.kind}:{self.id}"


class ConfigurationError(ValidationError):
    """A rule configuration does not match its declared type or schema."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.code = "INVALID_CONFIGURATION"


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


def parse_instant(value: str, zone: tzinfo = timezone.utc) -> datetime:
    """Parse an ISO-8601 date or datetime; naive values are read in ``zone``."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=zone)
    return parsed


# --- configuration variants -------------------------------------------------

class TimeBasedConfig(WireModel):
    """Available from/to specific dates."""
    type: Literal["TIME_BASED"] = "TIME_BASED"
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    include_time: bool = False
    timezone: Optional[str] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def _check_instant(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            parse_instant(value)
        return value

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            try:
                ZoneInfo(value)
            except (ZoneInfoNotFoundError, ValueError) as e:
                raise ValueError(f"unknown timezone {value!r}") from e
        return value

    @model_validator(mode="after")
    def _check_window(self) -> "TimeBasedConfig":
        if self.start_date and self.end_date and parse_instant(self.end_date) < parse_instant(self.start_date):
            raise ValueError("endDate precedes startDate")
        return self

    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone or "UTC")


class SequentialConfig(WireModel):
    """Must complete the previous sibling first."""
    type: Literal["SEQUENTIAL"] = "SEQUENTIAL"
    require_previous: bool = True
    grace_period: Optional[float] = Field(default=None, ge=0, description="Hours")


class PrerequisiteEdge(WireModel):
    prerequisite_type: PrerequisiteType
    prerequisite_id: str = Field(min_length=1)
    required_status: RequiredStatus = RequiredStatus.COMPLETED

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_shape(cls, data: Any) -> Any:
        # Older rules stored edges as {resourceType, resourceId}
        if isinstance(data, dict) and "resourceId" in data and "prerequisiteId" not in data:
            data = dict(data)
            data["prerequisiteType"] = data.pop("resourceType", None)
            data["prerequisiteId"] = data.pop("resourceId")
        return data

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.prerequisite_type.value, self.prerequisite_id)


class PrerequisiteConfig(WireModel):
    """Must reach a status on specific other content."""
    type: Literal["PREREQUISITE"] = "PREREQUISITE"
    prerequisites: List[PrerequisiteEdge] = Field(min_length=1)
    require_all: bool = True


class EnrollmentDurationConfig(WireModel):
    """Based on how long the student has been enrolled."""
    type: Literal["ENROLLMENT_DURATION"] = "ENROLLMENT_DURATION"
    min_days: int = Field(ge=0)
    max_days: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _check_range(self) -> "EnrollmentDurationConfig":
        if self.max_days is not None and self.max_days < self.min_days:
            raise ValueError("maxDays must be >= minDays")
        return self


class UserGroupConfig(WireModel):
    """Available only to specific groups or cohorts."""
    type: Literal["USER_GROUP"] = "USER_GROUP"
    group_ids: List[str] = Field(min_length=1)
    require_all: bool = False


class CustomConfig(WireModel):
    """Named condition evaluated by a registered custom evaluator."""
    type: Literal["CUSTOM"] = "CUSTOM"
    condition: str = Field(min_length=1)
    parameters: Dict[str, Any] = Field(default_factory=dict)


class AlwaysConfig(WireModel):
    type: Literal["ALWAYS"] = "ALWAYS"


AccessControlConfig = Annotated[
    Union[
        TimeBasedConfig,
        SequentialConfig,
        PrerequisiteConfig,
        EnrollmentDurationConfig,
        UserGroupConfig,
        CustomConfig,
        AlwaysConfig,
    ],
    Field(discriminator="type"),
]

_config_adapter = TypeAdapter(AccessControlConfig)


def parse_configuration(rule_type: AccessControlType, data: Any) -> AccessControlConfig:
    """Validate stored/submitted configuration against its declared type."""
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True)
    if not isinstance(data, dict):
        raise ConfigurationError("configuration must be an object")
    if data.get("type") != rule_type.value:
        raise ConfigurationError(
            "configuration.type does not match rule type",
            {"rule_type": rule_type.value, "configuration_type": data.get("type")}
        )
    try:
        return _config_adapter.validate_python(data)
    except PydanticValidationError as e:
        raise ConfigurationError(
            "invalid configuration",
            {"errors": e.errors(include_url=False, include_context=False)}
        ) from e


def dump_configuration(configuration: AccessControlConfig) -> Dict[str, Any]:
    return configuration.model_dump(by_alias=True, mode="json", exclude_none=True)


# --- rules -------------------------------------------------------------------

@dataclass
class AccessControl:
    """One gating rule attached to a MODULE or LESSON.

    ``configuration`` is None when the stored JSON failed validation; the
    problem is kept in ``config_error`` so evaluation can fail closed.
    """
    id: str
    resource_type: ResourceType
    resource_id: str
    course_id: str
    type: AccessControlType
    configuration: Optional[AccessControlConfig]
    active: bool = True
    created_by_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    config_error: Optional[str] = None

    @property
    def resource_key(self) -> ResourceKey:
        return ResourceKey(self.resource_type.value, self.resource_id)

    def configuration_problem(self) -> Optional[str]:
        if self.config_error:
            return self.config_error
        if self.configuration is None:
            return "missing configuration"
        if self.configuration.type != self.type.value:
            return f"configuration type {self.configuration.type} does not match rule type {self.type.value}"
        return None

    def prerequisite_edges(self) -> List[PrerequisiteEdge]:
        if isinstance(self.configuration, PrerequisiteConfig) and self.configuration_problem() is None:
            return list(self.configuration.prerequisites)
        return []

    @classmethod
    def from_stored(cls, *, configuration: Any, type: AccessControlType, **fields) -> "AccessControl":
        """Build a rule from persisted data without raising on bad configuration."""
        try:
            parsed = parse_configuration(type, configuration)
            error = None
        except ConfigurationError as e:
            parsed, error = None, f"{e.message}: {e.details}" if e.details else e.message
        return cls(type=type, configuration=parsed, config_error=error, **fields)


def rule_sort_key(rule: AccessControl):
    """Deterministic evaluation order: oldest first, then by id."""
    return (rule.created_at, rule.id)


# --- user context --------------------------------------------------------------

@dataclass(frozen=True)
class OutlineEntry:
    """One MODULE, LESSON or QUIZ that exists in a course."""
    resource_type: str
    resource_id: str
    parent_id: Optional[str]
    order: int

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.resource_type, self.resource_id)


@dataclass
class UserContext:
    """Snapshot of a user's standing in one course (read-only)."""
    user_id: str
    course_id: str
    enrolled_at: Optional[datetime] = None
    group_ids: FrozenSet[str] = frozenset()
    completion: Dict[ResourceKey, ProgressStatus] = field(default_factory=dict)
    outline: List[OutlineEntry] = field(default_factory=list)
    quiz_scores: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self):
        self._index = {entry.key: entry for entry in self.outline}
        siblings: Dict[tuple, List[OutlineEntry]] = {}
        for entry in self.outline:
            siblings.setdefault((entry.resource_type, entry.parent_id), []).append(entry)
        self._predecessors: Dict[ResourceKey, Optional[ResourceKey]] = {}
        for group in siblings.values():
            group.sort(key=lambda e: (e.order, e.resource_id))
            previous = None
            for entry in group:
                self._predecessors[entry.key] = previous
                previous = entry.key

    def status_of(self, key: ResourceKey) -> ProgressStatus:
        return self.completion.get(key, ProgressStatus.NOT_STARTED)

    def exists(self, key: ResourceKey) -> bool:
        return key in self._index

    def entry(self, key: ResourceKey) -> Optional[OutlineEntry]:
        return self._index.get(key)

    def predecessor_of(self, key: ResourceKey) -> Optional[ResourceKey]:
        """Previous sibling of the same type under the same parent, by order."""
        return self._predecessors.get(key)

    def gated_resources(self) -> List[ResourceKey]:
        """MODULE and LESSON entries in outline order."""
        return [
            e.key for e in sorted(self.outline, key=lambda e: (e.resource_type, e.order, e.resource_id))
            if e.resource_type in (ResourceType.MODULE.value, ResourceType.LESSON.value)
        ]


# --- decisions -------------------------------------------------------------------

class RequiredAction(WireModel):
    type: RequiredActionType
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    description: str


class AccessCheckResult(WireModel):
    """Outcome of an access check. Never persisted."""
    has_access: bool
    reason: Optional[str] = None
    unlocks_at: Optional[datetime] = None
    required_actions: List[RequiredAction] = Field(default_factory=list)


def access_state(result: AccessCheckResult) -> AccessState:
    if result.has_access:
        return AccessState.UNLOCKED
    return AccessState.LOCKED if result.unlocks_at is not None else AccessState.LOCKED_INDEFINITE


@dataclass
class PartialDecision:
    """One rule's verdict.

    ``opened_at`` is when a satisfied time-bearing rule started passing;
    ``valid_until`` is when a satisfied rule stops passing by itself.
    ``open_time_known`` is false when the rule passes because of progress
    whose timestamp is not known, such as a completed predecessor.
    """
    satisfied: bool
    reason: Optional[str] = None
    unlocks_at: Optional[datetime] = None
    required_actions: List[RequiredAction] = field(default_factory=list)
    opened_at: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    open_time_known: bool = True


# --- API models --------------------------------------------------------------------

class AccessCheckRequest(WireModel):
    user_id: str
    resource_type: ResourceType
    resource_id: str
    strict: bool = False


class BatchAccessResponse(WireModel):
    user_id: str
    course_id: str
    results: Dict[str, AccessCheckResult]


class AccessControlRequest(WireModel):
    """Create a rule."""
    resource_type: ResourceType
    resource_id: str
    course_id: str
    type: AccessControlType
    active: bool = True
    configuration: Dict[str, Any]
    created_by_id: Optional[str] = None


class BulkAccessControlRequest(WireModel):
    """Create several rules at once; all are stored or none are."""
    access_controls: List[AccessControlRequest] = Field(min_length=1)


class AccessControlUpdateRequest(WireModel):
    """Edit a rule; omitted fields are unchanged."""
    type: Optional[AccessControlType] = None
    active: Optional[bool] = None
    configuration: Optional[Dict[str, Any]] = None


class AccessControlResponse(WireModel):
    id: str
    resource_type: ResourceType
    resource_id: str
    course_id: str
    type: AccessControlType
    active: bool
    configuration: Optional[Dict[str, Any]]
    created_by_id: Optional[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_rule(cls, rule: AccessControl) -> "AccessControlResponse":
        return cls(
            id=rule.id,
            resource_type=rule.resource_type,
            resource_id=rule.resource_id,
            course_id=rule.course_id,
            type=rule.type,
            active=rule.active,
            configuration=dump_configuration(rule.configuration) if rule.configuration is not None else None,
            created_by_id=rule.created_by_id,
            created_at=rule.created_at,
            updated_at=rule.updated_at,
        )


class RuleListResponse(WireModel):
    rules: List[AccessControlResponse]
    total: int
