"""Journey definition types: stages, requirements, timing and channel rules."""

from dataclasses import dataclass, field
from datetime import time
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..errors import ValidationError


class RequirementType(Enum):
    """Kinds of stage requirements."""

    DOCUMENT = "document"
    TEST = "test"
    INTERVIEW = "interview"
    PAYMENT = "payment"
    FORM = "form"
    VERIFICATION = "verification"
    CUSTOM = "custom"


class ChannelType(Enum):
    """Communication channels."""

    EMAIL = "email"
    SMS = "sms"
    CALL = "call"
    IN_PERSON = "in_person"
    VIDEO = "video"
    PORTAL_MESSAGE = "portal_message"


class CompletionMode(Enum):
    """How a stage decides it is complete."""

    ALL_REQUIREMENTS_MET = "all_requirements_met"
    SPECIFIC_REQUIREMENTS = "specific_requirements"
    APPROVAL_REQUIRED = "approval_required"
    AUTO_ADVANCE = "auto_advance"


class Priority(Enum):
    """Priority of a candidate communication."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.LOW: 0, Priority.MEDIUM: 1, Priority.HIGH: 2, Priority.URGENT: 3}

WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def parse_clock(value: Any, where: str) -> time:
    """Parse an ``HH:MM`` clock time, raising ValidationError on bad input."""
    try:
        return time.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{where}: invalid time {value!r}, expected HH:MM")


@dataclass(frozen=True)
class TimingConfig:
    """Dwell-time expectations for a stage, in days."""

    expected_duration_days: Optional[float] = None
    stall_threshold_days: Optional[float] = None
    escalation_threshold_days: Optional[float] = None
    business_hours_only: bool = False


@dataclass(frozen=True)
class CompletionCriteria:
    """When a stage counts as complete."""

    mode: CompletionMode = CompletionMode.ALL_REQUIREMENTS_MET
    requirement_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Requirement:
    """A discrete condition to satisfy within a stage."""

    id: str
    name: str
    requirement_type: RequirementType = RequirementType.CUSTOM
    is_mandatory: bool = True
    validation_rules: Dict[str, Any] = field(default_factory=dict)
    reminder_schedule_days: Tuple[int, ...] = ()


@dataclass(frozen=True)
class TimeRestrictions:
    """When a channel may be used."""

    business_hours_only: bool = False
    business_start: str = "09:00"
    business_end: str = "17:00"
    allowed_days: Tuple[str, ...] = ()  # lowercase weekday names, empty = any day
    blackout_windows: Tuple[Tuple[str, str], ...] = ()  # (start, end), may span midnight

    def validate(self, where: str):
        parse_clock(self.business_start, f"{where} business_start")
        parse_clock(self.business_end, f"{where} business_end")
        for window in self.blackout_windows:
            if len(window) != 2:
                raise ValidationError(f"{where}: blackout window must be a [start, end] pair")
            for value in window:
                parse_clock(value, f"{where} blackout window")
        unknown = [d for d in self.allowed_days if d not in WEEKDAY_NAMES]
        if unknown:
            raise ValidationError(f"{where}: unknown weekdays {', '.join(unknown)}")


@dataclass(frozen=True)
class FrequencyLimits:
    """Caps on how often a channel may be used for one lead."""

    max_per_day: Optional[int] = None
    max_per_week: Optional[int] = None
    min_hours_between: Optional[float] = None


@dataclass(frozen=True)
class ChannelRule:
    """Eligibility of one channel within a stage."""

    channel: ChannelType
    is_allowed: bool = True
    priority_threshold: Priority = Priority.LOW
    time_restrictions: TimeRestrictions = field(default_factory=TimeRestrictions)
    frequency_limits: FrequencyLimits = field(default_factory=FrequencyLimits)


@dataclass(frozen=True)
class EscalationRules:
    """Who to escalate to, and how, when a stage overstays."""

    auto_escalate_after_days: Optional[float] = None
    escalate_to: str = "admissions_manager"
    notify_channels: Tuple[ChannelType, ...] = (ChannelType.EMAIL,)


@dataclass(frozen=True)
class Stage:
    """One ordered step of a journey."""

    id: str
    name: str
    order_index: int
    stage_type: str = ""
    description: str = ""
    is_required: bool = True
    parallel_allowed: bool = False
    timing: TimingConfig = field(default_factory=TimingConfig)
    completion: CompletionCriteria = field(default_factory=CompletionCriteria)
    requirements: Tuple[Requirement, ...] = ()
    channel_rules: Tuple[ChannelRule, ...] = ()
    escalation: EscalationRules = field(default_factory=EscalationRules)

    @property
    def mandatory_requirements(self) -> List[Requirement]:
        return [r for r in self.requirements if r.is_mandatory]

    def requirement(self, requirement_id: str) -> Optional[Requirement]:
        for req in self.requirements:
            if req.id == requirement_id:
                return req
        return None

    def channel_rule(self, channel: ChannelType) -> Optional[ChannelRule]:
        for rule in self.channel_rules:
            if rule.channel == channel:
                return rule
        return None


@dataclass(frozen=True)
class JourneyDefinition:
    """A named, versioned stage template owned by a tenant."""

    id: str
    tenant_id: str
    name: str
    version: int = 1
    description: str = ""
    stages: Tuple[Stage, ...] = ()
    is_master_template: bool = False

    def __post_init__(self):
        # Stage positions follow order_index regardless of input order
        object.__setattr__(self, "stages", tuple(sorted(self.stages, key=lambda s: s.order_index)))

    @property
    def stage_count(self) -> int:
        return len(self.stages)

    def stage_at(self, index: int) -> Stage:
        if index < 0 or index >= len(self.stages):
            raise ValidationError(f"Journey {self.id} has no stage at position {index}")
        return self.stages[index]

    def is_final(self, index: int) -> bool:
        return index == len(self.stages) - 1

    def find_requirement(self, requirement_id: str) -> Optional[Tuple[int, Requirement]]:
        for index, stage in enumerate(self.stages):
            req = stage.requirement(requirement_id)
            if req is not None:
                return index, req
        return None

    def validate(self):
        """Reject structurally invalid definitions."""
        if not self.id or not self.tenant_id:
            raise ValidationError("Journey id and tenant are required")
        if not self.stages:
            raise ValidationError(f"Journey {self.id} has no stages")

        order_indexes = [s.order_index for s in self.stages]
        if len(set(order_indexes)) != len(order_indexes):
            raise ValidationError(f"Journey {self.id} has duplicate stage order indexes")

        stage_ids = [s.id for s in self.stages]
        if len(set(stage_ids)) != len(stage_ids):
            raise ValidationError(f"Journey {self.id} has duplicate stage ids")

        requirement_ids = [r.id for s in self.stages for r in s.requirements]
        if len(set(requirement_ids)) != len(requirement_ids):
            raise ValidationError(f"Journey {self.id} has duplicate requirement ids")

        for stage in self.stages:
            if stage.completion.mode == CompletionMode.SPECIFIC_REQUIREMENTS:
                unknown = [rid for rid in stage.completion.requirement_ids if stage.requirement(rid) is None]
                if unknown:
                    raise ValidationError(
                        f"Stage {stage.id} completion lists unknown requirements: {', '.join(unknown)}"
                    )
            for rule in stage.channel_rules:
                rule.time_restrictions.validate(f"Stage {stage.id} {rule.channel.value} rule")


# === SERIALIZATION ===

def _enum(enum_cls, value, default):
    if value is None:
        return default
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Invalid {enum_cls.__name__} value: {value!r}")


def _requirement_from_dict(data: Dict[str, Any]) -> Requirement:
    return Requirement(
        id=data["id"],
        name=data.get("name", data["id"]),
        requirement_type=_enum(RequirementType, data.get("requirement_type"), RequirementType.CUSTOM),
        is_mandatory=data.get("is_mandatory", True),
        validation_rules=data.get("validation_rules", {}),
        reminder_schedule_days=tuple(data.get("reminder_schedule_days", [])),
    )


def _channel_rule_from_dict(data: Dict[str, Any]) -> ChannelRule:
    tr = data.get("time_restrictions", {})
    fl = data.get("frequency_limits", {})
    channel = data.get("channel") or data.get("channel_type")
    if not channel:
        raise ValidationError("Channel rule is missing its channel")
    return ChannelRule(
        channel=_enum(ChannelType, channel, None),
        is_allowed=data.get("is_allowed", True),
        priority_threshold=_enum(Priority, data.get("priority_threshold"), Priority.LOW),
        time_restrictions=TimeRestrictions(
            business_hours_only=tr.get("business_hours_only", False),
            business_start=tr.get("business_start", "09:00"),
            business_end=tr.get("business_end", "17:00"),
            allowed_days=tuple(d.lower() for d in tr.get("allowed_days", [])),
            blackout_windows=tuple(
                tuple(w) if isinstance(w, (list, tuple)) else (w,) for w in tr.get("blackout_windows", [])
            ),
        ),
        frequency_limits=FrequencyLimits(
            max_per_day=fl.get("max_per_day"),
            max_per_week=fl.get("max_per_week"),
            min_hours_between=fl.get("min_hours_between"),
        ),
    )


def stage_from_dict(data: Dict[str, Any]) -> Stage:
    """Build a Stage from its JSON form."""
    timing = data.get("timing_config", {})
    completion = data.get("completion_criteria", {})
    escalation = data.get("escalation_rules", {})
    return Stage(
        id=data["id"],
        name=data.get("name", data["id"]),
        order_index=data["order_index"],
        stage_type=data.get("stage_type", ""),
        description=data.get("description", ""),
        is_required=data.get("is_required", True),
        parallel_allowed=data.get("parallel_allowed", False),
        timing=TimingConfig(
            expected_duration_days=timing.get("expected_duration_days"),
            stall_threshold_days=timing.get("stall_threshold_days"),
            escalation_threshold_days=timing.get("escalation_threshold_days"),
            business_hours_only=timing.get("business_hours_only", False),
        ),
        completion=CompletionCriteria(
            mode=_enum(CompletionMode, completion.get("mode"), CompletionMode.ALL_REQUIREMENTS_MET),
            requirement_ids=tuple(completion.get("requirement_ids", [])),
        ),
        requirements=tuple(_requirement_from_dict(r) for r in data.get("requirements", [])),
        channel_rules=tuple(_channel_rule_from_dict(c) for c in data.get("channel_rules", [])),
        escalation=EscalationRules(
            auto_escalate_after_days=escalation.get("auto_escalate_after_days"),
            escalate_to=escalation.get("escalate_to", "admissions_manager"),
            notify_channels=tuple(
                _enum(ChannelType, c, ChannelType.EMAIL) for c in escalation.get("notify_channels", ["email"])
            ),
        ),
    )


def journey_from_dict(data: Dict[str, Any]) -> JourneyDefinition:
    """Build and validate a JourneyDefinition from its JSON form."""
    try:
        journey = JourneyDefinition(
            id=data["id"],
            tenant_id=data["tenant_id"],
            name=data.get("name", data["id"]),
            version=data.get("version", 1),
            description=data.get("description", ""),
            stages=tuple(stage_from_dict(s) for s in data.get("stages", [])),
            is_master_template=data.get("is_master_template", False),
        )
    except KeyError as e:
        raise ValidationError(f"Journey definition missing field {e}")
    journey.validate()
    return journey


def journey_to_dict(journey: JourneyDefinition) -> Dict[str, Any]:
    """Serialize a JourneyDefinition to its JSON form."""
    return {
        "id": journey.id,
        "tenant_id": journey.tenant_id,
        "name": journey.name,
        "version": journey.version,
        "description": journey.description,
        "is_master_template": journey.is_master_template,
        "stages": [
            {
                "id": s.id,
                "name": s.name,
                "order_index": s.order_index,
                "stage_type": s.stage_type,
                "description": s.description,
                "is_required": s.is_required,
                "parallel_allowed": s.parallel_allowed,
                "timing_config": {
                    "expected_duration_days": s.timing.expected_duration_days,
                    "stall_threshold_days": s.timing.stall_threshold_days,
                    "escalation_threshold_days": s.timing.escalation_threshold_days,
                    "business_hours_only": s.timing.business_hours_only,
                },
                "completion_criteria": {
                    "mode": s.completion.mode.value,
                    "requirement_ids": list(s.completion.requirement_ids),
                },
                "requirements": [
                    {
                        "id": r.id,
                        "name": r.name,
                        "requirement_type": r.requirement_type.value,
                        "is_mandatory": r.is_mandatory,
                        "validation_rules": r.validation_rules,
                        "reminder_schedule_days": list(r.reminder_schedule_days),
                    }
                    for r in s.requirements
                ],
                "channel_rules": [
                    {
                        "channel": c.channel.value,
                        "is_allowed": c.is_allowed,
                        "priority_threshold": c.priority_threshold.value,
                        "time_restrictions": {
                            "business_hours_only": c.time_restrictions.business_hours_only,
                            "business_start": c.time_restrictions.business_start,
                            "business_end": c.time_restrictions.business_end,
                            "allowed_days": list(c.time_restrictions.allowed_days),
                            "blackout_windows": [list(w) for w in c.time_restrictions.blackout_windows],
                        },
                        "frequency_limits": {
                            "max_per_day": c.frequency_limits.max_per_day,
                            "max_per_week": c.frequency_limits.max_per_week,
                            "min_hours_between": c.frequency_limits.min_hours_between,
                        },
                    }
                    for c in s.channel_rules
                ],
                "escalation_rules": {
                    "auto_escalate_after_days": s.escalation.auto_escalate_after_days,
                    "escalate_to": s.escalation.escalate_to,
                    "notify_channels": [c.value for c in s.escalation.notify_channels],
                },
            }
            for s in journey.stages
        ],
    }
