"""Journey definitions and the stage state machine."""

from .definitions import (
    JourneyDefinition,
    Stage,
    Requirement,
    RequirementType,
    ChannelRule,
    ChannelType,
    CompletionMode,
    CompletionCriteria,
    TimingConfig,
    TimeRestrictions,
    FrequencyLimits,
    EscalationRules,
    Priority,
    journey_from_dict,
    journey_to_dict,
)
from .store import JourneyDefinitionStore
from .templates import seed_master_templates, domestic_template, international_template
from .engine import (
    StageEngine,
    StageTiming,
    CompletionCheck,
    EscalationSignal,
    evaluate_completion,
    stage_timing,
    days_in_stage,
)

__all__ = [
    "JourneyDefinition",
    "Stage",
    "Requirement",
    "RequirementType",
    "ChannelRule",
    "ChannelType",
    "CompletionMode",
    "CompletionCriteria",
    "TimingConfig",
    "TimeRestrictions",
    "FrequencyLimits",
    "EscalationRules",
    "Priority",
    "journey_from_dict",
    "journey_to_dict",
    "JourneyDefinitionStore",
    "seed_master_templates",
    "domestic_template",
    "international_template",
    "StageEngine",
    "StageTiming",
    "CompletionCheck",
    "EscalationSignal",
    "evaluate_completion",
    "stage_timing",
    "days_in_stage",
]
