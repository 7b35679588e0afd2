"""Core scoring engine for lead prioritisation."""

from .scorer import LeadScorer, ScoringResult, ScoreContribution, DEFAULT_WEIGHTS
from .features import (
    FeatureExtractor,
    FeatureDefinition,
    FeatureKind,
    LeadFeatureVector,
    FEATURE_DEFINITIONS,
    build_feature_vector,
)
from .config import ScoringConfig, ScoringConfigManager
from .ledger import ScoreLedger

__all__ = [
    "LeadScorer",
    "ScoringResult",
    "ScoreContribution",
    "DEFAULT_WEIGHTS",
    "FeatureExtractor",
    "FeatureDefinition",
    "FeatureKind",
    "LeadFeatureVector",
    "FEATURE_DEFINITIONS",
    "build_feature_vector",
    "ScoringConfig",
    "ScoringConfigManager",
    "ScoreLedger",
]
