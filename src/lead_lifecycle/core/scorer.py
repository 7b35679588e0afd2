"""Weighted lead scoring with an auditable breakdown."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Dict, Optional, Any

from .config import ScoringConfig
from .features import FeatureDefinition, FeatureKind, FEATURES_BY_NAME, LeadFeatureVector
from ..storage.models import ScoringModel

logger = logging.getLogger(__name__)

# Weights seeded for a tenant that has no model yet
DEFAULT_WEIGHTS: Dict[str, float] = {
    "has_email": 0.5,
    "has_phone": 0.5,
    "has_utm_source": 0.2,
    "is_assigned": 0.3,
    "has_re_enquired": 0.8,
    "source_referral": 1.0,
    "source_organic": 0.4,
    "source_paid": 0.3,
    "source_web_form": 0.6,
    "days_since_created_penalty": -0.3,
    "days_since_last_contact_penalty": -0.5,
    "document_completion_ratio": 1.5,
    "call_count": 1.0,
    "meeting_count": 2.0,
    "form_submission_count": 1.5,
    "total_activities": 0.3,
}


@dataclass
class ScoreContribution:
    """One feature's contribution to a score."""

    feature: str
    label: str
    weight: float
    value: Any
    points: float

    @property
    def impact(self) -> str:
        if self.points > 0:
            return "positive"
        if self.points < 0:
            return "negative"
        return "neutral"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature": self.feature,
            "label": self.label,
            "weight": self.weight,
            "value": self.value,
            "points": self.points,
            "impact": self.impact,
        }


@dataclass
class ScoringResult:
    """Result of scoring one lead."""

    lead_id: str
    score: int
    tier: str
    breakdown: List[ScoreContribution] = field(default_factory=list)
    model_version: Optional[int] = None
    computed_at: datetime = field(default_factory=datetime.now)

    def top(self, limit: int = 10) -> List[ScoreContribution]:
        """Largest contributions first, for external reporting."""
        return self.breakdown[:limit]

    @property
    def summary(self) -> str:
        """Get a human-readable summary of the scoring."""
        if not self.breakdown:
            return "No scoring model applied"

        parts = []
        for item in self.top(3):
            sign = "+" if item.points > 0 else ""
            parts.append(f"{item.label} ({sign}{item.points:g})")
        return ", ".join(parts)

    def to_dict(self, limit: Optional[int] = None) -> Dict[str, Any]:
        rows = self.breakdown if limit is None else self.top(limit)
        return {
            "lead_id": self.lead_id,
            "score": self.score,
            "tier": self.tier,
            "model_version": self.model_version,
            "computed_at": self.computed_at.isoformat(),
            "breakdown": [row.to_dict() for row in rows],
        }


def _as_number(value: Any) -> float:
    if value is None or isinstance(value, str):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


class LeadScorer:
    """Applies a scoring model's weights to a feature vector."""

    def __init__(self, config: Optional[ScoringConfig] = None):
        self.config = config or ScoringConfig()

    def _param(self, definition: FeatureDefinition, key: str) -> Optional[float]:
        override = self.config.feature_params.get(definition.name, {})
        if key in override:
            return override[key]
        return getattr(definition, key)

    def feature_points(self, name: str, weight: float, value: Any) -> float:
        """Points contributed by one feature value under one weight."""
        definition = FEATURES_BY_NAME.get(name)

        if definition is None:
            # Unregistered feature: booleans score like flags, numbers linearly
            if isinstance(value, bool):
                return weight * self.config.boolean_multiplier if value else 0.0
            return weight * _as_number(value)

        kind = definition.kind
        if kind == FeatureKind.BOOLEAN:
            return weight * self.config.boolean_multiplier if value else 0.0
        elif kind == FeatureKind.DECAY:
            denominator = self._param(definition, "denominator")
            cap = self._param(definition, "cap")
            if not denominator:
                return 0.0
            ratio = _as_number(value) / denominator
            if cap is not None:
                ratio = min(ratio, cap)
            return weight * max(ratio, 0.0) * self.config.decay_multiplier
        elif kind == FeatureKind.RATIO:
            ratio = min(max(_as_number(value), 0.0), 1.0)
            return weight * ratio * self.config.ratio_multiplier
        elif kind == FeatureKind.COUNT:
            count = max(_as_number(value), 0.0)
            cap = self._param(definition, "cap")
            if cap is not None:
                count = min(count, cap)
            return weight * count
        elif kind == FeatureKind.CATEGORICAL:
            return 0.0
        raise ValueError(f"Unhandled feature kind: {kind}")

    def score(
        self,
        lead_id: str,
        features: LeadFeatureVector,
        model: Optional[ScoringModel],
        computed_at: Optional[datetime] = None
    ) -> ScoringResult:
        """Score a lead. Without a model the neutral base score is returned."""
        computed_at = computed_at or datetime.now()
        base = self.config.base_score

        if model is None:
            return ScoringResult(
                lead_id=lead_id,
                score=base,
                tier=self.config.get_tier(base),
                computed_at=computed_at,
            )

        breakdown: List[ScoreContribution] = []
        for name, weight in model.weights.items():
            value = features.resolve(name)
            points = round(self.feature_points(name, weight, value), 2)
            definition = FEATURES_BY_NAME.get(name)
            breakdown.append(ScoreContribution(
                feature=name,
                label=definition.label if definition else name.replace("_", " ").capitalize(),
                weight=weight,
                value=value,
                points=points,
            ))

        total = base + sum(item.points for item in breakdown)
        score = int(round(total))
        score = max(self.config.min_score, min(self.config.max_score, score))

        breakdown.sort(key=lambda item: (-abs(item.points), item.feature))

        return ScoringResult(
            lead_id=lead_id,
            score=score,
            tier=self.config.get_tier(score),
            breakdown=breakdown,
            model_version=model.version,
            computed_at=computed_at,
        )

    def explain_score(self, result: ScoringResult) -> str:
        """Get a detailed explanation of a scoring result."""
        lines = [
            f"Score: {result.score} ({result.tier.upper()})",
            f"Model version: {result.model_version if result.model_version is not None else 'none'}",
            "",
            "Contributions:"
        ]

        if not result.breakdown:
            lines.append("  (none)")
        else:
            for item in result.breakdown:
                sign = "+" if item.points > 0 else ""
                lines.append(f"  {sign}{item.points:g}: {item.label} = {item.value} (weight {item.weight:g})")

        return "\n".join(lines)
