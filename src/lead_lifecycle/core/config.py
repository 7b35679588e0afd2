"""Configurable scoring parameters."""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional
from datetime import datetime

logger = logging.getLogger(__name__)


@dataclass
class ScoringConfig:
    """Scoring constants that are tunable rather than fixed."""

    base_score: int = 50
    min_score: int = 0
    max_score: int = 100

    # Multipliers applied per feature kind
    boolean_multiplier: float = 10.0
    ratio_multiplier: float = 10.0
    decay_multiplier: float = 10.0

    # Number of breakdown rows returned to callers (full breakdown is persisted)
    breakdown_report_limit: int = 10

    # Per-feature overrides of decay denominators and caps, e.g.
    # {"days_since_created_penalty": {"denominator": 30, "cap": 3}}
    feature_params: Dict[str, Dict[str, float]] = field(default_factory=dict)

    # Tier thresholds
    hot_threshold: int = 75
    warm_threshold: int = 50

    updated_at: datetime = field(default_factory=datetime.now)

    def get_tier(self, score: int) -> str:
        """Get tier label for a score."""
        if score >= self.hot_threshold:
            return "hot"
        elif score >= self.warm_threshold:
            return "warm"
        return "cold"


class ScoringConfigManager:
    """Manage and persist scoring configuration."""

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize config manager."""
        self.config_path = config_path or Path.home() / ".lead-lifecycle" / "scoring_config.json"
        self.config = self._load_config()

    def _load_config(self) -> ScoringConfig:
        """Load configuration from file."""
        if self.config_path.exists():
            try:
                with open(self.config_path, 'r') as f:
                    data = json.load(f)
                    return ScoringConfig(
                        base_score=data.get("base_score", 50),
                        min_score=data.get("min_score", 0),
                        max_score=data.get("max_score", 100),
                        boolean_multiplier=data.get("boolean_multiplier", 10.0),
                        ratio_multiplier=data.get("ratio_multiplier", 10.0),
                        decay_multiplier=data.get("decay_multiplier", 10.0),
                        breakdown_report_limit=data.get("breakdown_report_limit", 10),
                        feature_params=data.get("feature_params", {}),
                        hot_threshold=data.get("hot_threshold", 75),
                        warm_threshold=data.get("warm_threshold", 50),
                    )
            except (OSError, ValueError) as e:
                logger.error(f"Error loading scoring config: {e}")

        return ScoringConfig()

    def save_config(self):
        """Save configuration to file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "base_score": self.config.base_score,
            "min_score": self.config.min_score,
            "max_score": self.config.max_score,
            "boolean_multiplier": self.config.boolean_multiplier,
            "ratio_multiplier": self.config.ratio_multiplier,
            "decay_multiplier": self.config.decay_multiplier,
            "breakdown_report_limit": self.config.breakdown_report_limit,
            "feature_params": self.config.feature_params,
            "hot_threshold": self.config.hot_threshold,
            "warm_threshold": self.config.warm_threshold,
            "updated_at": self.config.updated_at.isoformat(),
        }
        with open(self.config_path, 'w') as f:
            json.dump(data, f, indent=2)

    def update_thresholds(self, hot: int, warm: int):
        """Update tier thresholds."""
        self.config.hot_threshold = hot
        self.config.warm_threshold = warm
        self.config.updated_at = datetime.now()
        self.save_config()

    def set_feature_params(
        self,
        feature: str,
        denominator: Optional[float] = None,
        cap: Optional[float] = None
    ):
        """Override the decay denominator and/or cap of a feature."""
        params = self.config.feature_params.setdefault(feature, {})
        if denominator is not None:
            params["denominator"] = denominator
        if cap is not None:
            params["cap"] = cap
        self.config.updated_at = datetime.now()
        self.save_config()
