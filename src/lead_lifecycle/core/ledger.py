"""Score computation and the score ledger."""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from .config import ScoringConfig
from .features import FeatureExtractor
from .scorer import LeadScorer, ScoringResult
from ..errors import NoActiveModel, ValidationError
from ..storage.database import LifecycleDatabase
from ..storage.models import ScoreRecord

logger = logging.getLogger(__name__)

# Tiers treated as a "will convert" prediction when measuring accuracy
POSITIVE_TIERS = ("hot", "warm")


class ScoreLedger:
    """Scores leads with the tenant's active model and records the results."""

    def __init__(self, db: LifecycleDatabase, config: Optional[ScoringConfig] = None):
        self.db = db
        self.config = config or ScoringConfig()
        self.scorer = LeadScorer(self.config)
        self.extractor = FeatureExtractor(db)

    def compute_score(self, tenant_id: str, lead_id: str, now: Optional[datetime] = None) -> ScoringResult:
        """Score a lead, overwrite its current score and append history.

        Without an active model the lead gets the neutral base score.
        """
        now = now or datetime.now()
        features = self.extractor.extract(tenant_id, lead_id, now)
        if features is None:
            raise ValidationError(f"Unknown lead: {lead_id}")

        model = self.db.get_active_model(tenant_id)
        if model is None:
            logger.info(f"{NoActiveModel(tenant_id).message}, using base score")

        result = self.scorer.score(lead_id, features, model, computed_at=now)
        self.db.save_score(ScoreRecord(
            tenant_id=tenant_id,
            lead_id=lead_id,
            score=result.score,
            tier=result.tier,
            breakdown=[item.to_dict() for item in result.breakdown],
            model_version=result.model_version,
            computed_at=result.computed_at,
        ))
        return result

    def get_score_history(self, tenant_id: str, lead_id: str, limit: int = 50) -> List[ScoreRecord]:
        return self.db.get_score_history(tenant_id, lead_id, limit)

    def score_trend(self, tenant_id: str, lead_id: str) -> Dict[str, Any]:
        """Latest score compared with the one before it."""
        history = self.db.get_score_history(tenant_id, lead_id, limit=2)
        if not history:
            return {"current": None, "previous": None, "change": 0, "direction": "none"}

        current = history[0].score
        previous = history[1].score if len(history) > 1 else None
        change = current - previous if previous is not None else 0
        if change > 0:
            direction = "up"
        elif change < 0:
            direction = "down"
        else:
            direction = "flat"
        return {"current": current, "previous": previous, "change": change, "direction": direction}

    def record_outcome(self, tenant_id: str, lead_id: str, converted: bool) -> int:
        """Resolve the lead's open predictions with its actual outcome."""
        updated = self.db.record_outcome(tenant_id, lead_id, converted)
        logger.info(f"Recorded outcome converted={converted} for lead {lead_id} ({updated} predictions)")
        return updated

    def model_accuracy(self, tenant_id: str, model_version: Optional[int] = None) -> Dict[str, Any]:
        """Conversion rate per tier and overall accuracy of resolved predictions."""
        predictions = self.db.get_predictions(tenant_id, model_version, resolved_only=True)

        by_tier: Dict[str, Dict[str, Any]] = defaultdict(lambda: {"count": 0, "converted": 0})
        correct = 0
        for p in predictions:
            by_tier[p.tier]["count"] += 1
            if p.converted:
                by_tier[p.tier]["converted"] += 1
            if (p.tier in POSITIVE_TIERS) == p.converted:
                correct += 1

        for stats in by_tier.values():
            stats["conversion_rate"] = round(stats["converted"] / stats["count"], 4)

        return {
            "model_version": model_version,
            "resolved": len(predictions),
            "accuracy": round(correct / len(predictions), 4) if predictions else None,
            "by_tier": dict(by_tier),
        }
