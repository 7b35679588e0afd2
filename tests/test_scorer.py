"""Tests for feature extraction and the scoring model."""

import pytest
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

from lead_lifecycle.core.config import ScoringConfig, ScoringConfigManager
from lead_lifecycle.core.features import (
    FeatureExtractor,
    LeadFeatureVector,
    build_feature_vector,
    categorize_source,
)
from lead_lifecycle.core.scorer import DEFAULT_WEIGHTS, LeadScorer
from lead_lifecycle.storage.models import LeadSnapshot, ScoringModel

NOW = datetime(2024, 3, 1, 12, 0)


def make_model(weights, version=1):
    return ScoringModel(tenant_id="t1", version=version, weights=weights, is_active=True)


class TestFeatureExtraction:
    """Tests for build_feature_vector and categorize_source."""

    def test_empty_snapshot_degrades_to_defaults(self):
        """A lead with nothing filled in should still produce a full vector."""
        features = build_feature_vector(LeadSnapshot(lead_id="L1", tenant_id="t1"), NOW)
        assert features["has_email"] is False
        assert features["has_phone"] is False
        assert features["source_category"] is None
        assert features["days_since_created_penalty"] == 0.0
        assert features["document_completion_ratio"] == 0.0
        assert features["total_activities"] == 0

    def test_presence_and_counts(self):
        """Presence flags and activity counters come from the snapshot."""
        snapshot = LeadSnapshot(
            lead_id="L1",
            tenant_id="t1",
            email="ana@example.com",
            phone="555-0100",
            utm_source="google",
            tags=("nursing",),
            note_count=2,
            assigned_to="advisor-1",
            re_enquiry_count=1,
            communication_counts=(("call", 3), ("meeting", 1), ("form_submission", 2)),
        )
        features = build_feature_vector(snapshot, NOW)
        assert features["has_email"] is True
        assert features["has_phone"] is True
        assert features["has_tags"] is True
        assert features["has_notes"] is True
        assert features["is_assigned"] is True
        assert features["has_re_enquired"] is True
        assert features["call_count"] == 3
        assert features["meeting_count"] == 1
        assert features["form_submission_count"] == 2
        assert features["total_activities"] == 6

    def test_recency_in_days(self):
        """Recency features count days since creation and last contact."""
        snapshot = LeadSnapshot(
            lead_id="L1",
            tenant_id="t1",
            created_at=NOW - timedelta(days=40),
            last_contacted_at=NOW - timedelta(hours=36),
        )
        features = build_feature_vector(snapshot, NOW)
        assert features["days_since_created_penalty"] == 40.0
        assert features["days_since_last_contact_penalty"] == 1.5

    def test_document_completion_ratio(self):
        """Completion is approved over submitted, zero when nothing was submitted."""
        snapshot = LeadSnapshot(lead_id="L1", tenant_id="t1", documents_submitted=4, documents_approved=3)
        assert build_feature_vector(snapshot, NOW)["document_completion_ratio"] == 0.75

        empty = LeadSnapshot(lead_id="L2", tenant_id="t1", documents_submitted=0, documents_approved=0)
        assert build_feature_vector(empty, NOW)["document_completion_ratio"] == 0.0

    def test_source_categories(self):
        """Raw sources map to referral, organic, paid and web form categories."""
        assert categorize_source("Referral") == "referral"
        assert categorize_source("Google Ads") == "paid"
        assert categorize_source("seo") == "organic"
        assert categorize_source("landing-page") == "web_form"
        assert categorize_source(None, utm_medium="cpc") == "paid"
        assert categorize_source("billboard") is None

    def test_source_flags_are_exclusive(self):
        """Exactly one source flag is set for a categorized source."""
        features = build_feature_vector(LeadSnapshot(lead_id="L1", tenant_id="t1", source="referral"), NOW)
        assert features["source_referral"] is True
        assert features["source_paid"] is False
        assert features["source_organic"] is False
        assert features["source_web_form"] is False

    def test_resolve_missing_feature(self):
        """Unknown or absent features resolve to a neutral default."""
        vector = LeadFeatureVector()
        assert vector.resolve("has_email") is False
        assert vector.resolve("call_count") == 0
        assert vector.resolve("not_a_feature") == 0

    def test_extractor_unknown_lead(self):
        """The extractor returns None when the reader has no such lead."""
        class EmptyReader:
            def get_lead_snapshot(self, tenant_id, lead_id):
                return None

        assert FeatureExtractor(EmptyReader()).extract("t1", "missing") is None


class TestLeadScorer:
    """Tests for LeadScorer."""

    def setup_method(self):
        """Set up test fixtures."""
        self.scorer = LeadScorer()

    def test_email_offset_by_age(self):
        """Email bonus partly offset by the age penalty lands just above base."""
        snapshot = LeadSnapshot(
            lead_id="L1",
            tenant_id="t1",
            email="ana@example.com",
            created_at=NOW - timedelta(days=40),
        )
        model = make_model({"has_email": 0.5, "days_since_created_penalty": -0.3})
        result = self.scorer.score("L1", build_feature_vector(snapshot, NOW), model)

        assert 50 < result.score < 55
        points = {item.feature: item.points for item in result.breakdown}
        assert points["has_email"] == 5.0
        assert points["days_since_created_penalty"] == -4.0

    def test_no_model_returns_base(self):
        """Without an active model the neutral base score is used."""
        result = self.scorer.score("L1", LeadFeatureVector(), None)
        assert result.score == 50
        assert result.tier == "warm"
        assert result.breakdown == []
        assert result.model_version is None

    def test_score_is_clamped(self):
        """Scores never leave the 0-100 range."""
        features = build_feature_vector(
            LeadSnapshot(lead_id="L1", tenant_id="t1", email="a@b.c", communication_counts=(("call", 5),)),
            NOW,
        )
        high = self.scorer.score("L1", features, make_model({"call_count": 100}))
        assert high.score == 100
        assert high.tier == "hot"

        low = self.scorer.score("L1", features, make_model({"has_email": -100}))
        assert low.score == 0
        assert low.tier == "cold"

    def test_count_features_are_capped(self):
        """Counts are capped before weighting."""
        assert self.scorer.feature_points("call_count", 1.0, 50) == 5.0
        assert self.scorer.feature_points("meeting_count", 2.0, 10) == 6.0

    def test_decay_and_ratio_points(self):
        """Decay and ratio features scale by ten."""
        assert self.scorer.feature_points("days_since_last_contact_penalty", -0.5, 7) == pytest.approx(-2.5)
        # Capped at two denominators
        assert self.scorer.feature_points("days_since_last_contact_penalty", -0.5, 100) == pytest.approx(-10.0)
        assert self.scorer.feature_points("document_completion_ratio", 1.5, 0.5) == pytest.approx(7.5)

    def test_configurable_decay_parameters(self):
        """Decay denominators and caps can be overridden per feature."""
        config = ScoringConfig(feature_params={"days_since_created_penalty": {"denominator": 10, "cap": 1}})
        scorer = LeadScorer(config)
        assert scorer.feature_points("days_since_created_penalty", -0.3, 40) == pytest.approx(-3.0)

    def test_unknown_weight_never_fails(self):
        """A weight for a feature the extractor does not produce scores zero."""
        result = self.scorer.score("L1", LeadFeatureVector(), make_model({"mystery_signal": 2.0}))
        assert result.score == 50
        assert result.breakdown[0].feature == "mystery_signal"
        assert result.breakdown[0].points == 0

    def test_breakdown_sorted_by_magnitude(self):
        """Largest contributions (positive or negative) come first."""
        snapshot = LeadSnapshot(
            lead_id="L1",
            tenant_id="t1",
            email="a@b.c",
            source="referral",
            created_at=NOW - timedelta(days=90),
            communication_counts=(("meeting", 3),),
        )
        result = self.scorer.score("L1", build_feature_vector(snapshot, NOW), make_model(DEFAULT_WEIGHTS))

        magnitudes = [abs(item.points) for item in result.breakdown]
        assert magnitudes == sorted(magnitudes, reverse=True)
        assert len(result.top(10)) == 10
        assert len(result.to_dict(limit=10)["breakdown"]) == 10
        assert len(result.to_dict()["breakdown"]) == len(DEFAULT_WEIGHTS)

    def test_impact_labels(self):
        """Contributions are labelled positive, negative or neutral."""
        snapshot = LeadSnapshot(lead_id="L1", tenant_id="t1", email="a@b.c", created_at=NOW - timedelta(days=30))
        model = make_model({"has_email": 0.5, "days_since_created_penalty": -0.3, "has_phone": 0.5})
        result = self.scorer.score("L1", build_feature_vector(snapshot, NOW), model)
        impacts = {item.feature: item.impact for item in result.breakdown}
        assert impacts == {
            "has_email": "positive",
            "days_since_created_penalty": "negative",
            "has_phone": "neutral",
        }

    def test_deterministic(self):
        """Same snapshot, same time and same model give the same result."""
        snapshot = LeadSnapshot(lead_id="L1", tenant_id="t1", email="a@b.c", source="seo",
                                created_at=NOW - timedelta(days=12))
        model = make_model(DEFAULT_WEIGHTS)
        first = self.scorer.score("L1", build_feature_vector(snapshot, NOW), model, computed_at=NOW)
        second = self.scorer.score("L1", build_feature_vector(snapshot, NOW), model, computed_at=NOW)
        assert first.to_dict() == second.to_dict()

    def test_tier_thresholds(self):
        """Tiers follow the configured thresholds."""
        config = ScoringConfig()
        assert config.get_tier(75) == "hot"
        assert config.get_tier(74) == "warm"
        assert config.get_tier(50) == "warm"
        assert config.get_tier(49) == "cold"

    def test_explain_score(self):
        """Explanation lists score, model and each contribution."""
        snapshot = LeadSnapshot(lead_id="L1", tenant_id="t1", email="a@b.c")
        result = self.scorer.score("L1", build_feature_vector(snapshot, NOW), make_model({"has_email": 0.5}, 3))
        text = self.scorer.explain_score(result)
        assert "Score: 55 (WARM)" in text
        assert "Model version: 3" in text
        assert "+5: Has email address" in text


@pytest.fixture
def temp_data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


class TestScoringConfigManager:
    """Tests for persisted scoring configuration."""

    def test_defaults_without_file(self, temp_data_dir):
        manager = ScoringConfigManager(temp_data_dir / "scoring_config.json")
        assert manager.config.base_score == 50
        assert manager.config.feature_params == {}

    def test_feature_params_persist(self, temp_data_dir):
        """Overrides survive a reload and change the points a feature earns."""
        path = temp_data_dir / "scoring_config.json"
        ScoringConfigManager(path).set_feature_params("days_since_created_penalty", denominator=10, cap=1)

        reloaded = ScoringConfigManager(path).config
        assert reloaded.feature_params == {"days_since_created_penalty": {"denominator": 10, "cap": 1}}
        assert LeadScorer(reloaded).feature_points("days_since_created_penalty", -0.3, 40) == pytest.approx(-3.0)

    def test_thresholds_persist(self, temp_data_dir):
        path = temp_data_dir / "scoring_config.json"
        ScoringConfigManager(path).update_thresholds(hot=80, warm=40)
        config = ScoringConfigManager(path).config
        assert config.get_tier(79) == "warm"
        assert config.get_tier(39) == "cold"

    def test_malformed_file_falls_back(self, temp_data_dir):
        path = temp_data_dir / "scoring_config.json"
        path.write_text("{not json")
        assert ScoringConfigManager(path).config.hot_threshold == 75
