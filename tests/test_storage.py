"""Tests for SQLite storage and the score ledger."""

import pytest
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

from lead_lifecycle.core.ledger import ScoreLedger
from lead_lifecycle.errors import ConcurrentModification, DuplicateActiveEnrollment, ValidationError
from lead_lifecycle.storage import (
    CommunicationRecord,
    Enrollment,
    EnrollmentStatus,
    Lead,
    LifecycleDatabase,
    TransitionLogEntry,
    TriggerType,
)


@pytest.fixture
def temp_data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db(temp_data_dir):
    """Create database with temp storage."""
    return LifecycleDatabase(temp_data_dir / "lifecycle.db")


@pytest.fixture
def ledger(db):
    return ScoreLedger(db)


def add_lead(db, lead_id="L1", tenant_id="t1", **kwargs):
    return db.upsert_lead(Lead(id=lead_id, tenant_id=tenant_id, **kwargs))


class TestLeads:
    """Tests for lead records and snapshots."""

    def test_upsert_and_get(self, db):
        """Leads are stored and updated in place."""
        add_lead(db, email="ana@example.com", first_name="Ana")
        add_lead(db, email="ana@school.edu", first_name="Ana")

        lead = db.get_lead("t1", "L1")
        assert lead.email == "ana@school.edu"
        assert lead.display_name == "Ana"
        assert len(db.list_leads("t1")) == 1

    def test_tenant_isolation(self, db):
        """One tenant never sees another tenant's leads."""
        add_lead(db, tenant_id="t1")
        assert db.get_lead("t2", "L1") is None
        assert db.list_leads("t2") == []
        assert db.get_lead_snapshot("t2", "L1") is None

    def test_snapshot_counts(self, db):
        """Snapshots merge activities, communications, notes and documents."""
        add_lead(db, tags="nursing, evening")
        db.add_activity("t1", "L1", "call")
        db.add_activity("t1", "L1", "call")
        db.add_note("t1", "L1", "Asked about scholarships")
        db.add_document("t1", "L1", "transcript.pdf", status="approved")
        db.add_document("t1", "L1", "passport.pdf")
        db.record_communication(CommunicationRecord(
            id=None, tenant_id="t1", lead_id="L1", channel="video",
            action="info_session", priority="medium", sent_at=datetime.now(),
        ))

        snapshot = db.get_lead_snapshot("t1", "L1")
        assert snapshot.communication_count("call") == 2
        assert snapshot.communication_count("meeting") == 1
        assert snapshot.total_activities == 3
        assert snapshot.note_count == 1
        assert snapshot.documents_submitted == 2
        assert snapshot.documents_approved == 1
        assert snapshot.tags == ("nursing", "evening")
        assert snapshot.last_contacted_at is not None

    def test_snapshot_uses_routing_assignment(self, db):
        """A routing assignment counts as the lead being assigned."""
        from lead_lifecycle.storage import RoutingAssignment

        add_lead(db)
        db.upsert_assignment(RoutingAssignment(tenant_id="t1", lead_id="L1", advisor_id="adv-1", rule_id="r1"))
        assert db.get_lead_snapshot("t1", "L1").assigned_to == "adv-1"


class TestScoringModels:
    """Tests for model versions and the active pointer."""

    def test_versions_increment(self, db):
        first = db.create_scoring_model("t1", {"has_email": 0.5})
        second = db.create_scoring_model("t1", {"has_email": 1.0})
        assert (first.version, second.version) == (1, 2)
        assert db.get_active_model("t1") is None

    def test_single_active_model(self, db):
        """Activating a version deactivates the previous one."""
        db.create_scoring_model("t1", {"has_email": 0.5}, activate=True)
        db.create_scoring_model("t1", {"has_email": 1.0}, activate=True)
        assert db.get_active_model("t1").version == 2

        db.activate_scoring_model("t1", 1)
        active = [m.version for m in db.list_scoring_models("t1") if m.is_active]
        assert active == [1]

    def test_activate_unknown_version(self, db):
        with pytest.raises(ValidationError):
            db.activate_scoring_model("t1", 99)

    def test_models_are_per_tenant(self, db):
        db.create_scoring_model("t1", {"has_email": 0.5}, activate=True)
        assert db.get_active_model("t2") is None
        assert db.create_scoring_model("t2", {}).version == 1


class TestScoreLedger:
    """Tests for ScoreLedger."""

    def test_unknown_lead(self, ledger):
        with pytest.raises(ValidationError):
            ledger.compute_score("t1", "missing")

    def test_no_active_model_gives_base_score(self, db, ledger):
        """Missing model is not an error: the lead gets the base score."""
        add_lead(db, email="a@b.c")
        result = ledger.compute_score("t1", "L1")
        assert result.score == 50
        assert result.model_version is None
        assert db.get_current_score("t1", "L1").score == 50

    def test_email_and_age_scenario(self, db, ledger):
        """Email present, created 40 days ago: just above the base score."""
        now = datetime(2024, 3, 1, 12, 0)
        add_lead(db, email="a@b.c", created_at=now - timedelta(days=40))
        db.create_scoring_model("t1", {"has_email": 0.5, "days_since_created_penalty": -0.3}, activate=True)

        result = ledger.compute_score("t1", "L1", now=now)
        assert 50 < result.score < 55
        assert result.model_version == 1

    def test_history_is_append_only(self, db, ledger):
        """Each computation appends history; the current score is overwritten."""
        now = datetime(2024, 3, 1, 12, 0)
        add_lead(db, email="a@b.c", created_at=now)
        db.create_scoring_model("t1", {"has_email": 0.5}, activate=True)
        ledger.compute_score("t1", "L1", now=now)

        db.create_scoring_model("t1", {"has_email": 2.0}, activate=True)
        ledger.compute_score("t1", "L1", now=now + timedelta(hours=1))

        history = ledger.get_score_history("t1", "L1")
        assert [r.score for r in history] == [70, 55]
        assert [r.model_version for r in history] == [2, 1]
        assert history[0].breakdown[0]["feature"] == "has_email"
        assert db.get_current_score("t1", "L1").score == 70

        trend = ledger.score_trend("t1", "L1")
        assert trend == {"current": 70, "previous": 55, "change": 15, "direction": "up"}

    def test_repeat_at_same_instant_is_idempotent(self, db, ledger):
        """Re-running a computation for the same instant adds no history row."""
        now = datetime(2024, 3, 1, 12, 0)
        add_lead(db, created_at=now)
        ledger.compute_score("t1", "L1", now=now)
        ledger.compute_score("t1", "L1", now=now)
        assert len(ledger.get_score_history("t1", "L1")) == 1

    def test_outcomes_and_accuracy(self, db, ledger):
        """Recorded outcomes resolve predictions and feed per-tier accuracy."""
        now = datetime(2024, 3, 1, 12, 0)
        add_lead(db, "HOT", email="a@b.c", created_at=now)
        add_lead(db, "COLD", created_at=now)
        db.create_scoring_model("t1", {"has_email": 3.0, "has_phone": 0.5}, activate=True)
        db.create_scoring_model("t1", {"has_email": 3.0, "has_phone": -1.0}, activate=False)

        assert ledger.compute_score("t1", "HOT", now=now).tier == "hot"
        db.activate_scoring_model("t1", 2)
        db.upsert_lead(Lead(id="COLD", tenant_id="t1", phone="555", created_at=now))
        assert ledger.compute_score("t1", "COLD", now=now).tier == "cold"

        assert ledger.record_outcome("t1", "HOT", True) == 1
        assert ledger.record_outcome("t1", "COLD", True) == 1
        # Already resolved
        assert ledger.record_outcome("t1", "COLD", False) == 0

        report = ledger.model_accuracy("t1")
        assert report["resolved"] == 2
        assert report["accuracy"] == 0.5
        assert report["by_tier"]["hot"]["conversion_rate"] == 1.0

        assert ledger.model_accuracy("t1", model_version=1)["resolved"] == 1


class TestEnrollmentStorage:
    """Tests for enrollment rows and the transition log."""

    def make_enrollment(self, enrollment_id="E1", lead_id="L1"):
        now = datetime(2024, 3, 1, 9, 0)
        return Enrollment(id=enrollment_id, tenant_id="t1", lead_id=lead_id, journey_id="j1",
                          journey_version=1, enrolled_at=now, stage_entered_at=now)

    def test_one_active_enrollment_per_journey(self, db):
        db.create_enrollment(self.make_enrollment("E1"), "intake", "advisor-1")
        with pytest.raises(DuplicateActiveEnrollment):
            db.create_enrollment(self.make_enrollment("E2"), "intake", "advisor-1")
        assert len(db.list_enrollments("t1")) == 1

    def test_replace_keeps_audit_trail(self, db):
        """Replacing marks the old enrollment exited and closes its log."""
        db.create_enrollment(self.make_enrollment("E1"), "intake", "advisor-1")
        db.create_enrollment(self.make_enrollment("E2"), "intake", "advisor-1", replace=True)

        old = db.get_enrollment("t1", "E1")
        assert old.status == EnrollmentStatus.EXITED
        assert old.exit_reason == "Replaced by re-enrollment"
        assert old.version == 1
        assert db.get_enrollment("t1", "E2").is_active
        old_log = db.list_transition_log("t1", "E1")
        assert [e.to_stage for e in old_log] == ["intake", "exited"]
        assert old_log[-1].note == "Replaced by re-enrollment"

    def test_stale_version_writes_nothing(self, db):
        """A compare-and-swap miss leaves neither a log entry nor a pointer change."""
        db.create_enrollment(self.make_enrollment(), "intake", "advisor-1")
        entry = TransitionLogEntry(
            id=None, tenant_id="t1", enrollment_id="E1", from_stage="intake", to_stage="review",
            trigger=TriggerType.MANUAL, actor="advisor-1", created_at=datetime(2024, 3, 2),
        )
        updated = db.apply_transition("t1", "E1", 0, entry, 1, EnrollmentStatus.ACTIVE)
        assert updated.version == 1
        assert updated.current_stage_index == 1

        with pytest.raises(ConcurrentModification):
            db.apply_transition("t1", "E1", 0, entry, 2, EnrollmentStatus.ACTIVE)

        assert db.get_enrollment("t1", "E1").current_stage_index == 1
        assert len(db.list_transition_log("t1", "E1")) == 2

    def test_history_loaded_on_request(self, db):
        db.create_enrollment(self.make_enrollment(), "intake", "system", TriggerType.SYSTEM)
        enrollment = db.get_enrollment("t1", "E1", with_history=True)
        assert len(enrollment.history) == 1
        assert enrollment.history[0].trigger == TriggerType.SYSTEM
        assert db.get_enrollment("t2", "E1") is None
