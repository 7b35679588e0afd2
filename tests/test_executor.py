"""Tests for bulk enrollment, re-routing and sweeps."""

import json
import pytest
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

from lead_lifecycle.bulk import run_bounded
from lead_lifecycle.enrollment import EnrollmentExecutor
from lead_lifecycle.errors import DuplicateActiveEnrollment, ValidationError
from lead_lifecycle.journeys import JourneyDefinitionStore, seed_master_templates
from lead_lifecycle.storage import EnrollmentStatus, Lead, LifecycleDatabase

START = datetime(2024, 3, 4, 9, 0)


@pytest.fixture
def temp_data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db(temp_data_dir):
    return LifecycleDatabase(temp_data_dir / "lifecycle.db")


@pytest.fixture
def executor(db, temp_data_dir):
    store = JourneyDefinitionStore(temp_data_dir / "journeys.json")
    seed_master_templates(store, "t1")
    return EnrollmentExecutor(db, store, concurrency=4)


def add_leads(db, count, tenant_id="t1"):
    ids = []
    for i in range(count):
        lead_id = f"L{i:03d}"
        db.upsert_lead(Lead(id=lead_id, tenant_id=tenant_id, email=f"{lead_id}@example.com"))
        ids.append(lead_id)
    return ids


class TestRunBounded:
    """Tests for the bounded fan-out helper."""

    def test_failures_are_isolated(self):
        def work(n):
            if n % 3 == 0:
                raise ValueError(f"bad {n}")
            return n * 2

        results = run_bounded(range(7), work, concurrency=3)
        assert [item for item, _, _ in results] == list(range(7))
        assert [r for _, r, e in results if e is None] == [2, 4, 8, 10]
        assert sum(1 for _, _, e in results if e is not None) == 3

    def test_progress_reaches_total(self):
        calls = []
        run_bounded(["a", "b", "c"], str.upper, on_done=lambda done, total: calls.append((done, total)))
        assert calls == [(1, 3), (2, 3), (3, 3)]

    def test_empty(self):
        assert run_bounded([], str.upper) == []


class TestEnroll:
    """Tests for single enrollments."""

    def test_duplicate_active_enrollment(self, executor, db):
        add_leads(db, 1)
        executor.enroll("t1", "L000", "master-domestic")
        with pytest.raises(DuplicateActiveEnrollment):
            executor.enroll("t1", "L000", "master-domestic")

    def test_replace(self, executor, db):
        add_leads(db, 1)
        first = executor.enroll("t1", "L000", "master-domestic")
        second = executor.enroll("t1", "L000", "master-domestic", replace=True)
        assert first.id != second.id
        assert [e.id for e in db.list_enrollments("t1", status=EnrollmentStatus.ACTIVE)] == [second.id]

        # The replaced enrollment stays readable with its closed log
        assert executor.get_enrollment_state("t1", first.id)["enrollment"].status == EnrollmentStatus.EXITED
        assert [e.to_stage for e in executor.list_transition_log("t1", first.id)] == ["lead_capture", "exited"]

    def test_same_lead_in_two_journeys(self, executor, db):
        add_leads(db, 1)
        executor.enroll("t1", "L000", "master-domestic")
        executor.enroll("t1", "L000", "master-international")
        assert len(db.list_enrollments("t1", lead_id="L000")) == 2

    def test_validation(self, executor, db):
        add_leads(db, 1)
        with pytest.raises(ValidationError):
            executor.enroll("t1", "missing", "master-domestic")
        with pytest.raises(ValidationError):
            executor.enroll("t1", "L000", "no-such-journey")
        with pytest.raises(ValidationError):
            executor.enroll("t2", "L000", "master-domestic")
        assert db.list_enrollments("t1") == []

    def test_system_actor_uses_system_trigger(self, executor, db):
        add_leads(db, 1)
        enrollment = executor.enroll("t1", "L000", "master-domestic")
        assert enrollment.history[0].trigger.value == "system"


class TestBulkEnroll:
    """Tests for bulk_enroll partial-failure semantics."""

    def test_partial_failure(self, executor, db):
        """Invalid leads fail on their own without stopping the batch."""
        ids = add_leads(db, 97) + ["ghost-1", "ghost-2", "ghost-3"]
        progress = []
        results = executor.bulk_enroll("t1", ids, "master-domestic",
                                       on_progress=lambda done, total: progress.append(done))

        assert results["success"] == 97
        assert len(results["failed"]) == 3
        assert {f["lead_id"] for f in results["failed"]} == {"ghost-1", "ghost-2", "ghost-3"}
        assert all("Unknown lead" in f["reason"] for f in results["failed"])
        assert progress[-1] == 100
        assert len(db.list_enrollments("t1", "master-domestic")) == 97

    def test_rerun_is_idempotent(self, executor, db):
        """Re-running skips leads already enrolled and writes no new log entries."""
        ids = add_leads(db, 10)
        executor.bulk_enroll("t1", ids, "master-domestic")
        again = executor.bulk_enroll("t1", ids, "master-domestic")

        assert again["success"] == 0
        assert again["skipped"] == 10
        enrollments = db.list_enrollments("t1", "master-domestic")
        assert len(enrollments) == 10
        assert all(len(db.list_transition_log("t1", e.id)) == 1 for e in enrollments)

    def test_remove_existing(self, executor, db):
        """Existing enrollments are replaced lead by lead."""
        ids = add_leads(db, 5)
        executor.bulk_enroll("t1", ids[:3], "master-domestic")
        results = executor.bulk_enroll("t1", ids, "master-domestic", remove_existing=True)

        assert results["success"] == 5
        assert results["failed"] == []
        active = db.list_enrollments("t1", "master-domestic", EnrollmentStatus.ACTIVE)
        assert sorted(e.lead_id for e in active) == ids

    def test_unknown_journey(self, executor, db):
        ids = add_leads(db, 2)
        with pytest.raises(ValidationError):
            executor.bulk_enroll("t1", ids, "nope")


class TestReEnrollAll:
    """Tests for re-routing every lead."""

    def setup_leads(self, db, executor):
        db.upsert_lead(Lead(id="R1", tenant_id="t1", source="referral"))
        db.upsert_lead(Lead(id="R2", tenant_id="t1", source="referral",
                            attributes_json=json.dumps({"program": "nursing"})))
        db.upsert_lead(Lead(id="N1", tenant_id="t1", source="google_ads",
                            attributes_json=json.dumps({"program": "nursing"})))
        db.upsert_lead(Lead(id="X1", tenant_id="t1", source="billboard"))
        executor.router.add_rule("t1", "Nursing", {"program": "nursing"}, "advisor-nursing", priority=10)
        executor.router.add_rule("t1", "Referrals", {"source": {"in": ["referral", "alumni"]}},
                                 "advisor-referrals", priority=20)

    def test_assigns_by_first_matching_rule(self, executor, db):
        self.setup_leads(db, executor)
        results = executor.re_enroll_all("t1")

        assert results["processed"] == 4
        assert results["assigned"] == 3
        assert results["skipped"] == 1
        assert results["errors"] == 0
        assignments = {a.lead_id: a.advisor_id for a in db.get_assignments("t1")}
        assert assignments == {
            "R1": "advisor-referrals",
            "R2": "advisor-nursing",
            "N1": "advisor-nursing",
        }

    def test_rerun_gives_same_counts(self, executor, db):
        self.setup_leads(db, executor)
        first = executor.re_enroll_all("t1")
        second = executor.re_enroll_all("t1")

        for key in ("processed", "assigned", "skipped", "errors"):
            assert first[key] == second[key]
        assert second["cleared"] == 3
        assert len(db.get_assignments("t1")) == 3

    def test_unmatched_lead_stays_unassigned(self, executor, db):
        """Stale assignments are cleared and no fallback advisor is used."""
        from lead_lifecycle.storage import RoutingAssignment

        self.setup_leads(db, executor)
        db.upsert_assignment(RoutingAssignment(tenant_id="t1", lead_id="X1", advisor_id="old", rule_id="gone"))
        executor.re_enroll_all("t1")
        assert "X1" not in {a.lead_id for a in db.get_assignments("t1")}

    def test_dry_run_writes_nothing(self, executor, db):
        from lead_lifecycle.storage import RoutingAssignment

        self.setup_leads(db, executor)
        db.upsert_assignment(RoutingAssignment(tenant_id="t1", lead_id="X1", advisor_id="old", rule_id="gone"))
        results = executor.re_enroll_all("t1", dry_run=True)

        assert results["dry_run"] is True
        assert results["assigned"] == 3
        assert results["cleared"] == 0
        assert [a.lead_id for a in db.get_assignments("t1")] == ["X1"]

    def test_progress(self, executor, db):
        self.setup_leads(db, executor)
        progress = []
        executor.re_enroll_all("t1", on_progress=lambda done, total: progress.append((done, total)))
        assert progress[-1] == (4, 4)


class TestSweepAndStats:
    """Tests for sweeps and journey statistics."""

    def test_sweep_plans_escalations(self, executor, db):
        """Overdue enrollments get an escalation plan limited by channel rules."""
        add_leads(db, 1)
        executor.enroll("t1", "L000", "master-domestic", now=START)
        # Application start: stall 14 days, escalation threshold 21 days
        executor.advance_step("t1", db.list_enrollments("t1")[0].id, actor="advisor-1", now=START)

        # Saturday: email has no time restrictions
        report = executor.sweep("t1", now=START + timedelta(days=26))
        assert report.checked == 1
        assert len(report.stalled) == 1
        assert len(report.escalations) == 1
        plan = report.escalations[0]
        assert plan.signal.escalate_to == "admissions_manager"
        assert [c.value for c in plan.allowed_channels] == ["email"]

    def test_sweep_auto_advances_capture_stage(self, executor, db):
        """Lead capture advances on its own once its requirement is met."""
        from lead_lifecycle.storage import VerificationStatus

        add_leads(db, 1)
        enrollment = executor.enroll("t1", "L000", "master-domestic", now=START)
        db.set_requirement_status("t1", enrollment.id, "dom-contact-form", VerificationStatus.SUBMITTED)
        assert executor.sweep("t1", now=START).advanced == []

        db.set_requirement_status("t1", enrollment.id, "dom-contact-form", VerificationStatus.VERIFIED)
        assert executor.sweep("t1", now=START).advanced == [enrollment.id]
        assert db.get_enrollment("t1", enrollment.id).current_stage_index == 1

    def test_journey_stats(self, executor, db):
        ids = add_leads(db, 4)
        executor.bulk_enroll("t1", ids, "master-domestic")
        enrollments = db.list_enrollments("t1", "master-domestic")
        executor.remove("t1", enrollments[0].id, "advisor-1", "Not interested")
        executor.advance_step("t1", enrollments[1].id, actor="advisor-1")

        stats = executor.journey_stats("t1", "master-domestic")
        assert stats["total"] == 4
        assert stats["active"] == 3
        assert stats["exited"] == 1
        assert stats["completed"] == 0
        assert stats["completion_rate"] == 0.0
        assert stats["active_by_stage"]["lead_capture"] == 2
        assert stats["active_by_stage"]["application_start"] == 1
