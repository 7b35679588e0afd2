"""Tests for background job tracking."""

import threading
import time
from datetime import datetime, timedelta

from lead_lifecycle.tasks import JobStatus, JobTracker


def wait_until_finished(tracker, job, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if tracker.get(job.tenant_id, job.id).status in (JobStatus.COMPLETED, JobStatus.FAILED):
            return
        time.sleep(0.01)
    raise AssertionError(f"job {job.id} did not finish")


class TestJobTracker:
    """Tests for JobTracker."""

    def setup_method(self):
        """Set up test fixtures."""
        self.tracker = JobTracker(retention_hours=1, max_finished=2)

    def run_job(self, result=None):
        job = self.tracker.submit("t1", "re_enroll", lambda on_progress: result or {"ok": True})
        wait_until_finished(self.tracker, job)
        return job

    def test_completed_job_is_polled(self):
        job = self.run_job({"processed": 3})
        polled = self.tracker.get("t1", job.id)
        assert polled.status == JobStatus.COMPLETED
        assert polled.result == {"processed": 3}
        assert self.tracker.get("t2", job.id) is None

    def test_failure_hides_internal_cause(self):
        def boom(on_progress):
            raise RuntimeError("disk on fire")

        job = self.tracker.submit("t1", "re_enroll", boom)
        wait_until_finished(self.tracker, job)
        assert job.status == JobStatus.FAILED
        assert job.error == "operation failed, retry"

    def test_expired_jobs_are_evicted(self):
        job = self.run_job()
        assert self.tracker.evict_finished(now=job.finished_at + timedelta(minutes=30)) == 0
        assert self.tracker.evict_finished(now=job.finished_at + timedelta(hours=2)) == 1
        assert self.tracker.get("t1", job.id) is None

    def test_finished_jobs_are_capped(self):
        """Only the newest finished jobs are kept once the cap is exceeded."""
        jobs = [self.run_job() for _ in range(3)]
        self.tracker.evict_finished()
        assert self.tracker.get("t1", jobs[0].id) is None
        assert self.tracker.get("t1", jobs[2].id) is not None
        assert len(self.tracker) == 2

    def test_running_jobs_are_kept(self):
        release = threading.Event()
        running = self.tracker.submit("t1", "re_enroll", lambda on_progress: release.wait(5) and {})
        for _ in range(3):
            self.run_job()

        assert self.tracker.evict_finished(now=datetime.now() + timedelta(days=1)) >= 1
        assert self.tracker.get("t1", running.id) is not None
        release.set()
        wait_until_finished(self.tracker, running)
