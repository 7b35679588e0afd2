"""Background runner for the periodic stage sweep."""

import threading
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from ..enrollment.executor import EnrollmentExecutor, SweepReport

logger = logging.getLogger(__name__)


class StageSweepRunner:
    """Runs the stage sweep for every tenant with active enrollments."""

    def __init__(self, executor: EnrollmentExecutor, interval_seconds: int = 300,
                 on_report: Optional[Callable[[str, SweepReport], None]] = None):
        self.executor = executor
        self.interval = interval_seconds
        self.on_report = on_report
        self.running = False
        self.thread = None
        self._wake = threading.Event()

    def start(self):
        self.running = True
        self._wake.clear()
        self.thread = threading.Thread(target=self._run_loop, daemon=True)
        self.thread.start()
        logger.info(f"Stage sweep runner started (interval: {self.interval}s)")

    def stop(self):
        self.running = False
        self._wake.set()
        if self.thread:
            self.thread.join(timeout=5)
        logger.info("Stage sweep runner stopped")

    def _run_loop(self):
        while self.running:
            try:
                self.run_once()
            except Exception as e:
                logger.exception(f"Stage sweep error: {e}")
            self._wake.wait(self.interval)

    def run_once(self, now: Optional[datetime] = None) -> Dict[str, SweepReport]:
        """Sweep every tenant once."""
        reports = {}
        for tenant_id in self.executor.db.list_active_tenants():
            report = self.executor.sweep(tenant_id, now)
            reports[tenant_id] = report
            if self.on_report:
                self.on_report(tenant_id, report)
        return reports
