"""In-process tracking of long-running bulk jobs."""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_HOURS = 24
DEFAULT_MAX_FINISHED = 500


class JobStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    """A background job and its progress."""

    id: str
    tenant_id: str
    kind: str
    status: JobStatus = JobStatus.PENDING
    processed: int = 0
    total: int = 0
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    @property
    def progress(self) -> float:
        return round(self.processed / self.total * 100, 1) if self.total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "status": self.status.value,
            "processed": self.processed,
            "total": self.total,
            "progress": self.progress,
            "result": self.result,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


JobFunction = Callable[[Callable[[int, int], None]], Dict[str, Any]]


class JobTracker:
    """Runs jobs on daemon threads and keeps their status for polling.

    Finished jobs are kept for ``retention_hours`` and at most
    ``max_finished`` of them are held at once. Running jobs are never evicted.
    """

    def __init__(self, retention_hours: float = DEFAULT_RETENTION_HOURS,
                 max_finished: int = DEFAULT_MAX_FINISHED):
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()
        self.retention = timedelta(hours=retention_hours)
        self.max_finished = max_finished

    def submit(self, tenant_id: str, kind: str, func: JobFunction) -> Job:
        """Start ``func(on_progress)`` in the background and return its job."""
        job = Job(id=str(uuid.uuid4()), tenant_id=tenant_id, kind=kind)
        self.evict_finished()
        with self._lock:
            self._jobs[job.id] = job

        def on_progress(processed: int, total: int):
            with self._lock:
                job.processed = processed
                job.total = total

        def run():
            with self._lock:
                job.status = JobStatus.RUNNING
            try:
                result = func(on_progress)
            except Exception as e:
                logger.exception(f"Job {job.id} ({kind}) failed: {e}")
                with self._lock:
                    job.status = JobStatus.FAILED
                    # Internal causes stay in the log
                    job.error = getattr(e, "message", None) or "operation failed, retry"
                    job.finished_at = datetime.now()
                return
            with self._lock:
                job.status = JobStatus.COMPLETED
                job.result = result
                job.finished_at = datetime.now()
            logger.info(f"Job {job.id} ({kind}) completed")

        threading.Thread(target=run, daemon=True).start()
        return job

    def get(self, tenant_id: str, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None or job.tenant_id != tenant_id:
            return None
        return job

    def evict_finished(self, now: Optional[datetime] = None) -> int:
        """Drop expired finished jobs, then the oldest beyond the cap. Returns how many."""
        now = now or datetime.now()
        with self._lock:
            finished = sorted(
                (j for j in self._jobs.values() if j.finished_at is not None),
                key=lambda j: j.finished_at,
            )
            expired = [j for j in finished if now - j.finished_at > self.retention]
            kept = finished[len(expired):]
            overflow = kept[:max(0, len(kept) - self.max_finished)]
            for job in expired + overflow:
                del self._jobs[job.id]
        evicted = len(expired) + len(overflow)
        if evicted:
            logger.debug(f"Evicted {evicted} finished jobs")
        return evicted

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
