"""Background tasks: periodic sweeps and bulk jobs."""

from .scheduler import StageSweepRunner
from .jobs import JobTracker, Job, JobStatus

__all__ = ["StageSweepRunner", "JobTracker", "Job", "JobStatus"]
