"""Enrollment of leads into journeys."""

from .executor import EnrollmentExecutor, SweepReport

__all__ = ["EnrollmentExecutor", "SweepReport"]
