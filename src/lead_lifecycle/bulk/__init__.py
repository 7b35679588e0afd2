"""Bulk operations module."""

from .operations import BulkOperations, run_bounded, DEFAULT_CONCURRENCY

__all__ = ["BulkOperations", "run_bounded", "DEFAULT_CONCURRENCY"]
