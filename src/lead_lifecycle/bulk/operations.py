"""Bulk operations over many leads with bounded concurrency."""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, List, Dict, Any, Callable, Iterable, Tuple, TypeVar

from ..core.ledger import ScoreLedger

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_CONCURRENCY = 8


def run_bounded(
    items: Iterable[T],
    func: Callable[[T], R],
    concurrency: int = DEFAULT_CONCURRENCY,
    on_done: Optional[Callable[[int, int], None]] = None,
) -> List[Tuple[T, Optional[R], Optional[Exception]]]:
    """Apply ``func`` to every item with at most ``concurrency`` in flight.

    Each item succeeds or fails on its own: the result list holds
    ``(item, result, error)`` in input order and one failure never stops
    the rest. ``on_done(completed, total)`` is called as results are
    collected, in input order.
    """
    items = list(items)
    total = len(items)
    results: List[Tuple[T, Optional[R], Optional[Exception]]] = []
    if not items:
        return results

    def call(item: T) -> Tuple[Optional[R], Optional[Exception]]:
        try:
            return func(item), None
        except Exception as e:
            return None, e

    with ThreadPoolExecutor(max_workers=max(1, concurrency)) as pool:
        for completed, (item, (result, error)) in enumerate(zip(items, pool.map(call, items)), start=1):
            results.append((item, result, error))
            if on_done:
                on_done(completed, total)

    return results


class BulkOperations:
    """Perform bulk operations on leads."""

    def __init__(self, ledger: ScoreLedger, concurrency: int = DEFAULT_CONCURRENCY):
        self.ledger = ledger
        self.concurrency = concurrency

    def bulk_score(self, tenant_id: str, lead_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        """Re-score many leads (all of the tenant's leads when none are given)."""
        if lead_ids is None:
            lead_ids = [lead.id for lead in self.ledger.db.list_leads(tenant_id)]

        previous = {}
        for lead_id in lead_ids:
            current = self.ledger.db.get_current_score(tenant_id, lead_id)
            previous[lead_id] = current.tier if current else None

        results: Dict[str, Any] = {"scored": 0, "errors": 0, "tier_changes": 0, "failed": []}
        outcomes = run_bounded(
            lead_ids,
            lambda lead_id: self.ledger.compute_score(tenant_id, lead_id),
            self.concurrency,
        )
        for lead_id, result, error in outcomes:
            if error is not None:
                logger.error(f"Error scoring lead {lead_id}: {error}")
                results["errors"] += 1
                results["failed"].append({"lead_id": lead_id, "reason": str(error)})
                continue
            results["scored"] += 1
            if previous.get(lead_id) is not None and previous[lead_id] != result.tier:
                results["tier_changes"] += 1

        return results
