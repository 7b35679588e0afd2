"""Lead scoring routes."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..dependencies import get_service, get_tenant_id
from ..schemas import BulkScoreRequest, ErrorResponse, OutcomeRequest, score_record_to_dict
from ...service import LifecycleService

router = APIRouter(
    prefix="/v1/scores",
    tags=["scores"],
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)


@router.get("/accuracy")
def model_accuracy(
    model_version: Optional[int] = None,
    tenant_id: str = Depends(get_tenant_id),
    service: LifecycleService = Depends(get_service),
):
    """Conversion rate per tier for predictions with a recorded outcome."""
    return service.model_accuracy(tenant_id, model_version)


@router.post("/bulk")
def bulk_score(
    payload: BulkScoreRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: LifecycleService = Depends(get_service),
):
    return service.bulk_score(tenant_id, payload.lead_ids)


@router.post("/{lead_id}")
def compute_score(
    lead_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: LifecycleService = Depends(get_service),
):
    """Score a lead with the tenant's active model and store the result."""
    result = service.compute_score(tenant_id, lead_id)
    return result.to_dict(limit=service.ledger.config.breakdown_report_limit)


@router.get("/{lead_id}/history")
def score_history(
    lead_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id),
    service: LifecycleService = Depends(get_service),
):
    history = service.get_score_history(tenant_id, lead_id, limit)
    return {"lead_id": lead_id, "history": [score_record_to_dict(r) for r in history]}


@router.get("/{lead_id}/trend")
def score_trend(
    lead_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: LifecycleService = Depends(get_service),
):
    return service.score_trend(tenant_id, lead_id)


@router.post("/{lead_id}/outcome")
def record_outcome(
    lead_id: str,
    payload: OutcomeRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: LifecycleService = Depends(get_service),
):
    updated = service.record_outcome(tenant_id, lead_id, payload.converted)
    return {"success": True, "lead_id": lead_id, "predictions_resolved": updated}
