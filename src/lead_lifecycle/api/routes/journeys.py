"""Journey routes."""

from fastapi import APIRouter, Depends

from ..dependencies import get_service, get_tenant_id
from ..schemas import ErrorResponse, journey_summary
from ...service import LifecycleService

router = APIRouter(
    prefix="/v1/journeys",
    tags=["journeys"],
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)


@router.get("")
def list_journeys(
    tenant_id: str = Depends(get_tenant_id),
    service: LifecycleService = Depends(get_service),
):
    return {"journeys": [journey_summary(j) for j in service.list_journeys(tenant_id)]}


@router.post("/seed")
def seed_templates(
    tenant_id: str = Depends(get_tenant_id),
    service: LifecycleService = Depends(get_service),
):
    """Create the master domestic and international journeys if missing."""
    created = service.seed_templates(tenant_id)
    return {"created": [j.id for j in created]}


@router.post("/sweep")
def sweep(
    tenant_id: str = Depends(get_tenant_id),
    service: LifecycleService = Depends(get_service),
):
    """Run the stall, escalation and auto-advance sweep now."""
    return service.sweep(tenant_id).to_dict()


@router.get("/{journey_id}/stats")
def journey_stats(
    journey_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: LifecycleService = Depends(get_service),
):
    return service.journey_stats(tenant_id, journey_id)
