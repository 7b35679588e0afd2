"""Routing rule and re-enrollment routes."""

from fastapi import APIRouter, Depends

from ..dependencies import get_jobs, get_service, get_tenant_id
from ..schemas import ErrorResponse, ReEnrollRequest, RoutingRuleRequest
from ...errors import ValidationError
from ...service import LifecycleService
from ...tasks.jobs import JobTracker

router = APIRouter(
    prefix="/v1/routing",
    tags=["routing"],
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)


@router.get("/rules")
def list_rules(
    tenant_id: str = Depends(get_tenant_id),
    service: LifecycleService = Depends(get_service),
):
    return {"rules": [r.to_dict() for r in service.list_routing_rules(tenant_id)]}


@router.post("/rules", status_code=201)
def add_rule(
    payload: RoutingRuleRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: LifecycleService = Depends(get_service),
):
    rule = service.add_routing_rule(tenant_id, payload.name, payload.conditions, payload.target,
                                    payload.priority, payload.id)
    return rule.to_dict()


@router.post("/re-enroll", status_code=202)
def re_enroll_all(
    payload: ReEnrollRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: LifecycleService = Depends(get_service),
    jobs: JobTracker = Depends(get_jobs),
):
    """Start re-routing every lead as a background job.

    A real run clears all assignments first, so it needs ``confirm``.
    Poll ``/v1/jobs/{job_id}`` for progress.
    """
    if not payload.dry_run and not payload.confirm:
        raise ValidationError("re-enroll clears all routing assignments; set confirm=true or dry_run=true")

    job = jobs.submit(
        tenant_id,
        "re_enroll_all",
        lambda on_progress: service.re_enroll_all(tenant_id, on_progress=on_progress, dry_run=payload.dry_run),
    )
    return {"job_id": job.id, "status": job.status.value}
