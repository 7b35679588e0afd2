"""Enrollment routes."""

from typing import Optional

from fastapi import APIRouter, Depends

from ..dependencies import get_actor, get_service, get_tenant_id, require_actor
from ..schemas import (
    AdvanceRequest,
    ApprovalRequest,
    BulkEnrollRequest,
    ChannelRequest,
    EnrollRequest,
    ErrorResponse,
    RemoveRequest,
    RequirementUpdateRequest,
    enrollment_to_dict,
    log_entry_to_dict,
)
from ...service import LifecycleService

router = APIRouter(
    prefix="/v1/enrollments",
    tags=["enrollments"],
    responses={
        400: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)


@router.post("", status_code=201)
def enroll(
    payload: EnrollRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor: Optional[str] = Depends(get_actor),
    service: LifecycleService = Depends(get_service),
):
    """Enroll a lead in a journey. 409 if already actively enrolled."""
    enrollment = service.enroll(tenant_id, payload.lead_id, payload.journey_id,
                                actor=actor or "system", replace=payload.replace)
    return enrollment_to_dict(enrollment)


@router.post("/bulk")
def bulk_enroll(
    payload: BulkEnrollRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor: Optional[str] = Depends(get_actor),
    service: LifecycleService = Depends(get_service),
):
    return service.bulk_enroll(tenant_id, payload.lead_ids, payload.journey_id,
                               remove_existing=payload.remove_existing, actor=actor or "system")


def _state_to_dict(state: dict) -> dict:
    enrollment = state.pop("enrollment")
    state["enrollment"] = enrollment_to_dict(enrollment)
    state["history"] = [log_entry_to_dict(e) for e in enrollment.history]
    return state


@router.get("")
def get_enrollment_state(
    lead_id: str,
    journey_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: LifecycleService = Depends(get_service),
):
    """State of a lead's enrollment in a journey, the active one if any."""
    return _state_to_dict(service.get_enrollment_state(tenant_id, lead_id, journey_id))


@router.get("/{enrollment_id}")
def get_enrollment_state_by_id(
    enrollment_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: LifecycleService = Depends(get_service),
):
    return _state_to_dict(service.get_enrollment_state_by_id(tenant_id, enrollment_id))


@router.get("/{enrollment_id}/log")
def list_transition_log(
    enrollment_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: LifecycleService = Depends(get_service),
):
    entries = service.list_transition_log(tenant_id, enrollment_id)
    return {"enrollment_id": enrollment_id, "entries": [log_entry_to_dict(e) for e in entries]}


@router.post("/{enrollment_id}/advance")
def advance_step(
    enrollment_id: str,
    payload: AdvanceRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor: Optional[str] = Depends(get_actor),
    service: LifecycleService = Depends(get_service),
):
    """Advance one stage. Manual transitions need ``X-Actor-ID``."""
    enrollment = service.advance_step(
        tenant_id, enrollment_id,
        trigger=payload.trigger,
        actor=actor,
        target_stage=payload.target_stage,
        expected_version=payload.expected_version,
        note=payload.note,
    )
    return enrollment_to_dict(enrollment)


@router.post("/{enrollment_id}/remove")
def remove_enrollment(
    enrollment_id: str,
    payload: RemoveRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor: str = Depends(require_actor),
    service: LifecycleService = Depends(get_service),
):
    return enrollment_to_dict(service.remove_enrollment(tenant_id, enrollment_id, actor, payload.reason))


@router.post("/{enrollment_id}/requirements/{requirement_id}")
def update_requirement(
    enrollment_id: str,
    requirement_id: str,
    payload: RequirementUpdateRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor: str = Depends(require_actor),
    service: LifecycleService = Depends(get_service),
):
    result = service.update_requirement_status(tenant_id, enrollment_id, requirement_id, payload.status, actor)
    result["enrollment"] = enrollment_to_dict(result["enrollment"])
    return result


@router.post("/{enrollment_id}/approve")
def approve_stage(
    enrollment_id: str,
    payload: ApprovalRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor: str = Depends(require_actor),
    service: LifecycleService = Depends(get_service),
):
    result = service.approve_stage(tenant_id, enrollment_id, actor, payload.note)
    result["enrollment"] = enrollment_to_dict(result["enrollment"])
    return result


@router.post("/{enrollment_id}/channel-preview")
def preview_channel_decision(
    enrollment_id: str,
    payload: ChannelRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: LifecycleService = Depends(get_service),
):
    """Would the channel be allowed for the current stage? Nothing is sent."""
    decision = service.preview_channel_decision(
        tenant_id, enrollment_id, payload.channel, payload.action, payload.priority, now=payload.at
    )
    return decision.to_dict()


@router.post("/{enrollment_id}/communications")
def send_communication(
    enrollment_id: str,
    payload: ChannelRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: LifecycleService = Depends(get_service),
):
    result = service.send_communication(
        tenant_id, enrollment_id, payload.channel, payload.action, payload.priority, now=payload.at
    )
    return result.to_dict()
