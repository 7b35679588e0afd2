"""Scoring model routes."""

from fastapi import APIRouter, Depends

from ..dependencies import get_service, get_tenant_id
from ..schemas import CreateModelRequest, ErrorResponse, model_to_dict
from ...service import LifecycleService

router = APIRouter(
    prefix="/v1/models",
    tags=["models"],
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)


@router.get("")
def list_models(
    tenant_id: str = Depends(get_tenant_id),
    service: LifecycleService = Depends(get_service),
):
    return {"models": [model_to_dict(m) for m in service.list_models(tenant_id)]}


@router.post("", status_code=201)
def create_model(
    payload: CreateModelRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: LifecycleService = Depends(get_service),
):
    model = service.create_model(tenant_id, payload.weights, payload.kind, payload.activate)
    return model_to_dict(model)


@router.post("/{version}/activate")
def activate_model(
    version: int,
    tenant_id: str = Depends(get_tenant_id),
    service: LifecycleService = Depends(get_service),
):
    """Make a model version the tenant's active model."""
    return model_to_dict(service.activate_model(tenant_id, version))
