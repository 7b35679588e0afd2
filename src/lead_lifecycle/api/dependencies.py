"""Request-scoped dependencies: service, tenant and actor."""

from typing import Optional

from fastapi import Header, Request

from ..errors import ValidationError
from ..service import LifecycleService
from ..tasks.jobs import JobTracker


def get_service(request: Request) -> LifecycleService:
    return request.app.state.service


def get_jobs(request: Request) -> JobTracker:
    return request.app.state.jobs


def get_tenant_id(x_tenant_id: Optional[str] = Header(default=None)) -> str:
    """Every call is scoped to the tenant in ``X-Tenant-ID``."""
    if not x_tenant_id or not x_tenant_id.strip():
        raise ValidationError("X-Tenant-ID header is required")
    return x_tenant_id.strip()


def get_actor(x_actor_id: Optional[str] = Header(default=None)) -> Optional[str]:
    return x_actor_id.strip() if x_actor_id and x_actor_id.strip() else None


def require_actor(x_actor_id: Optional[str] = Header(default=None)) -> str:
    actor = get_actor(x_actor_id)
    if actor is None:
        raise ValidationError("X-Actor-ID header is required for this operation")
    return actor
