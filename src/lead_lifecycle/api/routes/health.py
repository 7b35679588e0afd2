"""Health check routes."""

import logging

from fastapi import APIRouter, Depends

from ..dependencies import get_service
from ...service import LifecycleService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health():
    return {"status": "healthy", "service": "lead-lifecycle-api", "version": "1.0.0"}


@router.get("/ready")
def ready(service: LifecycleService = Depends(get_service)):
    """Readiness check - verifies database is accessible."""
    try:
        service.db.ping()
        return {"status": "ready"}
    except Exception as e:
        logger.warning(f"Readiness check failed: {e}")
        return {"status": "not_ready"}
