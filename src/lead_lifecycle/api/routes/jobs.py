"""Background job polling routes."""

from fastapi import APIRouter, Depends, HTTPException

from ..dependencies import get_jobs, get_tenant_id
from ...tasks.jobs import JobTracker

router = APIRouter(prefix="/v1/jobs", tags=["jobs"])


@router.get("/{job_id}")
def get_job(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    jobs: JobTracker = Depends(get_jobs),
):
    job = jobs.get(tenant_id, job_id)
    if job is None:
        raise HTTPException(
            status_code=404,
            detail={"success": False, "error": "not_found", "detail": f"Unknown job {job_id}"},
        )
    return job.to_dict()
