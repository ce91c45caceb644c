"""Admin API for the job queue."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse

from chatcommerce.logging_config import get_logger
from chatcommerce.routers.dependencies import get_container, require_admin_token
from chatcommerce.schemas.job import (
    BatchDispatchRequest,
    DispatchRequest,
    DispatchResponse,
    JobCountsResponse,
    JobResponse,
)
from chatcommerce.services.container import ServiceContainer
from chatcommerce.services.job_queue import InvalidJobState, JobNotFound, JobStatus, UnknownHookError, job_to_dict
from chatcommerce.services.rate_limiter import CallerContext, RateLimited

logger = get_logger("jobs_api")

router = APIRouter(prefix="/jobs", tags=["jobs"], dependencies=[Depends(require_admin_token)])

ALLOWED_STATUSES = {job_status.value for job_status in JobStatus}


def _rate_limited(exc: RateLimited) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"detail": "Rate limit exceeded", "retry_after": exc.retry_after},
        headers={"Retry-After": str(exc.retry_after)},
    )


@router.post("", response_model=DispatchResponse, status_code=status.HTTP_202_ACCEPTED)
def dispatch_job(request: DispatchRequest, container: ServiceContainer = Depends(get_container)):
    try:
        job_id = container.queue.schedule(
            request.hook,
            request.args,
            request.run_at,
            caller=CallerContext(request.caller),
            max_retries=request.max_retries,
        )
    except UnknownHookError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown hook: {request.hook}")
    except RateLimited as exc:
        return _rate_limited(exc)
    return DispatchResponse(job_ids=[job_id])


@router.post("/batch", response_model=DispatchResponse, status_code=status.HTTP_202_ACCEPTED)
def dispatch_batch(request: BatchDispatchRequest, container: ServiceContainer = Depends(get_container)):
    try:
        job_ids = container.queue.dispatch_batch(
            request.hook,
            request.items,
            request.batch_size,
            args=request.args,
            caller=CallerContext.ADMIN,
        )
    except UnknownHookError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown hook: {request.hook}")
    except RateLimited as exc:
        return _rate_limited(exc)
    return DispatchResponse(job_ids=job_ids)


@router.get("", response_model=list[JobResponse])
def list_jobs(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    container: ServiceContainer = Depends(get_container),
):
    if status_filter and status_filter not in ALLOWED_STATUSES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown status: {status_filter}")
    return [JobResponse(**job_to_dict(job)) for job in container.queue.list_jobs(status_filter, limit=limit)]


@router.get("/counts", response_model=JobCountsResponse)
def job_counts(container: ServiceContainer = Depends(get_container)):
    return JobCountsResponse(counts=container.queue.pending_counts())


@router.get("/{job_id}", response_model=JobResponse)
def get_job(job_id: str, container: ServiceContainer = Depends(get_container)):
    job = container.queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return JobResponse(**job_to_dict(job))


@router.post("/{job_id}/retry", response_model=JobResponse)
def retry_job(job_id: str, container: ServiceContainer = Depends(get_container)):
    try:
        container.rate_limiter.check(CallerContext.ADMIN)
        job = container.queue.retry_job(job_id)
    except RateLimited as exc:
        return _rate_limited(exc)
    except JobNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    except InvalidJobState as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    logger.info("Job retry requested", extra={"context": {"job_id": job_id}})
    return JobResponse(**job_to_dict(job))
