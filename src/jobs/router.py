"""Job queue API routes for workers and operators."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from src.auth.dependencies import require_org_role, require_org_scope
from src.auth.jwt import AuthContext
from src.jobs import queue
from src.schemas.jobs import (
    JobAdminRequest,
    JobClaimRequest,
    JobCompleteRequest,
    JobFailRequest,
    JobLeaseRequest,
    JobListResponse,
    JobResponse,
)
from src.storage.db import get_session
from src.storage.models import Job
from src.storage.tenant import set_org_context


router = APIRouter(prefix="/jobs", tags=["jobs"])


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _to_response(job: Job) -> JobResponse:
    return JobResponse(
        id=job.id,
        org_id=job.org_id,
        idempotency_key=job.idempotency_key,
        job_type=job.job_type,
        payload=queue.job_payload(job),
        priority=job.priority,
        status=job.status,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        result=queue.job_result(job),
        error_message=job.error_message,
        claim_token=job.claim_token,
        scheduled_at=_iso(job.scheduled_at),
        claimed_at=_iso(job.claimed_at),
        started_at=_iso(job.started_at),
        completed_at=_iso(job.completed_at),
        created_at=_iso(job.created_at),
    )


def _translate(exc: Exception) -> HTTPException:
    if isinstance(exc, queue.JobNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


@router.get("", response_model=JobListResponse)
def list_jobs_endpoint(
    org_id: str = Query(min_length=1, max_length=36),
    job_status: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    auth: AuthContext = Depends(require_org_role("operator", "viewer")),
    session: Session = Depends(get_session),
) -> JobListResponse:
    require_org_scope(auth, org_id)
    if job_status is not None and job_status not in queue.JOB_STATUSES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown job status")
    set_org_context(session, org_id)
    jobs = queue.list_jobs(session, org_id=org_id, status=job_status, limit=limit)
    return JobListResponse(jobs=[_to_response(job) for job in jobs])


@router.post("/claim", response_model=JobListResponse)
def claim_jobs_endpoint(
    payload: JobClaimRequest,
    auth: AuthContext = Depends(require_org_role("operator")),
    session: Session = Depends(get_session),
) -> JobListResponse:
    require_org_scope(auth, payload.org_id)
    set_org_context(session, payload.org_id)
    jobs = queue.claim(session, org_id=payload.org_id, limit=payload.limit)
    return JobListResponse(jobs=[_to_response(job) for job in jobs])


@router.post("/{job_id}/start", response_model=JobResponse)
def start_job_endpoint(
    job_id: str,
    payload: JobLeaseRequest,
    auth: AuthContext = Depends(require_org_role("operator")),
    session: Session = Depends(get_session),
) -> JobResponse:
    require_org_scope(auth, payload.org_id)
    set_org_context(session, payload.org_id)
    try:
        job = queue.start(session, org_id=payload.org_id, job_id=job_id, claim_token=payload.claim_token)
    except (queue.JobNotFoundError, queue.InvalidJobTransitionError) as exc:
        raise _translate(exc) from exc
    return _to_response(job)


@router.post("/{job_id}/complete", response_model=JobResponse)
def complete_job_endpoint(
    job_id: str,
    payload: JobCompleteRequest,
    auth: AuthContext = Depends(require_org_role("operator")),
    session: Session = Depends(get_session),
) -> JobResponse:
    require_org_scope(auth, payload.org_id)
    set_org_context(session, payload.org_id)
    try:
        job = queue.complete(
            session,
            org_id=payload.org_id,
            job_id=job_id,
            result=payload.result,
            claim_token=payload.claim_token,
        )
    except (queue.JobNotFoundError, queue.InvalidJobTransitionError) as exc:
        raise _translate(exc) from exc
    return _to_response(job)


@router.post("/{job_id}/fail", response_model=JobResponse)
def fail_job_endpoint(
    job_id: str,
    payload: JobFailRequest,
    auth: AuthContext = Depends(require_org_role("operator")),
    session: Session = Depends(get_session),
) -> JobResponse:
    require_org_scope(auth, payload.org_id)
    set_org_context(session, payload.org_id)
    try:
        job = queue.fail(
            session,
            org_id=payload.org_id,
            job_id=job_id,
            error_message=payload.error_message,
            claim_token=payload.claim_token,
        )
    except (queue.JobNotFoundError, queue.InvalidJobTransitionError) as exc:
        raise _translate(exc) from exc
    return _to_response(job)


@router.post("/{job_id}/retry", response_model=JobResponse)
def retry_job_endpoint(
    job_id: str,
    payload: JobAdminRequest,
    auth: AuthContext = Depends(require_org_role("operator")),
    session: Session = Depends(get_session),
) -> JobResponse:
    require_org_scope(auth, payload.org_id)
    set_org_context(session, payload.org_id)
    try:
        job = queue.retry(session, org_id=payload.org_id, job_id=job_id)
    except (queue.JobNotFoundError, queue.InvalidJobTransitionError) as exc:
        raise _translate(exc) from exc
    return _to_response(job)


@router.post("/{job_id}/cancel", response_model=JobResponse)
def cancel_job_endpoint(
    job_id: str,
    payload: JobAdminRequest,
    auth: AuthContext = Depends(require_org_role("operator")),
    session: Session = Depends(get_session),
) -> JobResponse:
    require_org_scope(auth, payload.org_id)
    set_org_context(session, payload.org_id)
    try:
        job = queue.cancel(session, org_id=payload.org_id, job_id=job_id)
    except (queue.JobNotFoundError, queue.InvalidJobTransitionError) as exc:
        raise _translate(exc) from exc
    return _to_response(job)
