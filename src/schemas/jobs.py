"""Pydantic schemas for job queue API."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class JobResponse(BaseModel):
    id: str
    org_id: str
    idempotency_key: str
    job_type: str
    payload: Dict[str, Any]
    priority: int
    status: str
    attempts: int
    max_attempts: int
    result: Optional[Any] = None
    error_message: Optional[str] = None
    claim_token: Optional[str] = None
    scheduled_at: Optional[str] = None
    claimed_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    created_at: Optional[str] = None


class JobListResponse(BaseModel):
    jobs: List[JobResponse]


class JobClaimRequest(BaseModel):
    org_id: str = Field(min_length=1, max_length=36)
    limit: int = Field(default=1, ge=1, le=100)


class JobLeaseRequest(BaseModel):
    org_id: str = Field(min_length=1, max_length=36)
    claim_token: Optional[str] = Field(default=None, max_length=36)


class JobCompleteRequest(JobLeaseRequest):
    result: Optional[Any] = None


class JobFailRequest(JobLeaseRequest):
    error_message: str = Field(min_length=1, max_length=2000)


class JobAdminRequest(BaseModel):
    org_id: str = Field(min_length=1, max_length=36)
