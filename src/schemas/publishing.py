"""Pydantic schemas for publish request API."""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class PublishRequest(BaseModel):
    org_id: str = Field(min_length=1, max_length=36)
    product_ids: List[str] = Field(min_length=1, max_length=1000)
    store_ids: List[str] = Field(min_length=1, max_length=100)
    action: str = Field(default="publish", min_length=1, max_length=32, pattern=r"^[a-z_]+$")


class PlatformCheckResponse(BaseModel):
    requires_approval: bool
    reason: Optional[str] = None


class PublishResponse(BaseModel):
    status: str
    message: str
    platform_checks: Dict[str, PlatformCheckResponse]
    jobs_created: Optional[int] = None
    jobs_existing: Optional[int] = None
    approval_id: Optional[str] = None
