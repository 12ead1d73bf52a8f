"""Pydantic schemas for approval and settings-change API."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from src.schemas.publishing import PublishResponse


class ApprovalResponse(BaseModel):
    id: str
    org_id: str
    entity_type: str
    entity_id: str
    action: str
    status: str
    payload: Dict[str, Any]
    requested_by: str
    decided_by: Optional[str] = None
    decision_note: Optional[str] = None
    expires_at: Optional[str] = None
    created_at: Optional[str] = None
    decided_at: Optional[str] = None


class ApprovalListResponse(BaseModel):
    approvals: List[ApprovalResponse]


class ApprovalDecisionRequest(BaseModel):
    org_id: str = Field(min_length=1, max_length=36)
    decision: Literal["approved", "rejected"]
    note: Optional[str] = Field(default=None, max_length=2000)


class ApprovalDecisionResponse(BaseModel):
    approval: ApprovalResponse
    execution: Optional[PublishResponse] = None
    execution_error: Optional[str] = None


class ApprovalApplyRequest(BaseModel):
    org_id: str = Field(min_length=1, max_length=36)


class SettingChangeRequest(BaseModel):
    org_id: str = Field(min_length=1, max_length=36)
    definition_key: str = Field(min_length=1, max_length=128)
    scope: Literal["global", "org", "store", "plugin_instance", "workflow"] = "org"
    scope_id: Optional[str] = Field(default=None, max_length=36)
    new_value: Any = None
