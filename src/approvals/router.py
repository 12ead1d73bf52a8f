"""Approval review and settings-change routes."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from src.approvals import gate
from src.approvals.workflow import decide_and_apply
from src.auth.dependencies import require_auth_context
from src.auth.jwt import AuthContext
from src.budgets.ledger import BudgetExceededError
from src.orgs.service import has_org_access
from src.publishing.orchestrator import ApprovalNotExecutableError, execute_approved_batch
from src.publishing.router import BUDGET_EXHAUSTED_DETAIL, publish_response
from src.schemas.approvals import (
    ApprovalApplyRequest,
    ApprovalDecisionRequest,
    ApprovalDecisionResponse,
    ApprovalListResponse,
    ApprovalResponse,
    SettingChangeRequest,
)
from src.schemas.publishing import PublishResponse
from src.settings_store.service import SettingDefinitionNotFoundError, request_setting_change
from src.storage.db import get_session
from src.storage.models import Approval
from src.storage.tenant import set_org_context


router = APIRouter(tags=["approvals"])


def _require_access(session: Session, auth: AuthContext, org_id: str, required_role: Optional[str] = None) -> None:
    if not has_org_access(session, org_id=org_id, user_id=auth.user_id, required_role=required_role):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _to_response(approval: Approval) -> ApprovalResponse:
    return ApprovalResponse(
        id=approval.id,
        org_id=approval.org_id,
        entity_type=approval.entity_type,
        entity_id=approval.entity_id,
        action=approval.action,
        status=approval.status,
        payload=gate.approval_payload(approval),
        requested_by=approval.requested_by,
        decided_by=approval.decided_by,
        decision_note=approval.decision_note,
        expires_at=_iso(approval.expires_at),
        created_at=_iso(approval.created_at),
        decided_at=_iso(approval.decided_at),
    )


@router.get("/approvals", response_model=ApprovalListResponse)
def list_approvals_endpoint(
    org_id: str = Query(min_length=1, max_length=36),
    approval_status: Optional[str] = Query(default=None, alias="status"),
    entity_type: Optional[str] = Query(default=None, max_length=64),
    include_expired: bool = Query(default=False),
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> ApprovalListResponse:
    set_org_context(session, org_id)
    _require_access(session, auth, org_id)
    if approval_status is not None and approval_status not in gate.APPROVAL_STATUSES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown approval status")
    approvals = gate.list_approvals(
        session,
        org_id=org_id,
        status=approval_status,
        entity_type=entity_type,
        include_expired=include_expired,
    )
    return ApprovalListResponse(approvals=[_to_response(item) for item in approvals])


@router.post("/approvals/{approval_id}/decision", response_model=ApprovalDecisionResponse)
def decide_approval_endpoint(
    approval_id: str,
    payload: ApprovalDecisionRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> ApprovalDecisionResponse:
    set_org_context(session, payload.org_id)
    _require_access(session, auth, payload.org_id, required_role="operator")
    try:
        result = decide_and_apply(
            session,
            org_id=payload.org_id,
            approval_id=approval_id,
            decision=payload.decision,
            decided_by=auth.user_id,
            note=payload.note,
        )
    except gate.ApprovalNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Approval not found") from exc
    except (gate.AlreadyDecidedError, gate.ApprovalExpiredError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return ApprovalDecisionResponse(
        approval=_to_response(result.approval),
        execution=publish_response(result.execution) if result.execution is not None else None,
        execution_error=result.execution_error,
    )


@router.post("/approvals/{approval_id}/apply", response_model=PublishResponse, response_model_exclude_none=True)
def apply_approval_endpoint(
    approval_id: str,
    payload: ApprovalApplyRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> PublishResponse:
    set_org_context(session, payload.org_id)
    _require_access(session, auth, payload.org_id, required_role="operator")
    try:
        approval = gate.get_approval(session, org_id=payload.org_id, approval_id=approval_id)
        outcome = execute_approved_batch(session, approval)
    except gate.ApprovalNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Approval not found") from exc
    except ApprovalNotExecutableError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except BudgetExceededError as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=BUDGET_EXHAUSTED_DETAIL,
        ) from exc
    return publish_response(outcome)


@router.post("/settings-changes", response_model=ApprovalResponse, status_code=202)
def request_setting_change_endpoint(
    payload: SettingChangeRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> ApprovalResponse:
    set_org_context(session, payload.org_id)
    _require_access(session, auth, payload.org_id, required_role="operator")
    try:
        approval = request_setting_change(
            session,
            org_id=payload.org_id,
            definition_key=payload.definition_key,
            scope=payload.scope,
            scope_id=payload.scope_id,
            new_value=payload.new_value,
            requested_by=auth.user_id,
        )
    except SettingDefinitionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return _to_response(approval)
