"""Budget admission-check and administration routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from src.auth.dependencies import require_auth_context
from src.auth.jwt import AuthContext
from src.budgets import ledger
from src.orgs.service import has_org_access
from src.schemas.budgets import (
    BudgetCheckRequest,
    BudgetCheckResponse,
    BudgetFreezeRequest,
    BudgetResponse,
    BudgetSnapshotResponse,
    BudgetUpsertRequest,
)
from src.storage.db import get_session
from src.storage.models import Budget
from src.storage.tenant import set_org_context


router = APIRouter(tags=["budgets"])


def _require_access(session: Session, auth: AuthContext, org_id: str, required_role: str | None = None) -> None:
    if not has_org_access(session, org_id=org_id, user_id=auth.user_id, required_role=required_role):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")


def _budget_response(budget: Budget) -> BudgetResponse:
    return BudgetResponse(
        id=budget.id,
        org_id=budget.org_id,
        name=budget.name,
        budget_type=budget.budget_type,
        limit_amount=float(budget.limit_amount),
        consumed_amount=float(budget.consumed_amount),
        period=budget.period,
        reset_at=budget.reset_at.isoformat() if budget.reset_at else None,
        is_frozen=budget.is_frozen,
    )


@router.post("/budgets-check", response_model=BudgetCheckResponse)
def budgets_check(
    payload: BudgetCheckRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> BudgetCheckResponse:
    set_org_context(session, payload.org_id)
    _require_access(session, auth, payload.org_id)
    decision = ledger.check(
        session,
        org_id=payload.org_id,
        budget_type=payload.budget_type,
        amount=payload.amount,
    )
    snapshot = decision.budget
    return BudgetCheckResponse(
        allowed=decision.allowed,
        message=decision.message,
        budget=(
            BudgetSnapshotResponse(
                type=snapshot.type,
                limit=float(snapshot.limit),
                consumed=float(snapshot.consumed),
                remaining=float(snapshot.remaining),
                percentage=snapshot.percentage,
                is_frozen=snapshot.is_frozen,
                reset_at=snapshot.reset_at.isoformat() if snapshot.reset_at else None,
            )
            if snapshot is not None
            else None
        ),
    )


@router.put("/budgets", response_model=BudgetResponse)
def upsert_budget_endpoint(
    payload: BudgetUpsertRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> BudgetResponse:
    set_org_context(session, payload.org_id)
    _require_access(session, auth, payload.org_id, required_role="owner")
    budget = ledger.upsert_budget(
        session,
        org_id=payload.org_id,
        budget_type=payload.budget_type,
        limit_amount=payload.limit_amount,
        name=payload.name,
        period=payload.period,
        reset_at=payload.reset_at,
    )
    return _budget_response(budget)


@router.post("/budgets/freeze", response_model=BudgetResponse)
def freeze_budget_endpoint(
    payload: BudgetFreezeRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> BudgetResponse:
    set_org_context(session, payload.org_id)
    _require_access(session, auth, payload.org_id, required_role="owner")
    try:
        budget = ledger.set_budget_frozen(
            session,
            org_id=payload.org_id,
            budget_type=payload.budget_type,
            frozen=payload.frozen,
        )
    except ledger.BudgetNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return _budget_response(budget)
