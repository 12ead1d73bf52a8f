"""Publish request API route."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from src.auth.dependencies import require_auth_context
from src.auth.jwt import AuthContext
from src.budgets.ledger import BudgetExceededError
from src.publishing.orchestrator import PublishAccessDeniedError, PublishOutcome, request_publish
from src.schemas.publishing import PlatformCheckResponse, PublishRequest, PublishResponse
from src.storage.db import get_session
from src.storage.tenant import set_org_context


router = APIRouter(tags=["publishing"])

BUDGET_EXHAUSTED_DETAIL = {
    "error": "Budget limit reached",
    "details": "Publishing operations budget is exhausted. Wait for reset or increase limit.",
}


def publish_response(outcome: PublishOutcome) -> PublishResponse:
    checks = {
        platform: PlatformCheckResponse(**item.as_dict())
        for platform, item in outcome.platform_checks.items()
    }
    if outcome.status == "pending_approval":
        return PublishResponse(
            status=outcome.status,
            message=outcome.message,
            platform_checks=checks,
            approval_id=outcome.approval_id,
        )
    return PublishResponse(
        status=outcome.status,
        message=outcome.message,
        platform_checks=checks,
        jobs_created=outcome.jobs_created,
        jobs_existing=outcome.jobs_existing,
    )


@router.post("/publish-request", response_model=PublishResponse, response_model_exclude_none=True)
def publish_request_endpoint(
    payload: PublishRequest,
    response: Response,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> PublishResponse:
    set_org_context(session, payload.org_id)
    try:
        outcome = request_publish(
            session,
            org_id=payload.org_id,
            product_ids=payload.product_ids,
            store_ids=payload.store_ids,
            action=payload.action,
            requester_id=auth.user_id,
        )
    except PublishAccessDeniedError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied") from exc
    except BudgetExceededError as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=BUDGET_EXHAUSTED_DETAIL,
        ) from exc

    if outcome.status == "pending_approval":
        response.status_code = status.HTTP_202_ACCEPTED
    return publish_response(outcome)
