"""Webhook intake routes. Trust comes from platform signatures, not bearer tokens."""

from __future__ import annotations

from typing import Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from src.auth.dependencies import require_org_role, require_org_scope
from src.auth.jwt import AuthContext
from src.core.logger import bind_org_context
from src.schemas.webhooks import (
    WebhookAcceptedResponse,
    WebhookDuplicateResponse,
    WebhookEventResponse,
    WebhookProcessedRequest,
)
from src.storage.db import get_session
from src.storage.tenant import set_org_context
from src.webhooks.intake import MalformedPayloadError, UnknownOrgError, ingest_webhook, mark_webhook_event_processed


router = APIRouter(tags=["webhooks"])


@router.post(
    "/webhooks-ingest",
    response_model=Union[WebhookAcceptedResponse, WebhookDuplicateResponse],
)
async def webhooks_ingest(
    request: Request,
    platform: Optional[str] = Query(default=None, max_length=64),
    org_id: Optional[str] = Query(default=None, max_length=36),
    session: Session = Depends(get_session),
) -> Union[WebhookAcceptedResponse, WebhookDuplicateResponse]:
    if not platform or not org_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing platform or org_id parameter",
        )

    body = await request.body()
    bind_org_context(org_id)
    set_org_context(session, org_id)
    try:
        result = ingest_webhook(
            session,
            org_id=org_id,
            platform=platform.strip().lower(),
            body=body,
            headers=request.headers,
        )
    except MalformedPayloadError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except UnknownOrgError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown org") from exc

    if result.duplicate:
        return WebhookDuplicateResponse(event_id=result.event_id)
    return WebhookAcceptedResponse(
        event_id=result.event_id,
        is_verified=result.is_verified,
        webhook_event_id=result.webhook_event_id or "",
    )


@router.post("/webhook-events/{webhook_event_id}/processed", response_model=WebhookEventResponse)
def mark_processed_endpoint(
    webhook_event_id: str,
    payload: WebhookProcessedRequest,
    auth: AuthContext = Depends(require_org_role("operator")),
    session: Session = Depends(get_session),
) -> WebhookEventResponse:
    require_org_scope(auth, payload.org_id)
    set_org_context(session, payload.org_id)
    try:
        event = mark_webhook_event_processed(
            session,
            org_id=payload.org_id,
            webhook_event_id=webhook_event_id,
            error_message=payload.error_message,
        )
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook event not found") from exc
    return WebhookEventResponse(
        id=event.id,
        event_id=event.event_id,
        event_type=event.event_type,
        is_verified=event.is_verified,
        is_processed=event.is_processed,
        error_message=event.error_message,
        processed_at=event.processed_at.isoformat() if event.processed_at else None,
    )
