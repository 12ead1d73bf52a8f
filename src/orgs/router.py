"""Org management API routes."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from src.auth.dependencies import require_auth_context
from src.auth.jwt import AuthContext
from src.orgs.service import create_org_with_owner, get_org_for_member
from src.schemas.org import OrgCreateRequest, OrgCreateResponse, OrgResponse
from src.storage.db import get_session
from src.storage.tenant import set_org_context


router = APIRouter(prefix="/orgs", tags=["orgs"])


@router.post("", response_model=OrgCreateResponse, status_code=201)
def create_org(
    payload: OrgCreateRequest,
    session: Session = Depends(get_session),
) -> OrgCreateResponse:
    org, user = create_org_with_owner(
        session,
        name=payload.name,
        slug=payload.slug,
        owner_email=payload.owner_email,
        owner_password=payload.owner_password,
    )
    return OrgCreateResponse(org_id=org.id, name=org.name, slug=org.slug, owner_user_id=user.id)


@router.get("/{org_id}", response_model=OrgResponse)
def get_org(
    org_id: str,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> OrgResponse:
    set_org_context(session, org_id)
    org, role = get_org_for_member(session, org_id=org_id, user_id=auth.user_id)
    return OrgResponse(
        id=org.id,
        name=org.name,
        slug=org.slug,
        created_at=org.created_at.isoformat() if isinstance(org.created_at, datetime) else str(org.created_at),
        my_role=role,
    )
