"""Authentication API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from src.auth.jwt import AuthContext, create_access_token
from src.orgs.service import authenticate_org_member
from src.schemas.auth import LoginRequest, TokenResponse
from src.storage.db import get_session
from src.storage.tenant import set_org_context


router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginRequest, session: Session = Depends(get_session)) -> TokenResponse:
    set_org_context(session, payload.org_id)
    user, role = authenticate_org_member(
        session,
        email=payload.email,
        password=payload.password,
        org_id=payload.org_id,
    )

    token, expires_in = create_access_token(
        AuthContext(user_id=user.id, org_id=payload.org_id, role=role, email=user.email)
    )
    return TokenResponse(access_token=token, expires_in=expires_in, org_id=payload.org_id, role=role)
