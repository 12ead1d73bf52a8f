"""Org-scoped access tokens.

A token binds one user to one org with one role. Routers authorize against
these claims; membership is re-checked in the database only where a
decision must reflect the current role (budgets, approvals, publishing).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

from src.core.config import get_settings
from src.orgs.service import ORG_ROLES


TOKEN_TYPE = "access"
REQUIRED_CLAIMS = ("sub", "org_id", "role", "exp", "iss")


class InvalidTokenError(Exception):
    """Token could not be decoded or carries claims this service does not issue."""


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    org_id: str
    role: str
    email: str

    def has_role(self, *roles: str) -> bool:
        return self.role == "owner" or self.role in roles

    def covers_org(self, org_id: str | None) -> bool:
        return org_id is not None and self.org_id == org_id


def create_access_token(context: AuthContext) -> tuple[str, int]:
    if context.role not in ORG_ROLES:
        raise ValueError(f"Unknown org role: {context.role}")

    settings = get_settings()
    expires_in = settings.access_token_exp_minutes * 60
    now = datetime.now(timezone.utc)
    payload = {
        "iss": settings.app_name,
        "typ": TOKEN_TYPE,
        "sub": context.user_id,
        "email": context.email,
        "org_id": context.org_id,
        "role": context.role,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=expires_in)).timestamp()),
    }
    token = jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)
    return token, expires_in


def decode_access_token(token: str) -> AuthContext:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
            issuer=settings.app_name,
            options={"require": list(REQUIRED_CLAIMS)},
        )
    except jwt.PyJWTError as exc:
        raise InvalidTokenError(type(exc).__name__) from exc

    if payload.get("typ") != TOKEN_TYPE:
        raise InvalidTokenError("wrong_token_type")
    role = str(payload["role"])
    if role not in ORG_ROLES:
        raise InvalidTokenError("unknown_role")

    return AuthContext(
        user_id=str(payload["sub"]),
        org_id=str(payload["org_id"]),
        role=role,
        email=str(payload.get("email", "")),
    )
