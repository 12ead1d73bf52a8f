"""FastAPI dependencies for token auth, role gates and org scope."""

from __future__ import annotations

from collections.abc import Callable
from typing import Optional

from fastapi import Depends, HTTPException, Request, status

from src.auth.jwt import AuthContext
from src.auth.middleware import AUTH_CONTEXT_KEY


def get_optional_auth_context(request: Request) -> Optional[AuthContext]:
    return getattr(request.state, AUTH_CONTEXT_KEY, None)


def require_auth_context(auth: Optional[AuthContext] = Depends(get_optional_auth_context)) -> AuthContext:
    if auth is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return auth


def require_org_role(*allowed_roles: str) -> Callable[[AuthContext], AuthContext]:
    """Gate on the role carried by the token. Owners pass every gate."""

    def dependency(auth: AuthContext = Depends(require_auth_context)) -> AuthContext:
        if not auth.has_role(*allowed_roles):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient role",
            )
        return auth

    return dependency


def require_org_scope(auth: AuthContext, org_id: Optional[str]) -> None:
    """Workers and operators may only touch the org their token was issued for."""

    if not auth.covers_org(org_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token org scope mismatch")
