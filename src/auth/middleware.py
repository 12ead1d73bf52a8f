"""Per-request token resolution, run by the HTTP middleware before routing."""

from __future__ import annotations

from typing import Optional

from fastapi import Request

from src.auth.jwt import AuthContext, InvalidTokenError, decode_access_token
from src.core.logger import get_logger


AUTH_CONTEXT_KEY = "auth_context"

logger = get_logger("opshub.auth")


def _extract_bearer_token(request: Request) -> Optional[str]:
    scheme, _, credentials = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer":
        return None
    return credentials.strip() or None


def resolve_request_auth_context(request: Request) -> Optional[AuthContext]:
    """Decode the bearer token; a bad token resolves to anonymous.

    Routes that need a caller then answer 401, and webhook intake, which
    authenticates by signature, is unaffected.
    """

    token = _extract_bearer_token(request)
    if token is None:
        return None

    try:
        return decode_access_token(token)
    except InvalidTokenError as exc:
        logger.info("auth_token_rejected", path=request.url.path, reason=str(exc))
        return None


def resolve_request_org_id(request: Request, auth: Optional[AuthContext]) -> Optional[str]:
    """Org the request acts for: the token's, else the ``X-Org-Id`` header."""

    if auth is not None:
        return auth.org_id
    return request.headers.get("x-org-id") or None
