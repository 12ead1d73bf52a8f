"""Structured JSON logging for the API, workers and maintenance runs.

Every line carries the org it acted for and, when a token was presented,
the acting user and role, so audit rows and log lines can be joined.
"""

from __future__ import annotations

from contextlib import contextmanager
import logging
from typing import TYPE_CHECKING, Any, Iterator

import structlog

from src.core.config import get_settings

if TYPE_CHECKING:
    from src.auth.jwt import AuthContext


CONTEXT_FIELDS = ("request_id", "org_id", "user_id", "role")

_CONFIGURED = False


def _add_default_context(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    del logger, method_name
    for name in CONTEXT_FIELDS:
        event_dict.setdefault(name, None)
    return event_dict


def _add_service(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    del logger, method_name
    settings = get_settings()
    event_dict.setdefault("service", settings.app_name)
    event_dict.setdefault("env", settings.env)
    return event_dict


def configure_logging() -> None:
    global _CONFIGURED
    if _CONFIGURED:
        return

    level = getattr(logging, get_settings().log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(message)s")

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _add_default_context,
            _add_service,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.PrintLoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )

    _CONFIGURED = True


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def bind_request_context(
    request_id: str,
    org_id: str | None = None,
    auth: "AuthContext | None" = None,
) -> None:
    """Bind the request id plus the org and actor the request runs as.

    A token's org wins over an ``X-Org-Id`` header; the token is what the
    routers authorize against.
    """

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        org_id=auth.org_id if auth is not None else org_id,
        user_id=auth.user_id if auth is not None else None,
        role=auth.role if auth is not None else None,
    )


def bind_org_context(org_id: str | None) -> None:
    structlog.contextvars.bind_contextvars(org_id=org_id)


@contextmanager
def org_log_context(org_id: str) -> Iterator[None]:
    """Scope log lines to one org for the duration of a background run."""

    with structlog.contextvars.bound_contextvars(org_id=org_id):
        yield


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()
