"""Org-scoped DB context for PostgreSQL row-level security.

``app.current_org_id`` is transaction-local, and services commit several
times per request. The org is therefore kept on ``session.info`` and
re-applied at the start of every transaction the session opens.
"""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import event, text
from sqlalchemy.engine import Connection
from sqlalchemy.orm import Session


ORG_CONTEXT_KEY = "opshub_org_id"

_SET_ORG_SQL = text("SELECT set_config('app.current_org_id', :org_id, true)")


def _is_postgresql(connection: Connection) -> bool:
    return connection.dialect.name == "postgresql"


@event.listens_for(Session, "after_begin")
def _apply_org_context(session: Session, transaction: Any, connection: Connection) -> None:
    org_id = session.info.get(ORG_CONTEXT_KEY)
    if org_id and _is_postgresql(connection):
        connection.execute(_SET_ORG_SQL, {"org_id": org_id})


def current_org_context(session: Session) -> Optional[str]:
    return session.info.get(ORG_CONTEXT_KEY)


def set_org_context(session: Session, org_id: Optional[str]) -> None:
    """Scope the session to ``org_id`` for this and every later transaction."""

    if org_id:
        session.info[ORG_CONTEXT_KEY] = org_id
    else:
        session.info.pop(ORG_CONTEXT_KEY, None)

    bind = session.get_bind()
    if bind is None or bind.dialect.name != "postgresql":
        return
    # A transaction already open missed the after_begin hook.
    session.execute(_SET_ORG_SQL, {"org_id": org_id or ""})


def reset_org_context(session: Session) -> None:
    set_org_context(session=session, org_id=None)
