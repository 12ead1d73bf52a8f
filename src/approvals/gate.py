"""Human-in-the-loop approval records.

An approval moves from ``pending`` to ``approved`` or ``rejected`` exactly
once. The decision is a conditional UPDATE guarded by ``status = 'pending'``
so concurrent deciders cannot both succeed.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
import json
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from src.audit.service import record_audit
from src.core.config import get_settings
from src.core.logger import get_logger
from src.core.metrics import record_approval_decision
from src.storage.models import Approval


APPROVAL_STATUSES = ("pending", "approved", "rejected")
DECISIONS = ("approved", "rejected")

InTransactionApplier = Callable[[Session, Approval], None]


class ApprovalNotFoundError(LookupError):
    def __init__(self, approval_id: str) -> None:
        super().__init__(f"Approval not found: {approval_id}")
        self.approval_id = approval_id


class AlreadyDecidedError(RuntimeError):
    def __init__(self, *, approval_id: str, status: str) -> None:
        super().__init__(f"Approval {approval_id} was already {status}")
        self.approval_id = approval_id
        self.status = status


class ApprovalExpiredError(RuntimeError):
    def __init__(self, approval_id: str) -> None:
        super().__init__(f"Approval {approval_id} has expired and can no longer be approved")
        self.approval_id = approval_id


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True, default=str)


def _normalize_dt(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def approval_payload(approval: Approval) -> Dict[str, Any]:
    return json.loads(approval.payload_json or "{}")


def is_expired(approval: Approval, now: Optional[datetime] = None) -> bool:
    if approval.expires_at is None:
        return False
    return _normalize_dt(approval.expires_at) <= (now or datetime.now(timezone.utc))


def request_approval(
    session: Session,
    *,
    org_id: str,
    entity_type: str,
    entity_id: Optional[str],
    action: str,
    payload: Dict[str, Any],
    requested_by: str,
    ttl: Optional[timedelta] = None,
    commit: bool = True,
) -> Approval:
    """Create a new pending approval. Repeated requests are never merged."""

    now = datetime.now(timezone.utc)
    lifetime = ttl if ttl is not None else timedelta(days=get_settings().approval_ttl_days)
    approval = Approval(
        id=str(uuid.uuid4()),
        org_id=org_id,
        entity_type=entity_type,
        entity_id=entity_id or str(uuid.uuid4()),
        action=action,
        status="pending",
        payload_json=_json_dumps(payload),
        requested_by=requested_by,
        expires_at=now + lifetime,
        created_at=now,
    )
    session.add(approval)
    if commit:
        session.commit()
    else:
        session.flush()

    get_logger("opshub.approvals").info(
        "approval_requested",
        org_id=org_id,
        approval_id=approval.id,
        entity_type=entity_type,
        action=action,
    )
    return approval


def get_approval(session: Session, *, org_id: str, approval_id: str) -> Approval:
    approval = session.scalar(
        select(Approval)
        .where(Approval.id == approval_id, Approval.org_id == org_id)
        .execution_options(populate_existing=True)
    )
    if approval is None:
        raise ApprovalNotFoundError(approval_id)
    return approval


def list_approvals(
    session: Session,
    *,
    org_id: str,
    status: Optional[str] = None,
    entity_type: Optional[str] = None,
    include_expired: bool = False,
    limit: int = 100,
    now: Optional[datetime] = None,
) -> List[Approval]:
    now = now or datetime.now(timezone.utc)
    statement = select(Approval).where(Approval.org_id == org_id)
    if status is not None:
        statement = statement.where(Approval.status == status)
    if entity_type is not None:
        statement = statement.where(Approval.entity_type == entity_type)
    if not include_expired:
        statement = statement.where(
            or_(
                Approval.status != "pending",
                Approval.expires_at.is_(None),
                Approval.expires_at > now,
            )
        )
    statement = statement.order_by(Approval.created_at.desc(), Approval.id.asc()).limit(max(1, min(limit, 500)))
    return list(session.scalars(statement).all())


def decide(
    session: Session,
    *,
    org_id: str,
    approval_id: str,
    decision: str,
    decided_by: str,
    note: Optional[str] = None,
    apply_in_transaction: Optional[InTransactionApplier] = None,
    now: Optional[datetime] = None,
) -> Approval:
    """Record the single decision for a pending approval.

    ``apply_in_transaction`` runs after the status flip and before commit, so
    a gated mutation and its approval either both persist or neither does.
    Expired approvals can still be rejected but not approved.
    """

    if decision not in DECISIONS:
        raise ValueError(f"Unsupported decision: {decision}")

    now = now or datetime.now(timezone.utc)
    current = get_approval(session, org_id=org_id, approval_id=approval_id)
    if current.status != "pending":
        raise AlreadyDecidedError(approval_id=approval_id, status=current.status)
    if decision == "approved" and is_expired(current, now):
        raise ApprovalExpiredError(approval_id)

    result = session.execute(
        update(Approval)
        .where(Approval.id == approval_id, Approval.org_id == org_id, Approval.status == "pending")
        .values(status=decision, decided_by=decided_by, decided_at=now, decision_note=note)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        session.rollback()
        winner = get_approval(session, org_id=org_id, approval_id=approval_id)
        raise AlreadyDecidedError(approval_id=approval_id, status=winner.status)

    approval = get_approval(session, org_id=org_id, approval_id=approval_id)
    try:
        if decision == "approved" and apply_in_transaction is not None:
            apply_in_transaction(session, approval)
        record_audit(
            session,
            org_id=org_id,
            user_id=decided_by,
            action=f"approval.{decision}",
            entity_type="approval",
            entity_id=approval_id,
            old_value={"status": "pending"},
            new_value={"status": decision},
            metadata={"entity_type": approval.entity_type, "action": approval.action, "note": note},
            soc2_tags=("change", "access"),
        )
        session.commit()
    except Exception:
        session.rollback()
        raise

    record_approval_decision(entity_type=approval.entity_type, decision=decision)
    get_logger("opshub.approvals").info(
        "approval_decided",
        org_id=org_id,
        approval_id=approval_id,
        entity_type=approval.entity_type,
        decision=decision,
    )
    return get_approval(session, org_id=org_id, approval_id=approval_id)
