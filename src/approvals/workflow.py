"""Decision dispatch per approval entity type."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from src.approvals.gate import decide
from src.budgets.ledger import BudgetExceededError
from src.core.logger import get_logger
from src.publishing.orchestrator import PUBLISH_BATCH, PublishOutcome, execute_approved_batch
from src.settings_store.service import apply_setting_approval
from src.storage.models import Approval


@dataclass(frozen=True)
class DecisionResult:
    approval: Approval
    execution: Optional[PublishOutcome] = None
    execution_error: Optional[str] = None


def decide_and_apply(
    session: Session,
    *,
    org_id: str,
    approval_id: str,
    decision: str,
    decided_by: str,
    note: Optional[str] = None,
) -> DecisionResult:
    """Decide an approval and carry out what it gated.

    Setting changes are written in the decision transaction. Approved publish
    batches are enqueued right after the decision commits; if that step is
    refused by the budget the approval stays approved and can be applied later.
    """

    approval = decide(
        session,
        org_id=org_id,
        approval_id=approval_id,
        decision=decision,
        decided_by=decided_by,
        note=note,
        apply_in_transaction=_apply_in_transaction,
    )
    if approval.status != "approved" or approval.entity_type != PUBLISH_BATCH:
        return DecisionResult(approval=approval)

    try:
        outcome = execute_approved_batch(session, approval)
    except BudgetExceededError as exc:
        get_logger("opshub.approvals").warning(
            "approved_batch_deferred",
            org_id=org_id,
            approval_id=approval_id,
            reason=exc.decision.message,
        )
        return DecisionResult(approval=approval, execution_error=exc.decision.message)
    return DecisionResult(approval=approval, execution=outcome)


def _apply_in_transaction(session: Session, approval: Approval) -> None:
    if approval.entity_type == "setting":
        apply_setting_approval(session, approval)
