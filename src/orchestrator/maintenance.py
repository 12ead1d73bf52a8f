"""Per-org housekeeping: lease sweep and budget resets."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from src.budgets.ledger import reset_due_budgets
from src.core.config import get_settings
from src.jobs.queue import release_stale_claims


def run_org_maintenance(session: Session, org_id: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    sweep = release_stale_claims(
        session,
        org_id=org_id,
        lease_seconds=get_settings().job_claim_lease_seconds,
        now=now,
    )
    budgets_reset = reset_due_budgets(session, org_id=org_id, now=now)
    return {
        "jobs_requeued": sweep.requeued,
        "jobs_failed": sweep.failed,
        "budgets_reset": budgets_reset,
    }
