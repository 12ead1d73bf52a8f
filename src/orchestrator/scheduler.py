"""Org maintenance scheduler with per-org Redis lock isolation.

The lock only prevents two schedulers from doing the same sweep twice;
correctness of each sweep comes from its conditional updates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from src.audit.service import record_audit
from src.core.logger import get_logger, org_log_context
from src.core.observability import capture_exception, sentry_scope
from src.orchestrator.locks import OrgLockManager
from src.orchestrator.maintenance import run_org_maintenance
from src.storage.models import Org
from src.storage.tenant import reset_org_context, set_org_context


MaintenanceRunner = Callable[[Session, str], Mapping[str, Any]]

logger = get_logger("opshub.orchestrator.scheduler")


@dataclass(frozen=True)
class OrgRunSummary:
    org_id: str
    status: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SchedulerRunResult:
    total_orgs: int
    executed: int
    skipped_locked: int
    failed: int
    runs: List[OrgRunSummary]


class OrgMaintenanceScheduler:
    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        lock_manager: OrgLockManager,
        runner: MaintenanceRunner | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._lock_manager = lock_manager
        self._runner = runner or run_org_maintenance

    def list_org_ids(self, *, limit: int | None = None) -> List[str]:
        with self._session_factory() as session:
            statement = select(Org.id).order_by(Org.created_at.asc(), Org.id.asc())
            if limit is not None:
                statement = statement.limit(max(1, limit))
            return [str(org_id) for org_id in session.scalars(statement).all()]

    def run_once(self, *, org_ids: Iterable[str] | None = None, limit: int | None = None) -> SchedulerRunResult:
        selected_ids = list(org_ids) if org_ids is not None else self.list_org_ids(limit=limit)

        runs: List[OrgRunSummary] = []
        for org_id in selected_ids:
            with org_log_context(org_id):
                runs.append(self._run_locked(org_id))

        statuses = [run.status for run in runs]
        return SchedulerRunResult(
            total_orgs=len(selected_ids),
            executed=statuses.count("executed"),
            skipped_locked=statuses.count("skipped_locked"),
            failed=statuses.count("failed"),
            runs=runs,
        )

    def _run_locked(self, org_id: str) -> OrgRunSummary:
        lock = self._lock_manager.acquire(org_id)
        if lock is None:
            logger.info("org_maintenance_skipped_locked")
            return OrgRunSummary(org_id=org_id, status="skipped_locked", details={"reason": "org_lock_exists"})

        try:
            with sentry_scope(org_id=org_id):
                details = self._run_org(org_id)
            self._record_run(org_id=org_id, status="executed", details=details)
            logger.info("org_maintenance_executed", **details)
            return OrgRunSummary(org_id=org_id, status="executed", details=details)
        except Exception as exc:
            details = {"error": str(exc)}
            self._record_run(org_id=org_id, status="failed", details=details)
            capture_exception(exc)
            logger.error("org_maintenance_failed", error=str(exc))
            return OrgRunSummary(org_id=org_id, status="failed", details=details)
        finally:
            lock.release()

    def _run_org(self, org_id: str) -> Dict[str, Any]:
        with self._session_factory() as session:
            set_org_context(session, org_id)
            try:
                result = self._runner(session, org_id)
                return dict(result) if isinstance(result, Mapping) else {}
            finally:
                reset_org_context(session)

    def _record_run(self, *, org_id: str, status: str, details: Mapping[str, Any]) -> None:
        with self._session_factory() as session:
            set_org_context(session, org_id)
            try:
                record_audit(
                    session,
                    org_id=org_id,
                    action=f"maintenance.{status}",
                    entity_type="org",
                    entity_id=org_id,
                    metadata=dict(details),
                    soc2_tags=("availability", "processing_integrity"),
                )
                session.commit()
            finally:
                reset_org_context(session)
