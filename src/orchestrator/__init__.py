"""Org maintenance scheduling primitives."""

from src.orchestrator.locks import OrgLockManager
from src.orchestrator.scheduler import OrgMaintenanceScheduler, OrgRunSummary, SchedulerRunResult

__all__ = [
    "OrgLockManager",
    "OrgMaintenanceScheduler",
    "OrgRunSummary",
    "SchedulerRunResult",
]
