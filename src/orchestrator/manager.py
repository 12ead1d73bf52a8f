"""CLI entrypoint to run one maintenance cycle or sync the plugin catalog."""

from __future__ import annotations

from dataclasses import asdict
import argparse
import json
from typing import Any, Dict

from src.capabilities.catalog import sync_plugin_catalog
from src.core.config import get_settings
from src.orchestrator.locks import OrgLockManager
from src.orchestrator.scheduler import OrgMaintenanceScheduler, SchedulerRunResult
from src.storage.db import get_session_factory, load_models
from src.storage.redis_client import get_client as get_redis_client


def run_maintenance_once(*, limit: int | None = None) -> SchedulerRunResult:
    settings = get_settings()
    load_models()
    scheduler = OrgMaintenanceScheduler(
        session_factory=get_session_factory(),
        lock_manager=OrgLockManager(
            get_redis_client(),
            ttl_seconds=settings.maintenance_org_lock_ttl_seconds,
        ),
    )
    return scheduler.run_once(limit=limit or settings.maintenance_max_orgs_per_run)


def _result_to_dict(result: SchedulerRunResult) -> Dict[str, Any]:
    payload = asdict(result)
    payload["runs"] = [asdict(run) for run in result.runs]
    return payload


def main() -> None:
    parser = argparse.ArgumentParser(description="Run OpsHub org maintenance once.")
    parser.add_argument("--limit", type=int, default=None, help="Max orgs to process.")
    parser.add_argument(
        "--sync-plugins",
        action="store_true",
        help="Load the plugin catalog YAML into the contract tables instead of running maintenance.",
    )
    args = parser.parse_args()

    if args.sync_plugins:
        load_models()
        with get_session_factory()() as session:
            written = sync_plugin_catalog(session)
        print(json.dumps({"contracts_synced": written}, ensure_ascii=True, sort_keys=True))
        return

    result = run_maintenance_once(limit=args.limit)
    print(json.dumps(_result_to_dict(result), ensure_ascii=True, separators=(",", ":"), sort_keys=True))


if __name__ == "__main__":
    main()
