"""Publish request orchestration.

A publish request either proceeds straight to the job queue, is parked
behind an approval, or is rejected by access or budget admission control.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.approvals.gate import approval_payload, request_approval
from src.audit.service import record_audit
from src.budgets.ledger import BudgetExceededError, check as check_budget, consume as consume_budget
from src.capabilities.resolver import PUBLISH_PRODUCT, resolve
from src.core.config import get_settings
from src.core.logger import get_logger
from src.core.metrics import record_budget_block, record_publish_request
from src.jobs.queue import TERMINAL_STATUSES, DuplicateIdempotencyKeyError, enqueue, job_payload
from src.orgs.service import has_org_access
from src.storage.models import Approval, Job, Store


PUBLISH_BATCH = "publish_batch"
GENERATION_MARKER = "_g"


class PublishAccessDeniedError(PermissionError):
    pass


class ApprovalNotExecutableError(RuntimeError):
    pass


@dataclass(frozen=True)
class PlatformCheck:
    requires_approval: bool
    level: str
    reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.level == "unsupported"

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"requires_approval": self.requires_approval}
        if self.reason:
            payload["reason"] = self.reason
        return payload


@dataclass(frozen=True)
class PublishOutcome:
    status: str
    message: str
    platform_checks: Dict[str, PlatformCheck]
    jobs_created: int = 0
    jobs_existing: int = 0
    approval_id: Optional[str] = None
    job_ids: List[str] = field(default_factory=list)

    def platform_checks_payload(self) -> Dict[str, Dict[str, Any]]:
        return {platform: item.as_dict() for platform, item in self.platform_checks.items()}


def publish_idempotency_key(*, product_id: str, store_id: str, action: str, generation: int = 0) -> str:
    """Key for one (product, store, action) job; org scoping comes from the unique constraint.

    Generation 0 is the bare key. Once a pair's latest job is terminal, the
    next publish uses the following generation so the pair can run again.
    """

    base = f"publish_{action}_{product_id}_{store_id}"
    return base if generation == 0 else f"{base}{GENERATION_MARKER}{generation}"


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _key_generation(key: str, base: str) -> int:
    if key == base:
        return 0
    suffix = key[len(base) + len(GENERATION_MARKER):]
    return int(suffix) if suffix.isdigit() else -1


def _pair_jobs(session: Session, *, org_id: str, base_key: str) -> List[tuple[int, Job]]:
    """Every job of a publish pair with its generation, newest generation first."""

    rows = session.scalars(
        select(Job).where(
            Job.org_id == org_id,
            or_(
                Job.idempotency_key == base_key,
                Job.idempotency_key.like(f"{_escape_like(base_key + GENERATION_MARKER)}%", escape="\\"),
            ),
        )
    ).all()
    generations = [(_key_generation(job.idempotency_key, base_key), job) for job in rows]
    return sorted((item for item in generations if item[0] >= 0), key=lambda item: item[0], reverse=True)


def _load_stores(session: Session, *, org_id: str, store_ids: Sequence[str]) -> Dict[str, Store]:
    if not store_ids:
        return {}
    rows = session.scalars(
        select(Store).where(
            Store.org_id == org_id,
            Store.id.in_(list(store_ids)),
            Store.is_active.is_(True),
        )
    ).all()
    return {store.id: store for store in rows}


def check_platforms(session: Session, platforms: Sequence[str]) -> Dict[str, PlatformCheck]:
    checks: Dict[str, PlatformCheck] = {}
    for platform in platforms:
        if platform in checks:
            continue
        resolution = resolve(session, platform=platform, capability=PUBLISH_PRODUCT)
        if resolution.level == "workaround":
            checks[platform] = PlatformCheck(
                requires_approval=True,
                level="workaround",
                reason=f"{platform} requires manual verification before publishing",
            )
        elif resolution.level == "native":
            checks[platform] = PlatformCheck(requires_approval=False, level="native")
        else:
            checks[platform] = PlatformCheck(
                requires_approval=False,
                level="unsupported",
                reason=f"Publishing not supported for {platform}. Manual upload required.",
            )
    return checks


def _admit(session: Session, *, org_id: str) -> None:
    budget_type = get_settings().publish_budget_type
    decision = check_budget(session, org_id=org_id, budget_type=budget_type, amount=1)
    if not decision.allowed:
        record_budget_block(budget_type=budget_type)
        get_logger("opshub.publishing").warning(
            "publish_budget_blocked",
            org_id=org_id,
            budget_type=budget_type,
            reason=decision.message,
        )
        raise BudgetExceededError(decision)


def _enqueue_pairs(
    session: Session,
    *,
    org_id: str,
    product_ids: Sequence[str],
    store_ids: Sequence[str],
    stores: Dict[str, Store],
    platform_checks: Dict[str, PlatformCheck],
    action: str,
    approval_id: Optional[str] = None,
) -> tuple[List[str], int]:
    """Flush one job per eligible pair into the open transaction.

    A pair whose latest job is still live counts as existing, as does a pair
    this approval already enqueued.
    """

    settings = get_settings()
    created: List[str] = []
    existing = 0
    for product_id in product_ids:
        for store_id in store_ids:
            store = stores.get(store_id)
            if store is None:
                continue
            check = platform_checks.get(store.platform)
            if check is None or check.skipped:
                continue

            base_key = publish_idempotency_key(product_id=product_id, store_id=store_id, action=action)
            pair_jobs = _pair_jobs(session, org_id=org_id, base_key=base_key)
            generation = pair_jobs[0][0] if pair_jobs else -1
            live = bool(pair_jobs) and pair_jobs[0][1].status not in TERMINAL_STATUSES
            from_this_approval = approval_id is not None and any(
                job_payload(job).get("approval_id") == approval_id for _, job in pair_jobs
            )
            if live or from_this_approval:
                existing += 1
                continue

            payload: Dict[str, Any] = {"product_id": product_id, "store_id": store_id, "action": action}
            if approval_id:
                payload["approval_id"] = approval_id
            try:
                job = enqueue(
                    session,
                    org_id=org_id,
                    idempotency_key=publish_idempotency_key(
                        product_id=product_id,
                        store_id=store_id,
                        action=action,
                        generation=generation + 1,
                    ),
                    job_type=f"publish_to_{store.platform}",
                    payload=payload,
                    priority=settings.publish_job_priority,
                    commit=False,
                )
            except DuplicateIdempotencyKeyError:
                existing += 1
                continue
            created.append(job.id)
    return created, existing


def _stage_batch(
    session: Session,
    *,
    org_id: str,
    user_id: str,
    product_ids: Sequence[str],
    store_ids: Sequence[str],
    stores: Dict[str, Store],
    platform_checks: Dict[str, PlatformCheck],
    action: str,
    audit_action: str,
    approval_id: Optional[str] = None,
) -> tuple[List[str], int]:
    created, existing = _enqueue_pairs(
        session,
        org_id=org_id,
        product_ids=product_ids,
        store_ids=store_ids,
        stores=stores,
        platform_checks=platform_checks,
        action=action,
        approval_id=approval_id,
    )
    if created:
        consume_budget(
            session,
            org_id=org_id,
            budget_type=get_settings().publish_budget_type,
            amount=len(created),
            commit=False,
        )
    metadata: Dict[str, Any] = {
        "job_count": len(created),
        "existing_job_count": existing,
        "product_count": len(product_ids),
        "store_count": len(store_ids),
    }
    if approval_id:
        metadata["approval_id"] = approval_id
    record_audit(
        session,
        org_id=org_id,
        user_id=user_id,
        action=audit_action,
        entity_type="job_batch",
        entity_id=approval_id,
        metadata=metadata,
        soc2_tags=("change",),
    )
    return created, existing


def _enqueue_batch(session: Session, **batch: Any) -> tuple[List[str], int]:
    """Jobs, budget consumption and the audit row commit together or not at all.

    A concurrent request inserting the same pair surfaces as ``IntegrityError``
    on commit. The batch is then rolled back and staged once more, and the
    second pass counts those jobs as existing.
    """

    try:
        try:
            result = _stage_batch(session, **batch)
            session.commit()
        except IntegrityError:
            session.rollback()
            get_logger("opshub.publishing").info("publish_batch_conflict_retry", org_id=batch["org_id"])
            result = _stage_batch(session, **batch)
            session.commit()
    except Exception:
        session.rollback()
        raise
    return result


def request_publish(
    session: Session,
    *,
    org_id: str,
    product_ids: Sequence[str],
    store_ids: Sequence[str],
    action: str = "publish",
    requester_id: str,
) -> PublishOutcome:
    if not has_org_access(session, org_id=org_id, user_id=requester_id, required_role="operator"):
        record_publish_request(outcome="access_denied")
        raise PublishAccessDeniedError("Access denied")

    stores = _load_stores(session, org_id=org_id, store_ids=store_ids)
    _admit(session, org_id=org_id)

    ordered_platforms = [stores[store_id].platform for store_id in store_ids if store_id in stores]
    platform_checks = check_platforms(session, ordered_platforms)

    threshold = get_settings().publish_bulk_approval_threshold
    requires_approval = any(item.requires_approval for item in platform_checks.values()) or (
        len(product_ids) > threshold
    )
    logger = get_logger("opshub.publishing")

    if requires_approval:
        approval = request_approval(
            session,
            org_id=org_id,
            entity_type=PUBLISH_BATCH,
            entity_id=None,
            action=action,
            payload={
                "product_ids": list(product_ids),
                "store_ids": list(store_ids),
                "platform_checks": {p: c.as_dict() for p, c in platform_checks.items()},
                "requested_by": requester_id,
            },
            requested_by=requester_id,
            commit=False,
        )
        record_audit(
            session,
            org_id=org_id,
            user_id=requester_id,
            action="publish.approval_requested",
            entity_type="approval",
            entity_id=approval.id,
            metadata={"product_count": len(product_ids), "store_count": len(store_ids)},
            soc2_tags=("change", "processing_integrity"),
        )
        session.commit()
        record_publish_request(outcome="pending_approval")
        logger.info("publish_pending_approval", org_id=org_id, approval_id=approval.id)
        return PublishOutcome(
            status="pending_approval",
            message="Publishing request requires approval",
            platform_checks=platform_checks,
            approval_id=approval.id,
        )

    created, existing = _enqueue_batch(
        session,
        org_id=org_id,
        user_id=requester_id,
        product_ids=product_ids,
        store_ids=store_ids,
        stores=stores,
        platform_checks=platform_checks,
        action=action,
        audit_action="publish.jobs_enqueued",
    )
    record_publish_request(outcome="processing")
    logger.info("publish_jobs_enqueued", org_id=org_id, jobs_created=len(created), jobs_existing=existing)
    return PublishOutcome(
        status="processing",
        message=f"{len(created)} publishing jobs enqueued",
        platform_checks=platform_checks,
        jobs_created=len(created),
        jobs_existing=existing,
        job_ids=created,
    )


def execute_approved_batch(session: Session, approval: Approval) -> PublishOutcome:
    """Enqueue the jobs of an approved publish batch.

    Safe to call repeatedly: pairs this approval already enqueued are
    reported as existing, whatever state their jobs reached. Budget admission is re-checked at
    execution time.
    """

    if approval.entity_type != PUBLISH_BATCH:
        raise ApprovalNotExecutableError(f"Approval {approval.id} is not a publish batch")
    if approval.status != "approved":
        raise ApprovalNotExecutableError(f"Approval {approval.id} is {approval.status}, not approved")

    payload = approval_payload(approval)
    product_ids = [str(item) for item in payload.get("product_ids") or []]
    store_ids = [str(item) for item in payload.get("store_ids") or []]
    org_id = approval.org_id

    _admit(session, org_id=org_id)
    stores = _load_stores(session, org_id=org_id, store_ids=store_ids)
    platform_checks = check_platforms(
        session,
        [stores[store_id].platform for store_id in store_ids if store_id in stores],
    )

    created, existing = _enqueue_batch(
        session,
        org_id=org_id,
        user_id=approval.decided_by or approval.requested_by,
        product_ids=product_ids,
        store_ids=store_ids,
        stores=stores,
        platform_checks=platform_checks,
        action=approval.action,
        audit_action="publish.approval_executed",
        approval_id=approval.id,
    )
    get_logger("opshub.publishing").info(
        "publish_approval_executed",
        org_id=org_id,
        approval_id=approval.id,
        jobs_created=len(created),
        jobs_existing=existing,
    )
    return PublishOutcome(
        status="processing",
        message=f"{len(created)} publishing jobs enqueued",
        platform_checks=platform_checks,
        jobs_created=len(created),
        jobs_existing=existing,
        approval_id=approval.id,
        job_ids=created,
    )
