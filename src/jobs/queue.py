"""Durable job queue with single-claim leases.

State machine::

    pending -> claimed -> running -> completed
                                  -> pending (automatic retry while attempts remain)
                                  -> failed
    pending | claimed -> cancelled   (operator)
    failed -> pending                 (operator retry)

Every transition is a conditional UPDATE guarded by the expected current
status, so concurrent callers never both win the same transition.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import json
from typing import Any, Dict, Iterable, List, Optional
import uuid

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.core.config import get_settings
from src.core.logger import get_logger
from src.core.metrics import record_job_enqueued, record_job_finished, record_jobs_claimed
from src.storage.models import Job


JOB_STATUSES = ("pending", "claimed", "running", "completed", "failed", "cancelled")
TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})
LEASE_EXPIRED_MESSAGE = "claim_lease_expired"


class DuplicateIdempotencyKeyError(RuntimeError):
    """A job with the same (org_id, idempotency_key) already exists."""

    def __init__(self, *, org_id: str, idempotency_key: str, existing_job_id: str) -> None:
        super().__init__(f"Job already enqueued for idempotency key '{idempotency_key}'")
        self.org_id = org_id
        self.idempotency_key = idempotency_key
        self.existing_job_id = existing_job_id


class JobNotFoundError(LookupError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidJobTransitionError(RuntimeError):
    def __init__(self, *, job_id: str, current_status: str, operation: str, reason: str = "") -> None:
        message = f"Cannot {operation} job {job_id} from status '{current_status}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.job_id = job_id
        self.current_status = current_status
        self.operation = operation


@dataclass(frozen=True)
class LeaseSweepResult:
    requeued: int
    failed: int


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True, default=str)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def job_payload(job: Job) -> Dict[str, Any]:
    return json.loads(job.payload_json or "{}")


def job_result(job: Job) -> Optional[Any]:
    if job.result_json is None:
        return None
    return json.loads(job.result_json)


def retry_delay_seconds(attempts: int) -> int:
    settings = get_settings()
    delay = settings.job_retry_base_seconds * (2 ** max(attempts, 0))
    return min(delay, settings.job_retry_max_backoff_seconds)


def find_job_by_key(session: Session, *, org_id: str, idempotency_key: str) -> Optional[Job]:
    return session.scalar(
        select(Job).where(Job.org_id == org_id, Job.idempotency_key == idempotency_key)
    )


def enqueue(
    session: Session,
    *,
    org_id: str,
    idempotency_key: str,
    job_type: str,
    payload: Dict[str, Any],
    priority: int = 0,
    max_attempts: Optional[int] = None,
    scheduled_at: Optional[datetime] = None,
    commit: bool = True,
) -> Job:
    """Insert a pending job.

    Raises ``DuplicateIdempotencyKeyError`` when the key is already taken;
    callers treat that as success since the existing job is authoritative.
    The unique constraint on ``(org_id, idempotency_key)`` is the real guard.
    The lookup below only short-circuits the common sequential case.

    With ``commit=False`` the row is flushed into the caller's transaction and
    a concurrent duplicate surfaces as ``IntegrityError`` from the caller's
    commit.
    """

    if not idempotency_key.strip():
        raise ValueError("idempotency_key must not be empty")

    settings = get_settings()
    existing = find_job_by_key(session, org_id=org_id, idempotency_key=idempotency_key)
    if existing is not None:
        record_job_enqueued(job_type=job_type, outcome="duplicate")
        raise DuplicateIdempotencyKeyError(
            org_id=org_id,
            idempotency_key=idempotency_key,
            existing_job_id=existing.id,
        )

    now = _now_utc()
    job = Job(
        id=str(uuid.uuid4()),
        org_id=org_id,
        idempotency_key=idempotency_key,
        job_type=job_type,
        payload_json=_json_dumps(payload),
        priority=priority,
        status="pending",
        attempts=0,
        max_attempts=max_attempts or settings.job_default_max_attempts,
        scheduled_at=scheduled_at or now,
        created_at=now,
        updated_at=now,
    )
    session.add(job)

    if commit:
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            winner = find_job_by_key(session, org_id=org_id, idempotency_key=idempotency_key)
            if winner is None:
                raise
            record_job_enqueued(job_type=job_type, outcome="duplicate")
            raise DuplicateIdempotencyKeyError(
                org_id=org_id,
                idempotency_key=idempotency_key,
                existing_job_id=winner.id,
            ) from exc
    else:
        session.flush()

    record_job_enqueued(job_type=job_type, outcome="created")
    get_logger("opshub.jobs").info(
        "job_enqueued",
        org_id=org_id,
        job_id=job.id,
        job_type=job_type,
        priority=priority,
    )
    return job


def _reload(session: Session, job_ids: Iterable[str]) -> List[Job]:
    ids = list(job_ids)
    if not ids:
        return []
    rows = session.scalars(
        select(Job).where(Job.id.in_(ids)).execution_options(populate_existing=True)
    ).all()
    by_id = {row.id: row for row in rows}
    return [by_id[job_id] for job_id in ids if job_id in by_id]


def _candidate_ids(session: Session, *, org_id: str, limit: int, now: datetime) -> List[str]:
    statement = (
        select(Job.id)
        .where(
            Job.org_id == org_id,
            Job.status == "pending",
            Job.scheduled_at <= now,
            Job.attempts < Job.max_attempts,
        )
        .order_by(Job.priority.desc(), Job.scheduled_at.asc(), Job.created_at.asc(), Job.id.asc())
        .limit(limit)
    )
    bind = session.get_bind()
    if bind is not None and bind.dialect.name == "postgresql":
        statement = statement.with_for_update(skip_locked=True)
    return list(session.scalars(statement).all())


def claim(session: Session, *, org_id: str, limit: int, now: Optional[datetime] = None) -> List[Job]:
    """Claim up to ``limit`` due pending jobs, highest priority first.

    Each candidate is taken with its own ``UPDATE ... WHERE status = 'pending'``
    and only rows whose update matched are returned, so two concurrent
    claimers can never both receive the same job.
    """

    if limit <= 0:
        return []
    limit = min(limit, get_settings().job_claim_max_limit)
    now = now or _now_utc()

    claimed_ids: List[str] = []
    for job_id in _candidate_ids(session, org_id=org_id, limit=limit, now=now):
        result = session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == "pending", Job.attempts < Job.max_attempts)
            .values(
                status="claimed",
                claimed_at=now,
                attempts=Job.attempts + 1,
                claim_token=str(uuid.uuid4()),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed_ids.append(job_id)
    session.commit()

    jobs = _reload(session, claimed_ids)
    record_jobs_claimed(org_id=org_id, count=len(jobs))
    if jobs:
        get_logger("opshub.jobs").info("jobs_claimed", org_id=org_id, count=len(jobs))
    return jobs


def get_job(session: Session, *, org_id: str, job_id: str) -> Job:
    job = session.scalar(
        select(Job)
        .where(Job.id == job_id, Job.org_id == org_id)
        .execution_options(populate_existing=True)
    )
    if job is None:
        raise JobNotFoundError(job_id)
    return job


def list_jobs(
    session: Session,
    *,
    org_id: str,
    status: Optional[str] = None,
    limit: int = 50,
) -> List[Job]:
    statement = select(Job).where(Job.org_id == org_id)
    if status is not None:
        statement = statement.where(Job.status == status)
    statement = statement.order_by(Job.created_at.desc(), Job.id.asc()).limit(max(1, min(limit, 500)))
    return list(session.scalars(statement).all())


def _transition(
    session: Session,
    *,
    org_id: str,
    job_id: str,
    operation: str,
    from_statuses: Iterable[str],
    values: Dict[str, Any],
    claim_token: Optional[str] = None,
    extra_criteria: Iterable[Any] = (),
) -> Job:
    allowed = tuple(from_statuses)
    criteria = [Job.id == job_id, Job.org_id == org_id, Job.status.in_(allowed), *extra_criteria]
    if claim_token is not None:
        criteria.append(Job.claim_token == claim_token)

    result = session.execute(
        update(Job).where(*criteria).values(**values).execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        session.rollback()
        current = get_job(session, org_id=org_id, job_id=job_id)
        reason = ""
        if current.status in allowed and claim_token is not None and current.claim_token != claim_token:
            reason = "claim token does not match the current lease"
        raise InvalidJobTransitionError(
            job_id=job_id,
            current_status=current.status,
            operation=operation,
            reason=reason,
        )
    session.commit()
    return get_job(session, org_id=org_id, job_id=job_id)


def start(
    session: Session,
    *,
    org_id: str,
    job_id: str,
    claim_token: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Job:
    now = now or _now_utc()
    return _transition(
        session,
        org_id=org_id,
        job_id=job_id,
        operation="start",
        from_statuses=("claimed",),
        claim_token=claim_token,
        values={"status": "running", "started_at": now, "updated_at": now},
    )


def complete(
    session: Session,
    *,
    org_id: str,
    job_id: str,
    result: Any = None,
    claim_token: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Job:
    now = now or _now_utc()
    job = _transition(
        session,
        org_id=org_id,
        job_id=job_id,
        operation="complete",
        from_statuses=("running",),
        claim_token=claim_token,
        values={
            "status": "completed",
            "completed_at": now,
            "result_json": _json_dumps(result),
            "claim_token": None,
            "updated_at": now,
        },
    )
    record_job_finished(job_type=job.job_type, outcome="completed")
    get_logger("opshub.jobs").info("job_completed", org_id=org_id, job_id=job_id, job_type=job.job_type)
    return job


def fail(
    session: Session,
    *,
    org_id: str,
    job_id: str,
    error_message: str,
    claim_token: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Job:
    """Report a failed execution.

    While attempts remain the job returns to ``pending`` with an exponential
    backoff on ``scheduled_at``; otherwise it becomes terminally ``failed``.
    """

    now = now or _now_utc()
    current = get_job(session, org_id=org_id, job_id=job_id)
    if current.status not in ("claimed", "running"):
        raise InvalidJobTransitionError(job_id=job_id, current_status=current.status, operation="fail")

    message = (error_message or "unknown error")[:2000]
    observed_attempts = current.attempts
    if observed_attempts < current.max_attempts:
        values: Dict[str, Any] = {
            "status": "pending",
            "scheduled_at": now + timedelta(seconds=retry_delay_seconds(observed_attempts)),
            "error_message": message,
            "claimed_at": None,
            "started_at": None,
            "claim_token": None,
            "updated_at": now,
        }
        outcome = "retry_scheduled"
    else:
        values = {
            "status": "failed",
            "completed_at": now,
            "error_message": message,
            "claim_token": None,
            "updated_at": now,
        }
        outcome = "failed"

    job = _transition(
        session,
        org_id=org_id,
        job_id=job_id,
        operation="fail",
        from_statuses=(current.status,),
        claim_token=claim_token,
        values=values,
        extra_criteria=(Job.attempts == observed_attempts,),
    )
    record_job_finished(job_type=job.job_type, outcome=outcome)
    get_logger("opshub.jobs").warning(
        "job_failed",
        org_id=org_id,
        job_id=job_id,
        job_type=job.job_type,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        outcome=outcome,
    )
    return job


def retry(session: Session, *, org_id: str, job_id: str, now: Optional[datetime] = None) -> Job:
    """Operator reset of a terminally failed job."""

    now = now or _now_utc()
    job = _transition(
        session,
        org_id=org_id,
        job_id=job_id,
        operation="retry",
        from_statuses=("failed",),
        values={
            "status": "pending",
            "attempts": 0,
            "error_message": None,
            "claimed_at": None,
            "started_at": None,
            "completed_at": None,
            "claim_token": None,
            "scheduled_at": now,
            "updated_at": now,
        },
    )
    get_logger("opshub.jobs").info("job_retried", org_id=org_id, job_id=job_id)
    return job


def cancel(session: Session, *, org_id: str, job_id: str, now: Optional[datetime] = None) -> Job:
    now = now or _now_utc()
    job = _transition(
        session,
        org_id=org_id,
        job_id=job_id,
        operation="cancel",
        from_statuses=("pending", "claimed"),
        values={"status": "cancelled", "claim_token": None, "updated_at": now},
    )
    record_job_finished(job_type=job.job_type, outcome="cancelled")
    get_logger("opshub.jobs").info("job_cancelled", org_id=org_id, job_id=job_id)
    return job


def release_stale_claims(
    session: Session,
    *,
    org_id: str,
    lease_seconds: Optional[int] = None,
    now: Optional[datetime] = None,
) -> LeaseSweepResult:
    """Return jobs stuck in ``claimed`` past the lease to the queue."""

    now = now or _now_utc()
    lease = lease_seconds if lease_seconds is not None else get_settings().job_claim_lease_seconds
    cutoff = now - timedelta(seconds=lease)
    stale = (Job.org_id == org_id, Job.status == "claimed", Job.claimed_at < cutoff)

    exhausted = session.execute(
        update(Job)
        .where(*stale, Job.attempts >= Job.max_attempts)
        .values(
            status="failed",
            error_message=LEASE_EXPIRED_MESSAGE,
            completed_at=now,
            claim_token=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    requeued = session.execute(
        update(Job)
        .where(*stale, Job.attempts < Job.max_attempts)
        .values(status="pending", claim_token=None, claimed_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    session.commit()

    result = LeaseSweepResult(requeued=requeued.rowcount or 0, failed=exhausted.rowcount or 0)
    if result.requeued or result.failed:
        get_logger("opshub.jobs").warning(
            "stale_claims_released",
            org_id=org_id,
            requeued=result.requeued,
            failed=result.failed,
        )
    return result
