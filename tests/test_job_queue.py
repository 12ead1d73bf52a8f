from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
import threading

import pytest

from src.jobs import queue
from tests.conftest import build_file_sqlite_session_factory, build_sqlite_session_factory, create_org


def _naive(value: datetime) -> datetime:
    return value.replace(tzinfo=None) if value.tzinfo is not None else value


def _enqueue(session, org_id: str, key: str, *, priority: int = 0, max_attempts: int | None = None, **kwargs):
    return queue.enqueue(
        session,
        org_id=org_id,
        idempotency_key=key,
        job_type="publish_to_shopify",
        payload={"key": key},
        priority=priority,
        max_attempts=max_attempts,
        **kwargs,
    )


def test_enqueue_rejects_duplicate_key_and_reports_existing_job() -> None:
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        org = create_org(session)
        first = _enqueue(session, org.id, "publish_publish_p1_s1")

        with pytest.raises(queue.DuplicateIdempotencyKeyError) as excinfo:
            _enqueue(session, org.id, "publish_publish_p1_s1")

        assert excinfo.value.existing_job_id == first.id
        assert len(queue.list_jobs(session, org_id=org.id)) == 1


def test_same_key_is_independent_per_org() -> None:
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        org_a = create_org(session)
        org_b = create_org(session)
        job_a = _enqueue(session, org_a.id, "webhook_process_evt-1")
        job_b = _enqueue(session, org_b.id, "webhook_process_evt-1")
        assert job_a.id != job_b.id


def test_claim_orders_by_priority_then_schedule() -> None:
    session_factory = build_sqlite_session_factory()
    now = datetime.now(timezone.utc)
    with session_factory() as session:
        org = create_org(session)
        low = _enqueue(session, org.id, "low", priority=0, scheduled_at=now - timedelta(minutes=5))
        high_late = _enqueue(session, org.id, "high-late", priority=5, scheduled_at=now - timedelta(minutes=1))
        high_early = _enqueue(session, org.id, "high-early", priority=5, scheduled_at=now - timedelta(minutes=3))
        _enqueue(session, org.id, "future", priority=9, scheduled_at=now + timedelta(hours=1))

        claimed = queue.claim(session, org_id=org.id, limit=10, now=now)

    assert [job.id for job in claimed] == [high_early.id, high_late.id, low.id]
    assert all(job.status == "claimed" for job in claimed)
    assert all(job.attempts == 1 for job in claimed)
    assert len({job.claim_token for job in claimed}) == 3


def test_claimed_job_is_not_handed_to_second_claimer() -> None:
    session_factory = build_sqlite_session_factory()
    with session_factory() as seed:
        org = create_org(seed)
        _enqueue(seed, org.id, "only-one")
        org_id = org.id

    with session_factory() as worker_a:
        first = queue.claim(worker_a, org_id=org_id, limit=5)
    with session_factory() as worker_b:
        second = queue.claim(worker_b, org_id=org_id, limit=5)

    assert len(first) == 1
    assert second == []


def test_claim_does_not_cross_org_boundary() -> None:
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        org_a = create_org(session)
        org_b = create_org(session)
        _enqueue(session, org_a.id, "a-job")

        assert queue.claim(session, org_id=org_b.id, limit=5) == []
        assert len(queue.claim(session, org_id=org_a.id, limit=5)) == 1


def test_lifecycle_requires_matching_claim_token() -> None:
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        org = create_org(session)
        _enqueue(session, org.id, "lease")
        (job,) = queue.claim(session, org_id=org.id, limit=1)

        with pytest.raises(queue.InvalidJobTransitionError) as excinfo:
            queue.start(session, org_id=org.id, job_id=job.id, claim_token="not-the-token")
        assert "claim token" in str(excinfo.value)

        running = queue.start(session, org_id=org.id, job_id=job.id, claim_token=job.claim_token)
        assert running.status == "running"
        assert running.started_at is not None

        done = queue.complete(
            session,
            org_id=org.id,
            job_id=job.id,
            result={"external_id": "gid://shopify/Product/1"},
            claim_token=job.claim_token,
        )
        assert done.status == "completed"
        assert done.claim_token is None
        assert queue.job_result(done) == {"external_id": "gid://shopify/Product/1"}

        with pytest.raises(queue.InvalidJobTransitionError):
            queue.complete(session, org_id=org.id, job_id=job.id)


def test_complete_requires_running_status() -> None:
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        org = create_org(session)
        job = _enqueue(session, org.id, "not-started")

        with pytest.raises(queue.InvalidJobTransitionError) as excinfo:
            queue.complete(session, org_id=org.id, job_id=job.id)
        assert excinfo.value.current_status == "pending"

        with pytest.raises(queue.JobNotFoundError):
            queue.start(session, org_id=org.id, job_id="missing-job")


def test_failures_back_off_and_stop_at_max_attempts() -> None:
    session_factory = build_sqlite_session_factory()
    now = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
    with session_factory() as session:
        org = create_org(session)
        _enqueue(session, org.id, "flaky", max_attempts=2, scheduled_at=now)

        (job,) = queue.claim(session, org_id=org.id, limit=1, now=now)
        queue.start(session, org_id=org.id, job_id=job.id, claim_token=job.claim_token, now=now)
        retried = queue.fail(session, org_id=org.id, job_id=job.id, error_message="timeout", now=now)
        assert retried.status == "pending"
        assert retried.claimed_at is None
        assert retried.started_at is None
        assert retried.claim_token is None
        assert retried.attempts == 1
        assert retried.error_message == "timeout"
        assert _naive(retried.scheduled_at) == _naive(now + timedelta(seconds=queue.retry_delay_seconds(1)))

        assert queue.claim(session, org_id=org.id, limit=1, now=now + timedelta(seconds=1)) == []

        later = now + timedelta(hours=2)
        (job,) = queue.claim(session, org_id=org.id, limit=1, now=later)
        queue.start(session, org_id=org.id, job_id=job.id, claim_token=job.claim_token, now=later)
        failed = queue.fail(session, org_id=org.id, job_id=job.id, error_message="still down", now=later)

        assert failed.status == "failed"
        assert failed.attempts == 2
        assert failed.completed_at is not None
        assert queue.claim(session, org_id=org.id, limit=1, now=later + timedelta(days=1)) == []


def test_retry_delay_is_exponential_and_capped(monkeypatch) -> None:
    from src.core.config import get_settings

    monkeypatch.setenv("JOB_RETRY_BASE_SECONDS", "10")
    monkeypatch.setenv("JOB_RETRY_MAX_BACKOFF_SECONDS", "100")
    get_settings.cache_clear()
    try:
        assert queue.retry_delay_seconds(0) == 10
        assert queue.retry_delay_seconds(1) == 20
        assert queue.retry_delay_seconds(3) == 80
        assert queue.retry_delay_seconds(4) == 100
    finally:
        get_settings.cache_clear()


def test_operator_retry_and_cancel() -> None:
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        org = create_org(session)
        _enqueue(session, org.id, "terminal", max_attempts=1)
        (job,) = queue.claim(session, org_id=org.id, limit=1)
        failed = queue.fail(session, org_id=org.id, job_id=job.id, error_message="boom")
        assert failed.status == "failed"

        reset = queue.retry(session, org_id=org.id, job_id=job.id)
        assert reset.status == "pending"
        assert reset.attempts == 0
        assert reset.error_message is None

        cancelled = queue.cancel(session, org_id=org.id, job_id=job.id)
        assert cancelled.status == "cancelled"

        with pytest.raises(queue.InvalidJobTransitionError):
            queue.cancel(session, org_id=org.id, job_id=job.id)
        with pytest.raises(queue.InvalidJobTransitionError):
            queue.retry(session, org_id=org.id, job_id=job.id)


def test_release_stale_claims_requeues_or_fails_exhausted_jobs() -> None:
    session_factory = build_sqlite_session_factory()
    claimed_at = datetime(2026, 10, 18, 8, 0, tzinfo=timezone.utc)
    with session_factory() as session:
        org = create_org(session)
        _enqueue(session, org.id, "requeue-me", max_attempts=3, scheduled_at=claimed_at)
        _enqueue(session, org.id, "exhausted", max_attempts=1, scheduled_at=claimed_at)
        claimed = queue.claim(session, org_id=org.id, limit=5, now=claimed_at)
        assert len(claimed) == 2

        untouched = queue.release_stale_claims(
            session,
            org_id=org.id,
            lease_seconds=600,
            now=claimed_at + timedelta(seconds=60),
        )
        assert untouched == queue.LeaseSweepResult(requeued=0, failed=0)

        result = queue.release_stale_claims(
            session,
            org_id=org.id,
            lease_seconds=600,
            now=claimed_at + timedelta(hours=1),
        )
        assert result == queue.LeaseSweepResult(requeued=1, failed=1)

        by_key = {job.idempotency_key: queue.get_job(session, org_id=org.id, job_id=job.id) for job in claimed}
        assert by_key["requeue-me"].status == "pending"
        assert by_key["requeue-me"].claim_token is None
        assert by_key["exhausted"].status == "failed"
        assert by_key["exhausted"].error_message == queue.LEASE_EXPIRED_MESSAGE


def test_racing_claimers_never_share_a_job(tmp_path) -> None:
    session_factory = build_file_sqlite_session_factory(tmp_path / "claims.db")
    with session_factory() as seed:
        org_id = create_org(seed).id
        for index in range(3):
            _enqueue(seed, org_id, f"race-{index}")

    workers = 8
    barrier = threading.Barrier(workers)

    def claim_one() -> list[str]:
        barrier.wait()
        with session_factory() as session:
            return [job.id for job in queue.claim(session, org_id=org_id, limit=1)]

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(lambda _: claim_one(), range(workers)))

    claimed = [job_id for batch in results for job_id in batch]
    assert 1 <= len(claimed) <= 3
    assert len(set(claimed)) == len(claimed)
    with session_factory() as session:
        in_db = [job for job in queue.list_jobs(session, org_id=org_id) if job.status == "claimed"]
        assert sorted(job.id for job in in_db) == sorted(claimed)
        assert {job.attempts for job in in_db} == {1}


def test_racing_enqueues_of_one_key_create_a_single_job(tmp_path) -> None:
    session_factory = build_file_sqlite_session_factory(tmp_path / "enqueue.db")
    with session_factory() as seed:
        org_id = create_org(seed).id

    workers = 6
    barrier = threading.Barrier(workers)

    def enqueue_k1() -> str:
        barrier.wait()
        with session_factory() as session:
            try:
                return _enqueue(session, org_id, "k1").id
            except queue.DuplicateIdempotencyKeyError as exc:
                return exc.existing_job_id

    with ThreadPoolExecutor(max_workers=workers) as pool:
        job_ids = set(pool.map(lambda _: enqueue_k1(), range(workers)))

    assert len(job_ids) == 1
    with session_factory() as session:
        assert [job.id for job in queue.list_jobs(session, org_id=org_id)] == list(job_ids)


def test_enqueue_losing_insert_race_reports_the_winner(monkeypatch) -> None:
    session_factory = build_sqlite_session_factory()
    with session_factory() as seed:
        org_id = create_org(seed).id

    real_find = queue.find_job_by_key
    state = {"raced": False, "winner": None}

    def find_after_competitor(session, *, org_id, idempotency_key):
        if not state["raced"]:
            state["raced"] = True
            with session_factory() as other:
                state["winner"] = _enqueue(other, org_id, idempotency_key).id
            return None
        return real_find(session, org_id=org_id, idempotency_key=idempotency_key)

    monkeypatch.setattr(queue, "find_job_by_key", find_after_competitor)

    with session_factory() as session:
        with pytest.raises(queue.DuplicateIdempotencyKeyError) as excinfo:
            _enqueue(session, org_id, "webhook_process_evt-race")

        assert excinfo.value.existing_job_id == state["winner"]
        assert len(queue.list_jobs(session, org_id=org_id)) == 1
