from __future__ import annotations

import json

import pytest
from sqlalchemy import select

from src.budgets import ledger
from src.jobs import queue
from src.publishing import orchestrator
from src.publishing.orchestrator import publish_idempotency_key, request_publish
from src.storage.models import Approval, AuditLog, Job
from tests.conftest import (
    create_api_test_context,
    create_member,
    create_org,
    create_store,
    login,
    teardown_api_test_context,
)


def _stores(context, *platforms: str) -> dict[str, str]:
    with context.session_factory() as session:
        return {platform: create_store(session, org_id=context.org_id, platform=platform).id for platform in platforms}


def _publish(context, *, product_ids, store_ids, headers=None, org_id=None):
    return context.client.post(
        "/publish-request",
        json={"org_id": org_id or context.org_id, "product_ids": product_ids, "store_ids": store_ids},
        headers=headers or context.headers,
    )


def test_native_stores_get_jobs_and_unsupported_are_skipped(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch)
    try:
        stores = _stores(context, "shopify", "gumroad")
        with context.session_factory() as session:
            ledger.upsert_budget(session, org_id=context.org_id, budget_type="publish_operations", limit_amount=10)

        response = _publish(context, product_ids=["p1", "p2", "p3"], store_ids=[stores["shopify"], stores["gumroad"]])

        assert response.status_code == 200
        payload = response.json()
        assert payload["status"] == "processing"
        assert payload["message"] == "3 publishing jobs enqueued"
        assert payload["jobs_created"] == 3
        assert payload["platform_checks"]["shopify"] == {"requires_approval": False}
        assert payload["platform_checks"]["gumroad"] == {
            "requires_approval": False,
            "reason": "Publishing not supported for gumroad. Manual upload required.",
        }
        assert "approval_id" not in payload

        with context.session_factory() as session:
            jobs = session.scalars(select(Job).where(Job.org_id == context.org_id)).all()
            assert sorted(job.idempotency_key for job in jobs) == sorted(
                publish_idempotency_key(product_id=product, store_id=stores["shopify"], action="publish")
                for product in ("p1", "p2", "p3")
            )
            assert {job.job_type for job in jobs} == {"publish_to_shopify"}
            assert {job.priority for job in jobs} == {3}

            budget = ledger.get_budget(session, org_id=context.org_id, budget_type="publish_operations")
            assert budget is not None
            assert int(budget.consumed_amount) == 3
    finally:
        teardown_api_test_context()


def test_resubmitting_same_request_does_not_duplicate_jobs(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch)
    try:
        stores = _stores(context, "printify")
        first = _publish(context, product_ids=["p1", "p2"], store_ids=[stores["printify"]])
        second = _publish(context, product_ids=["p1", "p2"], store_ids=[stores["printify"]])

        assert first.json()["jobs_created"] == 2
        assert second.status_code == 200
        assert second.json()["jobs_created"] == 0
        assert second.json()["jobs_existing"] == 2

        with context.session_factory() as session:
            assert len(session.scalars(select(Job).where(Job.org_id == context.org_id)).all()) == 2
    finally:
        teardown_api_test_context()


def test_bulk_request_over_threshold_requires_approval(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch)
    try:
        stores = _stores(context, "shopify")
        at_threshold = _publish(context, product_ids=[f"a{i}" for i in range(10)], store_ids=[stores["shopify"]])
        assert at_threshold.status_code == 200
        assert at_threshold.json()["status"] == "processing"

        over_threshold = _publish(context, product_ids=[f"b{i}" for i in range(11)], store_ids=[stores["shopify"]])
        assert over_threshold.status_code == 202
        payload = over_threshold.json()
        assert payload["status"] == "pending_approval"
        assert payload["message"] == "Publishing request requires approval"
        assert payload["approval_id"]
        assert "jobs_created" not in payload

        with context.session_factory() as session:
            approval = session.get(Approval, payload["approval_id"])
            assert approval is not None
            assert approval.status == "pending"
            assert approval.entity_type == "publish_batch"
            assert len(json.loads(approval.payload_json)["product_ids"]) == 11
            jobs = session.scalars(select(Job).where(Job.idempotency_key.like("publish_publish_b%"))).all()
            assert jobs == []
    finally:
        teardown_api_test_context()


def test_workaround_platform_approval_enqueues_on_decision(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch)
    try:
        stores = _stores(context, "etsy", "shopify")
        pending = _publish(context, product_ids=["mug"], store_ids=[stores["etsy"], stores["shopify"]])
        assert pending.status_code == 202
        assert pending.json()["platform_checks"]["etsy"] == {
            "requires_approval": True,
            "reason": "etsy requires manual verification before publishing",
        }
        approval_id = pending.json()["approval_id"]

        decided = context.client.post(
            f"/approvals/{approval_id}/decision",
            json={"org_id": context.org_id, "decision": "approved", "note": "checked listing"},
            headers=context.headers,
        )
        assert decided.status_code == 200
        body = decided.json()
        assert body["approval"]["status"] == "approved"
        assert body["approval"]["decided_by"] == context.owner_user_id
        assert body["execution"]["jobs_created"] == 2

        again = context.client.post(
            f"/approvals/{approval_id}/decision",
            json={"org_id": context.org_id, "decision": "rejected"},
            headers=context.headers,
        )
        assert again.status_code == 409

        reapplied = context.client.post(
            f"/approvals/{approval_id}/apply",
            json={"org_id": context.org_id},
            headers=context.headers,
        )
        assert reapplied.status_code == 200
        assert reapplied.json()["jobs_created"] == 0
        assert reapplied.json()["jobs_existing"] == 2

        with context.session_factory() as session:
            jobs = session.scalars(select(Job).where(Job.org_id == context.org_id)).all()
            assert {job.job_type for job in jobs} == {"publish_to_etsy", "publish_to_shopify"}
            assert all(json.loads(job.payload_json)["approval_id"] == approval_id for job in jobs)
            actions = session.scalars(select(AuditLog.action).where(AuditLog.org_id == context.org_id)).all()
            assert "publish.approval_requested" in actions
            assert "approval.approved" in actions
            assert "publish.approval_executed" in actions
    finally:
        teardown_api_test_context()


def test_exhausted_budget_returns_429_and_enqueues_nothing(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch)
    try:
        stores = _stores(context, "shopify")
        with context.session_factory() as session:
            ledger.upsert_budget(session, org_id=context.org_id, budget_type="publish_operations", limit_amount=10)
            ledger.consume(session, org_id=context.org_id, budget_type="publish_operations", amount=10)

        response = _publish(context, product_ids=["p1"], store_ids=[stores["shopify"]])

        assert response.status_code == 429
        assert response.json() == {
            "error": "Budget limit reached",
            "details": "Publishing operations budget is exhausted. Wait for reset or increase limit.",
        }
        with context.session_factory() as session:
            assert session.scalars(select(Job)).all() == []
    finally:
        teardown_api_test_context()


def test_non_members_and_viewers_cannot_publish(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch)
    try:
        stores = _stores(context, "shopify")
        with context.session_factory() as session:
            other_org_id = create_org(session).id
            viewer_email = create_member(session, org_id=context.org_id, role="viewer").email

        foreign = _publish(context, product_ids=["p1"], store_ids=[stores["shopify"]], org_id=other_org_id)
        assert foreign.status_code == 403
        assert foreign.json() == {"error": "Access denied"}

        viewer_token = login(context.client, email=viewer_email, password="member-pass-123", org_id=context.org_id)
        as_viewer = _publish(
            context,
            product_ids=["p1"],
            store_ids=[stores["shopify"]],
            headers={"Authorization": f"Bearer {viewer_token}"},
        )
        assert as_viewer.status_code == 403

        invalid = context.client.post(
            "/publish-request",
            json={"org_id": context.org_id, "product_ids": []},
            headers=context.headers,
        )
        assert invalid.status_code == 400
    finally:
        teardown_api_test_context()


def test_approved_batch_deferred_when_budget_blocks(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch)
    try:
        stores = _stores(context, "etsy")
        approval_id = _publish(context, product_ids=["p1"], store_ids=[stores["etsy"]]).json()["approval_id"]

        with context.session_factory() as session:
            ledger.upsert_budget(session, org_id=context.org_id, budget_type="publish_operations", limit_amount=1)
            ledger.set_budget_frozen(session, org_id=context.org_id, budget_type="publish_operations", frozen=True)

        decided = context.client.post(
            f"/approvals/{approval_id}/decision",
            json={"org_id": context.org_id, "decision": "approved"},
            headers=context.headers,
        )
        assert decided.status_code == 200
        assert decided.json()["approval"]["status"] == "approved"
        assert decided.json()["execution_error"] == "Budget is frozen"
        assert decided.json()["execution"] is None

        blocked = context.client.post(
            f"/approvals/{approval_id}/apply",
            json={"org_id": context.org_id},
            headers=context.headers,
        )
        assert blocked.status_code == 429

        with context.session_factory() as session:
            ledger.set_budget_frozen(session, org_id=context.org_id, budget_type="publish_operations", frozen=False)

        applied = context.client.post(
            f"/approvals/{approval_id}/apply",
            json={"org_id": context.org_id},
            headers=context.headers,
        )
        assert applied.status_code == 200
        assert applied.json()["jobs_created"] == 1
    finally:
        teardown_api_test_context()


def test_failed_batch_leaves_no_jobs_and_retry_consumes_budget(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch)
    try:
        stores = _stores(context, "shopify")
        with context.session_factory() as session:
            ledger.upsert_budget(session, org_id=context.org_id, budget_type="publish_operations", limit_amount=10)

        real_consume = orchestrator.consume_budget
        calls = {"count": 0}

        def consume_once_broken(*args, **kwargs):
            calls["count"] += 1
            if calls["count"] == 1:
                raise RuntimeError("ledger unavailable")
            return real_consume(*args, **kwargs)

        monkeypatch.setattr(orchestrator, "consume_budget", consume_once_broken)

        with context.session_factory() as session:
            with pytest.raises(RuntimeError):
                request_publish(
                    session,
                    org_id=context.org_id,
                    product_ids=["p1", "p2", "p3"],
                    store_ids=[stores["shopify"]],
                    requester_id=context.owner_user_id,
                )

        with context.session_factory() as session:
            assert session.scalars(select(Job).where(Job.org_id == context.org_id)).all() == []
            actions = session.scalars(select(AuditLog.action).where(AuditLog.org_id == context.org_id)).all()
            assert "publish.jobs_enqueued" not in actions

        retried = _publish(context, product_ids=["p1", "p2", "p3"], store_ids=[stores["shopify"]])
        assert retried.status_code == 200
        assert retried.json()["jobs_created"] == 3
        assert retried.json()["jobs_existing"] == 0

        with context.session_factory() as session:
            budget = ledger.get_budget(session, org_id=context.org_id, budget_type="publish_operations")
            assert budget is not None
            assert int(budget.consumed_amount) == 3
    finally:
        teardown_api_test_context()


def test_finished_pair_can_be_published_again(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch)
    try:
        stores = _stores(context, "shopify")
        store_id = stores["shopify"]
        assert _publish(context, product_ids=["mug"], store_ids=[store_id]).json()["jobs_created"] == 1

        with context.session_factory() as session:
            (job,) = queue.claim(session, org_id=context.org_id, limit=1)
            queue.start(session, org_id=context.org_id, job_id=job.id, claim_token=job.claim_token)
            queue.complete(session, org_id=context.org_id, job_id=job.id, claim_token=job.claim_token)

        republished = _publish(context, product_ids=["mug"], store_ids=[store_id])
        assert republished.json()["jobs_created"] == 1
        assert republished.json()["jobs_existing"] == 0

        while_live = _publish(context, product_ids=["mug"], store_ids=[store_id])
        assert while_live.json()["jobs_created"] == 0
        assert while_live.json()["jobs_existing"] == 1

        with context.session_factory() as session:
            keys = sorted(session.scalars(select(Job.idempotency_key).where(Job.org_id == context.org_id)).all())
            base = publish_idempotency_key(product_id="mug", store_id=store_id, action="publish")
            assert keys == [base, f"{base}_g1"]
    finally:
        teardown_api_test_context()


def test_concurrent_insert_of_same_pair_is_counted_as_existing(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch)
    try:
        stores = _stores(context, "shopify")
        store_id = stores["shopify"]
        key = publish_idempotency_key(product_id="p1", store_id=store_id, action="publish")

        real_pair_jobs = orchestrator._pair_jobs
        raced = {"done": False}

        def pair_jobs_with_competing_insert(session, *, org_id, base_key):
            rows = real_pair_jobs(session, org_id=org_id, base_key=base_key)
            if not raced["done"]:
                raced["done"] = True
                with context.session_factory() as other:
                    queue.enqueue(
                        other,
                        org_id=org_id,
                        idempotency_key=key,
                        job_type="publish_to_shopify",
                        payload={"product_id": "p1", "store_id": store_id, "action": "publish"},
                    )
            return rows

        monkeypatch.setattr(orchestrator, "_pair_jobs", pair_jobs_with_competing_insert)

        response = _publish(context, product_ids=["p1", "p2"], store_ids=[store_id])
        assert response.status_code == 200
        assert response.json()["jobs_created"] == 1
        assert response.json()["jobs_existing"] == 1

        with context.session_factory() as session:
            assert len(session.scalars(select(Job).where(Job.org_id == context.org_id)).all()) == 2
            batches = session.scalars(
                select(AuditLog).where(AuditLog.org_id == context.org_id, AuditLog.action == "publish.jobs_enqueued")
            ).all()
            assert len(batches) == 1
    finally:
        teardown_api_test_context()
