from __future__ import annotations

import json

from sqlalchemy import func, select

from src.storage.models import AuditLog, Job, WebhookEvent
from src.webhooks import intake
from src.webhooks.signatures import compute_signature, verify_signature
from tests.conftest import (
    build_sqlite_session_factory,
    create_api_test_context,
    create_org,
    create_store,
    teardown_api_test_context,
)


def _post_webhook(context, *, platform: str, body: bytes, headers: dict | None = None, org_id: str | None = None):
    return context.client.post(
        "/webhooks-ingest",
        params={"platform": platform, "org_id": org_id or context.org_id},
        content=body,
        headers={"content-type": "application/json", **(headers or {})},
    )


def test_duplicate_delivery_is_stored_once(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch)
    try:
        body = json.dumps({"id": "evt_1001", "type": "orders/create", "order": {"id": 55}}).encode("utf-8")

        first = _post_webhook(context, platform="shopify", body=body)
        assert first.status_code == 200
        first_payload = first.json()
        assert first_payload["success"] is True
        assert first_payload["event_id"] == "evt_1001"
        assert first_payload["is_verified"] is False

        second = _post_webhook(context, platform="shopify", body=body)
        assert second.status_code == 200
        assert second.json() == {"message": "Event already processed", "event_id": "evt_1001"}

        with context.session_factory() as session:
            events = session.scalars(select(WebhookEvent).where(WebhookEvent.org_id == context.org_id)).all()
            assert len(events) == 1
            assert events[0].event_type == "orders/create"
            assert events[0].is_processed is False

            jobs = session.scalars(select(Job).where(Job.org_id == context.org_id)).all()
            assert len(jobs) == 1
            assert jobs[0].idempotency_key == "webhook_process_evt_1001"
            assert jobs[0].job_type == "webhook_shopify_orders/create"
            assert jobs[0].priority == 5
            assert json.loads(jobs[0].payload_json)["webhook_event_id"] == events[0].id

            audit_count = session.scalar(
                select(func.count()).select_from(AuditLog).where(AuditLog.action == "webhook.received")
            )
            assert audit_count == 1
    finally:
        teardown_api_test_context()


def test_shopify_base64_signature_is_verified(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch)
    try:
        with context.session_factory() as session:
            create_store(session, org_id=context.org_id, platform="shopify", webhook_secret="shpss_secret")

        body = b'{"topic":"products/update","id":"evt_sig"}'
        signature = compute_signature(body=body, secret="shpss_secret", encoding="base64")

        response = _post_webhook(
            context,
            platform="shopify",
            body=body,
            headers={"X-Shopify-Hmac-Sha256": signature},
        )

        assert response.status_code == 200
        assert response.json()["is_verified"] is True

        with context.session_factory() as session:
            event = session.scalar(select(WebhookEvent).where(WebhookEvent.event_id == "evt_sig"))
            assert event is not None
            assert event.is_verified is True
            assert event.signature == signature
            assert event.event_type == "products/update"
    finally:
        teardown_api_test_context()


def test_wrong_signature_is_recorded_as_unverified(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch)
    try:
        with context.session_factory() as session:
            create_store(session, org_id=context.org_id, platform="gumroad", webhook_secret="gumroad-secret")

        body = b'{"event_id":"sale_77","event":"sale"}'
        wrong = compute_signature(body=body, secret="other-secret", encoding="hex")

        response = _post_webhook(context, platform="gumroad", body=body, headers={"X-Gumroad-Signature": wrong})

        assert response.status_code == 200
        assert response.json()["is_verified"] is False
        assert response.json()["event_id"] == "sale_77"
    finally:
        teardown_api_test_context()


def test_shopify_headers_supply_id_and_topic(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch)
    try:
        response = _post_webhook(
            context,
            platform="shopify",
            body=b'{"product":{"title":"Mug"}}',
            headers={"X-Shopify-Webhook-Id": "wh-abc", "X-Shopify-Topic": "products/create"},
        )

        assert response.status_code == 200
        assert response.json()["event_id"] == "wh-abc"
        with context.session_factory() as session:
            event = session.scalar(select(WebhookEvent).where(WebhookEvent.event_id == "wh-abc"))
            assert event is not None
            assert event.event_type == "products/create"
    finally:
        teardown_api_test_context()


def test_deliveries_without_ids_get_distinct_synthesized_ids(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch)
    try:
        body = b'{"kind":"ping"}'
        first = _post_webhook(context, platform="printify", body=body)
        second = _post_webhook(context, platform="printify", body=body)

        assert first.status_code == 200
        assert second.status_code == 200
        first_id = first.json()["event_id"]
        second_id = second.json()["event_id"]
        assert first_id.startswith("printify_")
        assert second_id.startswith("printify_")
        assert first_id != second_id

        with context.session_factory() as session:
            event = session.scalar(select(WebhookEvent).where(WebhookEvent.event_id == first_id))
            assert event is not None
            assert event.event_type == "unknown"
    finally:
        teardown_api_test_context()


def test_missing_params_and_malformed_bodies_are_rejected(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch)
    try:
        missing = context.client.post("/webhooks-ingest", params={"platform": "shopify"}, content=b"{}")
        assert missing.status_code == 400
        assert missing.json() == {"error": "Missing platform or org_id parameter"}

        malformed = _post_webhook(context, platform="shopify", body=b"{not json")
        assert malformed.status_code == 400

        not_an_object = _post_webhook(context, platform="shopify", body=b"[1, 2, 3]")
        assert not_an_object.status_code == 400

        unknown_org = _post_webhook(context, platform="shopify", body=b'{"id":"x"}', org_id="no-such-org")
        assert unknown_org.status_code == 404

        with context.session_factory() as session:
            assert session.scalar(select(func.count()).select_from(WebhookEvent)) == 0
    finally:
        teardown_api_test_context()


def test_mark_processed_endpoint(monkeypatch) -> None:
    context = create_api_test_context(monkeypatch)
    try:
        accepted = _post_webhook(context, platform="etsy", body=b'{"id":"etsy-9","type":"receipt"}').json()

        response = context.client.post(
            f"/webhook-events/{accepted['webhook_event_id']}/processed",
            json={"org_id": context.org_id},
            headers=context.headers,
        )
        assert response.status_code == 200
        assert response.json()["is_processed"] is True
        assert response.json()["processed_at"] is not None

        missing = context.client.post(
            "/webhook-events/does-not-exist/processed",
            json={"org_id": context.org_id},
            headers=context.headers,
        )
        assert missing.status_code == 404
    finally:
        teardown_api_test_context()


def test_verify_signature_requires_secret_and_known_platform() -> None:
    body = b'{"id":"1"}'
    good = compute_signature(body=body, secret="s3cret", encoding="hex")

    assert verify_signature(platform="gumroad", body=body, signature=good, secret="s3cret") is True
    assert verify_signature(platform="gumroad", body=body, signature=good, secret=None) is False
    assert verify_signature(platform="gumroad", body=body, signature=None, secret="s3cret") is False
    assert verify_signature(platform="unknown", body=body, signature=good, secret="s3cret") is False


def test_delivery_losing_insert_race_is_reported_as_duplicate(monkeypatch) -> None:
    session_factory = build_sqlite_session_factory()
    with session_factory() as seed:
        org_id = create_org(seed).id

    body = b'{"id":"evt_race","type":"orders/paid"}'
    real_find = intake.find_event
    state = {"raced": False, "winner": None}

    def find_after_competitor(session, *, org_id, event_id):
        if not state["raced"]:
            state["raced"] = True
            with session_factory() as other:
                state["winner"] = intake.ingest_webhook(
                    other,
                    org_id=org_id,
                    platform="shopify",
                    body=body,
                    headers={},
                ).webhook_event_id
            return None
        return real_find(session, org_id=org_id, event_id=event_id)

    monkeypatch.setattr(intake, "find_event", find_after_competitor)

    with session_factory() as session:
        result = intake.ingest_webhook(session, org_id=org_id, platform="shopify", body=body, headers={})

        assert result.duplicate is True
        assert result.event_id == "evt_race"
        events = session.scalars(select(WebhookEvent).where(WebhookEvent.org_id == org_id)).all()
        assert [event.id for event in events] == [state["winner"]]
        assert len(session.scalars(select(Job).where(Job.org_id == org_id)).all()) == 1
        audit_count = session.scalar(
            select(func.count()).select_from(AuditLog).where(AuditLog.action == "webhook.received")
        )
        assert audit_count == 1
