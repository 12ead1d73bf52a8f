"""Inbound platform webhook intake with idempotent event storage."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
from typing import Any, Dict, Mapping, Optional
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.audit.service import record_audit
from src.capabilities.resolver import get_plugin_by_slug
from src.core.config import get_settings
from src.core.logger import get_logger
from src.core.metrics import record_webhook_delivery
from src.jobs.queue import DuplicateIdempotencyKeyError, enqueue
from src.storage.models import Org, Store, WebhookEvent
from src.storage.security import decrypt_credentials
from src.webhooks.signatures import extract_signature, verify_signature


class MalformedPayloadError(ValueError):
    """Raised when the delivery body is not a JSON object."""


class UnknownOrgError(LookupError):
    pass


@dataclass(frozen=True)
class IngestResult:
    duplicate: bool
    event_id: str
    is_verified: bool = False
    webhook_event_id: Optional[str] = None
    job_id: Optional[str] = None


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True)


def parse_payload(body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayloadError("Invalid JSON body") from exc
    if not isinstance(payload, dict):
        raise MalformedPayloadError("Webhook body must be a JSON object")
    return payload


def _first_text(*values: Any) -> Optional[str]:
    for value in values:
        if value is None or isinstance(value, (dict, list, bool)):
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def derive_event_id(platform: str, payload: Dict[str, Any], headers: Mapping[str, str]) -> str:
    """Platform-supplied id when available, else a synthesized one.

    Synthesized ids are unique per delivery, so they never deduplicate.
    """

    shopify_header = headers.get("x-shopify-webhook-id") if platform == "shopify" else None
    supplied = _first_text(payload.get("id"), payload.get("event_id"), shopify_header)
    if supplied:
        return supplied
    epoch_ms = int(datetime.now(timezone.utc).timestamp() * 1000)
    return f"{platform}_{epoch_ms}_{uuid.uuid4().hex[:8]}"


def derive_event_type(platform: str, payload: Dict[str, Any], headers: Mapping[str, str]) -> str:
    shopify_header = headers.get("x-shopify-topic") if platform == "shopify" else None
    return _first_text(payload.get("type"), payload.get("event"), payload.get("topic"), shopify_header) or "unknown"


def load_webhook_secret(session: Session, *, org_id: str, platform: str) -> Optional[str]:
    store = session.scalar(
        select(Store)
        .where(Store.org_id == org_id, Store.platform == platform, Store.is_active.is_(True))
        .order_by(Store.created_at.asc(), Store.id.asc())
        .limit(1)
    )
    if store is None or not store.credentials_encrypted:
        return None
    try:
        credentials = decrypt_credentials(store.credentials_encrypted)
    except ValueError:
        get_logger("opshub.webhooks").warning(
            "webhook_secret_unreadable",
            org_id=org_id,
            platform=platform,
            store_id=store.id,
        )
        return None
    secret = credentials.get("webhook_secret")
    return secret if isinstance(secret, str) and secret else None


def find_event(session: Session, *, org_id: str, event_id: str) -> Optional[WebhookEvent]:
    return session.scalar(
        select(WebhookEvent).where(WebhookEvent.org_id == org_id, WebhookEvent.event_id == event_id)
    )


def ingest_webhook(
    session: Session,
    *,
    org_id: str,
    platform: str,
    body: bytes,
    headers: Mapping[str, str],
) -> IngestResult:
    """Verify, deduplicate and persist one delivery, then enqueue its job.

    The event row, its job and the audit entry commit together. An
    unverified signature is recorded, not rejected, so platform retries are
    never lost.
    """

    payload = parse_payload(body)
    if session.get(Org, org_id) is None:
        raise UnknownOrgError(f"Unknown org: {org_id}")

    logger = get_logger("opshub.webhooks")
    signature = extract_signature(platform, headers)
    secret = load_webhook_secret(session, org_id=org_id, platform=platform)
    is_verified = verify_signature(platform=platform, body=body, signature=signature, secret=secret)

    event_id = derive_event_id(platform, payload, headers)
    event_type = derive_event_type(platform, payload, headers)

    existing = find_event(session, org_id=org_id, event_id=event_id)
    if existing is not None:
        record_webhook_delivery(platform=platform, outcome="duplicate")
        logger.info("webhook_duplicate", org_id=org_id, platform=platform, event_id=event_id)
        return IngestResult(duplicate=True, event_id=event_id)

    plugin = get_plugin_by_slug(session, platform)
    event = WebhookEvent(
        id=str(uuid.uuid4()),
        org_id=org_id,
        plugin_id=plugin.id if plugin is not None else None,
        platform=platform,
        event_id=event_id,
        event_type=event_type,
        payload_json=_json_dumps(payload),
        signature=signature,
        is_verified=is_verified,
        is_processed=False,
        received_at=datetime.now(timezone.utc),
    )

    job_id: Optional[str] = None
    try:
        session.add(event)
        session.flush()
        try:
            job = enqueue(
                session,
                org_id=org_id,
                idempotency_key=f"webhook_process_{event_id}",
                job_type=f"webhook_{platform}_{event_type}",
                payload={"webhook_event_id": event.id, "event_type": event_type},
                priority=get_settings().webhook_job_priority,
                commit=False,
            )
            job_id = job.id
        except DuplicateIdempotencyKeyError as exc:
            job_id = exc.existing_job_id
        record_audit(
            session,
            org_id=org_id,
            action="webhook.received",
            entity_type="webhook_event",
            entity_id=event.id,
            metadata={"platform": platform, "event_type": event_type, "is_verified": is_verified},
            soc2_tags=("availability",),
        )
        session.commit()
    except IntegrityError:
        session.rollback()
        if find_event(session, org_id=org_id, event_id=event_id) is None:
            raise
        record_webhook_delivery(platform=platform, outcome="duplicate")
        logger.info("webhook_duplicate", org_id=org_id, platform=platform, event_id=event_id)
        return IngestResult(duplicate=True, event_id=event_id)

    record_webhook_delivery(platform=platform, outcome="verified" if is_verified else "unverified")
    logger.info(
        "webhook_received",
        org_id=org_id,
        platform=platform,
        event_id=event_id,
        event_type=event_type,
        is_verified=is_verified,
        webhook_event_id=event.id,
    )
    return IngestResult(
        duplicate=False,
        event_id=event_id,
        is_verified=is_verified,
        webhook_event_id=event.id,
        job_id=job_id,
    )


def mark_webhook_event_processed(
    session: Session,
    *,
    org_id: str,
    webhook_event_id: str,
    error_message: Optional[str] = None,
) -> WebhookEvent:
    """Called by the consuming worker once the event's job has run."""

    event = session.scalar(
        select(WebhookEvent).where(WebhookEvent.id == webhook_event_id, WebhookEvent.org_id == org_id)
    )
    if event is None:
        raise LookupError(f"Webhook event not found: {webhook_event_id}")
    event.is_processed = error_message is None
    event.error_message = error_message[:2000] if error_message else None
    event.processed_at = datetime.now(timezone.utc)
    session.commit()
    return event
