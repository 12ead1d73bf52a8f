"""Append-only audit trail.

Audit rows are added to the caller's session and committed together with the
mutation they describe.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.orm import Session

from src.storage.models import AuditLog


SOC2_TAGS = frozenset({"access", "change", "availability", "confidentiality", "processing_integrity"})


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True, default=str)


def record_audit(
    session: Session,
    *,
    org_id: Optional[str],
    action: str,
    entity_type: str,
    entity_id: Optional[str] = None,
    user_id: Optional[str] = None,
    old_value: Any = None,
    new_value: Any = None,
    metadata: Optional[Dict[str, Any]] = None,
    soc2_tags: Iterable[str] = (),
) -> AuditLog:
    tags = sorted(set(soc2_tags))
    unknown = [tag for tag in tags if tag not in SOC2_TAGS]
    if unknown:
        raise ValueError(f"Unknown SOC2 tags: {', '.join(unknown)}")

    entry = AuditLog(
        org_id=org_id,
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        old_value_json=_json_dumps(old_value) if old_value is not None else None,
        new_value_json=_json_dumps(new_value) if new_value is not None else None,
        metadata_json=_json_dumps(metadata or {}),
        soc2_tags=",".join(tags),
    )
    session.add(entry)
    return entry
