"""Versioned settings whose changes are gated behind approvals."""

from __future__ import annotations

from datetime import datetime, timezone
import json
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.approvals.gate import approval_payload, request_approval
from src.audit.service import record_audit
from src.core.logger import get_logger
from src.storage.models import Approval, SettingDefinition, SettingValue


SETTING_SCOPES = ("global", "org", "store", "plugin_instance", "workflow")


class SettingDefinitionNotFoundError(LookupError):
    def __init__(self, key: str) -> None:
        super().__init__(f"Setting definition not found: {key}")
        self.key = key


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True)


def get_definition(session: Session, key: str) -> SettingDefinition:
    definition = session.scalar(select(SettingDefinition).where(SettingDefinition.key == key))
    if definition is None:
        raise SettingDefinitionNotFoundError(key)
    return definition


def define_setting(
    session: Session,
    *,
    key: str,
    name: str,
    scope: str = "org",
    default_value: Any = None,
    requires_approval: bool = True,
) -> SettingDefinition:
    if scope not in SETTING_SCOPES:
        raise ValueError(f"Unsupported setting scope: {scope}")
    definition = SettingDefinition(
        key=key,
        name=name,
        scope=scope,
        default_value_json=_json_dumps(default_value),
        requires_approval=requires_approval,
    )
    session.add(definition)
    session.commit()
    return definition


def _find_value(
    session: Session,
    *,
    org_id: str,
    definition_id: str,
    scope: str,
    scope_id: Optional[str],
) -> Optional[SettingValue]:
    statement = select(SettingValue).where(
        SettingValue.org_id == org_id,
        SettingValue.definition_id == definition_id,
        SettingValue.scope == scope,
    )
    if scope_id is None:
        statement = statement.where(SettingValue.scope_id.is_(None))
    else:
        statement = statement.where(SettingValue.scope_id == scope_id)
    return session.scalar(statement)


def _normalize_scope_id(*, org_id: str, scope: str, scope_id: Optional[str]) -> Optional[str]:
    if scope == "org" and scope_id is None:
        return org_id
    return scope_id


def get_setting_value(
    session: Session,
    *,
    org_id: str,
    key: str,
    scope: str,
    scope_id: Optional[str] = None,
) -> Any:
    """Effective value for one org, falling back to the definition default."""

    definition = get_definition(session, key)
    scope_id = _normalize_scope_id(org_id=org_id, scope=scope, scope_id=scope_id)
    value = _find_value(session, org_id=org_id, definition_id=definition.id, scope=scope, scope_id=scope_id)
    if value is None:
        return json.loads(definition.default_value_json)
    return json.loads(value.value_json)


def request_setting_change(
    session: Session,
    *,
    org_id: str,
    definition_key: str,
    scope: str,
    scope_id: Optional[str],
    new_value: Any,
    requested_by: str,
) -> Approval:
    if scope not in SETTING_SCOPES:
        raise ValueError(f"Unsupported setting scope: {scope}")
    definition = get_definition(session, definition_key)
    scope_id = _normalize_scope_id(org_id=org_id, scope=scope, scope_id=scope_id)
    old_value = get_setting_value(session, org_id=org_id, key=definition_key, scope=scope, scope_id=scope_id)

    approval = request_approval(
        session,
        org_id=org_id,
        entity_type="setting",
        entity_id=definition_key,
        action="update",
        payload={
            "definition_key": definition_key,
            "setting_name": definition.name,
            "scope": scope,
            "scope_id": scope_id,
            "old_value": old_value,
            "new_value": new_value,
        },
        requested_by=requested_by,
        commit=False,
    )
    record_audit(
        session,
        org_id=org_id,
        user_id=requested_by,
        action="setting.change_requested",
        entity_type="approval",
        entity_id=approval.id,
        old_value=old_value,
        new_value=new_value,
        metadata={"definition_key": definition_key, "scope": scope, "scope_id": scope_id},
        soc2_tags=("change",),
    )
    session.commit()
    return approval


def apply_setting_approval(session: Session, approval: Approval) -> SettingValue:
    """Write the approved value. Runs inside the decision transaction; no commit."""

    payload = approval_payload(approval)
    definition = get_definition(session, str(payload["definition_key"]))
    scope = str(payload.get("scope") or definition.scope)
    scope_id = payload.get("scope_id")
    new_value = payload.get("new_value")

    value = _find_value(
        session,
        org_id=approval.org_id,
        definition_id=definition.id,
        scope=scope,
        scope_id=scope_id,
    )
    if value is None:
        value = SettingValue(
            definition_id=definition.id,
            org_id=approval.org_id,
            scope=scope,
            scope_id=scope_id,
            value_json=_json_dumps(new_value),
            version=1,
            updated_by=approval.decided_by,
        )
        session.add(value)
    else:
        value.value_json = _json_dumps(new_value)
        value.version = value.version + 1
        value.updated_by = approval.decided_by
        value.updated_at = datetime.now(timezone.utc)
    session.flush()

    record_audit(
        session,
        org_id=approval.org_id,
        user_id=approval.decided_by,
        action="setting.updated",
        entity_type="setting",
        entity_id=definition.key,
        old_value=payload.get("old_value"),
        new_value=new_value,
        metadata={"approval_id": approval.id, "version": value.version, "scope": scope, "scope_id": scope_id},
        soc2_tags=("change",),
    )
    get_logger("opshub.settings").info(
        "setting_applied",
        org_id=approval.org_id,
        definition_key=definition.key,
        version=value.version,
    )
    return value
