"""Capability lookups over declarative plugin contracts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.storage.models import Plugin, PluginContract


CAPABILITY_LEVELS = ("native", "workaround", "unsupported")
PUBLISH_PRODUCT = "publish_product"
WEBHOOKS = "webhooks"


@dataclass(frozen=True)
class CapabilityResolution:
    platform: str
    capability: str
    level: str
    description: str
    has_contract: bool

    @property
    def is_supported(self) -> bool:
        return self.level != "unsupported"


def get_plugin_by_slug(session: Session, slug: str) -> Optional[Plugin]:
    return session.scalar(select(Plugin).where(Plugin.slug == slug))


def resolve(session: Session, *, platform: str, capability: str) -> CapabilityResolution:
    """Resolve the support level; a missing plugin or contract is ``unsupported``."""

    contract = session.scalar(
        select(PluginContract)
        .join(Plugin, Plugin.id == PluginContract.plugin_id)
        .where(Plugin.slug == platform, PluginContract.capability == capability)
    )
    if contract is None or contract.level not in CAPABILITY_LEVELS:
        return CapabilityResolution(
            platform=platform,
            capability=capability,
            level="unsupported",
            description=f"No {capability} contract declared for {platform}",
            has_contract=False,
        )
    return CapabilityResolution(
        platform=platform,
        capability=capability,
        level=contract.level,
        description=contract.description or "",
        has_contract=True,
    )
