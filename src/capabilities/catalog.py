"""Plugin catalog loading from YAML and syncing into the contract tables."""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from sqlalchemy import select
from sqlalchemy.orm import Session

from src.capabilities.resolver import CAPABILITY_LEVELS, get_plugin_by_slug
from src.core.config import get_settings
from src.core.logger import get_logger
from src.storage.models import Plugin, PluginContract


@dataclass(frozen=True)
class CatalogContract:
    capability: str
    level: str
    description: str = ""
    constraints: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CatalogPlugin:
    slug: str
    name: str
    version: str
    description: str
    contracts: tuple[CatalogContract, ...]


def _resolve_catalog_path(path: Optional[str] = None) -> Path:
    configured = Path(path or get_settings().plugin_catalog_path)
    if configured.is_absolute():
        return configured
    return Path.cwd() / configured


def parse_plugin_catalog(content: Any) -> List[CatalogPlugin]:
    if not isinstance(content, dict) or not isinstance(content.get("plugins"), dict):
        raise ValueError("Invalid plugin catalog format: expected a 'plugins' mapping")

    plugins: List[CatalogPlugin] = []
    for slug, raw in content["plugins"].items():
        if not isinstance(slug, str) or not isinstance(raw, dict):
            raise ValueError(f"Invalid plugin entry: {slug!r}")
        contracts: List[CatalogContract] = []
        for capability, contract in (raw.get("contracts") or {}).items():
            if not isinstance(contract, dict):
                raise ValueError(f"Invalid contract for {slug}.{capability}")
            level = contract.get("level")
            if level not in CAPABILITY_LEVELS:
                raise ValueError(f"Invalid capability level for {slug}.{capability}: {level!r}")
            contracts.append(
                CatalogContract(
                    capability=str(capability),
                    level=level,
                    description=str(contract.get("description") or ""),
                    constraints=dict(contract.get("constraints") or {}),
                )
            )
        plugins.append(
            CatalogPlugin(
                slug=slug,
                name=str(raw.get("name") or slug.title()),
                version=str(raw.get("version") or "1.0.0"),
                description=str(raw.get("description") or ""),
                contracts=tuple(contracts),
            )
        )
    return plugins


@lru_cache(maxsize=1)
def load_plugin_catalog() -> tuple[CatalogPlugin, ...]:
    catalog_path = _resolve_catalog_path()
    with catalog_path.open("r", encoding="utf-8") as file:
        content = yaml.safe_load(file) or {}
    return tuple(parse_plugin_catalog(content))


def sync_plugin_catalog(session: Session, plugins: Optional[List[CatalogPlugin]] = None) -> int:
    """Upsert plugins and their contracts. Returns the number of contracts written."""

    written = 0
    for definition in plugins if plugins is not None else load_plugin_catalog():
        plugin = get_plugin_by_slug(session, definition.slug)
        if plugin is None:
            plugin = Plugin(slug=definition.slug, name=definition.name, version=definition.version, description=definition.description)
            session.add(plugin)
            session.flush()
        else:
            plugin.name = definition.name
            plugin.version = definition.version
            plugin.description = definition.description

        for entry in definition.contracts:
            contract = session.scalar(
                select(PluginContract).where(
                    PluginContract.plugin_id == plugin.id,
                    PluginContract.capability == entry.capability,
                )
            )
            if contract is None:
                contract = PluginContract(plugin_id=plugin.id, capability=entry.capability)
                session.add(contract)
            contract.level = entry.level
            contract.description = entry.description
            contract.constraints_json = json.dumps(entry.constraints, sort_keys=True)
            written += 1

    session.commit()
    get_logger("opshub.capabilities").info("plugin_catalog_synced", contracts=written)
    return written
