"""Scraper adapter contract and registry.

Source-specific scraping lives outside this package. An adapter is any object
with ``async run(source, params) -> AdapterResult``; it raises on unrecoverable
failure and must not touch job or record state.
"""

from __future__ import annotations

import importlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from listing_relay.jobs.errors import SCRAPE_ERROR

logger = logging.getLogger(__name__)

UNSUPPORTED_SOURCE_ERROR = f"{SCRAPE_ERROR}:unsupported_source"


@dataclass(slots=True)
class AdapterResult:
    items: list[dict[str, Any]]
    meta: dict[str, Any] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, raw: dict[str, Any]) -> AdapterResult:
        items = [item for item in raw.get("items") or [] if isinstance(item, dict)]
        meta = dict(raw.get("meta") or {})
        errors = raw.get("errors")
        if errors is None:
            errors = meta.get("errors")
        return cls(items=items, meta=meta, errors=[str(error) for error in errors or []])


class ScraperAdapter(Protocol):
    async def run(self, source: str, params: dict[str, Any]) -> AdapterResult: ...


class AdapterRegistry:
    def __init__(self, adapters: dict[str, ScraperAdapter] | None = None) -> None:
        self._adapters: dict[str, ScraperAdapter] = dict(adapters or {})

    def register(self, source: str, adapter: ScraperAdapter) -> None:
        self._adapters[source] = adapter

    def sources(self) -> list[str]:
        return sorted(self._adapters)

    async def run(self, source: str, params: dict[str, Any]) -> AdapterResult:
        adapter = self._adapters.get(source)
        if adapter is None:
            return AdapterResult(
                items=[],
                meta={"scrapedCount": 0, "durationMs": 0, "source": source},
                errors=[UNSUPPORTED_SOURCE_ERROR],
            )
        result = await adapter.run(source, params)
        if isinstance(result, dict):
            return AdapterResult.from_mapping(result)
        return result


def load_adapter_plugins(raw: str | None) -> dict[str, ScraperAdapter]:
    """Resolve ``{"source": "module:attr"}`` into adapter instances.

    ``attr`` may be an adapter instance or a zero-arg factory/class.
    """
    if not raw:
        return {}
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("adapter plugin config is not valid JSON; ignoring")
        return {}
    if not isinstance(decoded, dict):
        return {}

    adapters: dict[str, ScraperAdapter] = {}
    for source, target in decoded.items():
        if not isinstance(source, str) or not isinstance(target, str) or ":" not in target:
            logger.warning("skipping adapter plugin source=%s target=%s", source, target)
            continue
        module_name, _, attr = target.partition(":")
        module = importlib.import_module(module_name)
        obj = getattr(module, attr)
        if isinstance(obj, type) or not hasattr(obj, "run"):
            obj = obj()
        adapters[source] = obj
    return adapters


def plugin_sources(raw: str | None) -> list[str]:
    """Source names declared in the plugin config, without importing anything."""
    if not raw:
        return []
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        return []
    if not isinstance(decoded, dict):
        return []
    return sorted(source for source in decoded if isinstance(source, str))
