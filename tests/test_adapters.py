from __future__ import annotations

import asyncio
import sys
import types
from typing import Any

from listing_relay.jobs.adapters import AdapterRegistry, AdapterResult, load_adapter_plugins, plugin_sources


class DictAdapter:
    async def run(self, source: str, params: dict[str, Any]) -> dict[str, Any]:
        return {"items": [{"address": "1 A St"}, "junk"], "meta": {"durationMs": 5, "errors": ["partial"]}}


def test_unregistered_source_returns_unsupported_error() -> None:
    result = asyncio.run(AdapterRegistry().run("trulia", {}))

    assert result.items == []
    assert result.errors == ["scrape_error:unsupported_source"]


def test_mapping_results_are_converted() -> None:
    registry = AdapterRegistry()
    registry.register("craigslist", DictAdapter())

    result = asyncio.run(registry.run("craigslist", {}))

    assert isinstance(result, AdapterResult)
    assert result.items == [{"address": "1 A St"}]
    assert result.errors == ["partial"]
    assert registry.sources() == ["craigslist"]


def test_load_adapter_plugins_resolves_classes_and_instances(monkeypatch) -> None:
    module = types.ModuleType("fake_listing_plugins")
    module.DictAdapter = DictAdapter
    module.shared = DictAdapter()
    monkeypatch.setitem(sys.modules, "fake_listing_plugins", module)

    adapters = load_adapter_plugins(
        '{"a": "fake_listing_plugins:DictAdapter", "b": "fake_listing_plugins:shared", "c": "not-a-target"}'
    )

    assert set(adapters) == {"a", "b"}
    assert isinstance(adapters["a"], DictAdapter)
    assert adapters["b"] is module.shared


def test_load_adapter_plugins_ignores_invalid_json() -> None:
    assert load_adapter_plugins("{not json") == {}
    assert load_adapter_plugins(None) == {}


def test_plugin_sources_lists_names_without_importing() -> None:
    raw = '{"zillow": "not_a_real_module:Adapter", "apartments": "also_missing:adapter"}'
    assert plugin_sources(raw) == ["apartments", "zillow"]
    assert plugin_sources("not json") == []
    assert plugin_sources(None) == []
