"""
Tests for managed job sources

Tests cover:
- Normalizing stored entries (bad URLs, duplicates, defaults)
- Selector choice for auto-typed sources
- Add / enable / delete through the registry
- Fallback to the built-in sources when nothing is enabled
"""

from datetime import datetime, timezone

import pytest

from jobfeed.schemas import ManagedSource, ManagedSourceCreate
from jobfeed.services.run_state import SOURCES_KEY
from jobfeed.services.sources import (
    DEFAULT_SOURCES,
    GENERIC_SELECTORS,
    LINKEDIN_SELECTORS,
    SourceNotFoundError,
    SourceRegistry,
    SourceValidationError,
    normalize_http_url,
    normalize_managed_sources,
    to_source_config,
)

NOW = datetime(2026, 3, 10, 10, 0, tzinfo=timezone.utc)


def managed(url: str, source_type: str = "auto") -> ManagedSource:
    return ManagedSource(id="s1", name="Source", url=url, type=source_type, created_at=NOW, updated_at=NOW)


@pytest.fixture
def registry(store):
    return SourceRegistry(store)


class TestNormalizeHttpUrl:
    def test_strips_fragment(self):
        assert normalize_http_url(" https://example.com/jobs?page=1#top ") == "https://example.com/jobs?page=1"

    def test_rejects_other_schemes(self):
        assert normalize_http_url("javascript:alert(1)") is None
        assert normalize_http_url("ftp://example.com/jobs") is None
        assert normalize_http_url(42) is None


class TestNormalizeManagedSources:
    def test_drops_invalid_and_duplicate_entries(self):
        raw = [
            {"id": "a", "url": "https://example.com/jobs", "name": "  Example   Jobs "},
            {"id": "a", "url": "https://other.example/jobs"},
            {"id": "b", "url": "https://example.com/jobs"},
            {"id": "c", "url": "mailto:hr@example.com"},
            {"url": "https://no-id.example/jobs"},
            "not a dict",
            {"id": "d", "url": "https://www.careers.example/list", "enabled": "no", "type": "LINKEDIN"},
        ]

        sources = normalize_managed_sources(raw, NOW)

        assert [source.id for source in sources] == ["a", "d"]
        assert sources[0].name == "Example Jobs"
        assert sources[1].name == "careers.example"
        assert sources[1].enabled is False
        assert sources[1].type == "linkedin"
        assert sources[1].created_at == NOW

    def test_non_list_is_empty(self):
        assert normalize_managed_sources({"id": "a"}) == []


class TestToSourceConfig:
    def test_auto_linkedin_host(self):
        config = to_source_config(managed("https://in.linkedin.com/jobs/search/?keywords=shillong"))
        assert config.selectors == LINKEDIN_SELECTORS
        assert config.location_scope == "meghalaya_only"

    def test_auto_other_host_is_generic(self):
        config = to_source_config(managed("https://megjobs.example/vacancies"))
        assert config.selectors == GENERIC_SELECTORS

    def test_explicit_type_wins(self):
        config = to_source_config(managed("https://in.linkedin.com/jobs", source_type="generic"))
        assert config.selectors == GENERIC_SELECTORS


class TestSourceRegistry:
    @pytest.mark.asyncio
    async def test_resolve_falls_back_when_nothing_enabled(self, registry):
        resolution = await registry.resolve()

        assert resolution.using_fallback
        assert resolution.sources == DEFAULT_SOURCES
        assert all(source.location_scope == "meghalaya_only" for source in resolution.sources)

    @pytest.mark.asyncio
    async def test_add_and_resolve(self, registry, store):
        saved = await registry.add(ManagedSourceCreate(url="https://megjobs.example/vacancies#latest"))

        assert saved.url == "https://megjobs.example/vacancies"
        assert saved.name == "megjobs.example"
        stored = await store.get(SOURCES_KEY)
        assert stored[0]["url"] == "https://megjobs.example/vacancies"
        assert "createdAt" in stored[0]

        resolution = await registry.resolve()
        assert not resolution.using_fallback
        assert [source.url for source in resolution.sources] == ["https://megjobs.example/vacancies"]

    @pytest.mark.asyncio
    async def test_add_rejects_invalid_url(self, registry):
        with pytest.raises(SourceValidationError):
            await registry.add(ManagedSourceCreate(url="not-a-url"))

    @pytest.mark.asyncio
    async def test_add_same_url_updates_and_moves_first(self, registry):
        first = await registry.add(ManagedSourceCreate(url="https://one.example/jobs"))
        await registry.add(ManagedSourceCreate(url="https://two.example/jobs"))

        updated = await registry.add(ManagedSourceCreate(url="https://one.example/jobs", name="Renamed"))

        sources = await registry.list_sources()
        assert updated.id == first.id
        assert [source.name for source in sources] == ["Renamed", "two.example"]

    @pytest.mark.asyncio
    async def test_set_enabled(self, registry):
        saved = await registry.add(ManagedSourceCreate(url="https://one.example/jobs"))

        disabled = await registry.set_enabled(saved.id, False)

        assert disabled.enabled is False
        resolution = await registry.resolve()
        assert resolution.using_fallback
        assert len(resolution.managed) == 1

    @pytest.mark.asyncio
    async def test_set_enabled_unknown_id(self, registry):
        with pytest.raises(SourceNotFoundError):
            await registry.set_enabled("missing", True)

    @pytest.mark.asyncio
    async def test_delete(self, registry):
        saved = await registry.add(ManagedSourceCreate(url="https://one.example/jobs"))

        await registry.delete(saved.id)

        assert await registry.list_sources() == []
        with pytest.raises(SourceNotFoundError):
            await registry.delete(saved.id)
