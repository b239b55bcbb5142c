"""Tests for the external identity adapters."""

import asyncio

import httpx
import pytest

from patchwatch.config import Settings
from patchwatch.ingest.adapters.base import AdapterPolicy, AdapterResponseError, AdapterUnavailableError
from patchwatch.ingest.adapters.gogdb import GOGDBAdapter, build_to_token, latest_build
from patchwatch.ingest.adapters.registry import build_adapters
from patchwatch.ingest.adapters.steamdb import SteamDBFeedAdapter, parse_patchnotes_rss
from patchwatch.normalize.version import BUILD, DATE, SEMANTIC

from tests.conftest import FakeClock, no_sleep

PATCHNOTES_RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Hollow Knight patch notes</title>
    <item>
      <title>Hollow Knight update for 1 July 2025</title>
      <link>https://steamdb.info/patchnotes/19000000/</link>
      <description>Small fixes</description>
      <pubDate>Tue, 01 Jul 2025 10:00:00 +0000</pubDate>
      <guid>build#19000000</guid>
    </item>
    <item>
      <title>Hollow Knight update for 22 September 2025</title>
      <link>https://steamdb.info/patchnotes/20196450/</link>
      <description>Update Notes V1.5.78</description>
      <pubDate>Mon, 22 Sep 2025 17:03:11 +0000</pubDate>
      <guid>build#20196450</guid>
    </item>
    <item>
      <title>Broken item</title>
      <link>https://steamdb.info/patchnotes/1/</link>
    </item>
  </channel>
</rss>
"""

STORE_SEARCH = {
    "total": 2,
    "items": [
        {"type": "app", "name": "Hollow Knight: Silksong", "id": 1030300},
        {"type": "app", "name": "Hollow Knight", "id": 367520},
        {"type": "bundle", "name": "Hollow Knight Bundle", "id": 9},
    ],
}

GOGDB_PRODUCTS = [
    {"id": 1207658691, "title": "Assetto Corsa", "type": "game"},
    {"id": 1207658692, "title": "Assetto Corsa EVO", "type": "game"},
    {"id": 1207658693, "title": "Assetto Corsa Soundtrack", "type": "dlc"},
]

GOGDB_BUILDS = [
    {"build_id": "5512", "version": "1.16.4", "os": "windows", "date_published": "2024-01-02T10:00:00Z"},
    {"build_id": "5600", "version": "1.16.5", "os": "windows", "date_published": "2024-03-01T10:00:00Z"},
    {"build_id": "5700", "version": "2.0", "os": "osx", "date_published": "2024-05-01T10:00:00Z"},
]

FAST = AdapterPolicy(min_interval=0.0, timeout=1.0, failure_threshold=3, cooldown_seconds=900.0)


class Recorder:
    """MockTransport handler routing by path and counting requests."""

    def __init__(self, routes):
        self.routes = routes
        self.paths = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.paths.append(request.url.path)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404)
        if callable(route):
            return route(request)
        if isinstance(route, bytes):
            return httpx.Response(200, content=route, headers={"Content-Type": "application/rss+xml"})
        return httpx.Response(200, json=route)


def steamdb(handler, **kwargs) -> SteamDBFeedAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SteamDBFeedAdapter(client=client, policy=kwargs.pop("policy", FAST), sleep=no_sleep, **kwargs)


def gogdb(handler, **kwargs) -> GOGDBAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GOGDBAdapter(client=client, policy=kwargs.pop("policy", FAST), sleep=no_sleep, **kwargs)


class TestPatchnotesFeed:
    """SteamDB PatchnotesRSS parsing."""

    def test_parses_items_newest_first(self):
        updates = parse_patchnotes_rss(PATCHNOTES_RSS, "367520")

        assert len(updates) == 2
        assert updates[0].build == "20196450"
        assert updates[0].version == "1.5.78"
        assert updates[0].published_at.year == 2025
        assert updates[1].version is None

    def test_token_prefers_version_then_build(self):
        newest, older = parse_patchnotes_rss(PATCHNOTES_RSS)

        assert newest.to_token().kind == SEMANTIC
        assert newest.to_token().canonical() == "1.5.78"
        assert older.to_token().kind == BUILD
        assert older.to_token().components == (19000000,)

    def test_empty_document(self):
        assert parse_patchnotes_rss(b"") == []
        assert parse_patchnotes_rss(b"   ") == []

    def test_invalid_document(self):
        with pytest.raises(AdapterResponseError):
            parse_patchnotes_rss(b"<rss><channel><item>", "1")


class TestSteamDBFeedAdapter:
    """Store search plus patch-notes feed."""

    @pytest.mark.asyncio
    async def test_search_ranks_by_similarity(self):
        adapter = steamdb(Recorder({"/api/storesearch/": STORE_SEARCH}))

        matches = await adapter.search("Hollow Knight")

        assert [m.canonical_id for m in matches] == ["367520", "1030300"]
        assert matches[0].url.endswith("/app/367520")
        await adapter.close()

    @pytest.mark.asyncio
    async def test_latest_version(self):
        adapter = steamdb(Recorder({"/api/PatchnotesRSS/": PATCHNOTES_RSS}))

        token = await adapter.latest_version("367520")

        assert token.canonical() == "1.5.78"
        assert token.origin == "external"

    @pytest.mark.asyncio
    async def test_feed_is_cached(self):
        recorder = Recorder({"/api/PatchnotesRSS/": PATCHNOTES_RSS})
        adapter = steamdb(recorder)

        await adapter.latest_version("367520")
        await adapter.latest_version("367520")

        assert recorder.paths.count("/api/PatchnotesRSS/") == 1

    @pytest.mark.asyncio
    async def test_unknown_app(self):
        adapter = steamdb(Recorder({}))
        assert await adapter.latest_version("1") is None


class TestCooldown:
    """Failure counting, fail-fast and recovery."""

    @pytest.mark.asyncio
    async def test_cooldown_fails_fast_without_network(self):
        clock = FakeClock()
        recorder = Recorder({"/api/storesearch/": lambda request: httpx.Response(500)})
        adapter = steamdb(recorder, clock=clock)

        for _ in range(3):
            with pytest.raises(AdapterUnavailableError):
                await adapter.search("Hollow Knight")
        assert len(recorder.paths) == 3
        assert not adapter.is_available()

        with pytest.raises(AdapterUnavailableError) as exc_info:
            await adapter.search("Hollow Knight")
        assert "cooling down" in str(exc_info.value)
        assert exc_info.value.retry_after == pytest.approx(900.0)
        assert len(recorder.paths) == 3

    @pytest.mark.asyncio
    async def test_trial_call_after_cooldown(self):
        clock = FakeClock()
        recorder = Recorder({"/api/storesearch/": lambda request: httpx.Response(500)})
        adapter = steamdb(recorder, clock=clock)

        for _ in range(3):
            with pytest.raises(AdapterUnavailableError):
                await adapter.search("Hollow Knight")

        clock.advance(901)
        recorder.routes["/api/storesearch/"] = STORE_SEARCH
        matches = await adapter.search("Hollow Knight")

        assert matches[0].canonical_id == "367520"
        assert adapter.health.get("steamdb").consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self):
        async def slow(request):
            await asyncio.sleep(1)
            return httpx.Response(200, json=STORE_SEARCH)

        client = httpx.AsyncClient(transport=httpx.MockTransport(slow))
        adapter = SteamDBFeedAdapter(
            client=client,
            policy=AdapterPolicy(min_interval=0.0, timeout=0.01),
            sleep=no_sleep,
        )

        with pytest.raises(AdapterUnavailableError):
            await adapter.search("Hollow Knight")
        assert adapter.health.get("steamdb").consecutive_failures == 1
        await client.aclose()

    @pytest.mark.asyncio
    async def test_minimum_interval_between_calls(self):
        clock = FakeClock()
        waits = []

        async def record_sleep(seconds):
            waits.append(seconds)
            clock.advance(seconds)

        client = httpx.AsyncClient(transport=httpx.MockTransport(Recorder({"/api/storesearch/": STORE_SEARCH})))
        adapter = SteamDBFeedAdapter(
            client=client,
            policy=AdapterPolicy(min_interval=2.0),
            clock=clock,
            sleep=record_sleep,
        )

        await adapter.search("Hollow Knight")
        await adapter.search("Hollow Knight")

        assert waits == [pytest.approx(2.0)]
        await client.aclose()


class TestGOGDB:
    """Product index search and builds."""

    def test_latest_build_per_os(self):
        assert latest_build(GOGDB_BUILDS, "windows")["build_id"] == "5600"
        assert latest_build(GOGDB_BUILDS, "linux") is None

    def test_build_to_token_fallbacks(self):
        assert build_to_token({"version": "1.05 (gog-3)"}).components == (1, 5)
        assert build_to_token({"version": "", "build_id": "5512"}).kind == BUILD
        assert build_to_token({"date_published": "2024-03-01T10:00:00Z"}).kind == DATE
        assert build_to_token({}) is None

    @pytest.mark.asyncio
    async def test_search_uses_cached_index(self):
        recorder = Recorder({"/data/products.json": GOGDB_PRODUCTS})
        adapter = gogdb(recorder)

        first = await adapter.search("Assetto Corsa")
        second = await adapter.search("Assetto Corsa EVO")

        assert first[0].canonical_id == "1207658691"
        assert second[0].canonical_id == "1207658692"
        assert all(m.canonical_id != "1207658693" for m in first)
        assert recorder.paths.count("/data/products.json") == 1

    @pytest.mark.asyncio
    async def test_latest_version(self):
        adapter = gogdb(Recorder({"/data/builds/1207658691.json": GOGDB_BUILDS}))

        token = await adapter.latest_version("1207658691")

        assert token.canonical() == "1.16.5"

    @pytest.mark.asyncio
    async def test_unknown_product(self):
        adapter = gogdb(Recorder({}))
        assert await adapter.latest_version("42") is None

    @pytest.mark.asyncio
    async def test_malformed_index_is_a_failure(self):
        adapter = gogdb(Recorder({"/data/products.json": {"products": []}}))

        with pytest.raises(AdapterUnavailableError):
            await adapter.search("Assetto Corsa")


def test_build_adapters_skips_unknown_names():
    adapters = build_adapters(Settings(enabled_adapters=["gogdb", "itch"]))
    assert [adapter.name for adapter in adapters] == ["gogdb"]
