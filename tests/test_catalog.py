"""
Tests for catalog assembly and the background refresh worker.
"""

import threading

import pytest

from deken.core.errors import MalformedResponse, NetworkUnreachable
from deken.core.models.registry import RawLibraryEntry
from deken.core.services.catalog import CatalogCache, RefreshCancelled, build_catalog
from deken.core.services.platform_match import PlatformMatcher
from deken.core.services.registry_client import RegistryClient
from registry_fakes import INFO_URL, SEARCH_URL, info_payload, info_url_for, search_payload, variant

LINUX64 = PlatformMatcher(os_name="Linux", arch_aliases=frozenset({"amd64", "x86_64"}), float_size=32)


def _tree(*packages):
    return [
        [[RawLibraryEntry.model_validate(v) for v in version] for version in package]
        for package in packages
    ]


class TestBuildCatalog:
    def test_one_record_per_package_latest_matching(self):
        tree = _tree(
            [
                [variant("p", version="1", timestamp="2020:01:01 00:00:00")],
                [
                    variant("p", version="2", timestamp="2021:01:01 00:00:00"),
                    variant("p", version="2", timestamp="2021:01:01 00:00:00", arch="Windows-amd64-32"),
                ],
            ]
        )
        records = build_catalog(tree, LINUX64, lambda url: ["obj"])
        assert len(records) == 1
        assert records[0].version == "2"
        assert records[0].url.endswith("Linux-amd64-32.dek")
        assert records[0].objects == ("obj",)

    def test_objects_fetched_only_for_selected(self):
        fetched: list[str] = []
        tree = _tree(
            [[variant("a", arch="Darwin-amd64-32")]],
            [[variant("b", version="1", timestamp="2020"), variant("b", version="2", timestamp="2021")]],
        )

        def fetch(url: str) -> list[str]:
            fetched.append(url)
            return []

        records = build_catalog(tree, LINUX64, fetch)
        assert [r.name for r in records] == ["b"]
        assert fetched == [records[0].url]

    def test_object_lookup_failure_keeps_record(self):
        def fetch(url: str) -> list[str]:
            raise MalformedResponse("bad")

        records = build_catalog(_tree([[variant("a")]]), LINUX64, fetch)
        assert len(records) == 1
        assert records[0].objects == ()

    def test_dedupes_by_name(self):
        tree = _tree([[variant("dup", version="1")]], [[variant("dup", version="9")]])
        records = build_catalog(tree, LINUX64, lambda url: [])
        assert [r.version for r in records] == ["1"]

    def test_cancel_between_packages(self):
        with pytest.raises(RefreshCancelled):
            build_catalog(_tree([[variant("a")]]), LINUX64, lambda url: [], should_cancel=lambda: True)


class TestCatalogCache:
    def _cache(self, fake_http, bus) -> CatalogCache:
        client = RegistryClient(search_url=SEARCH_URL, info_url=INFO_URL, opener=fake_http)
        return CatalogCache(client, LINUX64, bus=bus)

    def test_refresh_publishes_catalog(self, fake_http, bus, events):
        p = variant("cyclone", description="clones")
        fake_http.add(SEARCH_URL, search_payload([[p]]))
        fake_http.add(info_url_for(p["url"]), info_payload("counter"))

        cache = self._cache(fake_http, bus)
        assert cache.refresh() is True
        assert cache.wait(5)

        snapshot = cache.snapshot()
        assert [r.name for r in snapshot] == ["cyclone"]
        assert snapshot[0].objects == ("counter",)
        assert cache.last_error is None
        assert cache.refreshed_at is not None
        assert [e["type"] for e in events] == ["catalog:refreshed"]

    def test_single_matching_variant_url(self, fake_http, bus):
        linux = variant("P", url="https://registry.test/P-linux.dek")
        mac = variant("P", arch="Darwin-arm64-32", url="https://registry.test/P-mac.dek")
        fake_http.add(SEARCH_URL, search_payload([[mac, linux]]))
        fake_http.add(INFO_URL, info_payload())

        cache = self._cache(fake_http, bus)
        cache.refresh()
        cache.wait(5)

        snapshot = cache.snapshot()
        assert len(snapshot) == 1
        assert snapshot[0].url == "https://registry.test/P-linux.dek"
        assert not any("P-mac" in c for c in fake_http.calls_to(INFO_URL))

    def test_http_500_keeps_previous_catalog(self, fake_http, bus, events):
        fake_http.add(SEARCH_URL, search_payload([[variant("keep")]]))
        fake_http.add(INFO_URL, info_payload())
        cache = self._cache(fake_http, bus)
        cache.refresh()
        cache.wait(5)
        before = cache.snapshot()
        events.clear()

        fake_http.add(SEARCH_URL, "boom", status=500)
        cache.refresh()
        cache.wait(5)

        assert cache.snapshot() == before
        assert isinstance(cache.last_error, NetworkUnreachable)
        assert [e["type"] for e in events] == ["catalog:error"]
        assert events[0]["data"]["kind"] == "network_unreachable"

    def test_missing_libraries_keeps_previous_catalog(self, fake_http, bus, events):
        fake_http.add(SEARCH_URL, search_payload([[variant("keep")]]))
        fake_http.add(INFO_URL, info_payload())
        cache = self._cache(fake_http, bus)
        cache.refresh()
        cache.wait(5)
        before = cache.snapshot()
        events.clear()

        fake_http.add(SEARCH_URL, {"result": {}})
        cache.refresh()
        cache.wait(5)

        assert cache.snapshot() == before
        assert [r.name for r in before] == ["keep"]
        assert isinstance(cache.last_error, MalformedResponse)
        assert [e["type"] for e in events] == ["catalog:error"]
        assert events[0]["data"]["kind"] == "malformed_response"

    def test_malformed_body_reported(self, fake_http, bus, events):
        fake_http.add(SEARCH_URL, {"unexpected": True})
        cache = self._cache(fake_http, bus)
        cache.refresh()
        cache.wait(5)
        assert cache.snapshot() == []
        assert isinstance(cache.last_error, MalformedResponse)
        assert events[-1]["type"] == "catalog:error"

    def test_concurrent_refresh_is_coalesced(self, fake_http, bus, events):
        release = threading.Event()
        started = threading.Event()

        class SlowClient(RegistryClient):
            def fetch_catalog(self):
                started.set()
                release.wait(5)
                return []

        cache = CatalogCache(SlowClient(opener=fake_http), LINUX64, bus=bus)
        assert cache.refresh() is True
        started.wait(5)
        assert cache.is_refreshing
        assert cache.refresh() is False

        release.set()
        cache.wait(5)
        assert not cache.is_refreshing
        assert [e["type"] for e in events] == ["catalog:refreshed"]

    def test_wait_without_refresh(self, fake_http, bus):
        assert self._cache(fake_http, bus).wait(0.1) is True
