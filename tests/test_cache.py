import threading
from datetime import datetime, timezone

import pytest

from composewatch.cache import (
    CacheManager,
    ContainerUpdateCache,
    EvictionReason,
    ProjectUpdateCache,
)
from composewatch.model import ContainerUpdateCheck, ImageUpdateStatus, ProjectUpdateCheck


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return CacheManager(clock=clock)


def project_check(name, outdated=0, current=0):
    images = [ImageUpdateStatus(f"s{i}", "img", "sha256:a", "sha256:b") for i in range(outdated)]
    images += [ImageUpdateStatus(f"c{i}", "img", "sha256:a", "SHA256:A") for i in range(current)]
    return ProjectUpdateCheck(name, images, datetime(2024, 1, 1, tzinfo=timezone.utc))


class TestCacheManager:
    def test_set_then_get(self, store):
        store.set("k", "v", ttl=60)
        assert store.get("k") == "v"

    def test_absolute_ttl_expires(self, store, clock):
        store.set("k", "v", ttl=60)
        clock.advance(61)
        assert store.get("k") is None

    def test_sliding_window_expires_idle_entry(self, store, clock):
        store.set("k", "v", ttl=60, sliding=30)
        clock.advance(20)
        assert store.get("k") == "v"
        clock.advance(20)
        assert store.get("k") == "v"
        clock.advance(31)
        assert store.get("k") is None

    def test_sliding_never_extends_past_absolute_ttl(self, store, clock):
        store.set("k", "v", ttl=60, sliding=30)
        for _ in range(6):
            clock.advance(10)
            store.get("k")
        clock.advance(1)
        assert store.get("k") is None

    def test_eviction_reasons(self, store, clock):
        events = []
        callback = lambda key, value, reason: events.append((key, value, reason))

        store.set("a", 1, ttl=60, on_evict=callback)
        store.set("a", 2, ttl=60, on_evict=callback)
        store.remove("a")
        store.set("b", 3, ttl=10, on_evict=callback)
        clock.advance(11)
        assert store.cleanup_expired() == 1

        assert events == [
            ("a", 1, EvictionReason.REPLACED),
            ("a", 2, EvictionReason.REMOVED),
            ("b", 3, EvictionReason.EXPIRED),
        ]

    def test_failing_callback_is_contained(self, store):
        def boom(key, value, reason):
            raise RuntimeError("boom")

        store.set("a", 1, ttl=60, on_evict=boom)
        store.remove("a")

        assert store.get("a") is None

    def test_stats(self, store):
        store.set("a", 1, ttl=60)
        store.get("a")
        store.get("missing")

        stats = store.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate_percent"] == 50.0


class TestProjectUpdateCache:
    def test_ttl_and_sliding_from_minutes(self, store):
        cache = ProjectUpdateCache(store, cache_duration_minutes=60)
        assert cache.ttl_seconds == 3600
        assert cache.sliding_seconds == 1800

    def test_keys_are_case_insensitive(self, store):
        cache = ProjectUpdateCache(store, 60)
        check = project_check("Web")

        cache.set("Web", check)

        assert cache.get("web") is check
        assert store.get("image_update_web") is check

    def test_summaries_count_actionable_services(self, store):
        cache = ProjectUpdateCache(store, 60)
        cache.set("b", project_check("b", outdated=2, current=1))
        cache.set("a", project_check("a", current=3))

        summaries = cache.get_summaries()

        assert [(s.project_name, s.services_with_updates) for s in summaries] == [("a", 0), ("b", 2)]

    def test_replace_keeps_key_in_index(self, store):
        cache = ProjectUpdateCache(store, 60)
        cache.set("a", project_check("a"))
        cache.set("a", project_check("a", outdated=1))

        assert [s.services_with_updates for s in cache.get_summaries()] == [1]

    def test_expired_entry_leaves_index(self, store, clock):
        cache = ProjectUpdateCache(store, 1)
        cache.set("a", project_check("a"))
        clock.advance(61)

        assert cache.get("a") is None
        assert cache.get_summaries() == []
        assert cache._keys == set()

    def test_late_expiry_callback_keeps_fresh_key(self, store, clock):
        cache = ProjectUpdateCache(store, 1)
        cache.set("web", project_check("web", outdated=1))
        clock.advance(61)

        def fire_after_reset(key, entry, reason):
            if reason == EvictionReason.EXPIRED:
                cache.set("web", project_check("web", outdated=2))
            CacheManager._fire(key, entry, reason)

        store._fire = fire_after_reset

        assert cache.get("web") is None
        summaries = cache.get_summaries()
        assert [s.project_name for s in summaries] == ["web"]
        assert summaries[0].services_with_updates == 2

    def test_invalidate_and_invalidate_all(self, store):
        cache = ProjectUpdateCache(store, 60)
        for name in ("a", "b", "c"):
            cache.set(name, project_check(name))

        cache.invalidate("A")
        assert cache.get("a") is None
        assert {s.project_name for s in cache.get_summaries()} == {"b", "c"}

        cache.invalidate_all()
        assert cache.get_summaries() == []
        assert cache.get("b") is None

    def test_invalidate_all_does_not_touch_other_prefix(self, store):
        projects = ProjectUpdateCache(store, 60)
        containers = ContainerUpdateCache(store, 60)
        projects.set("a", project_check("a"))
        containers.set("abc", ContainerUpdateCheck("abc", "web", "nginx"))

        projects.invalidate_all()

        assert containers.get("abc") is not None

    def test_concurrent_set_and_invalidate_leave_consistent_index(self, store):
        cache = ProjectUpdateCache(store, 60)
        stop = threading.Event()

        def writer():
            i = 0
            while not stop.is_set():
                cache.set(f"p{i % 20}", project_check(f"p{i % 20}"))
                i += 1

        t = threading.Thread(target=writer)
        t.start()
        for _ in range(50):
            cache.invalidate_all()
        stop.set()
        t.join()

        for key in list(cache._keys):
            assert store.get(key) is not None
        cache.invalidate_all()
        assert cache._keys == set()
        assert cache.get_summaries() == []


class TestContainerUpdateCache:
    def test_summaries(self, store):
        cache = ContainerUpdateCache(store, 60)
        cache.set("id2", ContainerUpdateCheck("id2", "zeta", "redis", update_available=True))
        cache.set("id1", ContainerUpdateCheck("id1", "alpha", "nginx", is_compose_managed=True, project_name="web"))

        summaries = cache.get_summaries()

        assert [s.container_name for s in summaries] == ["alpha", "zeta"]
        assert summaries[0].project_name == "web"
        assert summaries[1].update_available is True
