"""Tests for the durable draft/analysis cache."""

import json

from caseflow.cache import (
    ANALYSIS_NAMESPACE,
    DRAFT_NAMESPACE,
    DurableCache,
    MemoryCacheStore,
    SQLiteCacheStore,
)


class TestDurableCache:
    def test_put_then_get(self, cache):
        assert cache.put(DRAFT_NAMESPACE, "p1", {"duration": "3 days"}) is True
        assert cache.get(DRAFT_NAMESPACE, "p1") == {"duration": "3 days"}

    def test_entry_carries_saved_at(self, cache, clock):
        cache.put(ANALYSIS_NAMESPACE, "p1", {"caseId": "c1"})
        entry = cache.get_entry(ANALYSIS_NAMESPACE, "p1")
        assert entry.saved_at == int(clock.now * 1000)

    def test_missing_key(self, cache):
        assert cache.get(DRAFT_NAMESPACE, "nobody") is None

    def test_draft_expires_after_one_hour(self, cache, clock):
        cache.put(DRAFT_NAMESPACE, "p1", {"duration": "3 days"})
        clock.advance(3599)
        assert cache.get(DRAFT_NAMESPACE, "p1") is not None
        clock.advance(1)
        assert cache.get(DRAFT_NAMESPACE, "p1") is None

    def test_analysis_expires_after_one_day(self, cache, clock):
        cache.put(ANALYSIS_NAMESPACE, "p1", {"caseId": "c1"})
        clock.advance(23 * 3600)
        assert cache.get(ANALYSIS_NAMESPACE, "p1") == {"caseId": "c1"}
        clock.advance(3600)
        assert cache.get(ANALYSIS_NAMESPACE, "p1") is None

    def test_expired_read_is_repeatable(self, cache, clock):
        cache.put(DRAFT_NAMESPACE, "p1", {"duration": "3 days"})
        clock.advance(7200)
        assert cache.get(DRAFT_NAMESPACE, "p1") is None
        assert cache.get(DRAFT_NAMESPACE, "p1") is None

    def test_overwrite_refreshes_timestamp(self, cache, clock):
        cache.put(DRAFT_NAMESPACE, "p1", {"duration": "1 day"})
        clock.advance(3000)
        cache.put(DRAFT_NAMESPACE, "p1", {"duration": "2 days"})
        clock.advance(3000)
        assert cache.get(DRAFT_NAMESPACE, "p1") == {"duration": "2 days"}

    def test_namespaces_are_separate(self, cache):
        cache.put(DRAFT_NAMESPACE, "p1", {"a": 1})
        assert cache.get(ANALYSIS_NAMESPACE, "p1") is None

    def test_unknown_namespace_fails_softly(self, cache):
        assert cache.put("settings", "p1", {"a": 1}) is False

    def test_unserializable_value_fails_softly(self, cache):
        assert cache.put(DRAFT_NAMESPACE, "p1", {"bad": object()}) is False
        assert cache.get(DRAFT_NAMESPACE, "p1") is None

    def test_quota_exceeded_fails_softly(self, clock):
        small = DurableCache(MemoryCacheStore(), clock=clock, max_bytes=200)
        assert small.put(DRAFT_NAMESPACE, "p1", {"text": "x" * 50}) is True
        assert small.put(DRAFT_NAMESPACE, "p2", {"text": "x" * 500}) is False
        # earlier entry is untouched
        assert small.get(DRAFT_NAMESPACE, "p1") == {"text": "x" * 50}

    def test_discard(self, cache):
        cache.put(DRAFT_NAMESPACE, "p1", {"a": 1})
        cache.discard(DRAFT_NAMESPACE, "p1")
        assert cache.get(DRAFT_NAMESPACE, "p1") is None


class TestWriteBehind:
    async def test_flush_persists_payload(self, clock):
        store = MemoryCacheStore()
        cache = DurableCache(store, clock=clock)
        cache.put(DRAFT_NAMESPACE, "p1", {"duration": "3 days"})
        await cache.flush()
        payload = json.loads(store.rows["draft:p1"])
        assert payload == {"draft": {"duration": "3 days"}, "savedAt": int(clock.now * 1000)}

    async def test_load_restores_entries(self, clock):
        store = MemoryCacheStore()
        first = DurableCache(store, clock=clock)
        first.put(ANALYSIS_NAMESPACE, "p1", {"caseId": "c1"})
        await first.flush()

        second = DurableCache(store, clock=clock)
        await second.load()
        assert second.get(ANALYSIS_NAMESPACE, "p1") == {"caseId": "c1"}

    async def test_load_keeps_newer_in_memory_writes(self, clock):
        store = MemoryCacheStore()
        first = DurableCache(store, clock=clock)
        first.put(DRAFT_NAMESPACE, "p1", {"duration": "old"})
        first.put(DRAFT_NAMESPACE, "p2", {"duration": "stored"})
        await first.flush()

        second = DurableCache(store, clock=clock)
        second.put(DRAFT_NAMESPACE, "p1", {"duration": "new"})
        await second.load()
        assert second.get(DRAFT_NAMESPACE, "p1") == {"duration": "new"}
        assert second.get(DRAFT_NAMESPACE, "p2") == {"duration": "stored"}

    async def test_discard_deletes_from_store(self, clock):
        store = MemoryCacheStore()
        cache = DurableCache(store, clock=clock)
        cache.put(DRAFT_NAMESPACE, "p1", {"a": 1})
        await cache.flush()
        cache.discard(DRAFT_NAMESPACE, "p1")
        await cache.flush()
        assert "draft:p1" not in store.rows

    async def test_sqlite_store_round_trip(self, clock):
        store = await SQLiteCacheStore.connect(":memory:")
        cache = DurableCache(store, clock=clock)
        cache.put(DRAFT_NAMESPACE, "p1", {"duration": "3 days"})
        await cache.flush()

        rows = await store.load_all()
        assert json.loads(rows["draft:p1"])["draft"] == {"duration": "3 days"}

        cache.put(DRAFT_NAMESPACE, "p1", {"duration": "4 days"})
        await cache.flush()
        rows = await store.load_all()
        assert len(rows) == 1
        assert json.loads(rows["draft:p1"])["draft"] == {"duration": "4 days"}
        await cache.close()
