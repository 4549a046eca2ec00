"""Tests for the response cache and cache key derivation."""
import asyncio
import json

import pytest

import llmgate.cache as llmgate_cache
from llmgate.cache import CacheMetrics, FileCache, LRUCache, compute_cache_key
from llmgate.types import FunctionDef, GenerateRequest


class TestCacheKey:
    """Cache key identity."""

    def test_identical_requests_share_key(self):
        a = GenerateRequest(prompt="hi", model="gpt-4o", temperature=0.2)
        b = GenerateRequest(prompt="hi", model="gpt-4o", temperature=0.2)
        assert compute_cache_key(a) == compute_cache_key(b)

    def test_key_is_sha256_hex(self):
        key = compute_cache_key(GenerateRequest(prompt="hi", model="gpt-4o"))
        assert len(key) == 64
        int(key, 16)

    def test_semantic_fields_change_key(self):
        base = GenerateRequest(prompt="hi", model="gpt-4o")
        variants = [
            base.model_copy(update={"prompt": "hello"}),
            base.model_copy(update={"model": "gpt-4.1"}),
            base.model_copy(update={"temperature": 0.7}),
            base.model_copy(update={"max_tokens": 10}),
            base.model_copy(update={"system_prompt": "be brief"}),
            base.model_copy(update={"stop_sequences": ["\n"]}),
            base.model_copy(update={"json_mode": True}),
            base.model_copy(update={"provider_options": {"reasoning_effort": "high"}}),
            base.model_copy(update={"tools": [FunctionDef("search", "web search", {"type": "object"})]}),
        ]
        keys = {compute_cache_key(v) for v in variants}
        assert compute_cache_key(base) not in keys
        assert len(keys) == len(variants)

    def test_non_semantic_fields_do_not_change_key(self):
        base = GenerateRequest(prompt="hi", model="gpt-4o")
        for update in ({"stream": True}, {"timeout": 5.0}, {"cache_ttl": 10.0}, {"cache_disabled": True}):
            assert compute_cache_key(base.model_copy(update=update)) == compute_cache_key(base)

    def test_provider_option_order_is_irrelevant(self):
        a = GenerateRequest(prompt="hi", model="m", provider_options={"a": 1, "b": 2})
        b = GenerateRequest(prompt="hi", model="m", provider_options={"b": 2, "a": 1})
        assert compute_cache_key(a) == compute_cache_key(b)


class TestLRUCache:
    """In-memory LRU behaviour."""

    @pytest.mark.asyncio
    async def test_set_then_get(self, clock):
        cache = LRUCache(max_size=10, default_ttl=60, clock=clock)
        await cache.set("k", "v")
        assert await cache.get("k") == "v"
        metrics = cache.metrics()
        assert (metrics.hits, metrics.misses, metrics.size) == (1, 0, 1)

    @pytest.mark.asyncio
    async def test_miss_counts(self, clock):
        cache = LRUCache(clock=clock)
        assert await cache.get("absent") is None
        assert cache.metrics().misses == 1

    @pytest.mark.asyncio
    async def test_entry_expires_after_ttl(self, clock):
        cache = LRUCache(default_ttl=10, clock=clock)
        await cache.set("k", "v")
        clock.advance(10)
        assert await cache.get("k") == "v"
        clock.advance(0.5)
        assert await cache.get("k") is None
        assert cache.size() == 0

    @pytest.mark.asyncio
    async def test_per_entry_ttl_overrides_default(self, clock):
        cache = LRUCache(default_ttl=3600, clock=clock)
        await cache.set("short", 1, ttl=1)
        clock.advance(2)
        assert await cache.get("short") is None

    @pytest.mark.asyncio
    async def test_hits_do_not_extend_ttl(self, clock):
        cache = LRUCache(default_ttl=10, clock=clock)
        await cache.set("k", "v")
        clock.advance(8)
        assert await cache.get("k") == "v"
        clock.advance(3)
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_evicts_least_recently_accessed(self, clock):
        cache = LRUCache(max_size=3, clock=clock)
        await cache.set("a", 1)
        await cache.set("b", 2)
        await cache.set("c", 3)
        await cache.get("a")
        await cache.set("d", 4)

        assert cache.size() == 3
        assert await cache.get("b") is None
        assert await cache.get("a") == 1
        assert await cache.get("c") == 3
        assert await cache.get("d") == 4
        assert cache.metrics().evictions == 1

    @pytest.mark.asyncio
    async def test_overwrite_refreshes_order_without_eviction(self, clock):
        cache = LRUCache(max_size=2, clock=clock)
        await cache.set("a", 1)
        await cache.set("b", 2)
        await cache.set("a", 10)
        await cache.set("c", 3)

        assert cache.metrics().evictions == 1
        assert await cache.get("a") == 10
        assert await cache.get("b") is None

    @pytest.mark.asyncio
    async def test_delete_and_clear(self, clock):
        cache = LRUCache(clock=clock)
        await cache.set("a", 1)
        await cache.set("b", 2)
        assert await cache.delete("a") is True
        assert await cache.delete("a") is False
        await cache.clear()
        assert cache.size() == 0

    @pytest.mark.asyncio
    async def test_clear_resets_metrics(self, clock):
        cache = LRUCache(max_size=1, clock=clock)
        await cache.set("a", 1)
        await cache.set("b", 2)
        await cache.get("b")
        await cache.get("a")
        assert cache.metrics() == CacheMetrics(hits=1, misses=1, evictions=1, size=1)

        await cache.clear()
        assert cache.metrics() == CacheMetrics()

    def test_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            LRUCache(max_size=0)


class TestFileCache:
    """Hybrid memory + disk cache."""

    @pytest.mark.asyncio
    async def test_writes_through_to_disk(self, tmp_path, clock):
        cache = FileCache(cache_dir=tmp_path, clock=clock)
        await cache.set("k", {"text": "hello"})

        files = list(tmp_path.glob("*.json"))
        assert len(files) == 1
        record = json.loads(files[0].read_text())
        assert record["key"] == "k"
        assert record["entry"]["value"] == {"text": "hello"}

    @pytest.mark.asyncio
    async def test_survives_restart(self, tmp_path, clock):
        first = FileCache(cache_dir=tmp_path, clock=clock)
        await first.set("k", {"text": "hello"})

        second = FileCache(cache_dir=tmp_path, clock=clock)
        assert await second.get("k") == {"text": "hello"}
        assert second.size() == 1

    @pytest.mark.asyncio
    async def test_expired_disk_entry_is_removed(self, tmp_path, clock):
        first = FileCache(cache_dir=tmp_path, default_ttl=5, clock=clock)
        await first.set("k", "v")
        clock.advance(6)

        second = FileCache(cache_dir=tmp_path, default_ttl=5, clock=clock)
        assert await second.get("k") is None
        assert list(tmp_path.glob("*.json")) == []

    @pytest.mark.asyncio
    async def test_corrupt_file_is_a_miss(self, tmp_path, clock):
        cache = FileCache(cache_dir=tmp_path, clock=clock)
        await cache.set("k", "v")
        path = next(tmp_path.glob("*.json"))
        path.write_text("{not json")

        fresh = FileCache(cache_dir=tmp_path, clock=clock)
        assert await fresh.get("k") is None

    @pytest.mark.asyncio
    async def test_serializer_hooks(self, tmp_path, clock):
        cache = FileCache(
            cache_dir=tmp_path,
            serializer=lambda value: {"wrapped": value},
            deserializer=lambda data: data["wrapped"],
            clock=clock,
        )
        await cache.set("k", "v")
        fresh = FileCache(
            cache_dir=tmp_path,
            serializer=lambda value: {"wrapped": value},
            deserializer=lambda data: data["wrapped"],
            clock=clock,
        )
        assert await fresh.get("k") == "v"

    @pytest.mark.asyncio
    async def test_clear_removes_files(self, tmp_path, clock):
        cache_dir = tmp_path / "cache"
        cache = FileCache(cache_dir=cache_dir, clock=clock)
        await cache.set("a", 1)
        await cache.set("b", 2)
        await cache.clear()
        assert cache.size() == 0
        assert list(cache_dir.glob("*.json")) == []

    @pytest.mark.asyncio
    async def test_file_io_runs_in_worker_thread(self, tmp_path, clock, monkeypatch):
        offloaded = []
        real_to_thread = asyncio.to_thread

        async def tracking_to_thread(func, *args, **kwargs):
            offloaded.append(getattr(func, "__name__", repr(func)))
            return await real_to_thread(func, *args, **kwargs)

        monkeypatch.setattr(llmgate_cache.asyncio, "to_thread", tracking_to_thread)
        cache = FileCache(cache_dir=tmp_path, clock=clock)
        await cache.set("k", "v")
        fresh = FileCache(cache_dir=tmp_path, clock=clock)
        assert await fresh.get("k") == "v"
        await fresh.delete("k")
        assert offloaded == ["write_text", "_read", "unlink"]
