"""Tests for ollama_steward.cache module."""


class TestTtlCache:
    """Tests for TtlCache expiry."""

    def test_fresh_entry_returned(self, clock):
        """Test a value is returned before the TTL elapses."""
        from ollama_steward.cache import TtlCache

        cache = TtlCache(30.0, clock)
        cache.put("value")
        clock.advance(29.9)
        assert cache.get() == "value"

    def test_entry_expires_at_ttl(self, clock):
        """Test an entry read exactly at the TTL is treated as absent."""
        from ollama_steward.cache import TtlCache

        cache = TtlCache(30.0, clock)
        cache.put("value")
        clock.advance(30.0)
        assert cache.get() is None
        assert len(cache) == 0

    def test_keys_are_independent(self, clock):
        """Test keyed entries do not collide."""
        from ollama_steward.cache import TtlCache

        cache = TtlCache(30.0, clock)
        cache.put("a", key="llama3:8b")
        cache.put("b", key=None)
        assert cache.get("llama3:8b") == "a"
        assert cache.get() == "b"

        cache.invalidate("llama3:8b")
        assert cache.get("llama3:8b") is None
        assert cache.get() == "b"

    def test_clear(self, clock):
        """Test clear drops everything."""
        from ollama_steward.cache import TtlCache

        cache = TtlCache(30.0, clock)
        cache.put(1, key="x")
        cache.put(2, key="y")
        cache.clear()
        assert len(cache) == 0


class TestCacheEntry:
    """Tests for CacheEntry freshness."""

    def test_is_fresh_boundary(self):
        """Test freshness is strict at the TTL boundary."""
        from ollama_steward.cache import CacheEntry

        entry = CacheEntry(value=[], captured_at=100.0)
        assert entry.is_fresh(129.999, 30.0)
        assert not entry.is_fresh(130.0, 30.0)
