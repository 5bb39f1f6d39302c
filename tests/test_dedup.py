"""
Tests for DedupCache.
"""
from ladderbot.market_data.dedup import DedupCache


class TestDedupCache:

    def test_duplicate_detected(self, clock):
        cache = DedupCache(ttl_sec=600, max_entries=10, clock=clock)
        key = DedupCache.make_key("ws", "SOL_USDC_PERP", 1700000000000)
        assert cache.check_and_add(key) is True
        assert cache.check_and_add(key) is False
        assert cache.get_stats()["duplicates"] == 1

    def test_key_format(self):
        assert DedupCache.make_key("ws", "BTC_USDC_PERP", 123) == "ws_BTC_USDC_PERP_123"

    def test_evicts_oldest_over_capacity(self, clock):
        cache = DedupCache(ttl_sec=600, max_entries=3, clock=clock)
        for i in range(4):
            cache.check_and_add(f"k{i}")
            clock.advance(1)
        assert len(cache) == 3
        assert not cache.contains("k0")
        assert cache.contains("k3")
        assert cache.get_stats()["evictions"] == 1

    def test_prune_drops_expired(self, clock, events):
        cache = DedupCache(ttl_sec=600, max_entries=100, clock=clock, log_event=events)
        cache.check_and_add("old")
        clock.advance(500)
        cache.check_and_add("new")
        clock.advance(200)
        assert cache.prune() == 1
        assert not cache.contains("old")
        assert cache.contains("new")
        assert events.names() == ["dedup_pruned"]

    def test_prune_nothing_to_do_is_silent(self, clock, events):
        cache = DedupCache(ttl_sec=600, clock=clock, log_event=events)
        cache.check_and_add("a")
        assert cache.prune() == 0
        assert events.recorded == []

    def test_expired_key_accepted_again_after_prune(self, clock):
        cache = DedupCache(ttl_sec=10, clock=clock)
        cache.check_and_add("a")
        clock.advance(11)
        cache.prune()
        assert cache.check_and_add("a") is True
