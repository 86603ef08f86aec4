from token_ledger.cache import PageCache


class TestPageCache:
    def test_get_and_set(self):
        cache = PageCache()
        cache.set("/dashboard", {"balance": 10})

        assert cache.get("/dashboard") == {"balance": 10}
        assert cache.get("/missing") is None
        assert cache.stats["hits"] == 1
        assert cache.stats["misses"] == 1

    def test_expired_entry_evicted(self):
        cache = PageCache()
        cache.set("/dashboard", "stale", ttl=-1)

        assert cache.get("/dashboard", "default") == "default"
        assert cache.stats["evictions"] == 1

    def test_revalidate_drops_path_and_children(self):
        """Revalidating /dashboard also drops /dashboard/referrals, not /dashboards."""
        cache = PageCache()
        cache.set("/dashboard", 1)
        cache.set("/dashboard/referrals", 2)
        cache.set("/dashboards", 3)

        cache.revalidate_path("/dashboard")

        assert cache.get("/dashboard") is None
        assert cache.get("/dashboard/referrals") is None
        assert cache.get("/dashboards") == 3
        assert list(cache.revalidated) == ["/dashboard"]

    def test_revalidation_history_is_bounded(self):
        cache = PageCache(history_size=3)

        for i in range(10):
            cache.revalidate_path(f"/page/{i}")

        assert list(cache.revalidated) == ["/page/7", "/page/8", "/page/9"]
        assert cache.stats["revalidations"] == 10

    def test_listeners_notified(self):
        cache = PageCache()
        seen = []
        cache.subscribe(seen.append)

        cache.revalidate_path("/admin/tokens", "/dashboard")

        assert seen == ["/admin/tokens", "/dashboard"]

    def test_failing_listener_does_not_raise(self):
        cache = PageCache()
        seen = []

        def broken(path):
            raise RuntimeError("purge endpoint down")

        cache.subscribe(broken)
        cache.subscribe(seen.append)

        cache.revalidate_path("/dashboard")

        assert seen == ["/dashboard"]
