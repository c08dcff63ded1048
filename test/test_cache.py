from stockroom.services.cache import TtlCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_disabled_cache_never_stores():
    cache = TtlCache(0)
    calls = []

    cache.get_or_compute("k", lambda: calls.append(1) or len(calls))
    cache.get_or_compute("k", lambda: calls.append(1) or len(calls))

    assert not cache.enabled
    assert len(calls) == 2
    assert len(cache) == 0


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = TtlCache(10, clock=clock)
    cache.set("k", "v")

    clock.now = 9.9
    assert cache.get("k") == "v"
    clock.now = 10.0
    assert cache.get("k") is None
    assert len(cache) == 0
    assert (cache.hits, cache.misses) == (1, 1)


def test_invalidate_drops_everything():
    cache = TtlCache(60, clock=FakeClock())
    cache.set("a", 1)
    cache.set("b", 2)

    cache.invalidate()

    assert cache.get("a", "missing") == "missing"
    assert len(cache) == 0


def test_cached_none_is_a_hit():
    cache = TtlCache(60, clock=FakeClock())
    calls = []

    def compute():
        calls.append(1)
        return None

    assert cache.get_or_compute("k", compute) is None
    assert cache.get_or_compute("k", compute) is None
    assert len(calls) == 1
