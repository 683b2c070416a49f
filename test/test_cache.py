"""
Test read cache eviction by age and capacity.
"""

from mirrorsync import ReadCache


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_get_put():
    cache = ReadCache[str](2, 10.0)

    assert cache.get("a") is None

    cache.put("a", "value-a")
    assert cache.get("a") == "value-a"
    assert "a" in cache
    assert len(cache) == 1


def test_max_age():
    clock = Clock()
    cache = ReadCache[str](2, 10.0, clock=clock)

    cache.put("a", "value-a")

    clock.now = 10.0
    assert cache.get("a") == "value-a"

    # stale entry is evicted upon lookup
    clock.now = 10.5
    assert cache.get("a") is None
    assert len(cache) == 0


def test_capacity():
    cache = ReadCache[int](2, 60.0)

    cache.put("a", 1)
    cache.put("b", 2)
    cache.put("c", 3)

    assert len(cache) == 2
    assert cache.get("a") is None
    assert cache.get("b") == 2
    assert cache.get("c") == 3

    # refreshed key counts as newest
    cache.put("b", 20)
    cache.put("d", 4)

    assert cache.get("c") is None
    assert cache.get("b") == 20
    assert cache.get("d") == 4


def test_disabled():
    cache = ReadCache[int](0, 60.0)

    cache.put("a", 1)
    assert cache.get("a") is None
    assert len(cache) == 0


def test_invalidate():
    cache = ReadCache[int](5, 60.0)

    cache.put("a", 1)
    cache.put("b", 2)

    cache.invalidate("a")
    assert cache.get("a") is None
    assert cache.get("b") == 2

    # unknown key is ignored
    cache.invalidate("x")

    cache.invalidate()
    assert len(cache) == 0


def test_reset():
    cache = ReadCache[int](5, 60.0)
    cache.put("a", 1)

    cache.reset(1, 5.0)

    assert len(cache) == 0
    assert cache.capacity == 1
    assert cache.max_age == 5.0
