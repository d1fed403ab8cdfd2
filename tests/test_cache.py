from src.utils.cache import InMemoryTTLStore


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_entries_expire():
    clock = FakeClock()
    store = InMemoryTTLStore(default_ttl_seconds=10, clock=clock)
    store.set("a", 1)
    store.set("b", 2, ttl_seconds=100)

    clock.now = 9
    assert store.get("a") == 1
    clock.now = 10
    assert store.get("a") is None
    assert store.get("b") == 2
    assert len(store) == 1


def test_expire_resets_ttl():
    clock = FakeClock()
    store = InMemoryTTLStore(default_ttl_seconds=10, clock=clock)
    store.set("a", 1)
    clock.now = 8
    assert store.expire("a", 10) is True
    clock.now = 15
    assert store.get("a") == 1
    assert store.expire("missing", 10) is False


def test_expire_on_dead_key():
    clock = FakeClock()
    store = InMemoryTTLStore(default_ttl_seconds=1, clock=clock)
    store.set("a", 1)
    clock.now = 5
    assert store.expire("a", 10) is False
    assert store.get("a") is None


def test_capacity_drops_soonest_expiring():
    clock = FakeClock()
    store = InMemoryTTLStore(max_entries=2, clock=clock)
    store.set("short", 1, ttl_seconds=5)
    store.set("long", 2, ttl_seconds=50)
    store.set("new", 3, ttl_seconds=20)

    assert store.get("short") is None
    assert store.get("long") == 2
    assert store.get("new") == 3


def test_delete():
    store = InMemoryTTLStore()
    store.set("a", 1)
    store.delete("a")
    store.delete("a")
    assert store.get("a") is None
