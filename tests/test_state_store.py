import threading

import pytest
from redis import ConnectionError as RedisConnectionError

from abuse_gateway.errors import StateStoreError
from abuse_gateway.store import InMemoryStateStore, RedisStateStore


def test_get_missing_key_is_none(store):
    assert store.get("rate:1.2.3.4") is None


def test_set_get_and_ttl_expiry(store, clock):
    store.set("blocked:1.2.3.4", "true", 60)
    assert store.get("blocked:1.2.3.4") == "true"

    clock.advance(59)
    assert store.get("blocked:1.2.3.4") == "true"

    # Expired keys are indistinguishable from absent ones.
    clock.advance(1)
    assert store.get("blocked:1.2.3.4") is None
    assert store.delete("blocked:1.2.3.4") is False


def test_set_overwrites_value_and_resets_ttl(store, clock):
    store.set("k", "a", 10)
    clock.advance(8)
    store.set("k", "b", 10)
    clock.advance(8)
    assert store.get("k") == "b"


def test_set_without_ttl_never_expires(store, clock):
    store.set("k", "v")
    clock.advance(10**9)
    assert store.get("k") == "v"


def test_incr_creates_at_one_and_keeps_fixed_deadline(store, clock):
    assert store.incr("rate:a") == 1
    assert store.expire("rate:a", 60) is True

    clock.advance(30)
    assert store.incr("rate:a") == 2

    # Increments do not slide the window.
    clock.advance(30)
    assert store.get("rate:a") is None
    assert store.incr("rate:a") == 1


def test_expire_on_missing_key_returns_false(store):
    assert store.expire("nope", 60) is False


def test_non_positive_ttl_rejected(store):
    with pytest.raises(ValueError):
        store.set("k", "v", 0)
    store.set("k", "v")
    with pytest.raises(ValueError):
        store.expire("k", -5)


def test_incr_non_integer_value_is_store_error(store):
    store.set("k", "true")
    with pytest.raises(StateStoreError):
        store.incr("k")


def test_keys_by_prefix_skips_expired(store, clock):
    store.set("banned:1.1.1.1", "true", 3600)
    store.set("banned:2.2.2.2", "true", 10)
    store.set("blocked:3.3.3.3", "true", 60)

    assert store.keys("banned:") == {"banned:1.1.1.1", "banned:2.2.2.2"}
    clock.advance(11)
    assert store.keys("banned:") == {"banned:1.1.1.1"}
    assert store.keys() == {"banned:1.1.1.1", "blocked:3.3.3.3"}


def test_purge_expired_bounds_memory(clock):
    s = InMemoryStateStore(clock=clock, sweep_every=10**6)
    for i in range(50):
        s.set(f"rate:{i}", "1", 5)
    s.set("banned:x", "true")
    assert len(s) == 51

    clock.advance(6)
    assert s.purge_expired() == 50
    assert len(s) == 1


def test_concurrent_incr_never_loses_updates():
    s = InMemoryStateStore()
    results = []
    lock = threading.Lock()
    barrier = threading.Barrier(50)

    def worker():
        barrier.wait()
        for _ in range(4):
            v = s.incr("rate:hot")
            with lock:
                results.append(v)

    threads = [threading.Thread(target=worker) for _ in range(50)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results) == list(range(1, 201))
    assert s.get("rate:hot") == "200"


# ---------------------------
# Redis backend (in-test fake client)
# ---------------------------

class _FakeRedis:
    """Minimal subset of the redis-py client used by RedisStateStore."""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("connection refused")

    def get(self, key):
        self._check()
        return self.data.get(key)

    def set(self, key, value, ex=None):
        self._check()
        self.data[key] = value
        if ex is None:
            self.ttls.pop(key, None)
        else:
            self.ttls[key] = ex
        return True

    def incr(self, key):
        self._check()
        self.data[key] = str(int(self.data.get(key, "0")) + 1)
        return int(self.data[key])

    def expire(self, key, ttl):
        self._check()
        if key not in self.data:
            return False
        self.ttls[key] = ttl
        return True

    def delete(self, key):
        self._check()
        existed = key in self.data
        self.data.pop(key, None)
        self.ttls.pop(key, None)
        return 1 if existed else 0

    def scan_iter(self, match=None, count=None):
        self._check()
        assert match.endswith("*")
        prefix = match[:-1].replace("\\", "")
        return iter([k for k in list(self.data) if k.startswith(prefix)])

    def ping(self):
        self._check()
        return True


def test_redis_store_maps_operations():
    fake = _FakeRedis()
    s = RedisStateStore(fake)

    assert s.incr("rate:a") == 1
    assert s.expire("rate:a", 60) is True
    assert fake.ttls["rate:a"] == 60
    assert s.incr("rate:a") == 2

    s.set("banned:a", "true", 3600)
    assert s.get("banned:a") == "true"
    assert fake.ttls["banned:a"] == 3600

    assert s.keys("banned:") == {"banned:a"}
    assert s.delete("banned:a") is True
    assert s.delete("banned:a") is False
    assert s.get("banned:a") is None
    assert s.ping() is True


def test_redis_store_decodes_bytes():
    fake = _FakeRedis()
    fake.data["blocked:a"] = b"true"
    s = RedisStateStore(fake)
    assert s.get("blocked:a") == "true"


def test_redis_failures_surface_as_store_errors():
    fake = _FakeRedis()
    fake.fail = True
    s = RedisStateStore(fake)

    with pytest.raises(StateStoreError):
        s.get("banned:a")
    with pytest.raises(StateStoreError):
        s.incr("rate:a")
    with pytest.raises(StateStoreError):
        s.keys("banned:")
