import pytest

from rollups.errors import RateLimitError
from rollups.ratelimit import MemoryRateLimiter, RedisRateLimiter, get_client_ip

class FakeClock:
    def __init__(self):
        self.t = 1000.0

    def __call__(self):
        return self.t

class FakePipeline:
    def __init__(self, store):
        self.store = store
        self.ops = []

    def incr(self, key):
        self.ops.append(("incr", key))

    def pttl(self, key):
        self.ops.append(("pttl", key))

    def execute(self):
        out = []
        for op, key in self.ops:
            if op == "incr":
                count, ttl = self.store.data.get(key, (0, -1))
                self.store.data[key] = (count + 1, ttl)
                out.append(count + 1)
            else:
                out.append(self.store.data[key][1])
        return out

class FakeRedis:
    """Just enough of redis.Redis for the limiter's INCR/PTTL/PEXPIRE calls."""

    def __init__(self):
        self.data = {}

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    def pexpire(self, key, ms):
        count, _ = self.data[key]
        self.data[key] = (count, ms)

def test_memory_limiter_blocks_and_resets():
    clock = FakeClock()
    limiter = MemoryRateLimiter(window_seconds=60, max_per_ip=2, max_per_site=10, clock=clock)
    limiter.check("1.2.3.4", "site-1")
    limiter.check("1.2.3.4", "site-1")
    with pytest.raises(RateLimitError) as exc:
        limiter.check("1.2.3.4", "site-1")
    assert exc.value.retry_after == 60

    clock.t += 59.5
    with pytest.raises(RateLimitError) as exc:
        limiter.check("1.2.3.4", "site-1")
    assert exc.value.retry_after == 1

    clock.t += 1
    limiter.check("1.2.3.4", "site-1")

def test_scopes_and_sites_are_separate_buckets():
    limiter = MemoryRateLimiter(window_seconds=60, max_per_ip=100, max_per_site=1, clock=FakeClock())
    limiter.check("1.1.1.1", "site-1", scope="ingest")
    limiter.check("1.1.1.1", "site-1", scope="payments")
    limiter.check("1.1.1.1", "site-2", scope="ingest")
    with pytest.raises(RateLimitError):
        limiter.check("2.2.2.2", "site-1", scope="ingest")

def test_redis_limiter():
    r = FakeRedis()
    limiter = RedisRateLimiter(r, window_seconds=30, max_per_ip=1, max_per_site=10)
    limiter.check("9.9.9.9", "site-1")
    with pytest.raises(RateLimitError) as exc:
        limiter.check("9.9.9.9", "site-1")
    assert exc.value.retry_after == 30
    assert r.data["rollups:rl:ingest:ip:9.9.9.9"] == (2, 30000)

def test_client_ip_headers():
    assert get_client_ip({"X-Forwarded-For": "10.0.0.1, 10.0.0.2"}) == "10.0.0.1"
    assert get_client_ip({"x-real-ip": "10.0.0.3"}) == "10.0.0.3"
    assert get_client_ip({"cf-connecting-ip": "10.0.0.4"}) == "10.0.0.4"
    assert get_client_ip({}, fallback="127.0.0.1") == "127.0.0.1"
    assert get_client_ip({}) == ""
