from __future__ import annotations
import logging
import math
import threading
import time
from typing import Dict, List, Mapping, Optional, Tuple

import redis

from rollups.config import Settings
from rollups.errors import RateLimitError

logger = logging.getLogger(__name__)

IP_HEADERS = ("x-real-ip", "x-vercel-forwarded-for", "x-vercel-ip", "cf-connecting-ip")


def get_client_ip(headers: Mapping[str, str], fallback: Optional[str] = None) -> str:
    lowered = {str(k).lower(): v for k, v in headers.items()}
    forwarded = lowered.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for name in IP_HEADERS:
        value = (lowered.get(name) or "").strip()
        if value:
            return value
    return fallback or ""


class RateLimiter:
    """Fixed-window counters keyed `{scope}:ip:{ip}` and `{scope}:site:{site}`.

    Both counters are consumed on every call; the longer retry-after wins.
    """

    def __init__(self, window_seconds: int = 60, max_per_ip: int = 60, max_per_site: int = 300):
        self.window_seconds = window_seconds
        self.max_per_ip = max_per_ip
        self.max_per_site = max_per_site

    def _consume(self, key: str, limit: int) -> Tuple[bool, int]:
        raise NotImplementedError

    def check(self, ip: Optional[str], site_id: Optional[str], scope: str = "ingest") -> None:
        waits: List[int] = []
        if ip:
            allowed, retry_after = self._consume(f"{scope}:ip:{ip}", self.max_per_ip)
            if not allowed:
                waits.append(retry_after)
        if site_id:
            allowed, retry_after = self._consume(f"{scope}:site:{site_id}", self.max_per_site)
            if not allowed:
                waits.append(retry_after)
        if waits:
            logger.warning("rate limit exceeded", extra={"scope": scope, "ip": ip, "site_id": site_id})
            raise RateLimitError(max(waits))


class MemoryRateLimiter(RateLimiter):
    """Per-process buckets. Fine for a single worker and for tests."""

    def __init__(self, *args, clock=time.monotonic, **kwargs):
        super().__init__(*args, **kwargs)
        self.clock = clock
        self._buckets: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def _consume(self, key: str, limit: int) -> Tuple[bool, int]:
        now = self.clock()
        with self._lock:
            count, reset_at = self._buckets.get(key, (0, 0.0))
            if reset_at <= now:
                self._buckets[key] = (1, now + self.window_seconds)
                return True, 0
            if count >= limit:
                return False, max(1, math.ceil(reset_at - now))
            self._buckets[key] = (count + 1, reset_at)
            return True, 0


class RedisRateLimiter(RateLimiter):
    """Shared buckets for multi-worker deployments (INCR + PEXPIRE)."""

    def __init__(self, client: redis.Redis, *args, prefix: str = "rollups:rl:", **kwargs):
        super().__init__(*args, **kwargs)
        self.r = client
        self.prefix = prefix

    def _consume(self, key: str, limit: int) -> Tuple[bool, int]:
        window_ms = self.window_seconds * 1000
        full_key = f"{self.prefix}{key}"
        pipe = self.r.pipeline(transaction=True)
        pipe.incr(full_key)
        pipe.pttl(full_key)
        count, ttl = pipe.execute()
        if ttl is None or int(ttl) < 0:
            self.r.pexpire(full_key, window_ms)
            ttl = window_ms
        if int(count) > limit:
            return False, max(1, math.ceil(int(ttl) / 1000))
        return True, 0


def build_rate_limiter(settings: Settings) -> RateLimiter:
    kwargs = dict(
        window_seconds=settings.rate_limit_window_seconds,
        max_per_ip=settings.rate_limit_max_requests_per_ip,
        max_per_site=settings.rate_limit_max_requests_per_site,
    )
    if settings.rate_limit_backend == "redis":
        return RedisRateLimiter(redis.Redis.from_url(settings.redis_url, decode_responses=True), **kwargs)
    return MemoryRateLimiter(**kwargs)
