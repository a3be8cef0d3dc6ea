from __future__ import annotations
import asyncio
import random
import string
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List

import orjson
from aiokafka import AIOKafkaProducer

PATHS = ["/", "/pricing", "/blog", "/blog/launch", "/docs", "/signup"]
REFERRERS = [None, "https://www.google.com/search", "https://news.ycombinator.com/", "https://twitter.com/"]
USER_AGENTS = [
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 13_4) AppleWebKit/605.1.15 Version/16.5 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 Mobile/15E148",
    "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)",
]
COUNTRIES = ["US", "DE", "GB", "BR", "IN"]


def _now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def _rand_id(prefix: str, n: int = 8) -> str:
    return prefix + "-" + "".join(random.choice(string.ascii_lowercase + string.digits) for _ in range(n))


def synthetic_envelope(site_id: str, domain: str, visitors: List[str]) -> Dict[str, Any]:
    visitor = random.choice(visitors)
    roll = random.random()
    payload: Dict[str, Any] = {
        "type": "pageview",
        "websiteId": site_id,
        "domain": domain,
        "path": random.choice(PATHS),
        "visitorId": visitor,
        "sessionId": f"s-{visitor}-{random.randint(1, 3)}",
        "eventId": str(uuid.uuid4()),
        "ts": _now_ms(),
    }
    referrer = random.choice(REFERRERS)
    if referrer:
        payload["referrer"] = referrer
    if roll < 0.1:
        payload.update(type="goal", name="signup")
    elif roll < 0.15:
        payload.update(type="payment", metadata={"amount": random.choice([900, 1900, 4900]),
                                                 "event_type": random.choice(["new", "renewal", "refund"])})
    return {
        "site_id": site_id,
        "payload": payload,
        "user_agent": random.choice(USER_AGENTS),
        "headers": {"x-country": random.choice(COUNTRIES)},
    }


async def produce_events(bootstrap: str, topic: str, site_id: str, domain: str,
                         rate_per_sec: int, seconds: int, visitor_pool: int = 200):
    producer = AIOKafkaProducer(bootstrap_servers=bootstrap)
    await producer.start()
    try:
        visitors = [_rand_id("v", 10) for _ in range(visitor_pool)]
        interval = 1.0 / max(1, rate_per_sec)
        for _ in range(rate_per_sec * seconds):
            envelope = synthetic_envelope(site_id, domain, visitors)
            await producer.send_and_wait(topic, orjson.dumps(envelope), key=site_id.encode())
            await asyncio.sleep(interval)
    finally:
        await producer.stop()
