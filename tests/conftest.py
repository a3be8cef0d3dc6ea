from datetime import date, datetime, timedelta, timezone

import pytest

from rollups.auth import create_site
from rollups.buckets import resolve_window
from rollups.config import Settings
from rollups.db import init_db, make_engine
from rollups.ingest import IngestService
from rollups.store import RollupStore
from rollups.validation import validate_payload

SITE_ID = "site-1"
API_KEY = "key-site-1"
DAY = date(2026, 2, 7)
DESKTOP_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'rollups.sqlite3'}",
        rollup_rebuild_secret="cron-secret",
        raw_event_retention_days=36500,
        rate_limit_max_requests_per_ip=1000,
        rate_limit_max_requests_per_site=1000,
    )


@pytest.fixture
def engine(settings):
    eng = make_engine(settings.database_url)
    init_db(eng)
    create_site(eng, "example.com", site_id=SITE_ID, api_key=API_KEY)
    yield eng
    eng.dispose()


@pytest.fixture
def ingest(engine):
    """ingest(**payload_fields) through the live path, one second of receipt time apart."""
    service = IngestService(engine)
    clock = {"t": datetime(2026, 2, 7, 0, 0, tzinfo=timezone.utc)}

    def _ingest(user_agent=DESKTOP_UA, headers=None, received_at=None, **fields):
        body = {"type": "pageview", "websiteId": SITE_ID, "domain": "example.com", "path": "/", "visitorId": "v1"}
        body.update(fields)
        body = {k: v for k, v in body.items() if v is not None}
        clock["t"] += timedelta(seconds=1)
        headers = {"x-country": "US"} if headers is None else headers
        return service.ingest(SITE_ID, validate_payload(body), user_agent, headers,
                              received_at or clock["t"])

    return _ingest


@pytest.fixture
def stored(engine):
    store = RollupStore()

    def _stored(day=DAY, days=1):
        window = resolve_window(SITE_ID, day, day + timedelta(days=days))
        with engine.connect() as conn:
            return store.load_window(conn, window)

    return _stored


def ms(*args) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


@pytest.fixture
def at():
    """at(hour, minute) -> epoch ms on DAY."""
    return lambda hour, minute=0: ms(DAY.year, DAY.month, DAY.day, hour, minute)
