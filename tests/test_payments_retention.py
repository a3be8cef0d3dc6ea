from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from conftest import SITE_ID
from rollups.auth import SiteRecord
from rollups.errors import ValidationError
from rollups.models import RawEvent, RollupDaily, RollupHourly
from rollups.payments import parse_payment, translate_payment
from rollups.retention import run_retention

SITE = SiteRecord(SITE_ID, "example.com")

def test_translate_payment_builds_payment_and_goal_events():
    req = parse_payment({"amount": "2500", "currency": "EUR", "transaction_id": "tx-9", "renewal": True,
                         "customer_id": "cus_1", "email": "a@b.co"})
    payment, goal = translate_payment(SITE, req, now=datetime(2026, 2, 7, tzinfo=timezone.utc))
    assert payment.type == "payment"
    assert payment.eventId == "payment:renewal:tx-9"
    assert payment.visitorId == "customer:cus_1"
    assert payment.metadata["amount"] == 2500
    assert payment.metadata["currency"] == "eur"
    assert payment.metadata["event_type"] == "renewal"
    assert payment.metadata["email"] == "a@b.co"
    assert goal.type == "goal" and goal.name == "payment"
    assert goal.eventId == "goal:renewal:tx-9"
    assert "email" not in goal.metadata

def test_free_trial_goal_and_refund_type():
    req = parse_payment({"amount": 0, "currency": "usd", "transaction_id": "tx-0", "refunded": True,
                         "renewal": True, "visitor_id": "v1"})
    payment, goal = translate_payment(SITE, req)
    assert payment.metadata["event_type"] == "refund"
    assert payment.visitorId == "v1"
    assert goal.name == "free_trial"

def test_payment_request_validation():
    with pytest.raises(ValidationError):
        parse_payment({"amount": 10, "currency": "us", "transaction_id": "tx"})
    with pytest.raises(ValidationError):
        parse_payment({"amount": 10, "currency": "usd", "transaction_id": "tx", "email": "not-an-email"})
    req = parse_payment({"amount": 10, "currency": "usd", "transaction_id": "tx-f", "timestamp": "2031-01-01T00:00:00Z"})
    with pytest.raises(ValidationError) as exc:
        translate_payment(SITE, req, now=datetime(2026, 2, 7, tzinfo=timezone.utc))
    assert ["ts"] in [d["path"] for d in exc.value.details]

def test_retention_deletes_old_rows_only(engine, settings, ingest, at):
    now = datetime(2026, 2, 7, 12, tzinfo=timezone.utc)
    old = now - timedelta(days=120)
    ingest(ts=int(old.timestamp() * 1000), received_at=old)
    ingest(ts=at(10), received_at=now)
    ingest(ts=int((now - timedelta(days=40)).timestamp() * 1000), received_at=now)

    deleted = run_retention(engine, settings.model_copy(update={"raw_event_retention_days": 90}), now=now)
    assert deleted["raw_events"] == 1
    assert deleted["rollup_daily"] == 0
    assert deleted["rollup_hourly"] == 2

    with engine.connect() as conn:
        assert conn.execute(select(func.count()).select_from(RawEvent.__table__)).scalar_one() == 2
        assert conn.execute(select(func.count()).select_from(RollupDaily.__table__)).scalar_one() == 3
        assert conn.execute(select(func.count()).select_from(RollupHourly.__table__)).scalar_one() == 1
