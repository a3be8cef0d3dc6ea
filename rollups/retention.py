from __future__ import annotations
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from sqlalchemy import delete
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from rollups.buckets import start_of_utc_day
from rollups.config import Settings, settings as default_settings
from rollups.errors import StorageError
from rollups.models import (
    RawEvent, RollupDaily, RollupDimensionDaily, RollupDimensionHourly, RollupHourly, VisitorDaily, VisitorHourly,
)

logger = logging.getLogger(__name__)


def cutoff(days: int, now: datetime) -> datetime:
    return start_of_utc_day(now - timedelta(days=days))


def run_retention(engine: Engine, settings: Settings = default_settings,
                  now: Optional[datetime] = None) -> Dict[str, int]:
    now = now or datetime.now(timezone.utc)
    raw_cutoff = cutoff(settings.raw_event_retention_days, now)
    daily_cutoff = cutoff(settings.rollup_daily_retention_days, now).date()
    hourly_cutoff = cutoff(settings.rollup_hourly_retention_days, now).date()

    deleted: Dict[str, int] = {}
    try:
        with engine.begin() as conn:
            raw = RawEvent.__table__
            deleted[raw.name] = conn.execute(delete(raw).where(raw.c.created_at < raw_cutoff)).rowcount
            for model in (VisitorDaily, RollupDaily, RollupDimensionDaily):
                table = model.__table__
                deleted[table.name] = conn.execute(delete(table).where(table.c.date < daily_cutoff)).rowcount
            for model in (VisitorHourly, RollupHourly, RollupDimensionHourly):
                table = model.__table__
                deleted[table.name] = conn.execute(delete(table).where(table.c.date < hourly_cutoff)).rowcount
    except SQLAlchemyError as exc:
        logger.exception("retention cleanup failed")
        raise StorageError() from exc

    logger.info("retention cleanup finished", extra={"deleted": deleted})
    return deleted
