from sqlalchemy import (
    BigInteger, Boolean, Column, Date, DateTime, Index, Integer, JSON, String, UniqueConstraint,
)
from sqlalchemy.sql import func
from rollups.db import Base

class Site(Base):
    __tablename__ = "sites"
    id = Column(String(128), primary_key=True)
    domain = Column(String(255), nullable=False)
    api_key = Column(String(128), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

class RawEvent(Base):
    __tablename__ = "raw_events"
    id = Column(String(36), primary_key=True)
    site_id = Column(String(128), nullable=False)
    event_id = Column(String(128), nullable=True)
    type = Column(String(32), nullable=False)
    name = Column(String(64), nullable=True)
    visitor_id = Column(String(128), nullable=False)
    session_id = Column(String(128), nullable=True)
    timestamp = Column(BigInteger, nullable=False)  # epoch ms, client-claimed
    event_metadata = Column("metadata", JSON, nullable=True)
    normalized = Column(JSON, nullable=True)
    bot = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)  # server receipt

    __table_args__ = (
        UniqueConstraint("site_id", "event_id", name="uq_raw_events_site_event"),
        Index("idx_raw_events_site_ts", "site_id", "timestamp"),
        Index("idx_raw_events_session", "site_id", "session_id", "visitor_id"),
        Index("idx_raw_events_created", "created_at", "id"),
    )

def _counter(big: bool = False) -> Column:
    return Column(BigInteger if big else Integer, nullable=False, default=0, server_default="0")

class _DimensionCounters:
    visitors = _counter()
    pageviews = _counter()
    goals = _counter()
    revenue = _counter(big=True)
    revenue_new = _counter(big=True)
    revenue_renewal = _counter(big=True)
    revenue_refund = _counter(big=True)

class _PlainCounters(_DimensionCounters):
    sessions = _counter()
    bounced_sessions = _counter()
    # sum of session durations; divide by sessions for the average
    avg_session_duration_ms = _counter(big=True)

class RollupDaily(_PlainCounters, Base):
    __tablename__ = "rollup_daily"
    site_id = Column(String(128), primary_key=True)
    date = Column(Date, primary_key=True)

class RollupHourly(_PlainCounters, Base):
    __tablename__ = "rollup_hourly"
    site_id = Column(String(128), primary_key=True)
    date = Column(Date, primary_key=True)
    hour = Column(Integer, primary_key=True)

class RollupDimensionDaily(_DimensionCounters, Base):
    __tablename__ = "rollup_dimension_daily"
    site_id = Column(String(128), primary_key=True)
    date = Column(Date, primary_key=True)
    dimension = Column(String(32), primary_key=True)
    dimension_value = Column(String(512), primary_key=True)

class RollupDimensionHourly(_DimensionCounters, Base):
    __tablename__ = "rollup_dimension_hourly"
    site_id = Column(String(128), primary_key=True)
    date = Column(Date, primary_key=True)
    hour = Column(Integer, primary_key=True)
    dimension = Column(String(32), primary_key=True)
    dimension_value = Column(String(512), primary_key=True)

class VisitorDaily(Base):
    __tablename__ = "visitor_daily"
    site_id = Column(String(128), primary_key=True)
    date = Column(Date, primary_key=True)
    visitor_id = Column(String(128), primary_key=True)

class VisitorHourly(Base):
    __tablename__ = "visitor_hourly"
    site_id = Column(String(128), primary_key=True)
    date = Column(Date, primary_key=True)
    hour = Column(Integer, primary_key=True)
    visitor_id = Column(String(128), primary_key=True)
