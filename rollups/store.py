from __future__ import annotations
from typing import Dict, Iterable, List, Mapping, Set, Tuple, Union

from sqlalchemy import and_, delete, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection
from sqlalchemy.sql.schema import Table

from rollups.buckets import DAILY, DIMENSION_DAILY, DIMENSION_HOURLY, HOURLY, TABLES, BucketKey, DimensionKey, Window
from rollups.buckets import bucket_of
from rollups.metrics import DIMENSION_FIELDS, PLAIN_FIELDS, Metrics
from rollups.models import (
    RollupDaily, RollupDimensionDaily, RollupDimensionHourly, RollupHourly, VisitorDaily, VisitorHourly,
)
from rollups.planner import RollupPlan

Key = Union[BucketKey, DimensionKey]
RollupSet = Dict[str, Dict[Key, Metrics]]

# table name -> (table, key columns, counter columns)
TABLE_SPECS: Dict[str, Tuple[Table, Tuple[str, ...], Tuple[str, ...]]] = {
    DAILY: (RollupDaily.__table__, ("site_id", "date"), PLAIN_FIELDS),
    HOURLY: (RollupHourly.__table__, ("site_id", "date", "hour"), PLAIN_FIELDS),
    DIMENSION_DAILY: (RollupDimensionDaily.__table__, ("site_id", "date", "dimension", "dimension_value"),
                      DIMENSION_FIELDS),
    DIMENSION_HOURLY: (RollupDimensionHourly.__table__,
                       ("site_id", "date", "hour", "dimension", "dimension_value"), DIMENSION_FIELDS),
}

visitor_daily = VisitorDaily.__table__
visitor_hourly = VisitorHourly.__table__


def empty_rollups() -> RollupSet:
    return {t: {} for t in TABLES}


def key_columns(table_name: str, key: Key) -> Dict[str, object]:
    cols: Dict[str, object] = {"site_id": key.site_id, "date": key.date}
    if table_name in (HOURLY, DIMENSION_HOURLY):
        cols["hour"] = key.hour
    if table_name in (DIMENSION_DAILY, DIMENSION_HOURLY):
        cols["dimension"] = key.dimension
        cols["dimension_value"] = key.value
    return cols


def key_from_row(table_name: str, row: Mapping) -> Key:
    hour = int(row["hour"]) if table_name in (HOURLY, DIMENSION_HOURLY) else None
    if table_name in (DIMENSION_DAILY, DIMENSION_HOURLY):
        return DimensionKey(row["site_id"], row["date"], hour, row["dimension"], row["dimension_value"])
    return BucketKey(row["site_id"], row["date"], hour)


def _window_clause(table: Table, window: Window):
    clause = and_(table.c.date >= window.start_date, table.c.date < window.end_date)
    if window.site_id:
        clause = and_(clause, table.c.site_id == window.site_id)
    return clause


def _chunks(rows: List[dict], size: int) -> Iterable[List[dict]]:
    for i in range(0, len(rows), size):
        yield rows[i:i + size]


class RollupStore:
    """Additive writes, presence marks, and window load/replace over the rollup tables.

    Every method takes an open connection; the caller owns the transaction.
    """

    def apply_delta(self, conn: Connection, table_name: str, key: Key, delta: Metrics) -> None:
        table, _, fields = TABLE_SPECS[table_name]
        keys = key_columns(table_name, key)
        values = {**keys, **delta.as_dict(fields)}
        dialect = conn.dialect.name
        if dialect in ("postgresql", "sqlite"):
            insert_fn = postgresql.insert if dialect == "postgresql" else sqlite.insert
            stmt = insert_fn(table).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=list(keys),
                set_={f: table.c[f] + stmt.excluded[f] for f in fields},
            )
            conn.execute(stmt)
            return
        self._locked_add(conn, table, keys, fields, values, delta)

    def _locked_add(self, conn, table, keys, fields, values, delta) -> None:
        where = and_(*[table.c[k] == v for k, v in keys.items()])
        existing = conn.execute(select(table.c[fields[0]]).where(where).with_for_update()).first()
        if existing is None:
            conn.execute(insert(table).values(**values))
        else:
            conn.execute(update(table).where(where).values(
                **{f: table.c[f] + getattr(delta, f) for f in fields}))

    def apply_plan(self, conn: Connection, plan: RollupPlan) -> int:
        touched = 0
        for table_name, key, delta in plan.items():
            self.apply_delta(conn, table_name, key, delta)
            touched += 1
        return touched

    def mark_visitor(self, conn: Connection, site_id: str, ts_ms: int, visitor_id: str) -> Tuple[bool, bool]:
        """Record presence; returns (first in day, first in hour) for the visitor."""
        d, h = bucket_of(ts_ms)
        first_day = self._insert_presence(conn, visitor_daily,
                                          {"site_id": site_id, "date": d, "visitor_id": visitor_id})
        first_hour = self._insert_presence(conn, visitor_hourly,
                                           {"site_id": site_id, "date": d, "hour": h, "visitor_id": visitor_id})
        return first_day, first_hour

    def _insert_presence(self, conn: Connection, table: Table, values: Dict[str, object]) -> bool:
        dialect = conn.dialect.name
        if dialect in ("postgresql", "sqlite"):
            insert_fn = postgresql.insert if dialect == "postgresql" else sqlite.insert
            result = conn.execute(insert_fn(table).values(**values).on_conflict_do_nothing())
            return result.rowcount == 1
        where = and_(*[table.c[k] == v for k, v in values.items()])
        if conn.execute(select(table.c.site_id).where(where).with_for_update()).first() is not None:
            return False
        conn.execute(insert(table).values(**values))
        return True

    def load_window(self, conn: Connection, window: Window) -> RollupSet:
        out = empty_rollups()
        for table_name, (table, _, fields) in TABLE_SPECS.items():
            rows = conn.execute(select(table).where(_window_clause(table, window))).mappings()
            for row in rows:
                out[table_name][key_from_row(table_name, row)] = Metrics.from_row(row, fields)
        return out

    def delete_window(self, conn: Connection, window: Window) -> Dict[str, int]:
        deleted: Dict[str, int] = {}
        for table_name, (table, _, _) in TABLE_SPECS.items():
            deleted[table_name] = conn.execute(delete(table).where(_window_clause(table, window))).rowcount
        for table in (visitor_daily, visitor_hourly):
            conn.execute(delete(table).where(_window_clause(table, window)))
        return deleted

    def replace_window(self, conn: Connection, window: Window, rollups: RollupSet,
                       visitors_daily: Set[Tuple], visitors_hourly: Set[Tuple],
                       chunk_size: int = 500) -> Dict[str, int]:
        """Delete everything in the window, then insert the given rows in chunks.

        `visitors_daily` holds (site_id, date, visitor_id) tuples and
        `visitors_hourly` (site_id, date, hour, visitor_id); both are written so
        live ingestion keeps counting distinct visitors correctly afterwards.
        """
        self.delete_window(conn, window)
        written: Dict[str, int] = {}
        for table_name, (table, _, fields) in TABLE_SPECS.items():
            rows = [
                {**key_columns(table_name, key), **metrics.as_dict(fields)}
                for key, metrics in rollups.get(table_name, {}).items()
                if not metrics.is_zero()
            ]
            for chunk in _chunks(rows, chunk_size):
                conn.execute(insert(table), chunk)
            written[table_name] = len(rows)

        daily_rows = [dict(zip(("site_id", "date", "visitor_id"), v)) for v in sorted(visitors_daily)]
        hourly_rows = [dict(zip(("site_id", "date", "hour", "visitor_id"), v)) for v in sorted(visitors_hourly)]
        for table, rows in ((visitor_daily, daily_rows), (visitor_hourly, hourly_rows)):
            for chunk in _chunks(rows, chunk_size):
                conn.execute(insert(table), chunk)
        return written
