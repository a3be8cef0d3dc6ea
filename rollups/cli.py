from __future__ import annotations
import argparse, asyncio
from datetime import datetime, timezone

import orjson
import uvicorn

from rollups.auth import create_site
from rollups.config import settings
from rollups.db import init_db, make_engine
from rollups.logging_config import configure_logging
from rollups.producer import produce_events
from rollups.rebuild import RebuildEngine
from rollups.retention import run_retention
from rollups.runner import IngestRunner


def _print(data):
    print(orjson.dumps(data, option=orjson.OPT_INDENT_2, default=str).decode())


def _date(s: str) -> datetime:
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def cmd_api(args):
    uvicorn.run("rollups.api:create_app", factory=True, host=args.host, port=args.port, reload=False,
                log_config=None)


def cmd_run(args):
    s = settings.model_copy(update={
        "kafka_bootstrap": args.kafka_bootstrap,
        "topic": args.topic,
        "group": args.group,
        "flush_interval_seconds": args.flush_interval_seconds,
        "max_buffer_events": args.max_buffer_events,
        "database_url": args.database_url,
    })

    async def _main():
        runner = IngestRunner(s)
        await runner.start()
        await runner.run_forever()

    asyncio.run(_main())


def cmd_produce(args):
    asyncio.run(produce_events(
        bootstrap=args.kafka_bootstrap,
        topic=args.topic,
        site_id=args.site_id,
        domain=args.domain,
        rate_per_sec=args.rate,
        seconds=args.seconds,
        visitor_pool=args.visitors,
    ))


def cmd_rebuild(args):
    s = settings.model_copy(update={"database_url": args.database_url})
    engine = RebuildEngine(make_engine(s.database_url), s)
    summary = engine.run(args.site_id, _date(args.from_date), _date(args.to_date),
                         dry_run=args.dry_run, include_diff=args.diff)
    _print(summary.to_dict())


def cmd_retention(args):
    _print(run_retention(make_engine(args.database_url), settings))


def cmd_init_db(args):
    init_db(make_engine(args.database_url))


def cmd_add_site(args):
    engine = make_engine(args.database_url)
    site, api_key = create_site(engine, args.domain, site_id=args.site_id, api_key=args.api_key)
    _print({"site_id": site.id, "domain": site.domain, "api_key": api_key})


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="rollups")
    sub = p.add_subparsers(dest="cmd", required=True)

    a = sub.add_parser("api")
    a.add_argument("--host", default="0.0.0.0")
    a.add_argument("--port", type=int, default=8000)
    a.set_defaults(fn=cmd_api)

    r = sub.add_parser("run")
    r.add_argument("--kafka-bootstrap", default=settings.kafka_bootstrap)
    r.add_argument("--topic", default=settings.topic)
    r.add_argument("--group", default=settings.group)
    r.add_argument("--flush-interval-seconds", type=float, default=settings.flush_interval_seconds)
    r.add_argument("--max-buffer-events", type=int, default=settings.max_buffer_events)
    r.add_argument("--database-url", default=settings.database_url)
    r.set_defaults(fn=cmd_run)

    pr = sub.add_parser("produce")
    pr.add_argument("--kafka-bootstrap", default=settings.kafka_bootstrap)
    pr.add_argument("--topic", default=settings.topic)
    pr.add_argument("--site-id", required=True)
    pr.add_argument("--domain", default="example.com")
    pr.add_argument("--rate", type=int, default=200)
    pr.add_argument("--seconds", type=int, default=30)
    pr.add_argument("--visitors", type=int, default=200)
    pr.set_defaults(fn=cmd_produce)

    rb = sub.add_parser("rebuild")
    rb.add_argument("--site-id", default=None)
    rb.add_argument("--from", dest="from_date", required=True)
    rb.add_argument("--to", dest="to_date", required=True)
    rb.add_argument("--dry-run", action="store_true")
    rb.add_argument("--diff", action="store_true")
    rb.add_argument("--database-url", default=settings.database_url)
    rb.set_defaults(fn=cmd_rebuild)

    rt = sub.add_parser("retention")
    rt.add_argument("--database-url", default=settings.database_url)
    rt.set_defaults(fn=cmd_retention)

    i = sub.add_parser("init-db")
    i.add_argument("--database-url", default=settings.database_url)
    i.set_defaults(fn=cmd_init_db)

    s = sub.add_parser("add-site")
    s.add_argument("--domain", required=True)
    s.add_argument("--site-id", default=None)
    s.add_argument("--api-key", default=None)
    s.add_argument("--database-url", default=settings.database_url)
    s.set_defaults(fn=cmd_add_site)
    return p


def main(argv=None):
    args = build_parser().parse_args(argv)
    configure_logging("rollups", settings.environment, settings.log_level)
    args.fn(args)


if __name__ == "__main__":
    main()
