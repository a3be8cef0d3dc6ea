from __future__ import annotations
import logging
import time
from typing import Any, Dict, Optional

import orjson
from aiokafka import AIOKafkaConsumer
from sqlalchemy.engine import Engine

from rollups.config import Settings
from rollups.db import make_engine
from rollups.errors import ValidationError
from rollups.ingest import IngestService
from rollups.validation import validate_payload

logger = logging.getLogger(__name__)


class IngestRunner:
    """Consumes `{site_id, payload, user_agent?, headers?}` envelopes from trusted
    server-side producers and feeds them through the live ingest path.

    Every event commits to the database on its own; Kafka offsets are committed
    in batches, so a crash replays at most one batch and client event ids
    dedupe the replay.
    """

    def __init__(self, settings: Settings, engine: Optional[Engine] = None):
        self.s = settings
        self.service = IngestService(engine or make_engine(settings.database_url))
        self._consumer: Optional[AIOKafkaConsumer] = None
        self._last_commit = time.time()
        self._buffered = 0
        self.stats: Dict[str, int] = {"ingested": 0, "deduped": 0, "rejected": 0}

    async def start(self):
        self._consumer = AIOKafkaConsumer(
            self.s.topic,
            bootstrap_servers=self.s.kafka_bootstrap,
            group_id=self.s.group,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
            max_poll_records=self.s.max_buffer_events,
        )
        await self._consumer.start()
        logger.info("runner started", extra={"topic": self.s.topic, "group": self.s.group})

    async def stop(self):
        if self._consumer:
            await self._consumer.stop()
            self._consumer = None

    async def run_forever(self):
        assert self._consumer is not None
        try:
            async for msg in self._consumer:
                self.handle_message(msg.value)
                self._buffered += 1
                if (time.time() - self._last_commit) >= self.s.flush_interval_seconds \
                        or self._buffered >= self.s.max_buffer_events:
                    await self.commit()
        finally:
            await self.stop()

    def handle_message(self, raw: bytes) -> str:
        """Ingest one envelope; returns "ingested", "deduped" or "rejected"."""
        try:
            envelope: Dict[str, Any] = orjson.loads(raw)
        except orjson.JSONDecodeError:
            logger.warning("undecodable envelope skipped")
            self.stats["rejected"] += 1
            return "rejected"

        site_id = envelope.get("site_id") if isinstance(envelope, dict) else None
        body = envelope.get("payload") if isinstance(envelope, dict) else None
        if not site_id or not isinstance(body, dict):
            logger.warning("malformed envelope skipped")
            self.stats["rejected"] += 1
            return "rejected"

        try:
            payload = validate_payload(body, self.s.ingest_max_payload_bytes)
        except ValidationError as exc:
            logger.warning("invalid event skipped", extra={"site_id": site_id, "details": exc.details})
            self.stats["rejected"] += 1
            return "rejected"
        if payload.websiteId != site_id:
            logger.warning("site mismatch skipped", extra={"site_id": site_id, "website_id": payload.websiteId})
            self.stats["rejected"] += 1
            return "rejected"

        headers = envelope.get("headers") if isinstance(envelope.get("headers"), dict) else {}
        result = self.service.ingest(site_id, payload, user_agent=envelope.get("user_agent"), headers=headers)
        outcome = "deduped" if result.deduped else "ingested"
        self.stats[outcome] += 1
        return outcome

    async def commit(self):
        assert self._consumer is not None
        await self._consumer.commit()
        logger.info("offsets committed", extra={"batch": self._buffered, **self.stats})
        self._last_commit = time.time()
        self._buffered = 0
