"""Server-side goals: a backend reports a conversion for a visitor the
tracker has already seen. The goal is stamped with the receipt time and
goes through the same ingest path as tracker events."""

from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, StringConstraints
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from typing_extensions import Annotated

from rollups.auth import SiteRecord
from rollups.errors import StorageError, UnknownVisitorError, ValidationError
from rollups.ingest import IngestResult, IngestService
from rollups.raw_log import has_pageview
from rollups.validation import MetadataValue, metadata_issues, validate_payload

logger = logging.getLogger(__name__)

MAX_GOAL_METADATA_KEYS = 10


class GoalRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    datafast_visitor_id: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=128)]
    name: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=64,
                                           pattern=r"^[a-z0-9_-]+$")]
    metadata: Optional[Dict[str, MetadataValue]] = None


def parse_goal(body: Dict[str, Any]) -> GoalRequest:
    details = []
    req: Optional[GoalRequest] = None
    try:
        req = GoalRequest.model_validate(body)
    except PydanticValidationError as exc:
        details = [{"path": list(e.get("loc", ())), "message": e.get("msg", "Invalid value")} for e in exc.errors()]
    details.extend(metadata_issues(body.get("metadata"), max_keys=MAX_GOAL_METADATA_KEYS))
    if details or req is None:
        raise ValidationError(details)
    return req


def record_goal(engine: Engine, service: IngestService, site: SiteRecord, req: GoalRequest,
                now: Optional[datetime] = None) -> IngestResult:
    now = now or datetime.now(timezone.utc)
    try:
        with engine.connect() as conn:
            seen = has_pageview(conn, site.id, req.datafast_visitor_id)
    except SQLAlchemyError as exc:
        logger.exception("visitor lookup failed", extra={"site_id": site.id})
        raise StorageError() from exc
    if not seen:
        raise UnknownVisitorError()

    payload = validate_payload({
        "type": "goal",
        "name": req.name,
        "websiteId": site.id,
        "domain": site.domain,
        "path": "/",
        "visitorId": req.datafast_visitor_id,
        "metadata": req.metadata or {},
    }, now=now)
    return service.ingest(site.id, payload, received_at=now)
