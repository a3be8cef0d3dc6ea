from __future__ import annotations
import hmac
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import ORJSONResponse
from starlette.concurrency import run_in_threadpool
from sqlalchemy.engine import Engine

from rollups.auth import authenticate
from rollups.config import Settings, settings as default_settings
from rollups.db import make_engine
from rollups.errors import AuthError, IngestError, PayloadTooLarge, RateLimitError, ValidationError
from rollups.goals import parse_goal, record_goal
from rollups.ingest import IngestService
from rollups.payments import parse_payment, translate_payment
from rollups.ratelimit import RateLimiter, build_rate_limiter, get_client_ip
from rollups.rebuild import RebuildEngine
from rollups.validation import parse_body, validate_payload

logger = logging.getLogger(__name__)

TRUE_VALUES = ("1", "true", "yes")


def _flag(request: Request, *names: str) -> bool:
    return any((request.query_params.get(n) or "").lower() in TRUE_VALUES for n in names)


def _parse_when(value: Optional[str], label: str) -> datetime:
    if not value:
        raise ValidationError([{"path": [label], "message": f"{label} is required"}], message=f"{label} is required")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError([{"path": [label], "message": f"{label} is invalid"}], message=f"{label} is invalid")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


async def _read_body(request: Request, limit: int) -> bytes:
    length = request.headers.get("content-length")
    if length and length.isdigit() and int(length) > limit:
        raise PayloadTooLarge(limit)
    return await request.body()


def _client_ip(request: Request) -> str:
    return get_client_ip(request.headers, request.client.host if request.client else None)


def _cron_token(request: Request) -> Optional[str]:
    scheme, _, token = (request.headers.get("authorization") or "").partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return request.headers.get("x-cron-secret") or request.query_params.get("secret")


def create_app(settings: Optional[Settings] = None, engine: Optional[Engine] = None,
               limiter: Optional[RateLimiter] = None) -> FastAPI:
    s = settings or default_settings
    engine = engine or make_engine(s.database_url)
    limiter = limiter or build_rate_limiter(s)
    service = IngestService(engine)
    rebuilder = RebuildEngine(engine, s)

    app = FastAPI(title="Rollup Ingest API", version="1.0.0", default_response_class=ORJSONResponse)
    app.state.settings = s
    app.state.engine = engine
    app.state.limiter = limiter

    @app.exception_handler(IngestError)
    async def _ingest_error(request: Request, exc: IngestError):
        headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimitError) else None
        if isinstance(exc, ValidationError):
            logger.info("request rejected", extra={"path": request.url.path, "details": exc.details})
        return ORJSONResponse(exc.to_body(), status_code=exc.status_code, headers=headers)

    @app.get("/health")
    def health():
        return {"ok": True}

    async def _ingest(request: Request):
        raw = await _read_body(request, s.ingest_max_payload_bytes)
        payload = validate_payload(parse_body(raw, s.ingest_max_payload_bytes), s.ingest_max_payload_bytes)
        site = await run_in_threadpool(authenticate, engine, request.headers.get("authorization"),
                                       request.query_params.get("api_key"), payload.websiteId)
        await run_in_threadpool(limiter.check, _client_ip(request), site.id, "ingest")
        result = await run_in_threadpool(service.ingest, site.id, payload,
                                         request.headers.get("user-agent"), dict(request.headers))
        return result.to_body()

    app.add_api_route("/ingest", _ingest, methods=["POST"])
    app.add_api_route("/v1/ingest", _ingest, methods=["POST"])

    @app.post("/v1/payments")
    async def payments(request: Request):
        site = await run_in_threadpool(authenticate, engine, request.headers.get("authorization"))
        await run_in_threadpool(limiter.check, _client_ip(request), site.id, "payments")
        body = parse_body(await _read_body(request, s.ingest_max_payload_bytes), s.ingest_max_payload_bytes)
        events = translate_payment(site, parse_payment(body))
        results = [await run_in_threadpool(service.ingest, site.id, p) for p in events]
        if all(r.deduped for r in results):
            return {"ok": True, "deduped": True}
        return {"ok": True}

    @app.post("/v1/goals")
    async def goals(request: Request):
        site = await run_in_threadpool(authenticate, engine, request.headers.get("authorization"))
        await run_in_threadpool(limiter.check, _client_ip(request), site.id, "api")
        body = parse_body(await _read_body(request, s.ingest_max_payload_bytes), s.ingest_max_payload_bytes)
        result = await run_in_threadpool(record_goal, engine, service, site, parse_goal(body))
        return result.to_body()

    def _rebuild(request: Request):
        if not s.rollup_rebuild_secret:
            return ORJSONResponse({"error": "Rollup rebuild secret not configured"}, status_code=500)
        token = _cron_token(request)
        if not token or not hmac.compare_digest(token.encode(), s.rollup_rebuild_secret.encode()):
            raise AuthError()
        summary = rebuilder.run(
            site_id=request.query_params.get("siteId") or request.query_params.get("site_id"),
            from_ts=_parse_when(request.query_params.get("from"), "from"),
            to_ts=_parse_when(request.query_params.get("to"), "to"),
            dry_run=_flag(request, "dryRun", "dry_run"),
            include_diff=_flag(request, "diff", "includeDiff", "include_diff"),
        )
        return summary.to_dict()

    app.add_api_route("/v1/rollups/rebuild", _rebuild, methods=["GET", "POST"])
    return app
