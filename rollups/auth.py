from __future__ import annotations
import logging
import secrets
import uuid
from typing import NamedTuple, Optional

from sqlalchemy import insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from rollups.errors import AuthError, ForbiddenError, StorageError
from rollups.models import Site

logger = logging.getLogger(__name__)

sites = Site.__table__


class SiteRecord(NamedTuple):
    id: str
    domain: str


def extract_api_key(authorization: Optional[str], query_key: Optional[str] = None) -> Optional[str]:
    if authorization:
        scheme, _, token = authorization.strip().partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
    if query_key and query_key.strip():
        return query_key.strip()
    return None


def resolve_site(engine: Engine, api_key: Optional[str]) -> SiteRecord:
    if not api_key:
        raise AuthError("Missing API key")
    try:
        with engine.connect() as conn:
            row = conn.execute(
                select(sites.c.id, sites.c.domain).where(sites.c.api_key == api_key)
            ).first()
    except SQLAlchemyError as exc:
        logger.exception("site lookup failed")
        raise StorageError() from exc
    if row is None:
        logger.warning("unknown api key")
        raise AuthError("Invalid API key")
    return SiteRecord(row.id, row.domain)


def authenticate(engine: Engine, authorization: Optional[str], query_key: Optional[str] = None,
                 website_id: Optional[str] = None) -> SiteRecord:
    site = resolve_site(engine, extract_api_key(authorization, query_key))
    if website_id is not None and website_id != site.id:
        logger.warning("site mismatch", extra={"site_id": site.id, "website_id": website_id})
        raise ForbiddenError("API key does not match websiteId")
    return site


def create_site(engine: Engine, domain: str, site_id: Optional[str] = None,
                api_key: Optional[str] = None) -> tuple:
    """Register a site; returns (SiteRecord, api_key)."""
    site_id = site_id or str(uuid.uuid4())
    api_key = api_key or secrets.token_urlsafe(24)
    with engine.begin() as conn:
        conn.execute(insert(sites).values(id=site_id, domain=domain, api_key=api_key))
    return SiteRecord(site_id, domain), api_key
