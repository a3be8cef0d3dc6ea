"""Ingest Validator.

Pure: takes the raw request body, returns a canonical `IngestPayload` or
raises `ValidationError` listing every violation together with the
allow-list document. Nothing here touches storage.
"""

from __future__ import annotations
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import orjson
from pydantic import BaseModel, ConfigDict, StringConstraints
from pydantic import ValidationError as PydanticValidationError
from typing_extensions import Annotated

from rollups.buckets import datetime_to_ms
from rollups.errors import PayloadTooLarge, ValidationError
from rollups.normalize import sanitize_text

SUPPORTED_VERSIONS = (1,)
SUPPORTED_TYPES = ("pageview", "goal", "identify", "payment")

MAX_STRING_LENGTH = 512
MAX_METADATA_KEYS = 12
MAX_METADATA_KEY_LENGTH = 64
MAX_METADATA_VALUE_LENGTH = 255
MAX_FUTURE_EVENT_MS = 24 * 60 * 60 * 1000

ALLOWED_TOP_LEVEL_KEYS = (
    "v", "type", "name", "websiteId", "domain", "path", "referrer", "ts", "timestamp",
    "visitorId", "session_id", "sessionId", "eventId", "metadata",
    "utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content", "source", "via", "ref",
)

_METADATA_KEY = re.compile(r"^[a-z0-9_-]+$")

Id = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=128)]
Name = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=64)]
Domain = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=255)]
Path = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=1024)]
Referrer = Annotated[str, StringConstraints(strip_whitespace=True, max_length=1024)]
Tracking = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=255)]
EventType = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=32)]
MetadataValue = Union[bool, int, float, str, None]


class IngestPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    v: Optional[int] = None
    type: EventType
    name: Optional[Name] = None
    websiteId: Id
    domain: Domain
    path: Path
    referrer: Optional[Referrer] = None
    ts: Optional[int] = None
    timestamp: Optional[datetime] = None
    visitorId: Id
    session_id: Optional[Id] = None
    sessionId: Optional[Id] = None
    eventId: Optional[Id] = None
    metadata: Optional[Dict[str, MetadataValue]] = None
    utm_source: Optional[Tracking] = None
    utm_medium: Optional[Tracking] = None
    utm_campaign: Optional[Tracking] = None
    utm_term: Optional[Tracking] = None
    utm_content: Optional[Tracking] = None
    source: Optional[Tracking] = None
    via: Optional[Tracking] = None
    ref: Optional[Tracking] = None

    @property
    def session(self) -> Optional[str]:
        return self.sessionId or self.session_id

    def event_time_ms(self, received_ms: int) -> int:
        if self.ts is not None:
            return int(self.ts)
        if self.timestamp is not None:
            return datetime_to_ms(self.timestamp)
        return received_ms


def allowlist_docs(max_payload_bytes: int) -> Dict[str, Any]:
    return {
        "maxPayloadBytes": max_payload_bytes,
        "allowedKeys": list(ALLOWED_TOP_LEVEL_KEYS),
        "maxStringLength": MAX_STRING_LENGTH,
        "maxMetadataKeys": MAX_METADATA_KEYS,
        "maxMetadataKeyLength": MAX_METADATA_KEY_LENGTH,
        "maxMetadataValueLength": MAX_METADATA_VALUE_LENGTH,
    }


def _issue(path: List[Any], message: str) -> Dict[str, Any]:
    return {"path": path, "message": message}


def parse_body(raw: bytes, max_payload_bytes: int) -> Dict[str, Any]:
    if len(raw) > max_payload_bytes:
        raise PayloadTooLarge(max_payload_bytes)
    try:
        body = orjson.loads(raw) if raw else {}
    except orjson.JSONDecodeError:
        raise ValidationError([], message="Invalid JSON body")
    if not isinstance(body, dict):
        raise ValidationError([], message="Invalid payload")
    return body


def resolve_version(body: Dict[str, Any]) -> Optional[int]:
    raw = body.get("v")
    if raw is None or raw == "":
        return 1
    if isinstance(raw, bool):
        return None
    try:
        parsed = float(raw)
    except (TypeError, ValueError):
        return None
    if not parsed.is_integer():
        return None
    return int(parsed)


def metadata_issues(metadata: Any, max_keys: int = MAX_METADATA_KEYS) -> List[Dict[str, Any]]:
    if not isinstance(metadata, dict):
        return []
    issues: List[Dict[str, Any]] = []
    if len(metadata) > max_keys:
        issues.append(_issue(["metadata"], f"metadata cannot exceed {max_keys} entries"))
    for raw_key, raw_value in metadata.items():
        key = str(raw_key).strip().lower()
        if not key:
            issues.append(_issue(["metadata"], "metadata keys cannot be empty"))
            continue
        if len(key) > MAX_METADATA_KEY_LENGTH:
            issues.append(_issue(["metadata", raw_key], f"metadata key exceeds {MAX_METADATA_KEY_LENGTH} characters"))
        if not _METADATA_KEY.match(key):
            issues.append(_issue(["metadata", raw_key], "metadata key contains invalid characters"))
        if isinstance(raw_value, str):
            trimmed = raw_value.strip()
            if not trimmed:
                issues.append(_issue(["metadata", raw_key], "metadata value cannot be empty"))
            elif len(trimmed) > MAX_METADATA_VALUE_LENGTH:
                issues.append(_issue(["metadata", raw_key],
                                     f"metadata value exceeds {MAX_METADATA_VALUE_LENGTH} characters"))
    return issues


def sanitize_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for raw_key, raw_value in (metadata or {}).items():
        key = str(raw_key).strip().lower()
        if not key or len(key) > MAX_METADATA_KEY_LENGTH or not _METADATA_KEY.match(key):
            continue
        if isinstance(raw_value, str):
            cleaned = sanitize_text(raw_value, MAX_METADATA_VALUE_LENGTH)
            if cleaned:
                out[key] = cleaned
        else:
            out[key] = raw_value
    return out


def _rule_issues(body: Dict[str, Any]) -> List[Dict[str, Any]]:
    issues: List[Dict[str, Any]] = []
    raw_type = body.get("type")
    event_type = raw_type.strip() if isinstance(raw_type, str) else None
    if event_type and event_type not in SUPPORTED_TYPES:
        issues.append(_issue(["type"], f'Unsupported event type "{event_type}"'))

    name = body.get("name")
    if event_type == "goal" and not (isinstance(name, str) and name.strip()):
        issues.append(_issue(["name"], "Goal events require a name"))

    if event_type == "identify":
        metadata = body.get("metadata") if isinstance(body.get("metadata"), dict) else {}
        lowered = {str(k).strip().lower(): v for k, v in metadata.items()}
        user_id = lowered.get("user_id")
        if not (isinstance(user_id, str) and user_id.strip()):
            issues.append(_issue(["metadata", "user_id"], "Identify events require metadata.user_id"))

    issues.extend(metadata_issues(body.get("metadata")))
    return issues


def _future_issues(payload: IngestPayload, now_ms: int) -> List[Dict[str, Any]]:
    limit = now_ms + MAX_FUTURE_EVENT_MS
    if payload.ts is not None and payload.ts > limit:
        return [_issue(["ts"], "ts cannot be more than 24h in the future")]
    if payload.ts is None and payload.timestamp is not None and datetime_to_ms(payload.timestamp) > limit:
        return [_issue(["timestamp"], "timestamp cannot be more than 24h in the future")]
    return []


def _pydantic_issues(exc: PydanticValidationError) -> List[Dict[str, Any]]:
    issues = []
    for err in exc.errors():
        message = "Key is not allowlisted" if err.get("type") == "extra_forbidden" else err.get("msg", "Invalid value")
        issues.append(_issue(list(err.get("loc", ())), message))
    return issues


def validate_payload(body: Dict[str, Any], max_payload_bytes: int = 32 * 1024,
                     now: Optional[datetime] = None) -> IngestPayload:
    now_ms = datetime_to_ms(now or datetime.now(timezone.utc))
    allowlist = allowlist_docs(max_payload_bytes)

    version = resolve_version(body)
    if version is None:
        raise ValidationError([_issue(["v"], "Schema version must be an integer")], allowlist=allowlist)
    if version not in SUPPORTED_VERSIONS:
        raise ValidationError([_issue(["v"], f"Unsupported schema version {version}")],
                              message="Unsupported schema version",
                              extra={"supported": list(SUPPORTED_VERSIONS)})

    issues: List[Dict[str, Any]] = []
    payload: Optional[IngestPayload] = None
    try:
        payload = IngestPayload.model_validate(body)
    except PydanticValidationError as exc:
        issues.extend(_pydantic_issues(exc))
    issues.extend(_rule_issues(body))
    if payload is not None:
        issues.extend(_future_issues(payload, now_ms))

    if issues or payload is None:
        raise ValidationError(issues, allowlist=allowlist)

    payload.metadata = sanitize_metadata(payload.metadata)
    return payload
