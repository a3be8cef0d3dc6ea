from __future__ import annotations
from typing import Any, Dict, List, Optional


class IngestError(Exception):
    status_code = 500
    message = "Internal error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        self.message = message or self.message

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.message}


class ValidationError(IngestError):
    """Malformed or disallowed payload. Every violation is listed in `details`."""

    status_code = 400
    message = "Invalid request"

    def __init__(self, details: List[Dict[str, Any]], message: Optional[str] = None,
                 allowlist: Optional[Dict[str, Any]] = None, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details
        self.allowlist = allowlist
        self.extra = extra or {}

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "details": self.details}
        if self.allowlist is not None:
            body["allowlist"] = self.allowlist
        body.update(self.extra)
        return body


class PayloadTooLarge(IngestError):
    status_code = 413
    message = "Payload too large"

    def __init__(self, limit: int):
        super().__init__()
        self.limit = limit

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.message, "limit": self.limit}


class AuthError(IngestError):
    status_code = 401
    message = "Unauthorized"


class ForbiddenError(AuthError):
    status_code = 403
    message = "Forbidden"


class RateLimitError(IngestError):
    status_code = 429
    message = "Rate limit exceeded"

    def __init__(self, retry_after: int):
        super().__init__()
        self.retry_after = max(1, int(retry_after))

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.message, "retry_after": self.retry_after}


class ConflictError(IngestError):
    """(siteId, eventId) already stored. Converted to a deduped success."""

    status_code = 200
    message = "Event already processed"

    def __init__(self, site_id: str, event_id: str):
        super().__init__()
        self.site_id = site_id
        self.event_id = event_id


class StorageError(IngestError):
    status_code = 500
    message = "Storage failure"


class RebuildWindowError(IngestError):
    status_code = 400
    message = "Invalid rebuild window"


class UnknownVisitorError(IngestError):
    status_code = 409
    message = "Visitor must have a prior pageview before goals can be recorded"
