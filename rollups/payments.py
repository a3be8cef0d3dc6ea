"""Custom payments API: one payment request becomes a `payment` event plus a
companion `goal` event, both keyed by the transaction so provider retries
dedupe like any other ingest retry."""

from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, StringConstraints, field_validator
from pydantic import ValidationError as PydanticValidationError
from typing_extensions import Annotated

from rollups.auth import SiteRecord
from rollups.buckets import datetime_to_ms
from rollups.errors import ValidationError
from rollups.validation import IngestPayload, validate_payload

PaymentId = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=100)]
Email = Annotated[str, StringConstraints(strip_whitespace=True, max_length=255,
                                         pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")]


class PaymentRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    amount: int  # minor units
    currency: Annotated[str, StringConstraints(strip_whitespace=True, min_length=3, max_length=10, to_lower=True)]
    transaction_id: PaymentId
    visitor_id: Optional[PaymentId] = None
    customer_id: Optional[PaymentId] = None
    email: Optional[Email] = None
    name: Optional[Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=128)]] = None
    renewal: Optional[bool] = None
    refunded: Optional[bool] = None
    timestamp: Optional[datetime] = None

    @field_validator("amount")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("amount must be non-negative")
        return v

    @property
    def event_type(self) -> str:
        if self.refunded:
            return "refund"
        if self.renewal:
            return "renewal"
        return "new"


def parse_payment(body: Dict[str, Any]) -> PaymentRequest:
    try:
        return PaymentRequest.model_validate(body)
    except PydanticValidationError as exc:
        details = [{"path": list(e.get("loc", ())), "message": e.get("msg", "Invalid value")} for e in exc.errors()]
        raise ValidationError(details)


def _metadata(req: PaymentRequest, full: bool) -> Dict[str, Any]:
    meta: Dict[str, Any] = {
        "provider": "custom",
        "transaction_id": req.transaction_id,
        "amount": req.amount,
        "currency": req.currency,
        "event_type": req.event_type,
    }
    if not full:
        return meta
    if req.customer_id:
        meta["customer_id"] = req.customer_id
    if req.email:
        meta["email"] = req.email
    if req.name:
        meta["name"] = req.name
    if req.renewal is not None:
        meta["renewal"] = req.renewal
    if req.refunded is not None:
        meta["refunded"] = req.refunded
    return meta


def goal_name(amount: int) -> str:
    return "free_trial" if amount == 0 else "payment"


def translate_payment(site: SiteRecord, req: PaymentRequest, now: Optional[datetime] = None) -> List[IngestPayload]:
    """Payment and goal ingest events for one request.

    Payments carry no pageview so they never count visitors; without a
    visitor id the customer (or transaction) stands in as the event's visitor.
    """
    when = req.timestamp or now or datetime.now(timezone.utc)
    ts = datetime_to_ms(when)
    visitor = req.visitor_id or (f"customer:{req.customer_id}" if req.customer_id else f"txn:{req.transaction_id}")
    common = {"websiteId": site.id, "domain": site.domain, "path": "/", "visitorId": visitor, "ts": ts}
    bodies = [
        {
            **common,
            "type": "payment",
            "name": "custom_payment",
            "eventId": f"payment:{req.event_type}:{req.transaction_id}",
            "metadata": _metadata(req, full=True),
        },
        {
            **common,
            "type": "goal",
            "name": goal_name(req.amount),
            "eventId": f"goal:{req.event_type}:{req.transaction_id}",
            "metadata": _metadata(req, full=False),
        },
    ]
    return [validate_payload(body, now=now) for body in bodies]
