# Overview: Append-only coupon audit trail; masks PII before it is stored.

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func

from ..extensions import db
from ..models import CouponEvent, EventType
from .pii_masking import mask_phone, mask_token
"""
Coupon Event Log Invariants

- Write-once, read-many. There is no update or delete path.
- Events are written inside the same DB transaction as the ledger change they
  record: log_event() flushes but never commits.
- phone/token inside `details` are masked before persisting. The phone and
  token columns hold the ledger keys so history can be looked up.
"""


DEFAULT_PHONE_LIMIT = 100
DEFAULT_TYPE_LIMIT = 100
DEFAULT_RECENT_LIMIT = 50


def _mask_details(details: dict[str, Any] | None) -> dict[str, Any] | None:
    if not details:
        return details
    masked = dict(details)
    if masked.get("phone"):
        masked["phone"] = mask_phone(masked["phone"])
    if masked.get("token"):
        masked["token"] = mask_token(masked["token"])
    return masked


def log_event(
    event: EventType | str,
    *,
    phone: str | None = None,
    token: str | None = None,
    details: dict[str, Any] | None = None,
) -> CouponEvent:
    """
    Append one audit event to the current transaction.

    Returns the flushed CouponEvent (id assigned).
    """
    event_value = event.value if isinstance(event, EventType) else EventType(event).value

    row = CouponEvent(
        phone=phone,
        event=event_value,
        token=token,
        details=_mask_details(details),
    )
    db.session.add(row)
    db.session.flush()
    return row


def _newest_first(query):
    return query.order_by(CouponEvent.created_at.desc(), CouponEvent.id.desc())


def get_events_by_phone(phone: str, limit: int = DEFAULT_PHONE_LIMIT) -> list[CouponEvent]:
    query = db.session.query(CouponEvent).filter(CouponEvent.phone == phone)
    return _newest_first(query).limit(limit).all()


def get_events_by_token(token: str) -> list[CouponEvent]:
    """Full lifecycle of a single token, newest first."""
    query = db.session.query(CouponEvent).filter(CouponEvent.token == token)
    return _newest_first(query).all()


def get_events_by_type(event: EventType | str, limit: int = DEFAULT_TYPE_LIMIT) -> list[CouponEvent]:
    event_value = event.value if isinstance(event, EventType) else EventType(event).value
    query = db.session.query(CouponEvent).filter(CouponEvent.event == event_value)
    return _newest_first(query).limit(limit).all()


def get_recent_events(limit: int = DEFAULT_RECENT_LIMIT) -> list[CouponEvent]:
    return _newest_first(db.session.query(CouponEvent)).limit(limit).all()


def get_event_counts(
    start: datetime | None = None,
    end: datetime | None = None,
) -> dict[str, int]:
    """
    Count events by type, optionally within [start, end] (inclusive).
    """
    query = db.session.query(CouponEvent.event, func.count(CouponEvent.id))
    if start is not None:
        query = query.filter(CouponEvent.created_at >= start)
    if end is not None:
        query = query.filter(CouponEvent.created_at <= end)

    return {event: count for event, count in query.group_by(CouponEvent.event).all()}
