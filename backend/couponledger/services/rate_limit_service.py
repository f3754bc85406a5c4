"""
Coupon Rate Limiting Service

WHY: A phone number should not be able to farm coupons or hammer the claim
endpoint. Each (phone, endpoint) pair gets a daily quota that resets at local
midnight in the reference timezone (Europe/Istanbul by default).

DESIGN:
- Counters are rows in coupon_rate_limits, so quotas survive restarts
- check_limit() never touches counters; callers increment after the guarded
  operation succeeded
- A stale row (reset_at passed) counts as no row until maintenance deletes it
- Rejections feed an AbuseDetector owned by the app. It keeps an in-memory,
  best-effort tally per (phone, endpoint) and raises an audit warning at 50
  rejections within an hour, then every 10 more
"""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import CouponRateLimit, EventType
from couponledger.time_utils import next_local_midnight, to_utc_z, utcnow
from . import event_log_service
from .concurrency import atomic, lock_for_update
from .pii_masking import mask_phone


ENDPOINT_CONSUME = "consume"
ENDPOINT_CLAIM = "claim"
ALL_ENDPOINTS = {ENDPOINT_CONSUME, ENDPOINT_CLAIM}

DEFAULT_RESET_TIMEZONE = "Europe/Istanbul"
DETECTOR_EXTENSION_KEY = "abuse_detector"

DEFAULT_ABUSE_THRESHOLD = 50
DEFAULT_ABUSE_WINDOW = timedelta(hours=1)
DEFAULT_ABUSE_REPEAT_EVERY = 10


class RateLimitExceeded(Exception):
    """Raised by enforce_limit() when the daily quota is used up."""

    def __init__(self, endpoint: str, retry_after_seconds: int):
        super().__init__(f"Rate limit exceeded for {endpoint}; retry after {retry_after_seconds}s")
        self.endpoint = endpoint
        self.retry_after_seconds = retry_after_seconds


@dataclass(frozen=True)
class LimitDecision:
    allowed: bool
    retry_after_seconds: int | None = None


@dataclass
class AbuseWindow:
    count: int
    window_start: datetime


@dataclass(frozen=True)
class AbuseAlert:
    identity: str
    endpoint: str
    count: int
    window_start: datetime
    first: bool


class AbuseDetector:
    """
    Time-windowed tally of rate-limit rejections per (identity, endpoint).

    In-memory only: lost on restart, never used to gate requests.
    A window restarts once it is older than `window`, or after clear()/reset().
    Expired windows are dropped whenever a rejection is recorded or
    statistics are read, so idle identities do not accumulate.
    """

    def __init__(
        self,
        threshold: int = DEFAULT_ABUSE_THRESHOLD,
        window: timedelta = DEFAULT_ABUSE_WINDOW,
        repeat_every: int = DEFAULT_ABUSE_REPEAT_EVERY,
    ):
        self.threshold = threshold
        self.window = window
        self.repeat_every = repeat_every
        self._entries: dict[tuple[str, str], AbuseWindow] = {}
        self._lock = threading.Lock()

    def record_rejection(self, identity: str, endpoint: str, now: datetime | None = None) -> AbuseAlert | None:
        """
        Count one rejection. Returns an AbuseAlert when a warning is due.
        """
        now = now or utcnow()
        key = (identity, endpoint)

        with self._lock:
            self._prune(now)
            entry = self._entries.get(key)
            if entry is None:
                entry = AbuseWindow(count=0, window_start=now)
                self._entries[key] = entry

            entry.count += 1
            count = entry.count
            window_start = entry.window_start

        if count == self.threshold:
            return AbuseAlert(identity, endpoint, count, window_start, first=True)
        if count > self.threshold and (count - self.threshold) % self.repeat_every == 0:
            return AbuseAlert(identity, endpoint, count, window_start, first=False)
        return None

    def _expired(self, entry: AbuseWindow, now: datetime) -> bool:
        return now - entry.window_start > self.window

    def _prune(self, now: datetime) -> None:
        # Caller holds self._lock
        stale = [key for key, entry in self._entries.items() if self._expired(entry, now)]
        for key in stale:
            del self._entries[key]

    def get_count(self, identity: str, endpoint: str, now: datetime | None = None) -> int:
        entry = self._entries.get((identity, endpoint))
        if entry is None or self._expired(entry, now or utcnow()):
            return 0
        return entry.count

    def get_statistics(self, now: datetime | None = None) -> list[dict]:
        """Identities at or over the threshold in a live window (phones masked)."""
        now = now or utcnow()
        with self._lock:
            self._prune(now)
            items = list(self._entries.items())
        return [
            {
                "phone": mask_phone(identity),
                "endpoint": endpoint,
                "count": entry.count,
                "window_start": to_utc_z(entry.window_start),
            }
            for (identity, endpoint), entry in items
            if entry.count >= self.threshold
        ]

    def reset(self, identity: str, endpoint: str) -> None:
        with self._lock:
            self._entries.pop((identity, endpoint), None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def _resolve_detector(detector: AbuseDetector | None) -> AbuseDetector:
    if detector is not None:
        return detector
    return current_app.extensions[DETECTOR_EXTENSION_KEY]


def _reset_timezone(tz_name: str | None) -> str:
    if tz_name:
        return tz_name
    return current_app.config.get("COUPON_RESET_TIMEZONE", DEFAULT_RESET_TIMEZONE)


def calculate_next_reset(now: datetime | None = None, tz_name: str | None = None) -> datetime:
    """Next local midnight in the reset timezone, as UTC-naive."""
    return next_local_midnight(now or utcnow(), _reset_timezone(tz_name))


def get_counter(identity: str, endpoint: str) -> CouponRateLimit | None:
    return db.session.get(CouponRateLimit, (identity, endpoint))


def _report_abuse(alert: AbuseAlert) -> None:
    message = "Rate limit abuse detected" if alert.first else "Continued rate limit abuse"
    current_app.logger.warning(
        "%s: phone=%s endpoint=%s rejections=%d since %s",
        message,
        mask_phone(alert.identity),
        alert.endpoint,
        alert.count,
        to_utc_z(alert.window_start),
    )
    with atomic():
        event_log_service.log_event(
            EventType.RATE_LIMIT_ABUSE,
            phone=alert.identity,
            details={
                "message": message,
                "phone": alert.identity,
                "endpoint": alert.endpoint,
                "rejection_count": alert.count,
                "window_start": to_utc_z(alert.window_start),
            },
        )


def check_limit(
    identity: str,
    endpoint: str,
    limit: int,
    *,
    now: datetime | None = None,
    detector: AbuseDetector | None = None,
) -> LimitDecision:
    """
    Decide whether one more request fits in today's quota.

    Does not modify the counter. A blocked decision carries the seconds until
    the counter's reset_at, rounded up.
    """
    now = now or utcnow()
    row = get_counter(identity, endpoint)

    if row is None:
        return LimitDecision(allowed=True)

    if now >= row.reset_at:
        return LimitDecision(allowed=True)

    if row.count < limit:
        return LimitDecision(allowed=True)

    retry_after = math.ceil((row.reset_at - now).total_seconds())

    alert = _resolve_detector(detector).record_rejection(identity, endpoint, now)
    if alert is not None:
        _report_abuse(alert)

    return LimitDecision(allowed=False, retry_after_seconds=retry_after)


def enforce_limit(
    identity: str,
    endpoint: str,
    limit: int,
    *,
    now: datetime | None = None,
    detector: AbuseDetector | None = None,
) -> None:
    decision = check_limit(identity, endpoint, limit, now=now, detector=detector)
    if not decision.allowed:
        raise RateLimitExceeded(endpoint, decision.retry_after_seconds)


def increment_counter(
    identity: str,
    endpoint: str,
    *,
    now: datetime | None = None,
    tz_name: str | None = None,
) -> CouponRateLimit:
    """
    Count one successful request.

    New or stale counters restart at 1 with a fresh reset_at; live counters
    are incremented in place. One transaction per call.
    """
    now = now or utcnow()
    reset_at = calculate_next_reset(now, tz_name)

    try:
        return _apply_increment(identity, endpoint, now, reset_at)
    except IntegrityError:
        # Lost the race to insert the first row; the winner's row exists now
        return _apply_increment(identity, endpoint, now, reset_at)


def _apply_increment(identity: str, endpoint: str, now: datetime, reset_at: datetime) -> CouponRateLimit:
    with atomic():
        row = lock_for_update(
            db.session.query(CouponRateLimit).filter_by(phone=identity, endpoint=endpoint)
        ).first()

        if row is None:
            row = CouponRateLimit(phone=identity, endpoint=endpoint, count=1, reset_at=reset_at)
            db.session.add(row)
        elif now >= row.reset_at:
            row.count = 1
            row.reset_at = reset_at
        else:
            row.count = CouponRateLimit.count + 1
    return row


def reset_expired_counters(*, now: datetime | None = None) -> int:
    """Delete counters whose reset_at has passed. Returns rows deleted."""
    now = now or utcnow()
    with atomic():
        deleted = db.session.query(CouponRateLimit).filter(
            CouponRateLimit.reset_at <= now
        ).delete(synchronize_session=False)
    return deleted
