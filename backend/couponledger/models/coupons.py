from __future__ import annotations

import enum

from ..extensions import db
from couponledger.time_utils import to_utc_z, utcnow


class TokenStatus(str, enum.Enum):
    ISSUED = "issued"
    USED = "used"
    EXPIRED = "expired"


class RedemptionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"


class EventType(str, enum.Enum):
    ISSUED = "issued"
    COUPON_AWARDED = "coupon_awarded"
    TOKEN_EXPIRED = "token_expired"
    REDEMPTION_ATTEMPT = "redemption_attempt"
    REDEMPTION_GRANTED = "redemption_granted"
    REDEMPTION_BLOCKED = "redemption_blocked"
    REDEMPTION_COMPLETED = "redemption_completed"
    REDEMPTION_REJECTED = "redemption_rejected"
    REDEMPTION_EXPIRED = "redemption_expired"
    OPTED_OUT = "opted_out"
    TOKENS_CLEANED = "tokens_cleaned"
    REDEMPTIONS_EXPIRED = "redemptions_expired"
    RATE_LIMIT_ABUSE = "rate_limit_abuse"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class CouponToken(db.Model):
    """
    Single-use coupon code handed out by a kiosk.

    LIFECYCLE: issued -> used | expired. Both end states are final; a used or
    expired token never produces credit again.
    """
    __tablename__ = "coupon_tokens"
    __table_args__ = (
        db.Index("ix_coupon_tokens_status_expires", "status", "expires_at"),
        db.Index("ix_coupon_tokens_status_used", "status", "used_at"),
    )

    token = db.Column(db.String(12), primary_key=True)
    status = db.Column(
        db.Enum(TokenStatus, native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
        default=TokenStatus.ISSUED,
    )

    issued_for = db.Column(db.String(128), nullable=True)  # e.g. massage session id
    kiosk_id = db.Column(db.String(64), nullable=False)
    phone = db.Column(db.String(20), nullable=True, index=True)  # set once consumed

    expires_at = db.Column(db.DateTime, nullable=False)
    used_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "token": self.token,
            "status": self.status.value,
            "issued_for": self.issued_for,
            "kiosk_id": self.kiosk_id,
            "phone": self.phone,
            "expires_at": to_utc_z(self.expires_at),
            "used_at": to_utc_z(self.used_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class CouponWallet(db.Model):
    """
    Per-customer coupon balance keyed by normalized phone.

    INVARIANTS:
    - coupon_count >= 0
    - total_earned only grows
    - coupon_count == total_earned - total_redeemed
    """
    __tablename__ = "coupon_wallets"
    __table_args__ = (
        db.CheckConstraint("coupon_count >= 0", name="ck_coupon_wallets_count_non_negative"),
    )

    phone = db.Column(db.String(20), primary_key=True)

    coupon_count = db.Column(db.Integer, nullable=False, default=0)
    total_earned = db.Column(db.Integer, nullable=False, default=0)
    total_redeemed = db.Column(db.Integer, nullable=False, default=0)

    opted_in_marketing = db.Column(db.Boolean, nullable=False, default=True)
    last_message_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "phone": self.phone,
            "coupon_count": self.coupon_count,
            "total_earned": self.total_earned,
            "total_redeemed": self.total_redeemed,
            "opted_in_marketing": self.opted_in_marketing,
            "last_message_at": to_utc_z(self.last_message_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class CouponRedemption(db.Model):
    """
    A claim of wallet balance against a reward.

    LIFECYCLE: pending -> completed | rejected. Coupons are deducted at claim
    time; rejection (manual or auto-expiry) refunds coupons_used.
    """
    __tablename__ = "coupon_redemptions"
    __table_args__ = (
        db.Index("ix_coupon_redemptions_phone_status", "phone", "status"),
        db.Index("ix_coupon_redemptions_status_created", "status", "created_at"),
        # At most one pending redemption per phone
        db.Index(
            "uq_coupon_redemptions_one_pending",
            "phone",
            unique=True,
            sqlite_where=db.text("status = 'pending'"),
            postgresql_where=db.text("status = 'pending'"),
        ),
    )

    id = db.Column(db.String(36), primary_key=True)
    phone = db.Column(db.String(20), nullable=False, index=True)

    # Snapshot at claim time; never recomputed from current policy
    coupons_used = db.Column(db.Integer, nullable=False)
    tier_id = db.Column(db.Integer, nullable=True)
    reward_name = db.Column(db.String(128), nullable=True)

    status = db.Column(
        db.Enum(RedemptionStatus, native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
        default=RedemptionStatus.PENDING,
    )
    note = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    notified_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    completed_by = db.Column(db.String(64), nullable=True)
    rejected_at = db.Column(db.DateTime, nullable=True)
    rejected_by = db.Column(db.String(64), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "phone": self.phone,
            "coupons_used": self.coupons_used,
            "tier_id": self.tier_id,
            "reward_name": self.reward_name,
            "status": self.status.value,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
            "notified_at": to_utc_z(self.notified_at),
            "completed_at": to_utc_z(self.completed_at),
            "completed_by": self.completed_by,
            "rejected_at": to_utc_z(self.rejected_at),
            "rejected_by": self.rejected_by,
        }


class CouponEvent(db.Model):
    """
    Coupon audit trail.

    IMMUTABLE: Never update or delete. Append-only for audit integrity.
    phone/token columns are lookup keys; PII inside details is masked.
    """
    __tablename__ = "coupon_events"
    __table_args__ = (
        db.Index("ix_coupon_events_phone_created", "phone", "created_at"),
        db.Index("ix_coupon_events_event_created", "event", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    phone = db.Column(db.String(20), nullable=True)
    event = db.Column(db.String(32), nullable=False)
    token = db.Column(db.String(12), nullable=True, index=True)
    details = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "phone": self.phone,
            "event": self.event,
            "token": self.token,
            "details": self.details,
            "created_at": to_utc_z(self.created_at),
        }


class CouponRateLimit(db.Model):
    """
    Daily request counter per (phone, endpoint).

    Ephemeral: rows past reset_at are ignored by checks and purged by
    maintenance.
    """
    __tablename__ = "coupon_rate_limits"

    phone = db.Column(db.String(20), primary_key=True)
    endpoint = db.Column(db.String(16), primary_key=True)
    count = db.Column(db.Integer, nullable=False, default=0)
    reset_at = db.Column(db.DateTime, nullable=False, index=True)

    def to_dict(self) -> dict:
        return {
            "phone": self.phone,
            "endpoint": self.endpoint,
            "count": self.count,
            "reset_at": to_utc_z(self.reset_at),
        }
