from __future__ import annotations

from ..extensions import db
from couponledger.time_utils import to_utc_z, utcnow


class CouponSetting(db.Model):
    """Key/value store for tunable coupon policy numbers."""
    __tablename__ = "coupon_settings"

    key = db.Column(db.String(64), primary_key=True)
    value = db.Column(db.String(255), nullable=False)
    description = db.Column(db.String(255), nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "value": self.value,
            "description": self.description,
            "updated_at": to_utc_z(self.updated_at),
        }


class CouponRewardTier(db.Model):
    """
    Admin-configured reward option and its coupon cost.

    Read-only from the ledger's point of view; redemptions snapshot the cost.
    """
    __tablename__ = "coupon_reward_tiers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    name_tr = db.Column(db.String(128), nullable=False)
    coupons_required = db.Column(db.Integer, nullable=False)
    description = db.Column(db.Text, nullable=True)
    description_tr = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "name_tr": self.name_tr,
            "coupons_required": self.coupons_required,
            "description": self.description,
            "description_tr": self.description_tr,
            "is_active": self.is_active,
            "sort_order": self.sort_order,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
