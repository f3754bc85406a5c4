from .coupons import (
    CouponToken,
    CouponWallet,
    CouponRedemption,
    CouponEvent,
    CouponRateLimit,
    TokenStatus,
    RedemptionStatus,
    EventType,
)
from .policy import CouponSetting, CouponRewardTier

__all__ = [
    'CouponToken', 'CouponWallet', 'CouponRedemption', 'CouponEvent', 'CouponRateLimit',
    'TokenStatus', 'RedemptionStatus', 'EventType',
    'CouponSetting', 'CouponRewardTier',
]
