"""
Coupon Policy Service

WHY: "4 coupons = 1 free massage" should not be hardcoded. Thresholds, token
lifetime and reward tiers are admin-editable rows, read on every consume and
claim.

DESIGN:
- Reads go through a PolicyCache with a short TTL (5 minutes by default)
- Every write invalidates the cache before returning, so the next read sees it
- The cache is owned by the Flask app (app.extensions["coupon_policy_cache"])
  and can be passed explicitly, which keeps tests isolated
- Cached values are plain dataclasses, never ORM rows, so they stay valid
  after the session that loaded them is gone
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, asdict

from flask import current_app

from ..extensions import db
from ..models import CouponSetting, CouponRewardTier
from .concurrency import atomic


CACHE_EXTENSION_KEY = "coupon_policy_cache"
DEFAULT_CACHE_TTL_SECONDS = 300

KEY_REDEMPTION_THRESHOLD = "default_redemption_threshold"
KEY_TOKEN_EXPIRATION_HOURS = "token_expiration_hours"
KEY_MAX_COUPONS_PER_DAY = "max_coupons_per_day"

# key -> (default, minimum, maximum, description)
SETTING_RULES = {
    KEY_REDEMPTION_THRESHOLD: (4, 1, 100, "Default coupons needed for redemption"),
    KEY_TOKEN_EXPIRATION_HOURS: (24, 1, 168, "Hours until token expires"),
    KEY_MAX_COUPONS_PER_DAY: (10, 1, 50, "Max coupons a customer can earn per day"),
}

DEFAULT_TIER = {
    "name": "Free Massage",
    "name_tr": "Ücretsiz Masaj",
    "coupons_required": 4,
    "description": "Redeem 4 coupons for a free massage session",
    "description_tr": "4 kupon karşılığında ücretsiz masaj hakkı",
    "is_active": True,
    "sort_order": 1,
}

TIER_FIELDS = {
    "name",
    "name_tr",
    "coupons_required",
    "description",
    "description_tr",
    "is_active",
    "sort_order",
}


class PolicyError(ValueError):
    pass


class PolicyValidationError(PolicyError):
    pass


class RewardTierNotFound(PolicyError):
    pass


@dataclass(frozen=True)
class RewardTierInfo:
    id: int
    name: str
    name_tr: str
    coupons_required: int
    description: str | None
    description_tr: str | None
    is_active: bool
    sort_order: int

    @classmethod
    def from_model(cls, tier: CouponRewardTier) -> "RewardTierInfo":
        return cls(
            id=tier.id,
            name=tier.name,
            name_tr=tier.name_tr,
            coupons_required=tier.coupons_required,
            description=tier.description,
            description_tr=tier.description_tr,
            is_active=bool(tier.is_active),
            sort_order=tier.sort_order,
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class CouponPolicy:
    redemption_threshold: int
    token_expiration_hours: int
    max_coupons_per_day: int
    reward_tiers: list[RewardTierInfo] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "redemption_threshold": self.redemption_threshold,
            "token_expiration_hours": self.token_expiration_hours,
            "max_coupons_per_day": self.max_coupons_per_day,
            "reward_tiers": [tier.to_dict() for tier in self.reward_tiers],
        }


class PolicyCache:
    """Single-slot TTL cache for the current CouponPolicy."""

    def __init__(self, ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._policy: CouponPolicy | None = None
        self._expires_at = 0.0

    def get(self) -> CouponPolicy | None:
        if self._policy is not None and self._clock() < self._expires_at:
            return self._policy
        return None

    def set(self, policy: CouponPolicy) -> None:
        self._policy = policy
        self._expires_at = self._clock() + self.ttl_seconds

    def invalidate(self) -> None:
        self._policy = None
        self._expires_at = 0.0


def _resolve_cache(cache: PolicyCache | None) -> PolicyCache:
    if cache is not None:
        return cache
    return current_app.extensions[CACHE_EXTENSION_KEY]


# =============================================================================
# SEEDING
# =============================================================================

def ensure_default_policy(*, cache: PolicyCache | None = None) -> None:
    """Insert default settings and the default tier if they are missing. Idempotent."""
    with atomic():
        existing = {row.key for row in db.session.query(CouponSetting).all()}
        for key, (default, _lo, _hi, description) in SETTING_RULES.items():
            if key not in existing:
                db.session.add(CouponSetting(key=key, value=str(default), description=description))

        if db.session.query(CouponRewardTier).first() is None:
            db.session.add(CouponRewardTier(**DEFAULT_TIER))

    _resolve_cache(cache).invalidate()


# =============================================================================
# READS
# =============================================================================

def _setting_int(settings: dict[str, str], key: str) -> int:
    default = SETTING_RULES[key][0]
    raw = settings.get(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _load_policy() -> CouponPolicy:
    settings = {row.key: row.value for row in db.session.query(CouponSetting).all()}
    tiers = (
        db.session.query(CouponRewardTier)
        .filter(CouponRewardTier.is_active.is_(True))
        .order_by(CouponRewardTier.sort_order, CouponRewardTier.coupons_required)
        .all()
    )
    return CouponPolicy(
        redemption_threshold=_setting_int(settings, KEY_REDEMPTION_THRESHOLD),
        token_expiration_hours=_setting_int(settings, KEY_TOKEN_EXPIRATION_HOURS),
        max_coupons_per_day=_setting_int(settings, KEY_MAX_COUPONS_PER_DAY),
        reward_tiers=[RewardTierInfo.from_model(t) for t in tiers],
    )


def get_policy(*, cache: PolicyCache | None = None) -> CouponPolicy:
    """Current policy, served from cache while it is fresh."""
    cache = _resolve_cache(cache)
    policy = cache.get()
    if policy is None:
        policy = _load_policy()
        cache.set(policy)
    return policy


def get_redemption_threshold(*, cache: PolicyCache | None = None) -> int:
    return get_policy(cache=cache).redemption_threshold


def get_token_expiration_hours(*, cache: PolicyCache | None = None) -> int:
    return get_policy(cache=cache).token_expiration_hours


def get_max_coupons_per_day(*, cache: PolicyCache | None = None) -> int:
    return get_policy(cache=cache).max_coupons_per_day


def get_available_rewards(balance: int, *, cache: PolicyCache | None = None) -> list[RewardTierInfo]:
    """Active tiers the balance can pay for."""
    return [t for t in get_policy(cache=cache).reward_tiers if balance >= t.coupons_required]


def get_minimum_reward_tier(*, cache: PolicyCache | None = None) -> RewardTierInfo | None:
    tiers = get_policy(cache=cache).reward_tiers
    if not tiers:
        return None
    return min(tiers, key=lambda t: t.coupons_required)


def get_remaining_for_next_reward(
    balance: int,
    *,
    cache: PolicyCache | None = None,
) -> tuple[int, RewardTierInfo | None]:
    """
    Coupons still missing for the cheapest tier above the balance.

    Once every tier is affordable, returns (0, cheapest tier).
    """
    tiers = get_policy(cache=cache).reward_tiers
    above = sorted(
        (t for t in tiers if t.coupons_required > balance),
        key=lambda t: t.coupons_required,
    )
    if not above:
        return 0, get_minimum_reward_tier(cache=cache)
    next_tier = above[0]
    return next_tier.coupons_required - balance, next_tier


def get_all_reward_tiers() -> list[CouponRewardTier]:
    """All tiers including inactive ones (admin view, uncached)."""
    return (
        db.session.query(CouponRewardTier)
        .order_by(CouponRewardTier.sort_order, CouponRewardTier.coupons_required)
        .all()
    )


def get_reward_tier(tier_id: int) -> CouponRewardTier | None:
    return db.session.get(CouponRewardTier, tier_id)


# =============================================================================
# WRITES (each invalidates the cache)
# =============================================================================

def _parse_int(value, label: str) -> int:
    if isinstance(value, bool):
        raise PolicyValidationError(f"{label} must be an integer")
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        raise PolicyValidationError(f"{label} must be an integer")


def _validate_setting(key: str, value) -> int:
    if key not in SETTING_RULES:
        raise PolicyValidationError(f"Unknown coupon setting: {key}")

    _default, minimum, maximum, _description = SETTING_RULES[key]
    parsed = _parse_int(value, key)
    if parsed < minimum or parsed > maximum:
        raise PolicyValidationError(f"{key} must be between {minimum} and {maximum}")
    return parsed


def update_settings(changes: dict, *, cache: PolicyCache | None = None) -> list[CouponSetting]:
    """
    Update several policy numbers together.

    Every value is validated before anything is written; one bad value
    leaves all settings unchanged.

    Raises:
        PolicyValidationError: unknown key, non-integer or out-of-range value
    """
    parsed = {key: _validate_setting(key, value) for key, value in changes.items()}

    rows = []
    with atomic():
        for key, number in parsed.items():
            row = db.session.get(CouponSetting, key)
            if row is None:
                row = CouponSetting(key=key, description=SETTING_RULES[key][3], value=str(number))
                db.session.add(row)
            else:
                row.value = str(number)
            rows.append(row)

    _resolve_cache(cache).invalidate()
    return rows


def update_setting(key: str, value, *, cache: PolicyCache | None = None) -> CouponSetting:
    """Update one policy number after range validation."""
    return update_settings({key: value}, cache=cache)[0]


def _validate_tier_fields(fields: dict) -> dict:
    unknown = set(fields) - TIER_FIELDS
    if unknown:
        raise PolicyValidationError(f"Unknown reward tier fields: {', '.join(sorted(unknown))}")

    cleaned = dict(fields)
    for name_field in ("name", "name_tr"):
        if name_field in cleaned:
            value = cleaned[name_field]
            if value is not None and not isinstance(value, str):
                raise PolicyValidationError(f"{name_field} must be a string")
            value = (value or "").strip()
            if not value:
                raise PolicyValidationError(f"{name_field} is required")
            cleaned[name_field] = value

    for text_field in ("description", "description_tr"):
        if cleaned.get(text_field) is not None and not isinstance(cleaned[text_field], str):
            raise PolicyValidationError(f"{text_field} must be a string")

    if "coupons_required" in cleaned:
        required = _parse_int(cleaned["coupons_required"], "coupons_required")
        if required < 1:
            raise PolicyValidationError("coupons_required must be at least 1")
        cleaned["coupons_required"] = required

    if "sort_order" in cleaned:
        cleaned["sort_order"] = _parse_int(cleaned["sort_order"], "sort_order")

    if "is_active" in cleaned and not isinstance(cleaned["is_active"], bool):
        raise PolicyValidationError("is_active must be true or false")

    return cleaned


def create_reward_tier(
    *,
    name: str,
    name_tr: str,
    coupons_required: int,
    description: str | None = None,
    description_tr: str | None = None,
    is_active: bool = True,
    sort_order: int = 0,
    cache: PolicyCache | None = None,
) -> CouponRewardTier:
    fields = _validate_tier_fields({
        "name": name,
        "name_tr": name_tr,
        "coupons_required": coupons_required,
        "description": description,
        "description_tr": description_tr,
        "is_active": is_active,
        "sort_order": sort_order,
    })

    with atomic():
        tier = CouponRewardTier(**fields)
        db.session.add(tier)

    _resolve_cache(cache).invalidate()
    return tier


def update_reward_tier(tier_id: int, *, cache: PolicyCache | None = None, **changes) -> CouponRewardTier:
    fields = _validate_tier_fields(changes)

    with atomic():
        tier = db.session.get(CouponRewardTier, tier_id)
        if tier is None:
            raise RewardTierNotFound(f"Reward tier {tier_id} not found")
        for key, value in fields.items():
            setattr(tier, key, value)

    _resolve_cache(cache).invalidate()
    return tier


def delete_reward_tier(tier_id: int, *, cache: PolicyCache | None = None) -> None:
    with atomic():
        tier = db.session.get(CouponRewardTier, tier_id)
        if tier is None:
            raise RewardTierNotFound(f"Reward tier {tier_id} not found")
        db.session.delete(tier)

    _resolve_cache(cache).invalidate()
