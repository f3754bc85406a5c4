from __future__ import annotations

from flask import Blueprint, jsonify, g, current_app

from ..decorators import json_object, require_admin
from ..services import coupon_policy_service
from ..services.coupon_policy_service import (
    PolicyValidationError,
    RewardTierNotFound,
    KEY_MAX_COUPONS_PER_DAY,
    KEY_REDEMPTION_THRESHOLD,
    KEY_TOKEN_EXPIRATION_HOURS,
)


admin_policy_bp = Blueprint("admin_policy", __name__, url_prefix="/api/admin/policy")


# Request field -> setting key
SETTING_FIELDS = {
    "redemption_threshold": KEY_REDEMPTION_THRESHOLD,
    "token_expiration_hours": KEY_TOKEN_EXPIRATION_HOURS,
    "max_coupons_per_day": KEY_MAX_COUPONS_PER_DAY,
}


def _json_error(exc: Exception):
    if isinstance(exc, PolicyValidationError):
        return jsonify({"error": str(exc)}), 400
    if isinstance(exc, RewardTierNotFound):
        return jsonify({"error": str(exc)}), 404
    current_app.logger.exception("Coupon policy request failed")
    return jsonify({"error": "Internal server error"}), 500


def _policy_payload() -> dict:
    policy = coupon_policy_service.get_policy()
    payload = policy.to_dict()
    payload["all_reward_tiers"] = [t.to_dict() for t in coupon_policy_service.get_all_reward_tiers()]
    return payload


@admin_policy_bp.get("")
@require_admin
def get_policy_route():
    try:
        return jsonify(_policy_payload()), 200
    except Exception as exc:
        return _json_error(exc)


@admin_policy_bp.put("/settings")
@require_admin
def update_settings_route():
    """
    Update one or more policy numbers.

    Request body (any subset):
    {
        "redemption_threshold": 4,
        "token_expiration_hours": 24,
        "max_coupons_per_day": 10
    }
    """
    payload = json_object()
    unknown = sorted(set(payload) - set(SETTING_FIELDS))
    if unknown:
        return jsonify({"error": f"Unknown settings: {', '.join(unknown)}"}), 400
    if not payload:
        return jsonify({"error": "No settings provided"}), 400

    try:
        coupon_policy_service.update_settings(
            {SETTING_FIELDS[field_name]: value for field_name, value in payload.items()}
        )
        current_app.logger.info("Coupon policy updated by %s: %s", g.actor, sorted(payload))
        return jsonify(_policy_payload()), 200
    except Exception as exc:
        return _json_error(exc)


@admin_policy_bp.post("/tiers")
@require_admin
def create_tier_route():
    payload = json_object()
    for required in ("name", "name_tr", "coupons_required"):
        if payload.get(required) in (None, ""):
            return jsonify({"error": f"{required} is required"}), 400

    try:
        tier = coupon_policy_service.create_reward_tier(
            name=payload["name"],
            name_tr=payload["name_tr"],
            coupons_required=payload["coupons_required"],
            description=payload.get("description"),
            description_tr=payload.get("description_tr"),
            is_active=payload.get("is_active", True),
            sort_order=payload.get("sort_order", 0),
        )
        current_app.logger.info("Reward tier %s created by %s", tier.id, g.actor)
        return jsonify({"tier": tier.to_dict()}), 201
    except Exception as exc:
        return _json_error(exc)


@admin_policy_bp.put("/tiers/<int:tier_id>")
@require_admin
def update_tier_route(tier_id: int):
    payload = json_object()
    if not payload:
        return jsonify({"error": "No changes provided"}), 400

    try:
        unknown = sorted(set(payload) - coupon_policy_service.TIER_FIELDS)
        if unknown:
            return jsonify({"error": f"Unknown reward tier fields: {', '.join(unknown)}"}), 400
        tier = coupon_policy_service.update_reward_tier(tier_id, **payload)
        current_app.logger.info("Reward tier %s updated by %s", tier_id, g.actor)
        return jsonify({"tier": tier.to_dict()}), 200
    except Exception as exc:
        return _json_error(exc)


@admin_policy_bp.delete("/tiers/<int:tier_id>")
@require_admin
def delete_tier_route(tier_id: int):
    try:
        coupon_policy_service.delete_reward_tier(tier_id)
        current_app.logger.info("Reward tier %s deleted by %s", tier_id, g.actor)
        return jsonify({"success": True}), 200
    except Exception as exc:
        return _json_error(exc)
