# Overview: Flask API routes the messaging integration calls; parses input and returns JSON responses.

# backend/couponledger/routes/integration_coupons.py
"""
Coupon Integration API Routes

WHY: The WhatsApp/Instagram workflow turns an incoming "KUPON <token>" message
into a consume call, a "claim" message into a claim call, and "STOP" into an
opt-out. Message parsing lives in the workflow; these routes only touch the
ledger.

SECURITY:
- Every route except /health requires the integration API key
- consume and claim are limited per phone per day
- Phones and tokens are masked in application logs
"""

from flask import Blueprint, jsonify, g, current_app

from ..extensions import db
from ..models import CouponToken
from ..services import coupon_service
from ..services.coupon_service import CouponErrorCode
from ..services.phone_normalizer import PhoneValidationError
from ..services.pii_masking import mask_phone, mask_token
from ..services.rate_limit_service import ENDPOINT_CLAIM, ENDPOINT_CONSUME
from ..decorators import json_object, require_integration_key, coupon_rate_limit


integration_coupons_bp = Blueprint("integration_coupons", __name__, url_prefix="/api/integrations/coupons")


def _error(code: str, message: str, status: int, **extra):
    body = {"code": code, "message": message}
    body.update(extra)
    return jsonify({"error": body}), status


@integration_coupons_bp.get("/health")
def health_route():
    """
    Database reachability check for the integration workflow.

    Returns:
        200: {"status": "healthy"}
        503: database unreachable
    """
    try:
        db.session.query(CouponToken).limit(1).count()
        return jsonify({"status": "healthy", "components": {"database": "up"}}), 200
    except Exception:
        current_app.logger.exception("Coupon integration health check failed")
        return jsonify({"status": "unhealthy", "components": {"database": "down"}}), 503


@integration_coupons_bp.post("/consume")
@require_integration_key
@coupon_rate_limit(ENDPOINT_CONSUME)
def consume_route():
    """
    Credit one coupon for a token sent by a customer.

    Request body:
    {
        "phone": "+905551234567",
        "token": "ABCD2345EFGH"
    }

    Returns:
        200: {"ok": true, "balance": 3, "remaining_to_free": 1}
        400: MISSING_TOKEN, INVALID_TOKEN, EXPIRED_TOKEN, ALREADY_USED
        429: daily limit reached
    """
    try:
        data = json_object()
        phone = data.get("phone")
        token = data.get("token")

        if not token or not isinstance(token, str):
            return _error("MISSING_TOKEN", "Token is required", 400)

        result = coupon_service.consume_token(phone, token)

        if not result.ok:
            messages = {
                CouponErrorCode.INVALID_TOKEN: "Token is invalid",
                CouponErrorCode.EXPIRED_TOKEN: "Token has expired",
                CouponErrorCode.ALREADY_USED: "Token has already been used",
            }
            return _error(result.error.value, messages.get(result.error, "Token rejected"), 400)

        current_app.logger.info(
            "Token consumed via integration: phone=%s token=%s balance=%d",
            mask_phone(phone), mask_token(token), result.balance,
        )
        return jsonify(result.to_dict()), 200

    except PhoneValidationError as e:
        return _error("INVALID_PHONE", str(e), 400)
    except Exception:
        current_app.logger.exception("Failed to consume coupon token")
        return _error("INTERNAL_ERROR", "Internal server error", 500)


@integration_coupons_bp.post("/claim")
@require_integration_key
@coupon_rate_limit(ENDPOINT_CLAIM)
def claim_route():
    """
    Claim a reward with accumulated coupons.

    Request body:
    {
        "phone": "+905551234567",
        "tier_id": 2  (optional)
    }

    Returns:
        200: {"ok": true, "redemption_id": "...", "is_new": true}
        400: INSUFFICIENT_COUPONS with balance and needed
    """
    try:
        data = json_object()
        phone = data.get("phone")
        tier_id = data.get("tier_id")
        if tier_id is not None and (isinstance(tier_id, bool) or not isinstance(tier_id, int)):
            return _error("INVALID_TIER", "tier_id must be an integer", 400)

        result = coupon_service.claim_redemption(phone, tier_id)

        current_app.logger.info(
            "Redemption claim via integration: phone=%s ok=%s new=%s",
            mask_phone(phone), result.ok, result.is_new,
        )

        if not result.ok:
            return _error(
                CouponErrorCode.INSUFFICIENT_COUPONS.value,
                "Insufficient coupons for redemption",
                400,
                balance=result.balance,
                needed=result.needed,
                threshold=result.threshold,
            )

        return jsonify(result.to_dict()), 200

    except PhoneValidationError as e:
        return _error("INVALID_PHONE", str(e), 400)
    except Exception:
        current_app.logger.exception("Failed to claim redemption")
        return _error("INTERNAL_ERROR", "Internal server error", 500)


@integration_coupons_bp.get("/wallet/<phone>")
@require_integration_key
def wallet_route(phone: str):
    """
    Wallet balance and reward progress for a customer.

    Returns:
        200: wallet summary
        404: WALLET_NOT_FOUND
    """
    try:
        summary = coupon_service.get_wallet_summary(phone)
        if summary is None:
            return _error("WALLET_NOT_FOUND", "Wallet not found", 404)
        return jsonify(summary.to_dict()), 200

    except PhoneValidationError as e:
        return _error("INVALID_PHONE", str(e), 400)
    except Exception:
        current_app.logger.exception("Failed to fetch wallet")
        return _error("INTERNAL_ERROR", "Internal server error", 500)


@integration_coupons_bp.post("/opt-out")
@require_integration_key
def opt_out_route():
    """
    Opt a customer out of marketing messages. Balances are untouched.

    Request body:
    {
        "phone": "+905551234567"
    }
    """
    try:
        data = json_object()
        phone = data.get("phone")
        if not phone or not isinstance(phone, str):
            return _error("MISSING_PHONE", "Phone number is required", 400)

        coupon_service.opt_out(phone)

        current_app.logger.info("Customer opted out via %s: phone=%s", g.api_client, mask_phone(phone))
        return jsonify({"success": True, "message": "Successfully opted out of marketing messages"}), 200

    except PhoneValidationError as e:
        return _error("INVALID_PHONE", str(e), 400)
    except Exception:
        current_app.logger.exception("Failed to opt out customer")
        return _error("INTERNAL_ERROR", "Internal server error", 500)
