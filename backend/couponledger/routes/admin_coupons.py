# Overview: Flask API routes for the admin coupon dashboard; parses input and returns JSON responses.

# backend/couponledger/routes/admin_coupons.py
"""
Admin Coupon API Routes

WHY: Staff issue tokens at the kiosk, look up customer wallets, and fulfil or
reject pending reward redemptions.

DESIGN:
- Redemption completion/rejection is an admin decision; rejection refunds
- Acting on an unknown redemption is 404, on a closed one 409
- Phone numbers are masked in listings
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..models import RedemptionStatus
from ..services import coupon_service, event_log_service
from ..services.coupon_service import (
    InvalidRedemptionTransition,
    RedemptionNotFound,
    RejectionNoteRequired,
    TokenGenerationExhausted,
)
from ..services.phone_normalizer import PhoneValidationError, normalize
from ..services.pii_masking import mask_phone
from ..services.rate_limit_service import DETECTOR_EXTENSION_KEY
from ..decorators import json_object, require_admin
from couponledger.time_utils import parse_iso_datetime


admin_coupons_bp = Blueprint("admin_coupons", __name__, url_prefix="/api/admin/coupons")


def _int_arg(name: str, default: int, minimum: int = 0) -> int:
    raw = request.args.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= minimum else default


def _masked(item: dict) -> dict:
    # Cross-customer listings carry only the masked phone
    phone = item.pop("phone", None)
    item["phone_masked"] = mask_phone(phone) if phone else None
    return item


# =============================================================================
# TOKENS
# =============================================================================

@admin_coupons_bp.post("/issue")
@require_admin
def issue_token_route():
    """
    Issue a coupon token for a kiosk.

    Request body:
    {
        "kiosk_id": "K1",
        "issued_for": "massage-123"  (optional)
    }

    Returns:
        201: token with WhatsApp deep link
        400: kiosk_id missing or not a string
        503: token generation exhausted
    """
    try:
        data = json_object()
        kiosk_id = data.get("kiosk_id") or ""
        issued_for = data.get("issued_for")

        if not isinstance(kiosk_id, str) or not kiosk_id.strip():
            return jsonify({"error": "kiosk_id required"}), 400
        if issued_for is not None and not isinstance(issued_for, str):
            return jsonify({"error": "issued_for must be a string"}), 400
        kiosk_id = kiosk_id.strip()

        issued = coupon_service.issue_token(kiosk_id, issued_for)
        return jsonify({"token": issued.to_dict()}), 201

    except TokenGenerationExhausted:
        current_app.logger.exception("Token generation exhausted")
        return jsonify({"error": "Could not generate a unique token"}), 503
    except Exception:
        current_app.logger.exception("Failed to issue coupon token")
        return jsonify({"error": "Internal server error"}), 500


@admin_coupons_bp.get("/recent-tokens")
@require_admin
def recent_tokens_route():
    try:
        limit = _int_arg("limit", 10, minimum=1)
        tokens = coupon_service.get_recent_tokens(limit)
        return jsonify({"tokens": [_masked(t.to_dict()) for t in tokens]}), 200
    except Exception:
        current_app.logger.exception("Failed to fetch recent tokens")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# WALLETS & EVENTS
# =============================================================================

@admin_coupons_bp.get("/wallet/<phone>")
@require_admin
def wallet_route(phone: str):
    try:
        summary = coupon_service.get_wallet_summary(phone)
        if summary is None:
            return jsonify({"error": "Wallet not found"}), 404
        return jsonify(summary.to_dict()), 200
    except PhoneValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to fetch wallet")
        return jsonify({"error": "Internal server error"}), 500


@admin_coupons_bp.get("/events/<phone>")
@require_admin
def wallet_events_route(phone: str):
    try:
        limit = _int_arg("limit", 100, minimum=1)
        events = event_log_service.get_events_by_phone(normalize(phone), limit)
        return jsonify({"events": [e.to_dict() for e in events]}), 200
    except PhoneValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to fetch coupon events")
        return jsonify({"error": "Internal server error"}), 500


@admin_coupons_bp.get("/event-counts")
@require_admin
def event_counts_route():
    """
    Event totals by type.

    Query params:
    - start, end: ISO-8601 datetimes (optional, inclusive)
    """
    try:
        start = parse_iso_datetime(request.args.get("start"))
        end = parse_iso_datetime(request.args.get("end"))
    except ValueError:
        return jsonify({"error": "start/end must be ISO-8601 datetimes"}), 400

    try:
        return jsonify({"counts": event_log_service.get_event_counts(start, end)}), 200
    except Exception:
        current_app.logger.exception("Failed to count coupon events")
        return jsonify({"error": "Internal server error"}), 500


@admin_coupons_bp.get("/abuse")
@require_admin
def abuse_statistics_route():
    detector = current_app.extensions[DETECTOR_EXTENSION_KEY]
    return jsonify({"abuse": detector.get_statistics()}), 200


# =============================================================================
# REDEMPTIONS
# =============================================================================

@admin_coupons_bp.get("/redemptions")
@require_admin
def list_redemptions_route():
    """
    List redemptions, newest first.

    Query params:
    - status: pending | completed | rejected (optional)
    - limit (default 50), offset (default 0)
    """
    try:
        status = request.args.get("status")
        if status and status not in {s.value for s in RedemptionStatus}:
            return jsonify({"error": f"Unknown status: {status}"}), 400

        redemptions = coupon_service.list_redemptions(
            status=status or None,
            limit=_int_arg("limit", 50, minimum=1),
            offset=_int_arg("offset", 0),
        )

        return jsonify({"redemptions": [_masked(r.to_dict()) for r in redemptions]}), 200
    except Exception:
        current_app.logger.exception("Failed to list redemptions")
        return jsonify({"error": "Internal server error"}), 500


@admin_coupons_bp.post("/redemptions/<redemption_id>/complete")
@require_admin
def complete_redemption_route(redemption_id: str):
    try:
        redemption = coupon_service.complete_redemption(redemption_id, g.actor)
        current_app.logger.info("Redemption %s completed by %s", redemption_id, g.actor)
        return jsonify({"success": True, "redemption": _masked(redemption.to_dict())}), 200
    except RedemptionNotFound as e:
        return jsonify({"error": str(e)}), 404
    except InvalidRedemptionTransition as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to complete redemption")
        return jsonify({"error": "Internal server error"}), 500


@admin_coupons_bp.post("/redemptions/<redemption_id>/reject")
@require_admin
def reject_redemption_route(redemption_id: str):
    """
    Reject a redemption and refund the coupons.

    Request body:
    {
        "note": "Customer did not show up"
    }
    """
    try:
        data = json_object()
        redemption = coupon_service.reject_redemption(redemption_id, data.get("note") or "", g.actor)
        current_app.logger.info(
            "Redemption %s rejected by %s, refunded %d coupons",
            redemption_id, g.actor, redemption.coupons_used,
        )
        return jsonify({"success": True, "redemption": _masked(redemption.to_dict())}), 200
    except RejectionNoteRequired as e:
        return jsonify({"error": str(e)}), 400
    except RedemptionNotFound as e:
        return jsonify({"error": str(e)}), 404
    except InvalidRedemptionTransition as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to reject redemption")
        return jsonify({"error": "Internal server error"}), 500
