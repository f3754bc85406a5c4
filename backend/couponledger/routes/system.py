# backend/couponledger/routes/system.py
"""
System health endpoint.

Checks the ledger database and reports the policy the service is running
with, for deployment debugging.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import CouponToken, CouponWallet, CouponRedemption, RedemptionStatus
from ..services import coupon_policy_service
from couponledger.time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        token_count = db.session.query(CouponToken).count()
        wallet_count = db.session.query(CouponWallet).count()
        pending_count = db.session.query(CouponRedemption).filter_by(
            status=RedemptionStatus.PENDING
        ).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "tokens": token_count,
                "wallets": wallet_count,
                "pending_redemptions": pending_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_policy_health() -> dict:
    """
    Policy is loadable and has at least one active reward tier.
    """
    start_time = time.time()
    try:
        policy = coupon_policy_service.get_policy()
        elapsed_ms = (time.time() - start_time) * 1000

        details = {
            "redemption_threshold": policy.redemption_threshold,
            "active_reward_tiers": len(policy.reward_tiers),
        }
        if not policy.reward_tiers:
            return {
                "status": "degraded",
                "latency_ms": round(elapsed_ms, 2),
                "warning": "No active reward tiers; claims fall back to the default threshold",
                "details": details,
            }

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": details,
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Policy health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Policy error"
        }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy or degraded
    - 503: one or more checks unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    policy_health = check_policy_health()

    all_checks = [database_health, policy_health]
    unhealthy_count = sum(1 for check in all_checks if check["status"] == "unhealthy")
    degraded_count = sum(1 for check in all_checks if check["status"] == "degraded")

    if unhealthy_count > 0:
        overall_status = "unhealthy"
        http_status = 503
    elif degraded_count > 0:
        overall_status = "degraded"
        http_status = 200  # Degraded is still operational
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "policy": policy_health,
        }
    }

    return response, http_status
