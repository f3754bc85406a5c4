# Overview: Periodic coupon housekeeping; the host scheduler (cron) calls these through the CLI.

from __future__ import annotations

from flask import current_app

from . import coupon_service, rate_limit_service


def run_coupon_maintenance() -> dict:
    """
    Run every coupon housekeeping job once.

    - Purge old tokens (issued+expired > 7 days, used > 90 days)
    - Auto-reject pending redemptions older than 30 days, with refund
    - Delete rate-limit counters past their reset time
    """
    deleted_tokens = coupon_service.cleanup_expired_tokens()
    expired_redemptions = coupon_service.expire_pending_redemptions()
    deleted_counters = rate_limit_service.reset_expired_counters()

    summary = {
        "deleted_tokens": deleted_tokens,
        "expired_redemptions": expired_redemptions,
        "deleted_rate_limit_counters": deleted_counters,
    }
    current_app.logger.info("Coupon maintenance finished: %s", summary)
    return summary
